"""Power decomposition and battery runway estimates.

Total system power is split into named buckets by subtraction:

    compute  = cpu + gpu + ane
    known    = compute + memory + accessory
    residual = max(0, total - known - display)

Sensor rails are read at slightly different instants, so raw subtraction can
go negative. Every bucket is clamped at zero and a negative wattage is never
reported.
"""

from dataclasses import asdict, dataclass

NOMINAL_VOLTAGE = 11.4  # 3-cell lithium pack
DEFAULT_CAPACITY_MAH = 4500.0
RUNWAY_CAP_HOURS = 99.0
MIN_DRAW_MW = 100.0  # Below this draw the runway estimate is meaningless


@dataclass(frozen=True)
class PowerBreakdown:
    """Total power split into non-negative buckets (milliwatts)."""

    total: float
    compute: float
    cpu: float
    gpu: float
    ane: float
    memory: float
    accessory: float
    display: float | None  # None when no battery rail was measured
    residual: float

    def to_dict(self) -> dict:
        return asdict(self)


def estimate_display(battery_rail_mw: float | None, system_rail_mw: float) -> float | None:
    """Estimate display power as battery rail minus system rail.

    Returns None when the battery rail is unmeasured.
    """
    if battery_rail_mw is None:
        return None
    return max(0.0, battery_rail_mw - system_rail_mw)


def decompose(
    total: float,
    cpu: float,
    gpu: float,
    ane: float,
    memory: float = 0.0,
    accessory: float = 0.0,
    display: float | None = None,
) -> PowerBreakdown:
    """Split total system power into compute, memory, accessory, display and residual.

    Component inputs are zero when unmeasured. When ``display`` is given it
    is reported explicitly and removed from the residual.
    """
    cpu, gpu, ane = max(0.0, cpu), max(0.0, gpu), max(0.0, ane)
    memory, accessory = max(0.0, memory), max(0.0, accessory)
    display = max(0.0, display) if display is not None else None

    compute = cpu + gpu + ane
    known = compute + memory + accessory
    residual = max(0.0, total - known - (display or 0.0))

    return PowerBreakdown(
        total=max(0.0, total),
        compute=compute,
        cpu=cpu,
        gpu=gpu,
        ane=ane,
        memory=memory,
        accessory=accessory,
        display=display,
        residual=residual,
    )


@dataclass(frozen=True)
class BatteryProfile:
    """Battery capacity in watt-hours plus health data."""

    watt_hours: float
    nominal_mah: float
    design_mah: float | None = None
    cycle_count: int | None = None
    reported_health_pct: float | None = None  # As reported by the source, no mAh known
    is_default: bool = False

    @property
    def health_pct(self) -> float | None:
        """Nominal capacity as a percentage of design capacity.

        Without a design capacity this is the health the source reported.
        """
        if not self.design_mah:
            return self.reported_health_pct
        return self.nominal_mah / self.design_mah * 100.0

    @classmethod
    def from_capacity(
        cls,
        nominal_mah: float | None,
        design_mah: float | None = None,
        cycle_count: int | None = None,
        health_pct: float | None = None,
        voltage: float = NOMINAL_VOLTAGE,
        default_mah: float = DEFAULT_CAPACITY_MAH,
    ) -> "BatteryProfile":
        """Build a profile from health-adjusted charge capacity.

        Falls back to design capacity, then to ``default_mah``. When only a
        health percentage is known, the default pack is scaled by it; the
        profile is still marked as default.
        """
        mah = nominal_mah or design_mah
        if mah and mah > 0:
            return cls(
                watt_hours=mah * voltage / 1000.0,
                nominal_mah=mah,
                design_mah=design_mah,
                cycle_count=cycle_count,
                reported_health_pct=health_pct,
            )

        if health_pct is not None and not 0.0 < health_pct <= 100.0:
            health_pct = None
        if health_pct is not None:
            default_mah = default_mah * health_pct / 100.0
        return cls(
            watt_hours=default_mah * voltage / 1000.0,
            nominal_mah=default_mah,
            cycle_count=cycle_count,
            reported_health_pct=health_pct,
            is_default=True,
        )

    @classmethod
    def default(
        cls,
        voltage: float = NOMINAL_VOLTAGE,
        default_mah: float = DEFAULT_CAPACITY_MAH,
    ) -> "BatteryProfile":
        """Profile used when the battery cannot be queried."""
        return cls(
            watt_hours=default_mah * voltage / 1000.0,
            nominal_mah=default_mah,
            is_default=True,
        )

    def to_dict(self) -> dict:
        return {
            "watt_hours": round(self.watt_hours, 2),
            "nominal_mah": self.nominal_mah,
            "design_mah": self.design_mah,
            "cycle_count": self.cycle_count,
            "health_pct": round(self.health_pct, 1) if self.health_pct is not None else None,
            "is_default": self.is_default,
        }


def runway_hours(watt_hours: float, draw_mw: float) -> float:
    """Hours a full battery lasts at ``draw_mw``.

    Draws at or below 100 mW return the 99-hour cap.
    """
    if draw_mw <= MIN_DRAW_MW:
        return RUNWAY_CAP_HOURS
    return min(RUNWAY_CAP_HOURS, watt_hours / (draw_mw / 1000.0))
