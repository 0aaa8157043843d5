"""Consumer-facing dashboard state.

A DashboardState is rebuilt on every fast tick from the merged snapshot,
the power history, the battery profile and the latest attribution. It is
the only shape handed to emitters (JSON stream, status line, change
watcher).
"""

import json
from dataclasses import dataclass

from truth_monitor.attribution import Attribution, friendly_name
from truth_monitor.classify import (
    Tier,
    classify_memory,
    classify_runway,
    classify_temperature,
    classify_wakeups,
    hottest,
)
from truth_monitor.history import PowerHistory
from truth_monitor.power import (
    BatteryProfile,
    PowerBreakdown,
    decompose,
    estimate_display,
    runway_hours,
)
from truth_monitor.snapshot import ProcessRecord, Snapshot


@dataclass(frozen=True)
class Tiers:
    """Classified severities. None means the input was unavailable."""

    memory: Tier | None
    thermal: Tier | None
    wakeups: Tier | None
    efficiency: Tier | None

    def to_dict(self) -> dict:
        return {
            "memory": self.memory.value if self.memory else None,
            "thermal": self.thermal.value if self.thermal else None,
            "wakeups": self.wakeups.value if self.wakeups else None,
            "efficiency": self.efficiency.value if self.efficiency else None,
        }


@dataclass(frozen=True)
class DashboardState:
    """Merged, classified view of one fast tick."""

    snapshot: Snapshot
    power: PowerBreakdown
    tiers: Tiers
    hottest_c: float | None
    attribution: Attribution
    battery: BatteryProfile
    runway_hours: float  # At the current total draw
    avg_runway_hours: float  # At the windowed mean draw
    avg_power_mw: float
    window_minutes: int
    baseline_mw: float | None
    rail_stale: bool = False  # Last fast attempt failed; rails are held over
    slow_stale: bool = False  # Last slow attempt failed; process and battery data held over
    fast_failures: int = 0
    slow_failures: int = 0

    @property
    def stale(self) -> bool:
        return self.rail_stale or self.slow_stale

    @property
    def timestamp(self) -> float:
        return self.snapshot.timestamp

    @property
    def delta_mw(self) -> float | None:
        """Signed change in total power since the session baseline."""
        if self.baseline_mw is None:
            return None
        return self.power.total - self.baseline_mw

    def to_dict(self) -> dict:
        """Serialize to a dictionary."""
        snap = self.snapshot
        rail = snap.rail
        delta = self.delta_mw
        return {
            "timestamp": self.timestamp,
            "stale": self.stale,
            "rail_stale": self.rail_stale,
            "slow_stale": self.slow_stale,
            "failures": {"fast": self.fast_failures, "slow": self.slow_failures},
            "power": {
                "total_mw": _mw(self.power.total),
                "cpu_mw": _mw(self.power.cpu),
                "gpu_mw": _mw(self.power.gpu),
                "ane_mw": _mw(self.power.ane),
                "memory_mw": _mw(self.power.memory),
                "compute_mw": _mw(self.power.compute),
                "accessory_mw": _mw(self.power.accessory),
                "display_mw": _mw(self.power.display),
                "residual_mw": _mw(self.power.residual),
                "battery_rail_mw": _mw(rail.battery_rail_mw),
                "ecpu_mw": _mw(rail.ecpu_mw),
                "pcpu_mw": _mw(rail.pcpu_mw),
                "avg_mw": _mw(self.avg_power_mw),
                "window_minutes": self.window_minutes,
                "baseline_mw": _mw(self.baseline_mw),
                "delta_mw": _mw(delta),
            },
            "temperatures": snap.temperatures.to_dict(),
            "hottest_c": self.hottest_c,
            "thermal_pressure": rail.thermal_pressure,
            "battery": {
                "pct": snap.battery_pct,
                "charging": snap.charging,
                "runway_hours": round(self.runway_hours, 1),
                "avg_runway_hours": round(self.avg_runway_hours, 1),
                **self.battery.to_dict(),
            },
            "memory_available_pct": snap.memory_available_pct,
            "wakeups_per_s": round(snap.wakeups_per_s, 1),
            "tiers": self.tiers.to_dict(),
            "top_processes": [_process_dict(p) for p in self.attribution.top],
            "anomalies": [_process_dict(p) for p in self.attribution.anomalies],
            "displayed_anomalies": [_process_dict(p) for p in self.attribution.displayed_anomalies],
            "missing": sorted(snap.missing),
        }

    def to_json(self) -> str:
        """Serialize to a single-line JSON string."""
        return json.dumps(self.to_dict())


def _mw(value: float | None) -> float | None:
    return round(value, 1) if value is not None else None


def _process_dict(proc: ProcessRecord) -> dict:
    return {
        "name": proc.name,
        "label": friendly_name(proc.name),
        "pid": proc.pid,
        "cpu_ms_per_s": round(proc.cpu_ms_per_s, 1),
        "wakeups_per_s": round(proc.wakeups_per_s, 1),
    }


def build_state(
    snapshot: Snapshot,
    history: PowerHistory,
    battery: BatteryProfile,
    attribution: Attribution,
    baseline_mw: float | None = None,
    rail_stale: bool = False,
    slow_stale: bool = False,
    fast_failures: int = 0,
    slow_failures: int = 0,
) -> DashboardState:
    """Derive the dashboard state for one fast tick.

    The history should already contain this tick's total power. Runway is
    always computed from the total system rail, both instantaneous and
    windowed, so the two figures share one power base.
    """
    rail = snapshot.rail
    display = estimate_display(rail.battery_rail_mw, rail.total_mw)
    breakdown = decompose(
        total=rail.total_mw,
        cpu=rail.cpu_mw,
        gpu=rail.gpu_mw,
        ane=rail.ane_mw,
        memory=rail.memory_mw,
        accessory=rail.accessory_mw,
        display=display,
    )

    avg_mw = history.mean(fallback=rail.total_mw)
    runway = runway_hours(battery.watt_hours, rail.total_mw)
    hot = hottest(snapshot.temperatures.readings())
    memory_pct = snapshot.memory_available_pct

    tiers = Tiers(
        memory=classify_memory(memory_pct) if memory_pct is not None else None,
        thermal=classify_temperature(hot) if hot is not None else None,
        # No slow sample yet means no wakeup data at all, not zero wakeups
        wakeups=classify_wakeups(snapshot.wakeups_per_s) if snapshot.slow else None,
        efficiency=classify_runway(runway),
    )

    return DashboardState(
        snapshot=snapshot,
        power=breakdown,
        tiers=tiers,
        hottest_c=hot,
        attribution=attribution,
        battery=battery,
        runway_hours=runway,
        avg_runway_hours=runway_hours(battery.watt_hours, avg_mw),
        avg_power_mw=avg_mw,
        window_minutes=history.window_minutes(),
        baseline_mw=baseline_mw,
        rail_stale=rail_stale,
        slow_stale=slow_stale,
        fast_failures=fast_failures,
        slow_failures=slow_failures,
    )
