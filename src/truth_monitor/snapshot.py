"""Snapshot source adapter.

Normalizes raw telemetry payloads into typed, immutable samples:

- RailSample: fast cadence, power rails and temperatures
- SlowSample: slow cadence, process table, battery and memory state
- Snapshot: the merged point-in-time reading

Payloads come from the helper binary as JSON objects, from the powermetrics
text task table, or from ioreg battery dumps. Power may arrive in milliwatts
(``*_mw``) or watts (``*_w``); everything is stored in milliwatts.

Missing power/rate fields default to 0.0 and are named in ``missing``.
Temperatures, thermal pressure, memory % and battery % default to None
(unavailable) so they are never confused with a measured zero.
"""

import json
import math
import re
import time
from dataclasses import dataclass, field, fields, replace
from typing import Any

from truth_monitor.errors import SampleInvalid

# Readings outside this open range are sensor garbage (0.0 means "no sensor")
TEMP_MIN_C = 0.0
TEMP_MAX_C = 150.0

# Field name -> accepted payload keys with the factor that converts to mW
_RAIL_POWER_KEYS: dict[str, tuple[tuple[str, float], ...]] = {
    "total_mw": (("total_mw", 1.0), ("sys_mw", 1.0), ("power_w", 1000.0), ("sys_w", 1000.0)),
    "cpu_mw": (("cpu_mw", 1.0), ("cpu_w", 1000.0)),
    "gpu_mw": (("gpu_mw", 1.0), ("gpu_w", 1000.0)),
    "ane_mw": (("ane_mw", 1.0), ("ane_w", 1000.0)),
    "memory_mw": (("mem_mw", 1.0), ("memory_mw", 1.0), ("mem_power_w", 1000.0)),
    "wifi_mw": (("wifi_mw", 1.0), ("wifi_w", 1000.0)),
    "ssd_mw": (("ssd_mw", 1.0), ("ssd_w", 1000.0)),
    "bluetooth_mw": (("bt_mw", 1.0), ("bluetooth_mw", 1.0), ("bt_w", 1000.0)),
}

# Optional rails: absent means unmeasured (None), not zero
_OPTIONAL_POWER_KEYS: dict[str, tuple[tuple[str, float], ...]] = {
    "battery_rail_mw": (("bat_power_mw", 1.0), ("battery_rail_mw", 1.0), ("bat_power_w", 1000.0)),
    "ecpu_mw": (("ecpu_mw", 1.0), ("e_cluster_mw", 1.0)),
    "pcpu_mw": (("pcpu_mw", 1.0), ("p_cluster_mw", 1.0)),
}

_TEMP_KEYS: dict[str, tuple[str, ...]] = {
    "cpu": ("cpu_temp", "cpu_temp_c"),
    "gpu": ("gpu_temp", "gpu_temp_c"),
    "memory": ("mem_temp", "memory_temp_c"),
    "ssd": ("ssd_temp", "ssd_temp_c"),
    "battery": ("bat_temp", "battery_temp_c"),
}

# powermetrics text power lines ("CPU Power: 1234 mW") -> payload keys
_POWERMETRICS_POWER_LINES: tuple[tuple[str, str], ...] = (
    ("Combined Power", "total_mw"),
    ("System Power", "total_mw"),
    ("Package Power", "total_mw"),
    ("CPU Power", "cpu_mw"),
    ("GPU Power", "gpu_mw"),
    ("ANE Power", "ane_mw"),
    ("E-Cluster Power", "ecpu_mw"),
    ("P-Cluster Power", "pcpu_mw"),
)
_POWER_LINE_RE = re.compile(r"^([A-Za-z-]+ Power)[^:]*:\s*([\d.]+)\s*mW", re.MULTILINE)
_PRESSURE_RE = re.compile(r"^Current pressure level:\s*(\S+)", re.MULTILINE)

_IOREG_KEY_RE = re.compile(
    r'^\s*"(NominalChargeCapacity|DesignCapacity|CycleCount)"\s*=\s*(\d+)\s*$',
    re.MULTILINE,
)


@dataclass(frozen=True)
class ProcessRecord:
    """One row of a process table. Names are not unique."""

    name: str
    cpu_ms_per_s: float
    wakeups_per_s: float
    pid: int | None = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "pid": self.pid,
            "cpu_ms_per_s": self.cpu_ms_per_s,
            "wakeups_per_s": self.wakeups_per_s,
        }


@dataclass(frozen=True)
class Temperatures:
    """Five component temperatures in Celsius, None when unavailable."""

    cpu: float | None = None
    gpu: float | None = None
    memory: float | None = None
    ssd: float | None = None
    battery: float | None = None

    def readings(self) -> list[float]:
        """Available readings only."""
        return [v for v in (getattr(self, f.name) for f in fields(self)) if v is not None]

    def fill_from(self, other: "Temperatures") -> "Temperatures":
        """Return a copy with unavailable readings taken from ``other``."""
        updates = {
            f.name: getattr(other, f.name)
            for f in fields(self)
            if getattr(self, f.name) is None and getattr(other, f.name) is not None
        }
        return replace(self, **updates) if updates else self

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class RailSample:
    """Fast-cadence reading of power rails and temperatures (milliwatts)."""

    timestamp: float
    total_mw: float = 0.0
    cpu_mw: float = 0.0
    gpu_mw: float = 0.0
    ane_mw: float = 0.0
    memory_mw: float = 0.0
    wifi_mw: float = 0.0
    ssd_mw: float = 0.0
    bluetooth_mw: float = 0.0
    battery_rail_mw: float | None = None
    ecpu_mw: float | None = None
    pcpu_mw: float | None = None
    temperatures: Temperatures = field(default_factory=Temperatures)
    thermal_pressure: str | None = None
    missing: frozenset[str] = frozenset()

    @property
    def accessory_mw(self) -> float:
        """Wi-Fi, SSD and Bluetooth rails combined."""
        return self.wifi_mw + self.ssd_mw + self.bluetooth_mw


@dataclass(frozen=True)
class SlowSample:
    """Slow-cadence reading: process table, battery and memory state."""

    timestamp: float
    battery_pct: int | None = None
    charging: bool = False
    memory_available_pct: float | None = None
    wakeups_per_s: float = 0.0
    processes: tuple[ProcessRecord, ...] = ()
    nominal_capacity_mah: float | None = None
    design_capacity_mah: float | None = None
    cycle_count: int | None = None
    health_pct: float | None = None
    temperatures: Temperatures = field(default_factory=Temperatures)
    missing: frozenset[str] = frozenset()

    @property
    def has_battery_info(self) -> bool:
        """True if this sample can refresh the battery profile."""
        return any(
            value is not None
            for value in (
                self.nominal_capacity_mah,
                self.design_capacity_mah,
                self.cycle_count,
                self.health_pct,
            )
        )


@dataclass(frozen=True)
class Snapshot:
    """Merged point-in-time reading.

    Rail fields come from the latest fast sample; process, battery and
    memory fields from the latest slow sample (None before the first one).
    Temperatures missing from the rail sample fall back to the slow sample's.
    """

    rail: RailSample
    slow: SlowSample | None = None

    @property
    def timestamp(self) -> float:
        return self.rail.timestamp

    @property
    def total_mw(self) -> float:
        return self.rail.total_mw

    @property
    def temperatures(self) -> Temperatures:
        if self.slow is None:
            return self.rail.temperatures
        return self.rail.temperatures.fill_from(self.slow.temperatures)

    @property
    def battery_pct(self) -> int | None:
        return self.slow.battery_pct if self.slow else None

    @property
    def charging(self) -> bool:
        return self.slow.charging if self.slow else False

    @property
    def memory_available_pct(self) -> float | None:
        return self.slow.memory_available_pct if self.slow else None

    @property
    def wakeups_per_s(self) -> float:
        return self.slow.wakeups_per_s if self.slow else 0.0

    @property
    def processes(self) -> tuple[ProcessRecord, ...]:
        return self.slow.processes if self.slow else ()

    @property
    def missing(self) -> frozenset[str]:
        if self.slow is None:
            return self.rail.missing
        return self.rail.missing | self.slow.missing


@dataclass(frozen=True)
class TaskTable:
    """Parsed powermetrics task table."""

    processes: tuple[ProcessRecord, ...]
    wakeups_per_s: float  # Sum of interrupt wakeups over every row


@dataclass(frozen=True)
class BatteryCapacity:
    """Capacity fields from an ioreg AppleSmartBattery dump."""

    nominal_capacity_mah: float | None = None
    design_capacity_mah: float | None = None
    cycle_count: int | None = None


# ─────────────────────────────────────────────────────────────────────────────
# Field helpers
# ─────────────────────────────────────────────────────────────────────────────


def _number(value: Any) -> float | None:
    """Coerce a payload value to a finite float, or None if not numeric."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, str):
        try:
            result = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return result if math.isfinite(result) else None


def _lookup(payload: dict, keys: tuple[tuple[str, float], ...]) -> float | None:
    """Return the first numeric value among ``keys``, scaled to mW."""
    for key, scale in keys:
        value = _number(payload.get(key))
        if value is not None:
            return value * scale
    return None


def _first(payload: dict, *keys: str) -> Any:
    for key in keys:
        if key in payload:
            return payload[key]
    return None


def _temperature(value: Any) -> float | None:
    reading = _number(value)
    if reading is None or not TEMP_MIN_C < reading < TEMP_MAX_C:
        return None
    return reading


def _percent(value: Any) -> float | None:
    pct = _number(value)
    if pct is None or not 0.0 <= pct <= 100.0:
        return None
    return pct


def _timestamp(payload: dict, timestamp: float | None) -> float:
    if timestamp is not None:
        return timestamp
    value = _number(payload.get("timestamp"))
    return value if value is not None else time.time()


def _parse_temperatures(payload: dict) -> Temperatures:
    return Temperatures(
        **{name: _temperature(_first(payload, *keys)) for name, keys in _TEMP_KEYS.items()}
    )


def _parse_process(entry: Any) -> ProcessRecord | None:
    if not isinstance(entry, dict):
        return None
    name = entry.get("name")
    if not isinstance(name, str) or not name:
        return None
    cpu = _number(_first(entry, "cpu_ms_per_s", "cpu_ms"))
    wakeups = _number(_first(entry, "wakeups_per_s", "wakeups"))
    pid = _number(entry.get("pid"))
    return ProcessRecord(
        name=name,
        cpu_ms_per_s=max(0.0, cpu or 0.0),
        wakeups_per_s=max(0.0, wakeups or 0.0),
        pid=int(pid) if pid is not None else None,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Public parsers
# ─────────────────────────────────────────────────────────────────────────────


def decode_payload(raw: str | bytes | dict) -> dict:
    """Decode one raw backend payload into a JSON object.

    Raises:
        SampleInvalid: If the payload is not valid JSON or not an object.
    """
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SampleInvalid(f"Payload is not UTF-8: {e}") from e
    if not isinstance(raw, str):
        raise SampleInvalid(f"Unsupported payload type: {type(raw).__name__}")

    text = raw.strip()
    if not text:
        raise SampleInvalid("Empty payload")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise SampleInvalid(f"Invalid JSON payload: {e}") from e
    if not isinstance(data, dict):
        raise SampleInvalid(f"Expected JSON object, got {type(data).__name__}")
    return data


def parse_rail_sample(payload: str | bytes | dict, timestamp: float | None = None) -> RailSample:
    """Parse a fast-cadence payload into a RailSample.

    Raises:
        SampleInvalid: If the payload cannot be decoded.
    """
    data = decode_payload(payload)
    missing: set[str] = set()

    powers: dict[str, float] = {}
    for name, keys in _RAIL_POWER_KEYS.items():
        value = _lookup(data, keys)
        if value is None:
            missing.add(name)
            value = 0.0
        powers[name] = value

    optional = {name: _lookup(data, keys) for name, keys in _OPTIONAL_POWER_KEYS.items()}

    pressure = data.get("thermal_pressure")
    return RailSample(
        timestamp=_timestamp(data, timestamp),
        **powers,
        **optional,
        temperatures=_parse_temperatures(data),
        thermal_pressure=pressure if isinstance(pressure, str) and pressure else None,
        missing=frozenset(missing),
    )


def parse_slow_sample(payload: str | bytes | dict, timestamp: float | None = None) -> SlowSample:
    """Parse a slow-cadence payload into a SlowSample.

    Accepts either a ``processes`` list of full records or the helper's
    ``top_cpu`` list of ``{name, cpu_ms, wakeups}``. The helper's separate
    ``high_wakeups`` list is merged in, so a low-CPU process that only shows
    up there still reaches attribution. Rows already listed by name (and
    pid, when known) are not added twice.

    Raises:
        SampleInvalid: If the payload cannot be decoded.
    """
    data = decode_payload(payload)
    missing: set[str] = set()

    entries = _first(data, "processes", "top_cpu")
    if not isinstance(entries, list):
        missing.add("processes")
        entries = []
    processes = [p for p in (_parse_process(e) for e in entries) if p is not None]

    extra = data.get("high_wakeups")
    if isinstance(extra, list):
        seen = {(p.name, p.pid) for p in processes}
        for proc in (_parse_process(e) for e in extra):
            if proc is not None and (proc.name, proc.pid) not in seen:
                seen.add((proc.name, proc.pid))
                processes.append(proc)

    wakeups = _number(_first(data, "wakeups_per_s", "wakeups_per_sec"))
    if wakeups is None:
        missing.add("wakeups_per_s")
        wakeups = sum(p.wakeups_per_s for p in processes)

    battery = _percent(data.get("battery_pct"))
    if battery is None:
        missing.add("battery_pct")

    memory = _percent(_first(data, "memory_available_pct", "mem_free_pct"))
    if memory is None:
        missing.add("memory_available_pct")

    charging = data.get("charging")
    if not isinstance(charging, bool):
        missing.add("charging")
        charging = False

    cycles = _number(data.get("cycle_count"))
    return SlowSample(
        timestamp=_timestamp(data, timestamp),
        battery_pct=int(battery) if battery is not None else None,
        charging=charging,
        memory_available_pct=memory,
        wakeups_per_s=max(0.0, wakeups),
        processes=tuple(processes),
        nominal_capacity_mah=_number(data.get("nominal_capacity_mah")),
        design_capacity_mah=_number(data.get("design_capacity_mah")),
        cycle_count=int(cycles) if cycles is not None else None,
        health_pct=_number(data.get("health_pct")),
        temperatures=_parse_temperatures(data),
        missing=frozenset(missing),
    )


def parse_snapshot(payload: str | bytes | dict, timestamp: float | None = None) -> Snapshot:
    """Parse a full record (rail and slow fields together) into a Snapshot."""
    data = decode_payload(payload)
    ts = _timestamp(data, timestamp)
    return Snapshot(rail=parse_rail_sample(data, ts), slow=parse_slow_sample(data, ts))


def parse_powermetrics_tasks(text: str) -> TaskTable:
    """Parse the powermetrics text task table.

    Row layout after the ``Name`` header::

        Name  ID  CPU ms/s  User%  Deadlines(<2ms)  Deadlines(2-5ms)  Wakeups(Intr)  Wakeups(Pkg idle)

    Names may contain spaces and digits ("Python 3 Helper"), so the row is
    anchored from the right: the pid is the last integer token that still
    has the six numeric columns after it. The interrupt-wakeup column feeds
    both the per-process rate and the aggregate, which includes every row.
    """
    processes: list[ProcessRecord] = []
    total_wakeups = 0.0
    in_tasks = False

    for line in text.splitlines():
        if line.startswith("Name"):
            in_tasks = True
            continue
        if line.startswith(("ALL_TASKS", "CPU Power")):
            break
        if not in_tasks or not line.strip():
            continue

        parts = line.split()
        pid_idx = next(
            (
                i
                for i in range(len(parts) - 7, 0, -1)
                if parts[i].isdigit() and _number(parts[i + 1]) is not None
            ),
            None,
        )
        if pid_idx is None:
            continue

        cpu = _number(parts[pid_idx + 1])
        wakeups = _number(parts[pid_idx + 5])
        record = ProcessRecord(
            name=" ".join(parts[:pid_idx]),
            cpu_ms_per_s=max(0.0, cpu or 0.0),
            wakeups_per_s=max(0.0, wakeups or 0.0),
            pid=int(parts[pid_idx]),
        )
        total_wakeups += record.wakeups_per_s
        processes.append(record)

    return TaskTable(processes=tuple(processes), wakeups_per_s=total_wakeups)


def parse_powermetrics_power(text: str) -> dict:
    """Extract rail powers and thermal pressure from powermetrics text output.

    Returns a payload dict in milliwatt keys suitable for parse_rail_sample.
    The first matching line wins for each key.
    """
    found: dict[str, float] = {}
    for match in _POWER_LINE_RE.finditer(text):
        found.setdefault(match.group(1), float(match.group(2)))

    payload: dict[str, Any] = {}
    for label, key in _POWERMETRICS_POWER_LINES:
        if label in found and key not in payload:
            payload[key] = found[label]

    pressure = _PRESSURE_RE.search(text)
    if pressure:
        payload["thermal_pressure"] = pressure.group(1)
    return payload


def parse_ioreg_battery(text: str) -> BatteryCapacity:
    """Extract capacity fields from ``ioreg -r -c AppleSmartBattery`` output.

    Only top-level ``"Key" = value`` lines count; the same keys also appear
    inside nested BatteryData dictionaries.
    """
    found: dict[str, int] = {}
    for match in _IOREG_KEY_RE.finditer(text):
        found.setdefault(match.group(1), int(match.group(2)))

    nominal = found.get("NominalChargeCapacity")
    design = found.get("DesignCapacity")
    return BatteryCapacity(
        nominal_capacity_mah=float(nominal) if nominal is not None else None,
        design_capacity_mah=float(design) if design is not None else None,
        cycle_count=found.get("CycleCount"),
    )
