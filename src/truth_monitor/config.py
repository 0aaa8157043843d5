"""Configuration system for truth-monitor."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit

VALID_BACKEND_MODES = {"command", "stream"}
VALID_SLOW_SOURCES = {"helper", "powermetrics"}


@dataclass
class SamplingConfig:
    """Fast/slow cadence configuration.

    The fast cadence reads power and thermal rails only. The slow cadence
    refreshes the process table, battery and memory state, which is much
    more expensive, so it runs less often to keep the monitor's own
    footprint down.
    """

    fast_interval: float = 1.0  # Seconds between rail samples
    slow_interval: float = 5.0  # Seconds between process/battery samples
    fast_timeout: float = 2.0  # Rail call slower than this counts as a failure
    slow_timeout: float = 10.0  # Process/battery call slower than this counts as a failure
    invalid_retries: int = 2  # Immediate retries after an undecodable payload
    shutdown_grace: float = 2.0  # Seconds an in-flight slow call may finish on shutdown


@dataclass
class HistoryConfig:
    """Rolling power history configuration."""

    window_size: int = 600  # Samples kept (~10 minutes at 1 sample/sec)


@dataclass
class AttributionConfig:
    """Process ranking and wakeup anomaly configuration."""

    top_n: int = 8  # Processes shown in the CPU ranking
    wakeup_threshold: float = 100.0  # Wakeups/sec above which a process is flagged
    anomaly_display_count: int = 3  # Anomalies shown to humans (full set still emitted)
    # Expected background system activity, never reported as a battery killer
    denylist: list[str] = field(
        default_factory=lambda: [
            "kernel_task",
            "WindowServer",
            "powermetrics",
            "launchd",
            "powerd",
        ]
    )


@dataclass
class BatteryConfig:
    """Battery profile configuration."""

    nominal_voltage: float = 11.4  # Volts, 3-cell lithium pack
    default_capacity_mah: float = 4500.0  # Used when the battery cannot be queried


@dataclass
class BackendConfig:
    """Telemetry backend selection.

    mode:
    - "command": run the helper once per sample
    - "stream": keep one helper process open and read line-delimited records

    slow_source:
    - "helper": process table and battery state come from the helper
    - "powermetrics": process table from powermetrics, battery/memory from psutil
    """

    mode: str = "command"
    slow_source: str = "helper"
    helper_path: str = "kim_temp"
    fast_args: list[str] = field(default_factory=lambda: ["json-fast"])
    slow_args: list[str] = field(default_factory=lambda: ["json"])
    stream_args: list[str] = field(default_factory=lambda: ["stream"])
    powermetrics_path: str = "/usr/bin/powermetrics"


@dataclass
class ChangesConfig:
    """Power-change detector configuration."""

    threshold_pct: float = 10.0  # Relative change that counts as an event
    alpha: float = 0.2  # EMA smoothing factor
    settle_samples: int = 10  # Quiet samples before the baseline re-anchors


@dataclass
class SystemConfig:
    """Runtime housekeeping configuration."""

    heartbeat_ticks: int = 60  # Log heartbeat every N fast ticks (~1 min at 1Hz)
    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


@dataclass
class Config:
    """Main configuration container."""

    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    attribution: AttributionConfig = field(default_factory=AttributionConfig)
    battery: BatteryConfig = field(default_factory=BatteryConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    changes: ChangesConfig = field(default_factory=ChangesConfig)
    system: SystemConfig = field(default_factory=SystemConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "truth-monitor"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs."""
        return Path.home() / ".local" / "state" / "truth-monitor"

    @property
    def log_path(self) -> Path:
        """JSON Lines log path."""
        return self.state_dir / "monitor.log"

    def to_toml(self) -> str:
        """Render all sections as a TOML document."""
        doc = tomlkit.document()
        for f in fields(self):
            doc.add(f.name, _dataclass_to_table(getattr(self, f.name)))
            doc.add(tomlkit.nl())
        return tomlkit.dumps(doc)

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_toml())

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions, so Config() and
        Config.load() on a missing file are identical.

        Raises:
            ValueError: If the file cannot be parsed or a value is out of range.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        return cls(
            sampling=_load_sampling_config(data.get("sampling", {})),
            history=_load_history_config(data.get("history", {})),
            attribution=_load_attribution_config(data.get("attribution", {})),
            battery=_load_battery_config(data.get("battery", {})),
            backend=_load_backend_config(data.get("backend", {})),
            changes=_load_changes_config(data.get("changes", {})),
            system=_load_system_config(data.get("system", {})),
        )


def _load_sampling_config(data: dict) -> SamplingConfig:
    """Load sampling config, validating cadences and timeouts."""
    d = SamplingConfig()
    config = SamplingConfig(
        fast_interval=data.get("fast_interval", d.fast_interval),
        slow_interval=data.get("slow_interval", d.slow_interval),
        fast_timeout=data.get("fast_timeout", d.fast_timeout),
        slow_timeout=data.get("slow_timeout", d.slow_timeout),
        invalid_retries=data.get("invalid_retries", d.invalid_retries),
        shutdown_grace=data.get("shutdown_grace", d.shutdown_grace),
    )
    for name in ("fast_interval", "slow_interval", "fast_timeout", "slow_timeout"):
        value = getattr(config, name)
        if value <= 0:
            raise ValueError(f"{name} must be > 0, got {value}")
    if config.invalid_retries < 0:
        raise ValueError(f"invalid_retries must be >= 0, got {config.invalid_retries}")
    return config


def _load_history_config(data: dict) -> HistoryConfig:
    """Load history config."""
    window_size = data.get("window_size", HistoryConfig().window_size)
    if window_size < 1:
        raise ValueError(f"window_size must be >= 1, got {window_size}")
    return HistoryConfig(window_size=window_size)


def _load_attribution_config(data: dict) -> AttributionConfig:
    """Load attribution config."""
    d = AttributionConfig()
    config = AttributionConfig(
        top_n=data.get("top_n", d.top_n),
        wakeup_threshold=data.get("wakeup_threshold", d.wakeup_threshold),
        anomaly_display_count=data.get("anomaly_display_count", d.anomaly_display_count),
        denylist=list(data.get("denylist", d.denylist)),
    )
    if config.top_n < 1:
        raise ValueError(f"top_n must be >= 1, got {config.top_n}")
    if config.wakeup_threshold < 0:
        raise ValueError(f"wakeup_threshold must be >= 0, got {config.wakeup_threshold}")
    return config


def _load_battery_config(data: dict) -> BatteryConfig:
    """Load battery config."""
    d = BatteryConfig()
    return BatteryConfig(
        nominal_voltage=data.get("nominal_voltage", d.nominal_voltage),
        default_capacity_mah=data.get("default_capacity_mah", d.default_capacity_mah),
    )


def _load_backend_config(data: dict) -> BackendConfig:
    """Load backend config, validating mode names."""
    d = BackendConfig()
    mode = data.get("mode", d.mode)
    slow_source = data.get("slow_source", d.slow_source)

    if mode not in VALID_BACKEND_MODES:
        raise ValueError(f"Invalid backend mode: {mode!r}. Must be one of {VALID_BACKEND_MODES}")
    if slow_source not in VALID_SLOW_SOURCES:
        raise ValueError(
            f"Invalid slow_source: {slow_source!r}. Must be one of {VALID_SLOW_SOURCES}"
        )

    return BackendConfig(
        mode=mode,
        slow_source=slow_source,
        helper_path=data.get("helper_path", d.helper_path),
        fast_args=list(data.get("fast_args", d.fast_args)),
        slow_args=list(data.get("slow_args", d.slow_args)),
        stream_args=list(data.get("stream_args", d.stream_args)),
        powermetrics_path=data.get("powermetrics_path", d.powermetrics_path),
    )


def _load_changes_config(data: dict) -> ChangesConfig:
    """Load power-change detector config."""
    d = ChangesConfig()
    config = ChangesConfig(
        threshold_pct=data.get("threshold_pct", d.threshold_pct),
        alpha=data.get("alpha", d.alpha),
        settle_samples=data.get("settle_samples", d.settle_samples),
    )
    if not 0 < config.alpha <= 1:
        raise ValueError(f"alpha must be in (0, 1], got {config.alpha}")
    return config


def _load_system_config(data: dict) -> SystemConfig:
    """Load system config."""
    d = SystemConfig()
    return SystemConfig(
        heartbeat_ticks=data.get("heartbeat_ticks", d.heartbeat_ticks),
        log_max_bytes=data.get("log_max_bytes", d.log_max_bytes),
        log_backup_count=data.get("log_backup_count", d.log_backup_count),
    )
