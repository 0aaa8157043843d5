"""Centralized console logging with Rich formatting.

This module provides:
1. Icon vocabulary (Icon class namespace)
2. Level-based styling
3. Core log functions (log, info, warn, error)
4. Domain-specific helpers (monitor_started, anomaly_enter, heartbeat, etc.)
5. Structlog configuration (configure)

Console output uses Rich markup and goes to stderr, so stdout stays a clean
JSON stream for machine consumers. JSON file output via structlog is
separate (machine-parseable, no colors).
"""

from __future__ import annotations

import logging
import logging.handlers
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from rich.console import Console
from rich.markup import escape

if TYPE_CHECKING:
    from truth_monitor.config import Config
    from truth_monitor.state import DashboardState

# Rich console for human-readable output (stderr keeps stdout for JSON)
_console = Console(stderr=True, highlight=False)


# ─────────────────────────────────────────────────────────────────────────────
# Icons
# ─────────────────────────────────────────────────────────────────────────────


class Icon:
    """Icon vocabulary for console output."""

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    WAIT = "⏳"
    HEARTBEAT = "[magenta]♡[/]"
    ANOMALY_ENTER = "[bright_red]▲[/]"
    ANOMALY_EXIT = "[bright_green]▼[/]"
    SIGNAL = "⚡"
    STALE = "[yellow]◌[/]"
    CHANGE = "[cyan]Δ[/]"


# ─────────────────────────────────────────────────────────────────────────────
# Level Styles
# ─────────────────────────────────────────────────────────────────────────────

_LEVEL_STYLES = {
    "info": "[bright_blue]\\[info][/]",
    "warn": "[yellow]\\[warn][/]",
    "error": "[bold red]\\[err][/] ",
}

_TIER_COLORS = {
    "normal": "green",
    "good": "green",
    "warning": "yellow",
    "critical": "bright_red",
}


# ─────────────────────────────────────────────────────────────────────────────
# Core Functions
# ─────────────────────────────────────────────────────────────────────────────


def log(level: str, msg: str, icon: str = "") -> None:
    """Print a log message with timestamp and level.

    Args:
        level: Log level (info, warn, error)
        msg: Message to print (can include Rich markup)
        icon: Optional icon to show after level (e.g., Icon.OK)
    """
    ts = datetime.now().strftime("%H:%M:%S")
    lvl = _LEVEL_STYLES.get(level, f"[{level}]")
    icon_part = f" {icon}" if icon else ""
    _console.print(f"[dim]{ts}[/] {lvl}{icon_part} {msg}")


def info(msg: str, icon: str = "") -> None:
    """Log an info message."""
    log("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    """Log a warning message."""
    log("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    """Log an error message."""
    log("error", msg, icon)


# ─────────────────────────────────────────────────────────────────────────────
# Styling Helpers
# ─────────────────────────────────────────────────────────────────────────────


def tier_color(tier: str | None) -> str:
    """Return Rich color name for a tier value (dim when unavailable)."""
    if tier is None:
        return "dim"
    return _TIER_COLORS.get(tier, "white")


def _tiered(label: str, value: str, tier: str | None) -> str:
    color = tier_color(tier)
    return f"{label} [{color}]{value}[/]"


# ─────────────────────────────────────────────────────────────────────────────
# Domain Helpers
# ─────────────────────────────────────────────────────────────────────────────


def monitor_started(fast_interval: float, slow_interval: float, window: int) -> None:
    """Log monitor startup complete."""
    info(
        f"Monitor started [dim](fast {fast_interval}s, slow {slow_interval}s, "
        f"window {window})[/]",
        Icon.OK,
    )


def monitor_stopping() -> None:
    """Log monitor shutdown initiated."""
    info("Monitor stopping...", Icon.WAIT)


def monitor_stopped() -> None:
    """Log monitor shutdown complete."""
    info("Monitor stopped", Icon.OK)


def signal_received(name: str) -> None:
    """Log signal received."""
    info(f"Received [bold]{name}[/]", Icon.SIGNAL)


def backend_unreachable(error_msg: str) -> None:
    """Log fatal startup failure."""
    error(f"Backend unreachable: {escape(error_msg)}", Icon.FAIL)


def sample_stale(kind: str, failures: int) -> None:
    """Log a failed sample that left the state stale."""
    warn(f"{kind} sample failed, keeping previous values [dim]({failures} total)[/]", Icon.STALE)


def anomaly_enter(name: str, label: str, wakeups_per_s: float) -> None:
    """Log process entered the wakeup anomaly set."""
    name_display = name[:28] + ".." if len(name) > 28 else name
    label_part = f" [dim]({escape(label)})[/]" if label != name else ""
    info(
        f"[cyan]{escape(name_display)}[/]{label_part} "
        f"[bright_red]{round(wakeups_per_s)}[/] wakeups/s",
        Icon.ANOMALY_ENTER,
    )


def anomaly_exit(name: str) -> None:
    """Log process left the wakeup anomaly set."""
    name_display = name[:28] + ".." if len(name) > 28 else name
    info(f"[cyan]{escape(name_display)}[/] no longer waking the CPU", Icon.ANOMALY_EXIT)


def power_change(delta_pct: float, current_mw: float) -> None:
    """Log a power-change event."""
    info(f"Power changed [cyan]{delta_pct:+.1f}%[/] → {current_mw / 1000:.2f} W", Icon.CHANGE)


def heartbeat(
    ticks: int,
    avg_mw: float,
    max_mw: float,
    anomaly_count: int,
    buffer_size: int,
    buffer_capacity: int,
    fast_failures: int,
    slow_failures: int,
    rss_mb: float,
) -> None:
    """Log periodic heartbeat stats."""
    failures = ""
    if fast_failures or slow_failures:
        failures = f", [yellow]{fast_failures}/{slow_failures} failures[/]"
    info(
        f"power [cyan]{avg_mw / 1000:.2f}[/]–[cyan]{max_mw / 1000:.2f}[/] W, "
        f"[cyan]{anomaly_count}[/] anomalies{failures}, "
        f"[dim]{ticks} ticks, {buffer_size}/{buffer_capacity} buffer, "
        f"{round(rss_mb, 1)}MB RSS[/]",
        Icon.HEARTBEAT,
    )


def config_created(path: str) -> None:
    """Log config file created."""
    info(f"Created config at [cyan]{path}[/]")


def status_line(state: DashboardState) -> str:
    """Render one compact human status line for a dashboard state."""
    tiers = state.tiers.to_dict()
    power = state.power
    snap = state.snapshot

    parts = [f"[bold]{power.total / 1000:5.2f} W[/]"]
    parts.append(
        f"[dim]cpu {power.cpu / 1000:.2f} gpu {power.gpu / 1000:.2f} "
        f"ane {power.ane / 1000:.2f} rest {power.residual / 1000:.2f}[/]"
    )
    if power.display is not None:
        parts.append(f"[dim]display {power.display / 1000:.2f}[/]")

    hot = f"{state.hottest_c:.0f}°C" if state.hottest_c is not None else "n/a"
    parts.append(_tiered("temp", hot, tiers["thermal"]))

    mem = snap.memory_available_pct
    parts.append(_tiered("mem", f"{mem:.0f}%" if mem is not None else "n/a", tiers["memory"]))
    parts.append(_tiered("wake", f"{snap.wakeups_per_s:.0f}/s", tiers["wakeups"]))
    parts.append(_tiered("runway", f"{state.runway_hours:.1f}h", tiers["efficiency"]))

    if snap.battery_pct is not None:
        plug = "+" if snap.charging else ""
        parts.append(f"bat {snap.battery_pct}%{plug}")
    if state.delta_mw is not None:
        parts.append(f"[dim]Δ {state.delta_mw / 1000:+.2f} W[/]")
    if state.attribution.top:
        top = state.attribution.top[0]
        parts.append(f"top [cyan]{escape(top.name)}[/]")
    if state.stale:
        parts.append("[yellow]stale[/]")
    return "  ".join(parts)


def print_status(state: DashboardState) -> None:
    """Print a status line to the console."""
    ts = datetime.now().strftime("%H:%M:%S")
    _console.print(f"[dim]{ts}[/] {status_line(state)}")


# ─────────────────────────────────────────────────────────────────────────────
# Structlog Configuration
# ─────────────────────────────────────────────────────────────────────────────


def _add_source(source: str) -> structlog.types.Processor:
    """Create a processor that adds a source field to log events."""

    def processor(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict["source"] = source
        return event_dict

    return processor


def configure(config: Config, source: str = "monitor") -> None:
    """Configure structlog to write JSON Lines to the rotating log file.

    Human-readable console output is handled by the Rich helpers above;
    structlog only feeds the file. Both use local time.

    Args:
        config: Application config with paths
        source: Value of the ``source`` field on every file record
    """
    # Ensure state directory exists for log file
    config.state_dir.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.INFO)

    stdlib_root = logging.getLogger()
    stdlib_root.setLevel(logging.INFO)
    stdlib_root.handlers.clear()

    file_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
                structlog.processors.add_log_level,
                _add_source(source),
                structlog.processors.format_exc_info,
            ],
        )
    )
    stdlib_root.addHandler(file_handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
            structlog.processors.add_log_level,
            _add_source(source),
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
