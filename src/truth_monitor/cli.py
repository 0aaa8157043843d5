"""CLI commands for truth-monitor."""

import sys
from collections.abc import Callable
from typing import Any

import click

_POSITIVE = click.FloatRange(min=0, min_open=True)

# Engine knobs that can be overridden per run
_ENGINE_OPTIONS = [
    click.option("--window", type=click.IntRange(min=1), help="History window in samples"),
    click.option("--fast-interval", type=_POSITIVE, help="Seconds between rail samples"),
    click.option("--slow-interval", type=_POSITIVE, help="Seconds between process samples"),
    click.option(
        "--wakeup-threshold", type=click.FloatRange(min=0), help="Wakeups/sec that flag a process"
    ),
    click.option(
        "--backend",
        "backend_mode",
        type=click.Choice(["command", "stream"]),
        help="Helper backend mode",
    ),
    click.option(
        "--powermetrics", is_flag=True, help="Process table from powermetrics instead of the helper"
    ),
]


def _engine_options(func: Callable) -> Callable:
    for option in reversed(_ENGINE_OPTIONS):
        func = option(func)
    return func


def _load_config(
    window: int | None = None,
    fast_interval: float | None = None,
    slow_interval: float | None = None,
    wakeup_threshold: float | None = None,
    backend_mode: str | None = None,
    powermetrics: bool = False,
):
    """Load config from file and apply command-line overrides."""
    from truth_monitor.config import Config

    try:
        cfg = Config.load()
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    if window is not None:
        cfg.history.window_size = window
    if fast_interval is not None:
        cfg.sampling.fast_interval = fast_interval
    if slow_interval is not None:
        cfg.sampling.slow_interval = slow_interval
    if wakeup_threshold is not None:
        cfg.attribution.wakeup_threshold = wakeup_threshold
    if backend_mode is not None:
        cfg.backend.mode = backend_mode
    if powermetrics:
        cfg.backend.slow_source = "powermetrics"
    return cfg


def _run(coro) -> None:
    """Run a sampling coroutine, exiting 1 if the backend is unreachable."""
    import asyncio

    from truth_monitor import logging as console
    from truth_monitor.errors import BackendUnreachable

    try:
        asyncio.run(coro)
    except BackendUnreachable as e:
        console.backend_unreachable(str(e))
        sys.exit(1)


@click.group()
@click.version_option(package_name="truth-monitor")
def main() -> None:
    """Show where an Apple Silicon laptop's power actually goes."""
    pass


@main.command()
@click.option("--pretty", is_flag=True, help="Indent the JSON output")
@_engine_options
def snapshot(pretty: bool, **overrides: Any) -> None:
    """Print one merged reading as JSON."""
    import json

    from truth_monitor import logging as console
    from truth_monitor.monitor import take_snapshot

    cfg = _load_config(**overrides)
    console.configure(cfg, source="snapshot")

    async def _snapshot() -> None:
        state = await take_snapshot(cfg)
        click.echo(json.dumps(state.to_dict(), indent=2 if pretty else None))

    _run(_snapshot())


@main.command()
@click.option("--count", "-n", type=click.IntRange(min=1), help="Stop after N records")
@_engine_options
def stream(count: int | None, **overrides: Any) -> None:
    """Print one JSON record per fast tick (NDJSON)."""
    from truth_monitor import logging as console
    from truth_monitor.monitor import json_emitter, run_monitor

    cfg = _load_config(**overrides)
    console.configure(cfg, source="stream")
    _run(run_monitor(cfg, [json_emitter()], max_ticks=count))


@main.command()
@click.option("--count", "-n", type=click.IntRange(min=1), help="Stop after N ticks")
@_engine_options
def monitor(count: int | None, **overrides: Any) -> None:
    """Print a compact status line per fast tick."""
    from truth_monitor import logging as console
    from truth_monitor.monitor import run_monitor, status_emitter

    cfg = _load_config(**overrides)
    console.configure(cfg, source="monitor")
    _run(run_monitor(cfg, [status_emitter()], max_ticks=count))


@main.command("watch-changes")
@click.option("--threshold", type=_POSITIVE, help="Percent change that counts as an event")
@click.option("--count", "-n", type=click.IntRange(min=1), help="Stop after N ticks")
@_engine_options
def watch_changes(threshold: float | None, count: int | None, **overrides: Any) -> None:
    """Print a JSON event whenever total power shifts noticeably."""
    from truth_monitor import logging as console
    from truth_monitor.changes import PowerChangeDetector
    from truth_monitor.monitor import ChangeEmitter, run_monitor

    cfg = _load_config(**overrides)
    if threshold is not None:
        cfg.changes.threshold_pct = threshold
    console.configure(cfg, source="watch-changes")

    detector = PowerChangeDetector(
        threshold_pct=cfg.changes.threshold_pct,
        alpha=cfg.changes.alpha,
        settle_samples=cfg.changes.settle_samples,
    )
    _run(run_monitor(cfg, [ChangeEmitter(detector)], max_ticks=count))


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    from truth_monitor.config import Config

    try:
        cfg = Config.load()
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo(f"Log file: {cfg.log_path}")
    click.echo()
    click.echo(cfg.to_toml().rstrip())


@config.command("edit")
def config_edit() -> None:
    """Open config file in editor."""
    import os
    import subprocess

    from truth_monitor import logging as console
    from truth_monitor.config import Config

    cfg = Config()
    if not cfg.config_path.exists():
        cfg.save()
        console.config_created(str(cfg.config_path))

    editor = os.environ.get("EDITOR", "nano")
    subprocess.run([editor, str(cfg.config_path)])


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from truth_monitor.config import Config

    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")


if __name__ == "__main__":
    main()
