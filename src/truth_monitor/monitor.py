"""Monitor runtime orchestrating sampling, churn logging and emitters."""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from collections.abc import Awaitable, Callable
from typing import TextIO

import psutil
import structlog

from truth_monitor import logging as console
from truth_monitor.attribution import Attribution, friendly_name
from truth_monitor.backends import TelemetryBackend, create_backend
from truth_monitor.changes import PowerChangeDetector
from truth_monitor.config import Config
from truth_monitor.errors import BackendUnreachable
from truth_monitor.scheduler import SamplingScheduler
from truth_monitor.state import DashboardState

log = structlog.get_logger()

Emitter = Callable[[DashboardState], Awaitable[None]]


def json_emitter(stream: TextIO | None = None) -> Emitter:
    """Write each state as one JSON line (NDJSON)."""

    async def emit(state: DashboardState) -> None:
        out = stream or sys.stdout
        out.write(state.to_json() + "\n")
        out.flush()

    return emit


def status_emitter() -> Emitter:
    """Print a compact status line per state to the console."""

    async def emit(state: DashboardState) -> None:
        console.print_status(state)

    return emit


class ChangeEmitter:
    """Feeds total power into a PowerChangeDetector and writes change events.

    Only held-over rails are skipped. A stale slow sample says nothing about
    the power reading, which is still fresh.
    """

    def __init__(self, detector: PowerChangeDetector, stream: TextIO | None = None) -> None:
        self.detector = detector
        self.stream = stream
        self.changes = 0

    async def __call__(self, state: DashboardState) -> None:
        if state.rail_stale:
            return
        change = self.detector.update(state.power.total, timestamp=state.timestamp)
        if change is None:
            return
        self.changes += 1
        out = self.stream or sys.stdout
        out.write(json.dumps(change.to_dict()) + "\n")
        out.flush()
        console.power_change(change.delta_pct, change.current_mw)


class Monitor:
    """Runs the sampling scheduler until shutdown.

    On every merged state it logs wakeup-anomaly churn, emits a periodic
    heartbeat and hands the state to each emitter in order.
    """

    def __init__(
        self,
        config: Config,
        backend: TelemetryBackend | None = None,
        emitters: list[Emitter] | None = None,
        max_ticks: int | None = None,
    ) -> None:
        self.config = config
        self.backend = backend or create_backend(config.backend)
        self.scheduler = SamplingScheduler(self.backend, config)
        self.scheduler.on_state = self._on_state
        self.emitters = list(emitters or [])
        self.max_ticks = max_ticks
        self.ticks = 0

        self._shutdown_event = asyncio.Event()

        # Heartbeat tracking
        self._heartbeat_count = 0
        self._heartbeat_sum_mw = 0.0
        self._heartbeat_max_mw = 0.0

        # Wakeup anomaly churn (name -> wakeups/sec when it entered)
        self._last_attribution: Attribution | None = None
        self._previous_anomalies: dict[str, float] = {}

        self._seen_fast_failures = 0
        self._seen_slow_failures = 0

    async def start(self) -> None:
        """Prime the backend, then run until a signal or max_ticks.

        Raises:
            BackendUnreachable: If the first sample fails.
        """
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))

        log.info(
            "monitor_starting",
            backend=type(self.backend).__name__,
            fast_interval=self.config.sampling.fast_interval,
            slow_interval=self.config.sampling.slow_interval,
            window=self.config.history.window_size,
            wakeup_threshold=self.config.attribution.wakeup_threshold,
        )
        await self.scheduler.prime()
        console.monitor_started(
            self.config.sampling.fast_interval,
            self.config.sampling.slow_interval,
            self.config.history.window_size,
        )

        run_task = asyncio.create_task(self.scheduler.run())
        stop_task = asyncio.create_task(self._shutdown_event.wait())
        try:
            await asyncio.wait({run_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_task.cancel()
            await self.scheduler.stop()
            # Surface loop failures
            await run_task

    async def stop(self) -> None:
        """Stop sampling and release the backend."""
        log.info("monitor_stopping")
        console.monitor_stopping()
        await self.scheduler.stop()
        await self.backend.close()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
        log.info("monitor_stopped")
        console.monitor_stopped()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        log.info("signal_received", signal=sig.name)
        console.signal_received(sig.name)
        self._shutdown_event.set()

    async def _on_state(self, state: DashboardState) -> None:
        self.ticks += 1
        self._log_failures(state)
        self._log_anomaly_churn(state.attribution)
        self._update_heartbeat(state)

        for emit in self.emitters:
            await emit(state)

        if self.max_ticks is not None and self.ticks >= self.max_ticks:
            self._shutdown_event.set()

    def _log_failures(self, state: DashboardState) -> None:
        if state.fast_failures > self._seen_fast_failures:
            console.sample_stale("Fast", state.fast_failures)
            self._seen_fast_failures = state.fast_failures
        if state.slow_failures > self._seen_slow_failures:
            console.sample_stale("Slow", state.slow_failures)
            self._seen_slow_failures = state.slow_failures

    def _log_anomaly_churn(self, attribution: Attribution) -> None:
        """Log processes entering and leaving the wakeup anomaly set.

        Only runs when a new slow sample produced a new attribution.
        """
        if attribution is self._last_attribution:
            return
        self._last_attribution = attribution

        current: dict[str, float] = {}
        for proc in attribution.anomalies:
            current[proc.name] = max(current.get(proc.name, 0.0), proc.wakeups_per_s)

        for name in current.keys() - self._previous_anomalies.keys():
            label = friendly_name(name)
            log.info(
                "anomaly_entered",
                name=name,
                label=label,
                wakeups_per_s=round(current[name], 1),
            )
            console.anomaly_enter(name, label, current[name])

        for name in self._previous_anomalies.keys() - current.keys():
            log.info("anomaly_exited", name=name)
            console.anomaly_exit(name)

        self._previous_anomalies = current

    def _update_heartbeat(self, state: DashboardState) -> None:
        self._heartbeat_count += 1
        self._heartbeat_sum_mw += state.power.total
        self._heartbeat_max_mw = max(self._heartbeat_max_mw, state.power.total)

        if self._heartbeat_count < self.config.system.heartbeat_ticks:
            return

        avg_mw = self._heartbeat_sum_mw / self._heartbeat_count
        rss_mb = psutil.Process().memory_info().rss / 1024 / 1024
        history = self.scheduler.history
        log.info(
            "monitor_heartbeat",
            ticks=self._heartbeat_count,
            avg_mw=round(avg_mw, 1),
            max_mw=round(self._heartbeat_max_mw, 1),
            anomalies=len(state.attribution.anomalies),
            buffer=f"{len(history)}/{history.capacity}",
            fast_failures=state.fast_failures,
            slow_failures=state.slow_failures,
            rss_mb=round(rss_mb, 1),
        )
        console.heartbeat(
            ticks=self._heartbeat_count,
            avg_mw=avg_mw,
            max_mw=self._heartbeat_max_mw,
            anomaly_count=len(state.attribution.anomalies),
            buffer_size=len(history),
            buffer_capacity=history.capacity,
            fast_failures=state.fast_failures,
            slow_failures=state.slow_failures,
            rss_mb=rss_mb,
        )

        self._heartbeat_count = 0
        self._heartbeat_sum_mw = 0.0
        self._heartbeat_max_mw = 0.0


async def run_monitor(
    config: Config,
    emitters: list[Emitter],
    backend: TelemetryBackend | None = None,
    max_ticks: int | None = None,
) -> None:
    """Run the monitor until shutdown.

    Raises:
        BackendUnreachable: If the backend cannot produce a first sample.
    """
    monitor = Monitor(config, backend=backend, emitters=emitters, max_ticks=max_ticks)
    try:
        await monitor.start()
    except BackendUnreachable:
        raise
    except Exception as e:
        log.exception("monitor_crashed", error=str(e))
        raise
    finally:
        await monitor.stop()


async def take_snapshot(config: Config, backend: TelemetryBackend | None = None) -> DashboardState:
    """Take one fast and one slow sample and return the merged state.

    Raises:
        BackendUnreachable: If the fast sample fails.
    """
    backend = backend or create_backend(config.backend)
    scheduler = SamplingScheduler(backend, config)
    try:
        return await scheduler.sample_once()
    finally:
        await backend.close()
