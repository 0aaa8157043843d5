"""Sampling scheduler with two independent cadences.

Fast loop (1s): power rails and temperatures, merged into a DashboardState
on every tick.
Slow loop (5s): process table, battery and memory, run in its own task so
a slow introspection call never delays a fast tick. Its result is handed
over through a single "latest slow sample" cell.

Both loops own their state; the history buffer is only touched by the fast
loop. Samples are immutable, so cancelling an in-flight call mid-way leaves
nothing half-written.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TYPE_CHECKING, TypeVar

import structlog

from truth_monitor.attribution import Attribution, attribute
from truth_monitor.errors import BackendUnreachable, SampleInvalid, SampleUnavailable
from truth_monitor.history import PowerHistory
from truth_monitor.power import BatteryProfile
from truth_monitor.snapshot import RailSample, SlowSample, Snapshot
from truth_monitor.state import DashboardState, build_state

if TYPE_CHECKING:
    from truth_monitor.backends import TelemetryBackend
    from truth_monitor.config import Config

log = structlog.get_logger()

T = TypeVar("T")

EMPTY_ATTRIBUTION = Attribution(top=(), anomalies=(), displayed_anomalies=())


class Phase(Enum):
    """Fast-cycle phase."""

    IDLE = "idle"
    SAMPLING = "sampling"
    MERGING = "merging"
    STOPPED = "stopped"


class SamplingScheduler:
    """Drives a telemetry backend at fast and slow cadences.

    Failures never stop the loops: the previous values are kept, the state
    is flagged stale and a failure counter goes up. Only prime() is allowed
    to fail hard, when the backend cannot produce a single sample.
    """

    def __init__(self, backend: TelemetryBackend, config: Config) -> None:
        self.backend = backend
        self.config = config
        self.fast_interval = config.sampling.fast_interval
        self.slow_interval = config.sampling.slow_interval

        self.history = PowerHistory(config.history.window_size)
        self.battery = BatteryProfile.default(
            voltage=config.battery.nominal_voltage,
            default_mah=config.battery.default_capacity_mah,
        )
        self.phase = Phase.IDLE
        self.fast_failures = 0
        self.slow_failures = 0
        self.latest_state: DashboardState | None = None

        self._rail: RailSample | None = None
        self._latest_slow: SlowSample | None = None  # Written only by the slow task
        self._attribution = EMPTY_ATTRIBUTION
        self._baseline_mw: float | None = None
        self._fast_stale = False
        self._slow_stale = False
        self._slow_in_flight = False
        self._slow_task: asyncio.Task | None = None
        self._running = False
        self._stop_event = asyncio.Event()

        # Callback (must be async)
        self.on_state: Callable[[DashboardState], Awaitable[None]] | None = None

    @property
    def stale(self) -> bool:
        """True while the latest fast or slow sample attempt failed."""
        return self._fast_stale or self._slow_stale

    @property
    def slow_in_flight(self) -> bool:
        return self._slow_in_flight

    @property
    def latest_slow(self) -> SlowSample | None:
        return self._latest_slow

    @property
    def baseline_mw(self) -> float | None:
        """First successful total-power reading of this session."""
        return self._baseline_mw

    # ─────────────────────────────────────────────────────────────────────
    # Sampling
    # ─────────────────────────────────────────────────────────────────────

    async def _call(self, fetch: Callable[[], Awaitable[T]], timeout: float, kind: str) -> T:
        """Call the backend with a timeout, retrying undecodable payloads.

        Raises:
            SampleUnavailable: On timeout, backend failure, or when every
                retry produced an invalid payload.
        """
        attempts = self.config.sampling.invalid_retries + 1
        last_error: SampleInvalid | None = None
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(fetch(), timeout=timeout)
            except SampleInvalid as e:
                last_error = e
                log.debug("sample_invalid", kind=kind, attempt=attempt, error=str(e))
            except asyncio.TimeoutError as e:
                raise SampleUnavailable(f"{kind} sample timed out after {timeout}s") from e
        raise SampleUnavailable(
            f"{kind} sample invalid after {attempts} attempts: {last_error}"
        ) from last_error

    def _accept_rail(self, rail: RailSample) -> None:
        self._rail = rail
        self.history.push(rail.total_mw)
        if self._baseline_mw is None:
            self._baseline_mw = rail.total_mw
            log.info("baseline_captured", total_mw=round(rail.total_mw, 1))
        self._fast_stale = False

    def _accept_slow(self, slow: SlowSample) -> None:
        attribution_cfg = self.config.attribution
        self._attribution = attribute(
            slow.processes,
            top_n=attribution_cfg.top_n,
            wakeup_threshold=attribution_cfg.wakeup_threshold,
            denylist=attribution_cfg.denylist,
            display_count=attribution_cfg.anomaly_display_count,
        )
        if slow.has_battery_info:
            self.battery = BatteryProfile.from_capacity(
                slow.nominal_capacity_mah,
                slow.design_capacity_mah,
                slow.cycle_count,
                slow.health_pct,
                voltage=self.config.battery.nominal_voltage,
                default_mah=self.config.battery.default_capacity_mah,
            )
        self._latest_slow = slow
        self._slow_stale = False

    def _merge(self) -> DashboardState:
        assert self._rail is not None
        state = build_state(
            Snapshot(rail=self._rail, slow=self._latest_slow),
            self.history,
            self.battery,
            self._attribution,
            baseline_mw=self._baseline_mw,
            rail_stale=self._fast_stale,
            slow_stale=self._slow_stale,
            fast_failures=self.fast_failures,
            slow_failures=self.slow_failures,
        )
        self.latest_state = state
        return state

    async def prime(self) -> DashboardState:
        """Take the first fast sample.

        Raises:
            BackendUnreachable: If the backend cannot produce it.
        """
        try:
            rail = await self._call(
                self.backend.sample_fast, self.config.sampling.fast_timeout, "fast"
            )
        except SampleUnavailable as e:
            log.error("backend_unreachable", error=str(e))
            raise BackendUnreachable(str(e)) from e
        except Exception as e:
            log.exception("backend_unreachable", error=str(e))
            raise BackendUnreachable(f"fast sample failed: {e}") from e
        self._accept_rail(rail)
        return self._merge()

    async def sample_once(self) -> DashboardState:
        """One fast and one slow sample, merged.

        A failed slow sample still yields a state, flagged stale.

        Raises:
            BackendUnreachable: If the fast sample fails.
        """
        await self.prime()
        await self.tick_slow()
        return self._merge()

    async def tick_fast(self) -> DashboardState | None:
        """Run one fast cycle and notify the consumer.

        Returns None only if no fast sample has ever succeeded.
        """
        self.phase = Phase.SAMPLING
        try:
            rail = await self._call(
                self.backend.sample_fast, self.config.sampling.fast_timeout, "fast"
            )
        except SampleUnavailable as e:
            self.fast_failures += 1
            self._fast_stale = True
            log.warning("fast_sample_failed", error=str(e), failures=self.fast_failures)
        except Exception:
            self.fast_failures += 1
            self._fast_stale = True
            log.exception("fast_sample_error", failures=self.fast_failures)
        else:
            self._accept_rail(rail)

        if self._rail is None:
            self.phase = Phase.IDLE
            return None

        self.phase = Phase.MERGING
        state = self._merge()
        if self.on_state:
            await self.on_state(state)
        self.phase = Phase.IDLE
        return state

    async def tick_slow(self) -> None:
        """Run one slow cycle, updating the latest slow sample on success."""
        self._slow_in_flight = True
        try:
            slow = await self._call(
                self.backend.sample_slow, self.config.sampling.slow_timeout, "slow"
            )
        except SampleUnavailable as e:
            self.slow_failures += 1
            self._slow_stale = True
            log.warning("slow_sample_failed", error=str(e), failures=self.slow_failures)
        except Exception:
            self.slow_failures += 1
            self._slow_stale = True
            log.exception("slow_sample_error", failures=self.slow_failures)
        else:
            self._accept_slow(slow)
        finally:
            self._slow_in_flight = False

    # ─────────────────────────────────────────────────────────────────────
    # Loops
    # ─────────────────────────────────────────────────────────────────────

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless stopped first. Returns True if stop was requested."""
        if seconds <= 0:
            return self._stop_event.is_set()
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _fast_loop(self) -> None:
        """Fast cadence: sample rails, merge, notify."""
        loop = asyncio.get_running_loop()
        while self._running:
            tick_start = loop.time()
            try:
                await self.tick_fast()
            except Exception:
                log.exception("fast_tick_failed")
            if await self._sleep(self.fast_interval - (loop.time() - tick_start)):
                break

    async def _slow_loop(self) -> None:
        """Slow cadence: each sample runs in its own task."""
        loop = asyncio.get_running_loop()
        while self._running:
            tick_start = loop.time()
            self._slow_task = asyncio.create_task(self.tick_slow())
            try:
                await self._slow_task
            except asyncio.CancelledError:
                if self._running:
                    raise
                break
            except Exception:
                log.exception("slow_tick_failed")
            if await self._sleep(self.slow_interval - (loop.time() - tick_start)):
                break

    async def run(self) -> None:
        """Run both loops until stop() is called."""
        if self._stop_event.is_set():
            return
        self._running = True
        log.info(
            "scheduler_started",
            fast_interval=self.fast_interval,
            slow_interval=self.slow_interval,
            window=self.history.capacity,
        )
        results = await asyncio.gather(
            self._fast_loop(),
            self._slow_loop(),
            return_exceptions=True,
        )
        self.phase = Phase.STOPPED
        for result in results:
            if isinstance(result, Exception):
                log.error("loop_failed", error=str(result), exc_info=result)
                raise result
        log.info("scheduler_stopped")

    async def stop(self) -> None:
        """Stop issuing samples.

        An in-flight slow sample gets the configured grace period to finish,
        then is cancelled.
        """
        self._running = False
        self._stop_event.set()
        self.phase = Phase.STOPPED

        task = self._slow_task
        if task is None or task.done():
            return
        grace = self.config.sampling.shutdown_grace
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=grace)
        except asyncio.TimeoutError:
            log.info("slow_sample_cancelled", grace=grace)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
