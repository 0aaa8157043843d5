"""Shared test fixtures for truth-monitor."""

import asyncio
from collections.abc import Iterable

import pytest
import structlog

from truth_monitor.config import Config
from truth_monitor.snapshot import ProcessRecord, RailSample, SlowSample, Temperatures


@pytest.fixture(autouse=True)
def captured_logs():
    """Capture structlog events instead of printing them."""
    with structlog.testing.capture_logs() as logs:
        yield logs


@pytest.fixture
def fast_config() -> Config:
    """Config with intervals short enough for loop tests."""
    config = Config()
    config.sampling.fast_interval = 0.01
    config.sampling.slow_interval = 0.02
    config.sampling.fast_timeout = 0.2
    config.sampling.slow_timeout = 0.2
    config.sampling.shutdown_grace = 0.05
    config.system.heartbeat_ticks = 1000
    return config


def make_process(
    name: str = "proc",
    cpu: float = 0.0,
    wakeups: float = 0.0,
    pid: int | None = None,
) -> ProcessRecord:
    """Create a ProcessRecord for testing."""
    return ProcessRecord(name=name, cpu_ms_per_s=cpu, wakeups_per_s=wakeups, pid=pid)


def make_rail(
    total: float = 10000.0,
    cpu: float = 2000.0,
    gpu: float = 500.0,
    ane: float = 0.0,
    timestamp: float = 1000.0,
    cpu_temp: float | None = 45.0,
    **kwargs,
) -> RailSample:
    """Create a RailSample for testing."""
    return RailSample(
        timestamp=timestamp,
        total_mw=total,
        cpu_mw=cpu,
        gpu_mw=gpu,
        ane_mw=ane,
        temperatures=kwargs.pop("temperatures", Temperatures(cpu=cpu_temp)),
        **kwargs,
    )


def make_slow(
    processes: Iterable[ProcessRecord] = (),
    battery_pct: int | None = 80,
    memory_available_pct: float | None = 50.0,
    wakeups_per_s: float = 100.0,
    timestamp: float = 1000.0,
    **kwargs,
) -> SlowSample:
    """Create a SlowSample for testing."""
    return SlowSample(
        timestamp=timestamp,
        battery_pct=battery_pct,
        memory_available_pct=memory_available_pct,
        wakeups_per_s=wakeups_per_s,
        processes=tuple(processes),
        **kwargs,
    )


class FakeBackend:
    """Scripted telemetry backend.

    Each call pops the next item from its script; the last item repeats
    once the script runs out. Exception instances are raised.
    """

    def __init__(
        self,
        rails: list | None = None,
        slows: list | None = None,
        fast_delay: float = 0.0,
        slow_delay: float = 0.0,
    ) -> None:
        self.rails = list(rails if rails is not None else [make_rail()])
        self.slows = list(slows if slows is not None else [make_slow()])
        self.fast_delay = fast_delay
        self.slow_delay = slow_delay
        self.fast_calls = 0
        self.slow_calls = 0
        self.closed = False

    @staticmethod
    def _next(script: list):
        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, BaseException):
            raise item
        return item

    async def sample_fast(self) -> RailSample:
        self.fast_calls += 1
        if self.fast_delay:
            await asyncio.sleep(self.fast_delay)
        return self._next(self.rails)

    async def sample_slow(self) -> SlowSample:
        self.slow_calls += 1
        if self.slow_delay:
            await asyncio.sleep(self.slow_delay)
        return self._next(self.slows)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()
