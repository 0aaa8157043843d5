"""Telemetry backends.

A backend produces typed samples for the scheduler:

- sample_fast(): power rails and temperatures (cheap, every second)
- sample_slow(): process table, battery and memory (heavier, every few seconds)

Implementations:

- CommandBackend: runs the helper binary once per sample
- StreamBackend: keeps one helper process open, reads line-delimited JSON
- PowermetricsBackend: powermetrics text output, psutil and ioreg
- CompositeBackend: fast samples from one backend, slow from another

Subprocess failures surface as SampleUnavailable. Undecodable output
surfaces as SampleInvalid so the scheduler can retry immediately.
"""

from __future__ import annotations

import asyncio
import time
from asyncio.subprocess import Process
from typing import TYPE_CHECKING, Protocol

import psutil
import structlog

from truth_monitor.errors import SampleInvalid, SampleUnavailable
from truth_monitor.snapshot import (
    BatteryCapacity,
    RailSample,
    SlowSample,
    parse_ioreg_battery,
    parse_powermetrics_power,
    parse_powermetrics_tasks,
    parse_rail_sample,
    parse_slow_sample,
)

if TYPE_CHECKING:
    from truth_monitor.config import BackendConfig

log = structlog.get_logger()

IOREG_CMD = ["/usr/sbin/ioreg", "-r", "-c", "AppleSmartBattery"]


class TelemetryBackend(Protocol):
    """Source of fast and slow samples."""

    async def sample_fast(self) -> RailSample: ...

    async def sample_slow(self) -> SlowSample: ...

    async def close(self) -> None: ...


async def run_command(cmd: list[str]) -> str:
    """Run a command to completion and return its stdout.

    If the awaiting task is cancelled (e.g. by a timeout) the child is
    killed before the cancellation propagates.

    Raises:
        SampleUnavailable: If the command cannot start or exits non-zero.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise SampleUnavailable(f"{cmd[0]} not found: {e}") from e
    except PermissionError as e:
        raise SampleUnavailable(f"{cmd[0]} not permitted: {e}") from e
    except OSError as e:
        raise SampleUnavailable(f"{cmd[0]} failed to start: {e}") from e

    try:
        stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        try:
            process.kill()
        except ProcessLookupError:
            pass  # Already exited
        await process.wait()
        raise

    if process.returncode != 0:
        error_msg = stderr.decode("utf-8", errors="replace").strip()
        raise SampleUnavailable(f"{cmd[0]} exited with {process.returncode}: {error_msg}")

    return stdout.decode("utf-8", errors="replace")


def first_json_line(text: str) -> str:
    """Return the first line that looks like a JSON object.

    The helper can print diagnostics before its record.

    Raises:
        SampleInvalid: If no line starts with ``{``.
    """
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("{"):
            return stripped
    raise SampleInvalid("No JSON object in backend output")


class CommandBackend:
    """Runs the helper binary once per sample.

    Defaults match the helper's CLI: ``json-fast`` prints rails only,
    ``json`` prints the full record including the process table.
    """

    def __init__(
        self,
        helper_path: str = "kim_temp",
        fast_args: list[str] | None = None,
        slow_args: list[str] | None = None,
    ) -> None:
        self.fast_cmd = [helper_path, *(fast_args if fast_args is not None else ["json-fast"])]
        self.slow_cmd = [helper_path, *(slow_args if slow_args is not None else ["json"])]

    async def sample_fast(self) -> RailSample:
        output = await run_command(self.fast_cmd)
        return parse_rail_sample(first_json_line(output), timestamp=time.time())

    async def sample_slow(self) -> SlowSample:
        output = await run_command(self.slow_cmd)
        return parse_slow_sample(first_json_line(output), timestamp=time.time())

    async def close(self) -> None:
        return None


class StreamBackend:
    """Keeps one helper process open and reads its line-delimited records.

    Each record carries both rail and slow fields; samples are parsed from
    the most recent complete line. A helper that exits is started again on
    the next sample.
    """

    def __init__(self, helper_path: str = "kim_temp", stream_args: list[str] | None = None) -> None:
        self.cmd = [helper_path, *(stream_args if stream_args is not None else ["stream"])]
        self._process: Process | None = None
        self._reader: asyncio.Task | None = None
        self._latest: bytes | None = None
        self._ready = asyncio.Event()
        self._start_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self) -> None:
        """Start the helper process and its reader task.

        Concurrent callers share one process. If the previous helper has
        exited, it is reaped and a fresh one is started.

        Raises:
            SampleUnavailable: If the helper fails to start.
        """
        async with self._start_lock:
            if self._process is not None:
                if self._reader is not None and not self._reader.done():
                    return
                log.info("stream_restarting", cmd=self.cmd[0])
                await self.close()

            try:
                self._process = await asyncio.create_subprocess_exec(
                    *self.cmd,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.DEVNULL,
                )
            except OSError as e:
                log.error("stream_start_failed", cmd=self.cmd[0], error=str(e))
                raise SampleUnavailable(f"{self.cmd[0]} failed to start: {e}") from e

            self._reader = asyncio.create_task(self._read_lines())
            log.info("stream_started", cmd=self.cmd[0])

    async def _read_lines(self) -> None:
        if self._process is None or self._process.stdout is None:
            return
        try:
            async for line in self._process.stdout:
                line = line.strip()
                if line.startswith(b"{"):
                    self._latest = line
                    self._ready.set()
            log.warning("stream_ended")
        finally:
            # Wake waiters on EOF so they see the dead stream
            self._ready.set()

    async def _latest_record(self) -> bytes:
        await self.start()
        await self._ready.wait()
        if self._latest is None or (self._reader is not None and self._reader.done()):
            raise SampleUnavailable(f"{self.cmd[0]} stream exited")
        return self._latest

    async def sample_fast(self) -> RailSample:
        return parse_rail_sample(await self._latest_record(), timestamp=time.time())

    async def sample_slow(self) -> SlowSample:
        return parse_slow_sample(await self._latest_record(), timestamp=time.time())

    async def close(self) -> None:
        """Stop the helper process."""
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        self._latest = None
        self._ready.clear()

        if self._process is None:
            return
        try:
            self._process.terminate()
            await self._process.wait()
        except ProcessLookupError:
            pass
        self._process = None
        log.info("stream_stopped")


def read_system_state() -> dict:
    """Battery and memory state via psutil (blocking)."""
    state: dict = {}
    memory = psutil.virtual_memory()
    if memory.total:
        state["memory_available_pct"] = memory.available / memory.total * 100.0

    battery = psutil.sensors_battery()
    if battery is not None:
        state["battery_pct"] = battery.percent
        state["charging"] = bool(battery.power_plugged)
    return state


class PowermetricsBackend:
    """Samples via powermetrics (needs root), psutil and ioreg.

    Fast: cpu/gpu/ane power and thermal pressure from powermetrics. There is
    no system rail here, so total power is the combined SoC figure.
    Slow: task table from powermetrics, battery and memory from psutil,
    capacity from ioreg (queried until it succeeds once).
    """

    def __init__(self, powermetrics_path: str = "/usr/bin/powermetrics") -> None:
        base = [powermetrics_path, "-n", "1", "-i", "100", "--samplers"]
        self.fast_cmd = [*base, "cpu_power,gpu_power,ane_power,thermal"]
        self.slow_cmd = [*base, "cpu_power,tasks"]
        self._capacity: BatteryCapacity | None = None

    async def sample_fast(self) -> RailSample:
        output = await run_command(self.fast_cmd)
        payload = parse_powermetrics_power(output)
        if not payload:
            raise SampleInvalid("No power lines in powermetrics output")
        return parse_rail_sample(payload, timestamp=time.time())

    async def sample_slow(self) -> SlowSample:
        output = await run_command(self.slow_cmd)
        table = parse_powermetrics_tasks(output)

        loop = asyncio.get_running_loop()
        payload = await loop.run_in_executor(None, read_system_state)
        payload["processes"] = [p.to_dict() for p in table.processes]
        payload["wakeups_per_s"] = table.wakeups_per_s

        capacity = await self._battery_capacity()
        if capacity is not None:
            payload["nominal_capacity_mah"] = capacity.nominal_capacity_mah
            payload["design_capacity_mah"] = capacity.design_capacity_mah
            payload["cycle_count"] = capacity.cycle_count

        return parse_slow_sample(payload, timestamp=time.time())

    async def _battery_capacity(self) -> BatteryCapacity | None:
        if self._capacity is not None:
            return self._capacity
        try:
            output = await run_command(IOREG_CMD)
        except SampleUnavailable as e:
            log.warning("battery_capacity_unavailable", error=str(e))
            return None
        capacity = parse_ioreg_battery(output)
        if capacity.nominal_capacity_mah is not None:
            self._capacity = capacity
        return capacity

    async def close(self) -> None:
        return None


class CompositeBackend:
    """Fast samples from one backend, slow samples from another."""

    def __init__(self, fast: TelemetryBackend, slow: TelemetryBackend) -> None:
        self.fast = fast
        self.slow = slow

    async def sample_fast(self) -> RailSample:
        return await self.fast.sample_fast()

    async def sample_slow(self) -> SlowSample:
        return await self.slow.sample_slow()

    async def close(self) -> None:
        await self.fast.close()
        if self.slow is not self.fast:
            await self.slow.close()


def create_backend(config: BackendConfig) -> TelemetryBackend:
    """Build the backend described by config."""
    fast: TelemetryBackend
    if config.mode == "stream":
        fast = StreamBackend(config.helper_path, config.stream_args)
    else:
        fast = CommandBackend(config.helper_path, config.fast_args, config.slow_args)

    if config.slow_source == "powermetrics":
        return CompositeBackend(fast, PowermetricsBackend(config.powermetrics_path))
    return fast
