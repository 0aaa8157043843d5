"""Severity classification over fixed thresholds.

Every function is total: each input maps to exactly one tier.
"""

from collections.abc import Iterable
from enum import Enum


class Tier(str, Enum):
    """Severity tier. Values are the serialized names."""

    NORMAL = "normal"
    GOOD = "good"
    WARNING = "warning"
    CRITICAL = "critical"


MEMORY_CRITICAL_PCT = 15.0
MEMORY_WARNING_PCT = 30.0
TEMP_WARNING_C = 60.0
TEMP_CRITICAL_C = 80.0
WAKEUPS_WARNING = 500.0
WAKEUPS_CRITICAL = 1000.0
RUNWAY_CRITICAL_HOURS = 6.0
RUNWAY_WARNING_HOURS = 12.0


def classify_memory(available_pct: float) -> Tier:
    """Critical at or below 15%, Warning at or below 30%, else Normal."""
    if available_pct <= MEMORY_CRITICAL_PCT:
        return Tier.CRITICAL
    if available_pct <= MEMORY_WARNING_PCT:
        return Tier.WARNING
    return Tier.NORMAL


def classify_temperature(temp_c: float) -> Tier:
    """Normal below 60C, Warning below 80C, else Critical."""
    if temp_c < TEMP_WARNING_C:
        return Tier.NORMAL
    if temp_c < TEMP_CRITICAL_C:
        return Tier.WARNING
    return Tier.CRITICAL


def classify_wakeups(wakeups_per_s: float) -> Tier:
    """Normal below 500/s, Warning below 1000/s, else Critical."""
    if wakeups_per_s < WAKEUPS_WARNING:
        return Tier.NORMAL
    if wakeups_per_s < WAKEUPS_CRITICAL:
        return Tier.WARNING
    return Tier.CRITICAL


def classify_runway(hours: float) -> Tier:
    """Critical below 6h, Warning below 12h, else Good."""
    if hours < RUNWAY_CRITICAL_HOURS:
        return Tier.CRITICAL
    if hours < RUNWAY_WARNING_HOURS:
        return Tier.WARNING
    return Tier.GOOD


def hottest(temps: Iterable[float | None]) -> float | None:
    """Highest available reading, None if nothing is available."""
    readings = [t for t in temps if t is not None]
    return max(readings) if readings else None
