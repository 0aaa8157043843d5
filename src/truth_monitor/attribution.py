"""Process attribution and wakeup anomaly detection.

Two independent views over one slow-cadence process table:

1. Top-N by CPU rate.
2. High-wakeup anomalies: processes that rouse the CPU more than the
   threshold allows, whatever their CPU rate. Language servers and indexers
   often sit near zero CPU while keeping cores out of deep idle, so a CPU
   ranking alone never shows them.

Friendly names are presentation only. Ranking, thresholds and anomaly
membership all use the raw process name.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from truth_monitor.snapshot import ProcessRecord

DEFAULT_TOP_N = 8
DEFAULT_WAKEUP_THRESHOLD = 100.0
DEFAULT_DISPLAY_COUNT = 3

# Expected background system activity (kernel, display server, the sampler, launchd)
DEFAULT_DENYLIST = frozenset(
    {
        "kernel_task",
        "WindowServer",
        "powermetrics",
        "launchd",
        "powerd",
    }
)

# (match, label, prefix-only). Order matters: first match wins.
_FRIENDLY_NAMES: tuple[tuple[str, str, bool], ...] = (
    ("Google Chrome Helper", "Chrome (tab/helper)", True),
    ("Google Chrome", "Chrome", True),
    ("Code Helper", "VS Code (helper)", True),
    ("Electron", "VS Code", True),
    ("Safari", "Safari", True),
    ("com.apple.WebKit", "Safari (web content)", True),
    ("Slack", "Slack", True),
    ("Discord", "Discord", True),
    ("firefox", "Firefox", True),
    ("plugin-container", "Firefox (content)", True),
    ("mds_stores", "Spotlight indexer", True),
    ("mdworker", "Spotlight worker", True),
    ("mds", "Spotlight", True),
    ("backupd", "Time Machine", True),
    ("bird", "iCloud Drive", True),
    ("cloudd", "iCloud sync", True),
    ("photoanalysisd", "Photos analysis", True),
    ("WindowServer", "Display server", True),
    ("kernel_task", "Kernel", True),
    ("rust-analyzer", "Rust language server", False),
    ("gopls", "Go language server", False),
    ("pyright", "Python language server", False),
    ("tsserver", "TypeScript language server", False),
    ("typescript-language-server", "TypeScript language server", False),
    ("clangd", "C/C++ language server", False),
)


@dataclass(frozen=True)
class Attribution:
    """Ranked processes and wakeup anomalies from one process table."""

    top: tuple[ProcessRecord, ...]
    anomalies: tuple[ProcessRecord, ...]  # Full set, highest wakeup rate first
    displayed_anomalies: tuple[ProcessRecord, ...]  # Capped for humans


def friendly_name(name: str) -> str:
    """Map a process name to a human label, or return it unchanged."""
    for match, label, prefix in _FRIENDLY_NAMES:
        matched = name.startswith(match) if prefix else match in name
        if matched:
            return label
    return name


def rank_by_cpu(processes: Sequence[ProcessRecord], limit: int = DEFAULT_TOP_N) -> list[ProcessRecord]:
    """Top ``limit`` processes by CPU rate.

    Python's sort is stable, so ties keep their table order.
    """
    return sorted(processes, key=lambda p: p.cpu_ms_per_s, reverse=True)[:limit]


def detect_wakeup_anomalies(
    processes: Sequence[ProcessRecord],
    threshold: float = DEFAULT_WAKEUP_THRESHOLD,
    denylist: Iterable[str] = DEFAULT_DENYLIST,
) -> list[ProcessRecord]:
    """Processes whose wakeup rate is strictly above ``threshold``.

    Denylisted names are never reported. Result is sorted by wakeup rate,
    highest first, ties in table order.
    """
    excluded = frozenset(denylist)
    flagged = [p for p in processes if p.wakeups_per_s > threshold and p.name not in excluded]
    return sorted(flagged, key=lambda p: p.wakeups_per_s, reverse=True)


def attribute(
    processes: Sequence[ProcessRecord],
    top_n: int = DEFAULT_TOP_N,
    wakeup_threshold: float = DEFAULT_WAKEUP_THRESHOLD,
    denylist: Iterable[str] = DEFAULT_DENYLIST,
    display_count: int = DEFAULT_DISPLAY_COUNT,
) -> Attribution:
    """Run both rankings over one process table."""
    anomalies = detect_wakeup_anomalies(processes, wakeup_threshold, denylist)
    return Attribution(
        top=tuple(rank_by_cpu(processes, top_n)),
        anomalies=tuple(anomalies),
        displayed_anomalies=tuple(anomalies[:display_count]),
    )
