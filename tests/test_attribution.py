"""Tests for process attribution and wakeup anomaly detection."""

from tests.conftest import make_process
from truth_monitor.attribution import (
    DEFAULT_DENYLIST,
    attribute,
    detect_wakeup_anomalies,
    friendly_name,
    rank_by_cpu,
)


class TestRankByCpu:
    """Tests for rank_by_cpu()."""

    def test_sorted_descending(self):
        procs = [make_process("a", cpu=1), make_process("b", cpu=30), make_process("c", cpu=5)]
        assert [p.name for p in rank_by_cpu(procs)] == ["b", "c", "a"]

    def test_ties_keep_table_order(self):
        """Identical CPU rates retain their original relative order."""
        procs = [
            make_process("first", cpu=10),
            make_process("big", cpu=50),
            make_process("second", cpu=10),
            make_process("third", cpu=10),
        ]
        assert [p.name for p in rank_by_cpu(procs)] == ["big", "first", "second", "third"]

    def test_limit_defaults_to_eight(self):
        procs = [make_process(f"p{i}", cpu=i) for i in range(20)]
        ranked = rank_by_cpu(procs)
        assert len(ranked) == 8
        assert ranked[0].name == "p19"

    def test_duplicate_names_are_separate_rows(self):
        procs = [make_process("Helper", cpu=5, pid=1), make_process("Helper", cpu=7, pid=2)]
        assert [p.pid for p in rank_by_cpu(procs)] == [2, 1]


class TestDetectWakeupAnomalies:
    """Tests for detect_wakeup_anomalies()."""

    def test_threshold_is_strict(self):
        """101/s appears at threshold 100; exactly 100/s does not."""
        procs = [make_process("over", wakeups=101), make_process("exact", wakeups=100)]
        names = [p.name for p in detect_wakeup_anomalies(procs, threshold=100)]
        assert names == ["over"]

    def test_denylisted_process_never_flagged(self):
        procs = [make_process(name, wakeups=5000) for name in DEFAULT_DENYLIST]
        assert detect_wakeup_anomalies(procs) == []

    def test_custom_denylist(self):
        procs = [make_process("noisy", wakeups=500), make_process("kernel_task", wakeups=500)]
        names = [p.name for p in detect_wakeup_anomalies(procs, denylist=["noisy"])]
        assert names == ["kernel_task"]

    def test_sorted_by_wakeups_descending(self):
        procs = [
            make_process("low", wakeups=150),
            make_process("high", wakeups=900),
            make_process("mid", wakeups=400),
        ]
        assert [p.name for p in detect_wakeup_anomalies(procs)] == ["high", "mid", "low"]

    def test_cpu_idle_process_is_still_flagged(self):
        """Wakeup-heavy processes surface even with zero CPU rate."""
        procs = [make_process("busy", cpu=500, wakeups=5), make_process("lsp", cpu=0, wakeups=300)]
        assert [p.name for p in detect_wakeup_anomalies(procs)] == ["lsp"]


class TestAttribute:
    """Tests for attribute()."""

    def test_display_capped_full_set_kept(self):
        procs = [make_process(f"w{i}", wakeups=200 + i) for i in range(6)]

        result = attribute(procs)

        assert len(result.anomalies) == 6
        assert [p.name for p in result.displayed_anomalies] == ["w5", "w4", "w3"]

    def test_rankings_are_independent(self):
        procs = [make_process("cpu_hog", cpu=900, wakeups=10), make_process("lsp", wakeups=300)]

        result = attribute(procs, top_n=1)

        assert [p.name for p in result.top] == ["cpu_hog"]
        assert [p.name for p in result.anomalies] == ["lsp"]

    def test_empty_table(self):
        result = attribute([])
        assert result.top == ()
        assert result.anomalies == ()
        assert result.displayed_anomalies == ()


class TestFriendlyName:
    """Tests for friendly_name()."""

    def test_known_prefixes(self):
        assert friendly_name("Google Chrome Helper (Renderer)") == "Chrome (tab/helper)"
        assert friendly_name("mds_stores") == "Spotlight indexer"

    def test_substring_match(self):
        assert friendly_name("/opt/homebrew/bin/rust-analyzer-proc-macro-srv") == (
            "Rust language server"
        )

    def test_unknown_name_unchanged(self):
        assert friendly_name("my_daemon") == "my_daemon"

    def test_does_not_affect_anomaly_membership(self):
        """Mapped and unmapped names are judged on the raw name only."""
        procs = [make_process("WindowServer", wakeups=5000)]
        assert friendly_name("WindowServer") != "WindowServer"
        assert detect_wakeup_anomalies(procs) == []
