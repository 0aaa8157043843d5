"""Tests for the power-change detector."""

import pytest

from truth_monitor.changes import MIN_BASELINE_MW, PowerChangeDetector


def test_first_reading_only_seeds_baseline():
    detector = PowerChangeDetector()

    assert detector.update(8000.0) is None
    assert detector.baseline_mw == 8000.0
    assert detector.smoothed_mw == 8000.0


def test_steady_power_never_triggers():
    detector = PowerChangeDetector(threshold_pct=10)
    for _ in range(50):
        assert detector.update(8000.0) is None


def test_step_change_triggers_after_smoothing():
    """A 40% jump is smoothed by the EMA before it crosses 10%."""
    detector = PowerChangeDetector(threshold_pct=10, alpha=0.2)
    detector.update(10000.0)

    # 0.2 * 14000 + 0.8 * 10000 = 10800, only 8% above
    assert detector.update(14000.0) is None
    change = detector.update(14000.0)

    assert change is not None
    assert change.delta_pct == pytest.approx(14.4)
    assert change.current_mw == 11440.0
    assert change.baseline_mw == 10000.0
    assert change.to_dict()["event"] == "power_change"


def test_baseline_reanchors_after_change():
    detector = PowerChangeDetector(threshold_pct=10, alpha=1.0)
    detector.update(10000.0)

    assert detector.update(20000.0) is not None
    assert detector.baseline_mw == 20000.0
    assert detector.update(20000.0) is None


def test_drops_are_reported_as_absolute_change():
    detector = PowerChangeDetector(threshold_pct=10, alpha=1.0)
    detector.update(10000.0)

    change = detector.update(5000.0)

    assert change is not None
    assert change.delta_mw == 5000.0
    assert change.delta_pct == 50.0


def test_slow_drift_is_absorbed_by_settling():
    """Quiet samples re-anchor the baseline so gradual drift never fires."""
    detector = PowerChangeDetector(threshold_pct=10, alpha=1.0, settle_samples=2)
    detector.update(10000.0)

    power = 10000.0
    for _ in range(40):
        power *= 1.03
        assert detector.update(power) is None


def test_baseline_floor_avoids_division_by_zero():
    detector = PowerChangeDetector()
    detector.update(0.0)
    assert detector.baseline_mw == MIN_BASELINE_MW


def test_reset():
    detector = PowerChangeDetector()
    detector.update(5000.0)
    detector.reset()
    assert detector.baseline_mw is None
    assert detector.update(9000.0) is None
