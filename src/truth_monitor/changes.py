"""Power-change detection.

Smooths total power with an exponential moving average and reports when
the smoothed value moves more than a percentage away from a stable
baseline. Useful for spotting when content on screen (video, scrolling,
a build kicking off) changes the machine's draw.
"""

from dataclasses import asdict, dataclass

import structlog

log = structlog.get_logger()

MIN_BASELINE_MW = 100.0  # Floor so the percentage never divides by ~0


@dataclass(frozen=True)
class PowerChange:
    """A relative change in smoothed total power."""

    timestamp: float
    delta_pct: float  # Absolute change relative to the baseline, percent
    delta_mw: float  # Absolute change in milliwatts
    current_mw: float  # Smoothed power after the change
    baseline_mw: float  # Baseline the change was measured against

    def to_dict(self) -> dict:
        return {"event": "power_change", **asdict(self)}


class PowerChangeDetector:
    """EMA smoother with a percentage trigger and self-settling baseline.

    The baseline re-anchors to the smoothed value after every reported
    change and after ``settle_samples`` consecutive quiet samples, so slow
    drift is absorbed instead of eventually triggering.
    """

    def __init__(
        self,
        threshold_pct: float = 10.0,
        alpha: float = 0.2,
        settle_samples: int = 10,
    ) -> None:
        self.threshold_pct = threshold_pct
        self.alpha = alpha
        self.settle_samples = settle_samples

        self._smoothed: float | None = None
        self._baseline: float | None = None
        self._quiet = 0

    @property
    def smoothed_mw(self) -> float | None:
        return self._smoothed

    @property
    def baseline_mw(self) -> float | None:
        return self._baseline

    def reset(self) -> None:
        self._smoothed = None
        self._baseline = None
        self._quiet = 0

    def update(self, total_mw: float, timestamp: float = 0.0) -> PowerChange | None:
        """Feed one total-power reading.

        Returns a PowerChange if the smoothed value crossed the threshold,
        otherwise None. The first reading only seeds the baseline.
        """
        if self._smoothed is None or self._baseline is None:
            self._baseline = max(total_mw, MIN_BASELINE_MW)
            self._smoothed = self._baseline
            return None

        self._smoothed = self.alpha * total_mw + (1.0 - self.alpha) * self._smoothed
        delta_mw = abs(self._smoothed - self._baseline)
        delta_pct = delta_mw / self._baseline * 100.0

        if delta_pct > self.threshold_pct:
            change = PowerChange(
                timestamp=timestamp,
                delta_pct=round(delta_pct, 1),
                delta_mw=round(delta_mw, 0),
                current_mw=round(self._smoothed, 0),
                baseline_mw=round(self._baseline, 0),
            )
            log.info(
                "power_change",
                delta_pct=change.delta_pct,
                delta_mw=change.delta_mw,
                current_mw=change.current_mw,
            )
            self._baseline = max(self._smoothed, MIN_BASELINE_MW)
            self._quiet = 0
            return change

        self._quiet += 1
        if self._quiet > self.settle_samples:
            self._baseline = max(self._smoothed, MIN_BASELINE_MW)
            self._quiet = 0
        return None
