"""Rolling history of total system power.

Stores up to 600 samples (~10 minutes at 1 sample/sec). Only the fast
sampling cycle pushes into it.
"""

from collections import deque

DEFAULT_CAPACITY = 600
SAMPLES_PER_MINUTE = 60


class PowerHistory:
    """Bounded FIFO of total-power samples in milliwatts.

    The oldest sample is evicted first once the buffer is full.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._samples: deque[float] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._samples)

    @property
    def capacity(self) -> int:
        """Maximum number of samples held."""
        return self._samples.maxlen or 0

    @property
    def samples(self) -> list[float]:
        """Copy of held samples, oldest first."""
        return list(self._samples)

    def push(self, power_mw: float) -> None:
        """Append a sample, evicting the oldest if at capacity."""
        self._samples.append(power_mw)

    def mean(self, fallback: float = 0.0) -> float:
        """Arithmetic mean of held samples.

        Args:
            fallback: Returned when the buffer is empty, normally the most
                recent instantaneous reading.
        """
        if not self._samples:
            return fallback
        return sum(self._samples) / len(self._samples)

    def window_minutes(self) -> int:
        """Whole minutes of data held, at least 1 once any sample exists."""
        if not self._samples:
            return 0
        return max(1, len(self._samples) // SAMPLES_PER_MINUTE)

    def clear(self) -> None:
        """Drop all samples."""
        self._samples.clear()
