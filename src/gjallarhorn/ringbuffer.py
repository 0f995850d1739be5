"""Fixed-capacity history for one scalar series.

Holds the 60 most recent samples regardless of cadence, so the wall-clock
span of a full buffer is 60 x refresh interval (30s at 500ms, 2min at 2s).
"""

from collections import deque

HISTORY_CAPACITY = 60


class HistoryBuffer:
    """Ring buffer of float samples with strict FIFO eviction."""

    def __init__(self, capacity: int = HISTORY_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._samples: deque[float] = deque(maxlen=capacity)

    def __len__(self) -> int:
        """Return number of samples in buffer."""
        return len(self._samples)

    @property
    def capacity(self) -> int:
        """Return maximum number of samples the buffer can hold."""
        return self._samples.maxlen or 0

    def push(self, value: float) -> None:
        """Add a sample, evicting the oldest when full."""
        self._samples.append(float(value))

    def freeze(self) -> tuple[float, ...]:
        """Return immutable copy of buffer contents, oldest first."""
        return tuple(self._samples)
