"""
Circle Aggregator Module

Turns the noisy per-frame nozzle detections into a stable estimate using a
sliding window with running sums, and scores that estimate with a confidence
value in (0, 1].
"""

import collections
import math
from typing import Deque, Optional, Tuple

Circle = Tuple[float, float, float]


class CircleAggregator:
    """
    Sliding-window mean of (x, y, radius) detections.

    Absent detections occupy a slot in the window (they lower the detection
    rate) but never contribute to the sums.
    """

    def __init__(self, window_size: int = 45, min_samples: int = 5):
        """
        Initialize the aggregator.

        Args:
            window_size: Number of most recent frames kept in the window
            min_samples: Valid detections required before a guess is reported
        """
        if window_size < 1:
            raise ValueError(f"window_size must be positive, got {window_size}")
        if min_samples < 1:
            raise ValueError(f"min_samples must be positive, got {min_samples}")

        self.window_size = window_size
        self.min_samples = min_samples

        self._buffer: Deque[Optional[Circle]] = collections.deque()
        self._sum = [0.0, 0.0, 0.0]
        self._sum_sq = [0.0, 0.0, 0.0]
        self._valid_count = 0

    def __len__(self) -> int:
        return len(self._buffer)

    @property
    def valid_count(self) -> int:
        return self._valid_count

    @property
    def detection_rate(self) -> float:
        if not self._buffer:
            return 0.0
        return self._valid_count / len(self._buffer)

    def add_frame(self, detection: Optional[Circle]):
        """Push one frame's detection (or None for a miss) into the window."""
        if len(self._buffer) >= self.window_size:
            evicted = self._buffer.popleft()
            if evicted is not None:
                for i, value in enumerate(evicted):
                    self._sum[i] -= value
                    self._sum_sq[i] -= value * value
                self._valid_count -= 1

        if detection is not None:
            detection = (float(detection[0]), float(detection[1]), float(detection[2]))
            for i, value in enumerate(detection):
                self._sum[i] += value
                self._sum_sq[i] += value * value
            self._valid_count += 1

        self._buffer.append(detection)

    def clear(self):
        """Drop every sample, e.g. after the platform moved."""
        self._buffer.clear()
        self._sum = [0.0, 0.0, 0.0]
        self._sum_sq = [0.0, 0.0, 0.0]
        self._valid_count = 0

    def running_sums(self) -> Tuple[Circle, Circle]:
        """Current (sums, squared sums) over the valid samples in the window."""
        return tuple(self._sum), tuple(self._sum_sq)

    def current_guess(self) -> Optional[Circle]:
        """Mean (x, y, radius) of the window, or None below min_samples."""
        if self._valid_count < self.min_samples:
            return None

        n = self._valid_count
        return (self._sum[0] / n, self._sum[1] / n, self._sum[2] / n)

    def confidence(self) -> Optional[Tuple[float, Circle]]:
        """
        Score the current guess.

        Returns:
            (overall, (x, y, radius)) where each per-axis value blends that
            axis' consistency with the detection factor, or None below
            min_samples
        """
        if self._valid_count < self.min_samples:
            return None

        n = self._valid_count
        detection_rate = n / len(self._buffer)
        if n == len(self._buffer):
            detection_factor = 1.0
        else:
            detection_factor = 1.0 / (1.0 + math.exp(-20.0 * (detection_rate - 0.8)))

        consistency = []
        for i in range(3):
            mean = self._sum[i] / n
            variance = max(0.0, self._sum_sq[i] / n - mean * mean)
            std_err = math.sqrt(variance) / math.sqrt(n)
            consistency.append(1.0 / (1.0 + std_err))

        # radius is reported per axis only
        avg_consistency = (consistency[0] + consistency[1]) / 2.0
        overall = avg_consistency * 0.8 + detection_factor * 0.2

        per_axis = tuple(c * 0.8 + detection_factor * 0.2 for c in consistency)
        return overall, per_axis
