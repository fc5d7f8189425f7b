"""Streaming statistics primitives shared by every accumulator entry."""

from __future__ import annotations

import math
import random
from typing import Any, Dict, List, Optional

RESERVOIR_CAPACITY = 10_000


class ReservoirPercentile:
    """Percentile estimator over a bounded uniform sample (Algorithm R).

    Exact while fewer than ``capacity`` values were seen. Past that the sample
    is uniform over the stream, so the rank error of a p95 estimate is about
    ``sqrt(p * (1 - p) / capacity)`` (roughly 0.2 percentage points at the
    default capacity). Estimates always lie within the sampled min/max.
    """

    __slots__ = ("capacity", "seen", "_samples", "_rng", "_sorted")

    def __init__(self, capacity: int = RESERVOIR_CAPACITY, *, seed: int = 0) -> None:
        self.capacity = capacity
        self.seen = 0
        self._samples: List[float] = []
        self._rng = random.Random(seed)
        self._sorted: Optional[List[float]] = None

    def add(self, value: float) -> None:
        self.seen += 1
        self._sorted = None
        if len(self._samples) < self.capacity:
            self._samples.append(value)
            return
        slot = self._rng.randrange(self.seen)
        if slot < self.capacity:
            self._samples[slot] = value

    def percentile(self, p: float) -> float:
        """Interpolated percentile using the ``p * (n + 1)`` position rule."""

        if not self._samples:
            return 0.0
        if self._sorted is None:
            self._sorted = sorted(self._samples)
        ordered = self._sorted
        n = len(ordered)
        position = p * (n + 1) / 100.0
        if position < 1:
            return float(ordered[0])
        if position >= n:
            return float(ordered[-1])
        lower_index = int(math.floor(position))
        fraction = position - lower_index
        lower = ordered[lower_index - 1]
        upper = ordered[lower_index]
        return float(lower + fraction * (upper - lower))

    def __len__(self) -> int:
        return len(self._samples)


class RunningStat:
    """count / sum / min / max of a numeric series with integer averages."""

    __slots__ = ("count", "total", "min", "max")

    def __init__(self) -> None:
        self.count = 0
        self.total = 0
        self.min: Optional[int] = None
        self.max: Optional[int] = None

    def add(self, value: int) -> None:
        self.count += 1
        self.total += value
        if self.min is None or value < self.min:
            self.min = value
        if self.max is None or value > self.max:
            self.max = value

    @property
    def avg(self) -> int:
        return self.total // self.count if self.count else 0

    def as_dict(self, prefix: str) -> Dict[str, Any]:
        return {
            f"{prefix}_count": self.count,
            f"{prefix}_total": self.total,
            f"{prefix}_min": self.min if self.min is not None else 0,
            f"{prefix}_max": self.max if self.max is not None else 0,
            f"{prefix}_avg": self.avg,
        }


class DistributionStat(RunningStat):
    """A :class:`RunningStat` that also feeds a p95 reservoir."""

    __slots__ = ("reservoir",)

    def __init__(self, capacity: int = RESERVOIR_CAPACITY) -> None:
        super().__init__()
        self.reservoir = ReservoirPercentile(capacity)

    def add(self, value: int) -> None:
        super().add(value)
        self.reservoir.add(value)

    def percentile(self, p: float = 95.0) -> float:
        return self.reservoir.percentile(p)

    def as_dict(self, prefix: str) -> Dict[str, Any]:
        payload = super().as_dict(prefix)
        payload[f"{prefix}_p95"] = round(self.percentile(95.0), 2)
        return payload


def micros_to_ms(value: Optional[int]) -> Optional[int]:
    if value is None:
        return None
    # half-up rounding; the inputs are non-negative durations
    return int(math.floor(value / 1000.0 + 0.5))
