"""Thread-safe keyed counters shared between worker batches."""

from __future__ import annotations

from threading import Lock
from typing import Dict, List, Tuple


class KeyCounter:
    """A ``key -> int`` map whose increments are atomic across threads."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counts: Dict[str, int] = {}

    def increment(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self._counts[key] = self._counts.get(key, 0) + amount

    def merge(self, counts: Dict[str, int]) -> None:
        """Fold a batch-local tally in under a single lock acquisition."""

        if not counts:
            return
        with self._lock:
            for key, amount in counts.items():
                self._counts[key] = self._counts.get(key, 0) + amount

    def get(self, key: str) -> int:
        with self._lock:
            return self._counts.get(key, 0)

    def total(self) -> int:
        with self._lock:
            return sum(self._counts.values())

    def most_common(self) -> List[Tuple[str, int]]:
        with self._lock:
            items = list(self._counts.items())
        return sorted(items, key=lambda item: (-item[1], item[0]))

    def as_dict(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def __len__(self) -> int:
        with self._lock:
            return len(self._counts)
