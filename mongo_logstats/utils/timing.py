"""Timing utilities used across the analyzer."""

from __future__ import annotations

import contextlib
import time
from typing import Callable, Dict, Iterator


@contextlib.contextmanager
def timed(section: str, sink: Callable[[str, float], None]) -> Iterator[None]:
    """Measure execution time of a code block and report to *sink*."""

    start = time.perf_counter()
    try:
        yield
    finally:
        duration = time.perf_counter() - start
        sink(section, duration)


def accumulate_into(target: Dict[str, float]) -> Callable[[str, float], None]:
    """Return a sink that adds section durations into *target*."""

    def _sink(section: str, duration: float) -> None:
        target[section] = target.get(section, 0.0) + duration

    return _sink
