"""Batch retained lines and fan them out to a bounded worker pool."""

from __future__ import annotations

import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

import psutil

from ..accumulators.accumulator_set import AccumulatorSet
from ..accumulators.side import AppNameConnectionAccumulator, SlowPlanningAccumulator
from ..config import settings
from ..runtime import status as status_tracker
from ..utils.concurrency import create_thread_pool
from ..utils.logging_utils import get_logger
from .extractor import ExtractionStats, Extractor
from .line_filter import LineFilter, is_ttl_operation

LOGGER = get_logger("ingest.scheduler")


@dataclass
class FileStats:
    """Per-file ingest counters reported in the run summary."""

    path: str
    shard: Optional[str] = None
    lines_read: int = 0
    lines_skipped_overlength: int = 0
    lines_retained: int = 0
    lines_ignored: int = 0
    ttl_lines: int = 0
    parse_errors: int = 0
    no_attr: int = 0
    no_command: int = 0
    no_namespace: int = 0
    found_ops: int = 0
    namespace_filtered: int = 0
    line_errors: int = 0
    batches_submitted: int = 0
    batches_failed: int = 0
    stopped_at_limit: bool = False
    correlation_error: Optional[str] = None
    timings: Dict[str, float] = field(default_factory=dict)

    def absorb(self, extraction: ExtractionStats) -> None:
        for key, value in extraction.as_dict().items():
            setattr(self, key, getattr(self, key) + value)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "shard": self.shard,
            "lines_read": self.lines_read,
            "lines_skipped_overlength": self.lines_skipped_overlength,
            "lines_retained": self.lines_retained,
            "lines_ignored": self.lines_ignored,
            "ttl_lines": self.ttl_lines,
            "parse_errors": self.parse_errors,
            "no_attr": self.no_attr,
            "no_command": self.no_command,
            "no_namespace": self.no_namespace,
            "found_ops": self.found_ops,
            "namespace_filtered": self.namespace_filtered,
            "line_errors": self.line_errors,
            "batches_submitted": self.batches_submitted,
            "batches_failed": self.batches_failed,
            "stopped_at_limit": self.stopped_at_limit,
            "correlation_error": self.correlation_error,
            "timings": dict(self.timings),
        }


def _rss_megabytes() -> float:
    return psutil.Process().memory_info().rss / (1024 * 1024)


class Scheduler:
    """Drive one file's lines through filtering, batching and extraction."""

    PROGRESS_CHECK_EVERY = 10_000

    def __init__(
        self,
        extractor: Extractor,
        line_filter: LineFilter,
        *,
        batch_size: Optional[int] = None,
        workers: Optional[int] = None,
        line_limit: Optional[int] = None,
        progress_interval: Optional[float] = None,
        slow_planning: Optional[SlowPlanningAccumulator] = None,
        app_names: Optional[AppNameConnectionAccumulator] = None,
    ) -> None:
        self.extractor = extractor
        self.line_filter = line_filter
        self.batch_size = batch_size or settings.batch_size
        self.workers = workers or settings.workers
        self.line_limit = line_limit
        self.progress_interval = (
            progress_interval if progress_interval is not None else settings.progress_interval_seconds
        )
        self.slow_planning = slow_planning
        self.app_names = app_names

    def process(
        self,
        lines: Iterable[str],
        targets: AccumulatorSet,
        stats: FileStats,
        *,
        pool: Optional[ThreadPoolExecutor] = None,
    ) -> FileStats:
        """Consume *lines* into *targets*, updating and returning *stats*."""

        if pool is None:
            with create_thread_pool(self.workers, prefix="logstats-batch") as owned:
                return self._run(lines, targets, stats, owned)
        return self._run(lines, targets, stats, pool)

    def _run(
        self,
        lines: Iterable[str],
        targets: AccumulatorSet,
        stats: FileStats,
        pool: ThreadPoolExecutor,
    ) -> FileStats:
        in_flight: Set[Future] = set()
        max_in_flight = 2 * self.workers
        batch: List[str] = []
        started = time.perf_counter()
        last_progress = started

        try:
            for line in lines:
                stats.lines_read += 1

                if is_ttl_operation(line):
                    stats.ttl_lines += 1
                    self.extractor.process_ttl_line(line, targets.ttl)

                if self.line_filter.should_ignore(line):
                    stats.lines_ignored += 1
                else:
                    stats.lines_retained += 1
                    batch.append(line)
                    if len(batch) >= self.batch_size:
                        in_flight.add(self._submit(pool, batch, targets, stats))
                        batch = []
                        if len(in_flight) > max_in_flight:
                            in_flight = self._checkpoint(in_flight, stats)

                if stats.lines_read % self.PROGRESS_CHECK_EVERY == 0:
                    now = time.perf_counter()
                    if now - last_progress >= self.progress_interval:
                        self._report_progress(stats, targets, now - started)
                        last_progress = now

                if self.line_limit is not None and stats.lines_read >= self.line_limit:
                    stats.stopped_at_limit = True
                    LOGGER.info("Line limit %d reached for %s", self.line_limit, stats.path)
                    break

            if batch:
                in_flight.add(self._submit(pool, batch, targets, stats))
        finally:
            # submitted batches are drained even when reading fails part way
            done, _ = wait(in_flight)
            for future in done:
                self._collect(future, stats)
        return stats

    def _submit(
        self,
        pool: ThreadPoolExecutor,
        batch: List[str],
        targets: AccumulatorSet,
        stats: FileStats,
    ) -> Future:
        stats.batches_submitted += 1
        return pool.submit(
            self.extractor.process_batch,
            batch,
            targets,
            slow_planning=self.slow_planning,
            app_names=self.app_names,
            file_name=stats.path,
        )

    def _checkpoint(self, in_flight: Set[Future], stats: FileStats) -> Set[Future]:
        done, pending = wait(in_flight, return_when=FIRST_COMPLETED)
        for future in done:
            self._collect(future, stats)
        return set(pending)

    def _collect(self, future: Future, stats: FileStats) -> None:
        try:
            extraction = future.result()
        except Exception:
            stats.batches_failed += 1
            LOGGER.error("Batch extraction failed for %s", stats.path, exc_info=True)
            return
        stats.absorb(extraction)

    def _report_progress(self, stats: FileStats, targets: AccumulatorSet, elapsed: float) -> None:
        rate = stats.lines_read / elapsed if elapsed > 0 else 0.0
        memory_mb = _rss_megabytes()
        sizes = targets.sizes()
        LOGGER.info(
            "%s: %d lines read (%.0f lines/s), %d retained, rss=%.1f MiB, entries=%s",
            stats.path,
            stats.lines_read,
            rate,
            stats.lines_retained,
            memory_mb,
            sizes,
        )
        status_tracker.file_phase(
            stats.path,
            "streaming",
            metrics={
                "lines_read": stats.lines_read,
                "lines_per_second": round(rate, 1),
                "lines_retained": stats.lines_retained,
                "rss_mb": round(memory_mb, 1),
                "entries": sizes,
            },
        )
