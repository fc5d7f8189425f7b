"""High-level orchestration of a multi-file analysis run."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from ..accumulators.accumulator_set import AccumulatorSet
from ..accumulators.drivers import DriverStatsAccumulator
from ..accumulators.side import AppNameConnectionAccumulator, SlowPlanningAccumulator
from ..config import settings
from ..correlate.correlator import ConnectionCorrelator
from ..ingest.extractor import Extractor
from ..ingest.filter_config import FilterConfig
from ..ingest.line_filter import LineFilter
from ..ingest.line_source import LineSource
from ..ingest.namespace_filter import NamespaceFilter
from ..ingest.scheduler import FileStats, Scheduler
from ..ingest.timestamps import TimestampRange
from ..runtime import status as status_tracker
from ..sharding.router import ShardParser, ShardRouter
from ..utils.concurrency import create_thread_pool
from ..utils.counters import KeyCounter
from ..utils.logging_utils import get_logger
from ..utils.timing import accumulate_into, timed

LOGGER = get_logger("pipeline.analyzer")


class AnalysisError(RuntimeError):
    """Raised when no input file could be analyzed."""


@dataclass
class AnalysisResult:
    """Everything accumulated by one run; read-only once ``run`` returns."""

    accumulators: AccumulatorSet
    slow_planning: SlowPlanningAccumulator
    operation_counter: KeyCounter
    ignored_counter: KeyCounter
    timestamps: TimestampRange
    drivers: Optional[DriverStatsAccumulator] = None
    app_names: Optional[AppNameConnectionAccumulator] = None
    shard_sets: Dict[str, AccumulatorSet] = field(default_factory=dict)
    files: List[FileStats] = field(default_factory=list)
    failed_files: Dict[str, str] = field(default_factory=dict)
    partial_files: List[FileStats] = field(default_factory=list)
    correlation: Dict[str, Dict[str, int]] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def files_succeeded(self) -> int:
        return len(self.files)

    def ingested_files(self) -> List[FileStats]:
        """Files whose lines reached the accumulators, including failed partial reads."""

        return self.files + self.partial_files

    def all_sets(self) -> Dict[Optional[str], AccumulatorSet]:
        """The global set (key ``None``) followed by each shard's set."""

        sets: Dict[Optional[str], AccumulatorSet] = {None: self.accumulators}
        sets.update(self.shard_sets)
        return sets

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "summary": {
                "files_succeeded": self.files_succeeded,
                "files_failed": len(self.failed_files),
                "duration_seconds": round(self.duration_seconds, 3),
                "time_range": self.timestamps.as_dict(),
                "files_partial": len(self.partial_files),
                "total_lines": sum(stats.lines_read for stats in self.ingested_files()),
                "found_ops": sum(stats.found_ops for stats in self.ingested_files()),
            },
            "files": [stats.as_dict() for stats in self.files],
            "failed_files": dict(self.failed_files),
            "partial_files": [stats.as_dict() for stats in self.partial_files],
            "operation_counts": dict(self.operation_counter.most_common()),
            "ignored_categories": dict(self.ignored_counter.most_common()),
            "slow_planning": self.slow_planning.snapshot(),
        }
        payload.update(self.accumulators.snapshot())
        if self.drivers is not None:
            payload["drivers"] = self.drivers.snapshot()
            payload["correlation"] = dict(self.correlation)
        if self.app_names is not None:
            payload["app_names"] = self.app_names.snapshot()
        if self.shard_sets:
            payload["shards"] = {
                shard: targets.snapshot() for shard, targets in self.shard_sets.items()
            }
        return payload


class Analyzer:
    """Analyze one or more MongoDB log files into shared accumulators.

    Each file is isolated: a missing, unreadable or otherwise failing file is
    logged and recorded while the remaining files are still processed. Only a
    run in which every file failed raises :class:`AnalysisError`.
    """

    def __init__(
        self,
        *,
        namespaces: Optional[Iterable[str]] = None,
        filter_config: Optional[FilterConfig] = None,
        redact_queries: Optional[bool] = None,
        enable_driver_stats: Optional[bool] = None,
        enable_shard_tracking: Optional[bool] = None,
        enable_app_name_stats: Optional[bool] = None,
        shard_parser: Optional[ShardParser] = None,
        line_limit: Optional[int] = None,
        batch_size: Optional[int] = None,
        workers: Optional[int] = None,
        max_line_bytes: Optional[int] = None,
    ) -> None:
        self.namespace_filter = NamespaceFilter(namespaces)
        self.filter_config = filter_config or FilterConfig()
        self.redact_queries = settings.redact_queries if redact_queries is None else redact_queries
        self.enable_driver_stats = (
            settings.enable_driver_stats if enable_driver_stats is None else enable_driver_stats
        )
        self.enable_shard_tracking = (
            settings.enable_shard_tracking if enable_shard_tracking is None else enable_shard_tracking
        )
        self.enable_app_name_stats = (
            settings.enable_app_name_stats if enable_app_name_stats is None else enable_app_name_stats
        )
        self.shard_parser = shard_parser
        self.line_limit = line_limit
        self.batch_size = batch_size or settings.batch_size
        self.workers = workers or settings.workers
        self.max_line_bytes = max_line_bytes or settings.max_line_bytes

    def _new_result(self) -> AnalysisResult:
        return AnalysisResult(
            accumulators=AccumulatorSet(),
            slow_planning=SlowPlanningAccumulator(settings.slow_planning_top_n),
            operation_counter=KeyCounter(),
            ignored_counter=KeyCounter(),
            timestamps=TimestampRange(),
            drivers=DriverStatsAccumulator() if self.enable_driver_stats else None,
            app_names=AppNameConnectionAccumulator() if self.enable_app_name_stats else None,
        )

    def run(self, paths: Iterable[Path]) -> AnalysisResult:
        """Analyze every file in *paths* and return the merged result."""

        files = [Path(path) for path in paths]
        result = self._new_result()
        router = (
            ShardRouter(result.accumulators, parser=self.shard_parser)
            if self.enable_shard_tracking
            else None
        )
        extractor = Extractor(
            namespace_filter=self.namespace_filter,
            redact_queries=self.redact_queries,
            operation_counter=result.operation_counter,
            timestamps=result.timestamps,
        )
        scheduler = Scheduler(
            extractor,
            LineFilter(self.filter_config, ignored_counter=result.ignored_counter),
            batch_size=self.batch_size,
            workers=self.workers,
            line_limit=self.line_limit,
            slow_planning=result.slow_planning,
            app_names=result.app_names,
        )
        correlator = (
            ConnectionCorrelator(result.drivers, batch_size=self.batch_size)
            if result.drivers is not None
            else None
        )

        LOGGER.info(
            "Starting analysis of %d file(s) (workers=%d, batch_size=%d, namespaces=%s)",
            len(files),
            self.workers,
            self.batch_size,
            sorted(self.namespace_filter.filters) or "all",
        )
        status_tracker.run_started(files)
        run_start = time.perf_counter()
        try:
            with create_thread_pool(self.workers, prefix="logstats-batch") as pool:
                for path in files:
                    self._analyze_file(path, result, scheduler, router, correlator, pool)
        finally:
            result.duration_seconds = time.perf_counter() - run_start
            if router is not None:
                result.shard_sets = router.shard_sets()
            status_tracker.run_finished()

        LOGGER.info(
            "Analysis finished: %d succeeded, %d failed in %.2fs",
            result.files_succeeded,
            len(result.failed_files),
            result.duration_seconds,
        )
        if files and not result.files:
            raise AnalysisError(f"None of the {len(files)} input file(s) could be analyzed")
        if not files:
            raise AnalysisError("No input files given")
        return result

    def _analyze_file(
        self,
        path: Path,
        result: AnalysisResult,
        scheduler: Scheduler,
        router: Optional[ShardRouter],
        correlator: Optional[ConnectionCorrelator],
        pool: Any,
    ) -> None:
        targets = result.accumulators
        shard_name: Optional[str] = None
        if router is not None:
            targets, shard = router.targets_for(path)
            shard_name = str(shard) if shard is not None else None

        stats = FileStats(path=str(path), shard=shard_name)
        sink = accumulate_into(stats.timings)
        status_tracker.file_started(path, shard=shard_name)
        file_start = time.perf_counter()
        try:
            status_tracker.file_phase(path, "ingest", detail="filtering and extracting")
            with timed("ingest_seconds", sink):
                with LineSource.open(path, max_line_bytes=self.max_line_bytes) as source:
                    scheduler.process(source, targets, stats, pool=pool)
                    stats.lines_skipped_overlength = source.skipped_lines
        except (FileNotFoundError, PermissionError, IsADirectoryError) as exc:
            duration = time.perf_counter() - file_start
            LOGGER.error("Skipping unreadable input %s: %s", path, exc)
            result.failed_files[str(path)] = str(exc) or type(exc).__name__
            status_tracker.file_failed(path, str(exc), duration_seconds=duration)
            return
        except Exception as exc:
            duration = time.perf_counter() - file_start
            LOGGER.exception("Analysis failed for %s", path)
            result.failed_files[str(path)] = f"{type(exc).__name__}: {exc}"
            if stats.lines_read:
                # batches read before the failure are already merged
                result.partial_files.append(stats)
            status_tracker.file_failed(path, str(exc), duration_seconds=duration)
            return

        if correlator is not None:
            self._correlate_file(path, stats, result, correlator, sink)

        duration = time.perf_counter() - file_start
        result.files.append(stats)
        status_tracker.file_finished(
            path, duration_seconds=duration, stats=stats.as_dict(), timings=stats.timings
        )
        LOGGER.info(
            "Finished %s in %.2fs: lines=%d retained=%d ops=%d parse_errors=%d skipped=%d",
            path,
            duration,
            stats.lines_read,
            stats.lines_retained,
            stats.found_ops,
            stats.parse_errors,
            stats.lines_skipped_overlength,
        )

    def _correlate_file(
        self,
        path: Path,
        stats: FileStats,
        result: AnalysisResult,
        correlator: ConnectionCorrelator,
        sink: Any,
    ) -> None:
        """Driver correlation for an ingested file; failures never undo the ingest."""

        status_tracker.file_phase(path, "correlate", detail="driver statistics")
        try:
            with timed("correlate_seconds", sink):
                correlation = correlator.correlate_file(path, max_line_bytes=self.max_line_bytes)
        except Exception as exc:
            LOGGER.exception("Driver correlation failed for %s", path)
            stats.correlation_error = f"{type(exc).__name__}: {exc}"
            return
        result.correlation[str(path)] = correlation.as_dict()
