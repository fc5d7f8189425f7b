"""Turn retained log lines into operation records and side records."""

from __future__ import annotations

import json
from dataclasses import dataclass, fields
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..accumulators.accumulator_set import AccumulatorSet
from ..accumulators.operations import NamespaceOperationAccumulator
from ..accumulators.side import AppNameConnectionAccumulator, SlowPlanningAccumulator
from ..utils.counters import KeyCounter
from ..utils.logging_utils import get_logger
from .namespace_filter import NamespaceFilter
from .records import ErrorRecord, Namespace, OperationRecord, OpType, TransactionRecord
from .sanitizer import sanitize_filter
from .timestamps import TimestampRange, entry_date

LOGGER = get_logger("ingest.extractor")

# Command keys in priority order: first present key names the operation.
COMMAND_PRIORITY: Tuple[Tuple[str, OpType], ...] = (
    ("find", OpType.QUERY),
    ("aggregate", OpType.AGGREGATE),
    ("findAndModify", OpType.FIND_AND_MODIFY),
    ("update", OpType.UPDATE),
    ("insert", OpType.INSERT),
    ("delete", OpType.REMOVE),
    ("getMore", OpType.GETMORE),
    ("count", OpType.COUNT),
    ("distinct", OpType.DISTINCT),
)

ADMINISTRATIVE_COMMANDS = frozenset(
    {
        "drop",
        "dropDatabase",
        "dropIndexes",
        "createIndexes",
        "collMod",
        "renameCollection",
        "validate",
        "compact",
        "reIndex",
        "explain",
        "currentOp",
        "killOp",
        "fsync",
        "eval",
        "listCollections",
        "planCacheClear",
        "configureFailPoint",
        "killCursors",
        "abortTransaction",
        "commitTransaction",
        "startTransaction",
    }
)

WRITE_TYPES: Dict[str, Tuple[OpType, str]] = {
    "update": (OpType.UPDATE_W, "update_w"),
    "remove": (OpType.REMOVE, "delete_w"),
    "delete": (OpType.REMOVE, "delete_w"),
    "insert": (OpType.INSERT, "insert_w"),
}

TTL_MESSAGE = "Deleted expired documents"
CLIENT_DISCONNECT_MESSAGE = "Interrupted operation as its client disconnected"
CLIENT_DISCONNECT_CODE = "InterruptedByClientDisconnect"


# ---------------------------------------------------------------------------
# Per-batch counters


@dataclass
class ExtractionStats:
    """Per-batch outcome counters, merged into the file totals."""

    parse_errors: int = 0
    no_attr: int = 0
    no_command: int = 0
    no_namespace: int = 0
    found_ops: int = 0
    namespace_filtered: int = 0
    line_errors: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {item.name: getattr(self, item.name) for item in fields(self)}


# ---------------------------------------------------------------------------
# Field helpers


def _metric(source: Any, key: str) -> Optional[int]:
    """Read a numeric field, unwrapping extended-JSON number wrappers."""

    if not isinstance(source, dict):
        return None
    value = source.get(key)
    if isinstance(value, dict):
        for wrapper in ("$numberLong", "$numberInt", "$numberDouble", "$numberDecimal"):
            if wrapper in value:
                value = value[wrapper]
                break
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def _text(source: Any, key: str) -> Optional[str]:
    if not isinstance(source, dict):
        return None
    value = source.get(key)
    if value is None or isinstance(value, (dict, list)):
        return None
    return str(value)


def _flag(source: Dict[str, Any], key: str) -> bool:
    return source.get(key) is True


def _read_preference(command: Any) -> Optional[str]:
    if not isinstance(command, dict):
        return None
    value = command.get("$readPreference")
    if isinstance(value, dict):
        return json.dumps(value, separators=(",", ":"))
    if isinstance(value, str):
        return value
    return None


def _metadata_app_name(attr: Dict[str, Any]) -> Optional[str]:
    doc = attr.get("doc")
    if isinstance(doc, dict):
        return _text(doc.get("application"), "name")
    return None


def _first_match_stage(pipeline: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(pipeline, list):
        return None
    for stage in pipeline:
        if isinstance(stage, dict) and isinstance(stage.get("$match"), dict):
            return stage["$match"]
    return None


def _storage_bytes(attr: Dict[str, Any], key: str) -> Optional[int]:
    storage = attr.get("storage")
    if not isinstance(storage, dict):
        return None
    if key in storage:
        return _metric(storage, key)
    return _metric(storage.get("data"), key)


def resolve_command(command: Dict[str, Any]) -> Optional[Tuple[OpType, str, Optional[str]]]:
    """Return ``(op_type, stat_name, collection)`` for a command document."""

    for key, op_type in COMMAND_PRIORITY:
        if key not in command:
            continue
        value = command.get(key)
        if key == "getMore":
            collection = command.get("collection")
            return op_type, key, collection if isinstance(collection, str) else None
        if not isinstance(value, str):
            return op_type, key, None
        if key == "aggregate" and value == "1":
            # database-level aggregate
            return op_type, key, None
        return op_type, key, value

    for key in command:
        if key.startswith("_shardsv"):
            return OpType.CMD, f"shard_{key}", None
        if key in ADMINISTRATIVE_COMMANDS:
            return OpType.CMD, key, None
    return None


# ---------------------------------------------------------------------------
# Extractor


class Extractor:
    """Classify retained lines and fold them into an :class:`AccumulatorSet`.

    Per-line problems (bad JSON, missing ``attr``/``command``/``ns``) only bump
    counters in the returned :class:`ExtractionStats`.
    """

    def __init__(
        self,
        *,
        namespace_filter: Optional[NamespaceFilter] = None,
        redact_queries: bool = False,
        operation_counter: Optional[KeyCounter] = None,
        timestamps: Optional[TimestampRange] = None,
    ) -> None:
        self.namespace_filter = namespace_filter if namespace_filter is not None else NamespaceFilter()
        self.redact_queries = redact_queries
        self.operation_counter = operation_counter if operation_counter is not None else KeyCounter()
        self.timestamps = timestamps if timestamps is not None else TimestampRange()

    # ------------------------------------------------------------------
    # Batch entry points

    def process_batch(
        self,
        lines: Sequence[str],
        targets: AccumulatorSet,
        *,
        slow_planning: Optional[SlowPlanningAccumulator] = None,
        app_names: Optional[AppNameConnectionAccumulator] = None,
        file_name: str = "",
    ) -> ExtractionStats:
        stats = ExtractionStats()
        op_counts: Dict[str, int] = {}
        for line in lines:
            try:
                self._process_line(
                    line,
                    targets,
                    stats,
                    op_counts,
                    slow_planning=slow_planning,
                    app_names=app_names,
                    file_name=file_name,
                )
            except Exception:
                stats.line_errors += 1
                LOGGER.warning("Skipping line that failed extraction: %s", line[:200], exc_info=True)
        self.operation_counter.merge(op_counts)
        return stats

    def process_ttl_line(self, line: str, target: NamespaceOperationAccumulator) -> bool:
        """Record a TTL deletion line into *target*; True when accumulated."""

        try:
            entry = json.loads(line)
        except ValueError:
            LOGGER.debug("Unparsable TTL line: %s", line[:200])
            return False
        attr = entry.get("attr") if isinstance(entry, dict) else None
        namespace_raw = _text(attr, "namespace")
        if not namespace_raw:
            return False
        namespace = Namespace.parse(namespace_raw)
        if not self.namespace_filter.matches(namespace):
            return False
        record = OperationRecord(
            namespace=namespace,
            op_type=OpType.TTL_DELETE,
            stat_name="ttl_delete",
            duration_ms=_metric(attr, "durationMillis"),
            n_returned=_metric(attr, "numDeleted"),
        )
        target.accumulate(record, line)
        return True

    # ------------------------------------------------------------------
    # Single line

    def _process_line(
        self,
        line: str,
        targets: AccumulatorSet,
        stats: ExtractionStats,
        op_counts: Dict[str, int],
        *,
        slow_planning: Optional[SlowPlanningAccumulator],
        app_names: Optional[AppNameConnectionAccumulator],
        file_name: str,
    ) -> None:
        stripped = line.strip()
        if not stripped:
            return
        try:
            entry = json.loads(stripped)
        except ValueError:
            stats.parse_errors += 1
            if stats.parse_errors <= 3:
                LOGGER.debug("Parse error: %s", stripped[:200])
            return
        if not isinstance(entry, dict):
            stats.parse_errors += 1
            return

        self.timestamps.observe(entry_date(entry))

        attr = entry.get("attr")
        if not isinstance(attr, dict):
            stats.no_attr += 1
            return

        self._record_side_effects(entry, attr, targets)
        if app_names is not None:
            ctx = entry.get("ctx")
            if isinstance(ctx, str) and ctx.startswith("conn"):
                app_name = _text(attr, "appName") or _metadata_app_name(attr)
                if app_name:
                    app_names.record(file_name, app_name, ctx)

        record, extra_stat = self.classify(entry, attr, stats)
        if record is None:
            return
        if not self.namespace_filter.matches(record.namespace):
            stats.namespace_filtered += 1
            return

        targets.main.accumulate(record, line)
        targets.query_hash.accumulate(record, line)
        targets.index_usage.accumulate(record)
        targets.plan_cache.accumulate(record, line)
        if slow_planning is not None:
            slow_planning.accumulate(record, line)

        stats.found_ops += 1
        op_counts[record.stat_name] = op_counts.get(record.stat_name, 0) + 1
        if extra_stat:
            op_counts[extra_stat] = op_counts.get(extra_stat, 0) + 1

    # ------------------------------------------------------------------
    # Classification

    def classify(
        self, entry: Dict[str, Any], attr: Dict[str, Any], stats: ExtractionStats
    ) -> Tuple[Optional[OperationRecord], Optional[str]]:
        """Return the record for *entry* plus an optional secondary stat key."""

        if entry.get("c") == "INDEX":
            record = self._index_record(entry, attr)
            if record is None:
                stats.no_namespace += 1
                return None, None
            if record.op_type is OpType.TTL_DELETE:
                return record, None
            return record, "index_operation"

        if "command" in attr:
            namespace_raw = _text(attr, "ns")
            if not namespace_raw:
                stats.no_namespace += 1
                return None, None
            command = attr.get("command")
            resolved = resolve_command(command) if isinstance(command, dict) else None
            if resolved is not None:
                op_type, stat_name, collection = resolved
                namespace = Namespace.parse(namespace_raw)
                if collection:
                    namespace = namespace.with_collection(collection)
                return self._build(attr, namespace, op_type, stat_name), None
            if attr.get("type") not in WRITE_TYPES:
                stats.no_command += 1
                return None, None

        if "type" in attr:
            namespace_raw = _text(attr, "ns")
            if not namespace_raw:
                stats.no_namespace += 1
                return None, None
            write_type = str(attr.get("type"))
            op_type, stat_name = WRITE_TYPES.get(write_type, (OpType.CMD, f"write_{write_type}"))
            return self._build(attr, Namespace.parse(namespace_raw), op_type, stat_name), None

        return None, None

    def _index_record(self, entry: Dict[str, Any], attr: Dict[str, Any]) -> Optional[OperationRecord]:
        message = _text(entry, "msg") or _text(attr, "msg")
        namespace_raw = _text(attr, "namespace")
        if message and TTL_MESSAGE in message:
            if not namespace_raw:
                return None
            return OperationRecord(
                namespace=Namespace.parse(namespace_raw),
                op_type=OpType.TTL_DELETE,
                stat_name="ttl_delete",
                duration_ms=_metric(attr, "durationMillis"),
                n_returned=_metric(attr, "numDeleted"),
            )
        if not namespace_raw:
            return None
        if message is None:
            stat_name = "index_maintenance"
        elif "Index build" in message:
            stat_name = "index_build"
        elif "Index drop" in message:
            stat_name = "index_drop"
        else:
            stat_name = "index_other"
        return OperationRecord(
            namespace=Namespace.parse(namespace_raw),
            op_type=OpType.CMD,
            stat_name=stat_name,
            duration_ms=_metric(attr, "durationMillis"),
        )

    def _build(
        self,
        attr: Dict[str, Any],
        namespace: Namespace,
        op_type: OpType,
        stat_name: str,
    ) -> OperationRecord:
        command = attr.get("command")
        originating = attr.get("originatingCommand")

        read_preference = _read_preference(command)
        filter_doc = self._filter_source(command)
        if filter_doc is None and isinstance(originating, dict):
            if isinstance(originating.get("filter"), dict):
                filter_doc = originating["filter"]
            if read_preference is None:
                read_preference = _read_preference(originating)
        sanitized = (
            sanitize_filter(filter_doc, redact=self.redact_queries)
            if filter_doc is not None
            else None
        )

        returned = self._returned(attr)
        return OperationRecord(
            namespace=namespace,
            op_type=op_type,
            stat_name=stat_name,
            duration_ms=_metric(attr, "durationMillis"),
            keys_examined=_metric(attr, "keysExamined"),
            docs_examined=_metric(attr, "docsExamined"),
            n_returned=returned,
            reslen=_metric(attr, "reslen"),
            storage_bytes_read=_storage_bytes(attr, "bytesRead"),
            storage_bytes_written=_storage_bytes(attr, "bytesWritten"),
            query_hash=_text(attr, "queryHash"),
            plan_cache_key=_text(attr, "planCacheKey"),
            plan_summary=_text(attr, "planSummary"),
            planning_time_micros=_metric(attr, "planningTimeMicros"),
            replanned=_flag(attr, "replanned"),
            replan_reason=_text(attr, "replanReason"),
            from_multi_planner=_flag(attr, "fromMultiPlanner"),
            read_preference=read_preference,
            sanitized_filter=sanitized,
            n_shards=_metric(attr, "nShards"),
            write_conflicts=_metric(attr, "writeConflicts"),
            app_name=_text(attr, "appName"),
            remote=_text(attr, "remote"),
        )

    @staticmethod
    def _filter_source(command: Any) -> Optional[Dict[str, Any]]:
        if not isinstance(command, dict):
            return None
        for key in ("filter", "q"):
            if isinstance(command.get(key), dict):
                return command[key]
        return _first_match_stage(command.get("pipeline"))

    @staticmethod
    def _returned(attr: Dict[str, Any]) -> Optional[int]:
        """First present of nreturned, nModified/nUpserted, ndeleted, ninserted."""

        chain: List[Tuple[str, ...]] = [
            ("nreturned",),
            ("nModified", "nUpserted"),
            ("ndeleted",),
            ("ninserted",),
        ]
        for group in chain:
            for key in group:
                value = _metric(attr, key)
                if value is not None:
                    return value
        return None

    # ------------------------------------------------------------------
    # Error and transaction side records

    def _record_side_effects(
        self, entry: Dict[str, Any], attr: Dict[str, Any], targets: AccumulatorSet
    ) -> None:
        error = attr.get("error")
        if isinstance(error, dict):
            code_name = _text(error, "codeName")
            if code_name:
                targets.error_codes.accumulate(
                    ErrorRecord(code_name, _metric(error, "code"), _text(error, "errmsg"))
                )

        message = entry.get("msg")
        if message == CLIENT_DISCONNECT_MESSAGE:
            op_id = attr.get("opId")
            detail = f"{CLIENT_DISCONNECT_MESSAGE} (opId: {op_id})" if op_id is not None else message
            targets.error_codes.accumulate(ErrorRecord(CLIENT_DISCONNECT_CODE, None, detail))

        if entry.get("c") == "TXN" and message == "transaction":
            record = self._transaction_record(attr)
            if record is not None:
                targets.transactions.accumulate(record)

    @staticmethod
    def _transaction_record(attr: Dict[str, Any]) -> Optional[TransactionRecord]:
        record = TransactionRecord(
            retry_counter=_metric(attr.get("parameters"), "txnRetryCounter"),
            termination_cause=_text(attr, "terminationCause"),
            commit_type=_text(attr, "commitType"),
            duration_ms=_metric(attr, "durationMillis"),
            commit_duration_micros=_metric(attr, "commitDurationMicros"),
            time_active_micros=_metric(attr, "timeActiveMicros"),
            time_inactive_micros=_metric(attr, "timeInactiveMicros"),
        )
        if (
            record.retry_counter is None
            and record.termination_cause is None
            and record.commit_type is None
            and record.duration_ms is None
        ):
            return None
        return record
