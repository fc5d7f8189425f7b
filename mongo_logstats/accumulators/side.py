"""Accumulators for side records: errors, transactions, slow planning, app names."""

from __future__ import annotations

import heapq
import itertools
from threading import Lock
from typing import Any, Dict, List, Optional, Set, Tuple

from ..ingest.records import ErrorRecord, OperationRecord, TransactionRecord
from .base import KeyedAccumulator
from .keys import ErrorCodeKey, TransactionKey
from .stats import RunningStat, micros_to_ms


# ---------------------------------------------------------------------------
# Error codes


class ErrorCodeEntry:
    def __init__(self) -> None:
        self.count = 0
        self.code: Optional[int] = None
        self.sample_message: Optional[str] = None

    def add(self, record: ErrorRecord, line: Optional[str] = None) -> None:
        self.count += 1
        if self.code is None and record.code is not None:
            self.code = record.code
        if self.sample_message is None and record.message:
            self.sample_message = record.message

    def as_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "code": self.code,
            "sample_message": self.sample_message,
        }


class ErrorCodeAccumulator(KeyedAccumulator[ErrorCodeKey, ErrorCodeEntry]):
    def key_for(self, record: ErrorRecord) -> Optional[ErrorCodeKey]:
        if not record.code_name:
            return None
        return ErrorCodeKey(record.code_name)

    def new_entry(self, key: ErrorCodeKey) -> ErrorCodeEntry:
        return ErrorCodeEntry()


# ---------------------------------------------------------------------------
# Transactions


class TransactionEntry:
    def __init__(self) -> None:
        self.count = 0
        self.duration = RunningStat()
        self.commit_ms = RunningStat()
        self.active_ms = RunningStat()
        self.inactive_ms = RunningStat()

    def add(self, record: TransactionRecord, line: Optional[str] = None) -> None:
        self.count += 1
        if record.duration_ms is not None:
            self.duration.add(record.duration_ms)
        for stat, micros in (
            (self.commit_ms, record.commit_duration_micros),
            (self.active_ms, record.time_active_micros),
            (self.inactive_ms, record.time_inactive_micros),
        ):
            millis = micros_to_ms(micros)
            if millis is not None:
                stat.add(millis)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "min_ms": self.duration.min or 0,
            "max_ms": self.duration.max or 0,
            "avg_ms": self.duration.avg,
            "max_commit_ms": self.commit_ms.max or 0,
            "avg_commit_ms": self.commit_ms.avg,
            "max_time_active_ms": self.active_ms.max or 0,
            "avg_time_active_ms": self.active_ms.avg,
            "max_time_inactive_ms": self.inactive_ms.max or 0,
            "avg_time_inactive_ms": self.inactive_ms.avg,
        }


class TransactionAccumulator(KeyedAccumulator[TransactionKey, TransactionEntry]):
    def key_for(self, record: TransactionRecord) -> Optional[TransactionKey]:
        return TransactionKey(record.retry_counter, record.termination_cause, record.commit_type)

    def new_entry(self, key: TransactionKey) -> TransactionEntry:
        return TransactionEntry()


# ---------------------------------------------------------------------------
# Slow planning (top N by planning time)


class SlowPlanningAccumulator:
    """Keep the ``top_n`` records with the longest planning time."""

    def __init__(self, top_n: int = 50) -> None:
        self.top_n = top_n
        self._lock = Lock()
        self._heap: List[Tuple[int, int, Dict[str, Any]]] = []
        self._sequence = itertools.count()

    def accumulate(self, record: OperationRecord, line: Optional[str] = None) -> bool:
        micros = record.planning_time_micros
        if micros is None or self.top_n <= 0:
            return False
        with self._lock:
            if len(self._heap) >= self.top_n and micros <= self._heap[0][0]:
                return False
            row = {
                "planning_time_micros": micros,
                "namespace": str(record.namespace),
                "operation": record.op_type.value,
                "duration_ms": record.duration_ms,
                "plan_summary": record.plan_summary,
                "query_hash": record.query_hash,
                "sanitized_filter": record.sanitized_filter,
                "app_name": record.app_name,
                "sample_line": line,
            }
            item = (micros, next(self._sequence), row)
            if len(self._heap) < self.top_n:
                heapq.heappush(self._heap, item)
            else:
                heapq.heapreplace(self._heap, item)
        return True

    def snapshot(self) -> List[Dict[str, Any]]:
        ordered = sorted(self._heap, key=lambda item: (-item[0], item[1]))
        return [dict(row) for _, _, row in ordered]

    def __len__(self) -> int:
        return len(self._heap)


# ---------------------------------------------------------------------------
# Distinct connections per application name


class AppNameConnectionAccumulator:
    """Distinct connection ids per ``appName`` per source file."""

    UNKNOWN_APP = "unknown"

    def __init__(self) -> None:
        self._lock = Lock()
        self._by_file: Dict[str, Dict[str, Set[str]]] = {}

    def record(self, file_name: str, app_name: Optional[str], connection_id: Optional[str]) -> None:
        if not connection_id:
            return
        app = app_name or self.UNKNOWN_APP
        with self._lock:
            per_app = self._by_file.setdefault(file_name, {})
            per_app.setdefault(app, set()).add(connection_id)

    def connections_for(self, file_name: str, app_name: str) -> int:
        return len(self._by_file.get(file_name, {}).get(app_name, ()))

    def aggregated(self) -> Dict[str, int]:
        """Distinct ``(file, connection)`` count per app across all files."""

        totals: Dict[str, int] = {}
        for per_app in self._by_file.values():
            for app, connections in per_app.items():
                totals[app] = totals.get(app, 0) + len(connections)
        return totals

    def snapshot(self) -> Dict[str, Any]:
        return {
            "by_file": {
                file_name: {app: len(conns) for app, conns in sorted(per_app.items())}
                for file_name, per_app in sorted(self._by_file.items())
            },
            "totals": dict(sorted(self.aggregated().items())),
        }

    def __len__(self) -> int:
        return sum(len(per_app) for per_app in self._by_file.values())
