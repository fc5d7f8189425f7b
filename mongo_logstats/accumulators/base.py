"""Lock-guarded keyed accumulator and the shared per-operation entry."""

from __future__ import annotations

from threading import Lock
from typing import Any, Dict, Generic, Hashable, Iterator, List, Optional, Tuple, TypeVar

from ..ingest.records import OperationRecord
from .stats import DistributionStat, RunningStat

K = TypeVar("K", bound=Hashable)
E = TypeVar("E")


class KeyedAccumulator(Generic[K, E]):
    """A keyed map of statistics entries with a single write path.

    :meth:`accumulate` is safe under concurrent callers: one lock per
    instance serializes the O(1) get-or-create plus update. Reads
    (:meth:`items`, :meth:`snapshot`) assume writers have finished.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._entries: Dict[K, E] = {}

    # Subclasses provide keying and entry construction -------------------

    def key_for(self, record: Any) -> Optional[K]:
        raise NotImplementedError

    def new_entry(self, key: K) -> E:
        raise NotImplementedError

    def update_entry(self, entry: E, record: Any, line: Optional[str]) -> None:
        entry.add(record, line)  # type: ignore[attr-defined]

    # ---------------------------------------------------------------------

    def accumulate(self, record: Any, line: Optional[str] = None) -> bool:
        """Fold *record* into its entry; returns False when it has no key."""

        key = self.key_for(record)
        if key is None:
            return False
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = self.new_entry(key)
                self._entries[key] = entry
            self.update_entry(entry, record, line)
        return True

    def get(self, key: K) -> Optional[E]:
        return self._entries.get(key)

    def items(self) -> Iterator[Tuple[K, E]]:
        return iter(list(self._entries.items()))

    def snapshot(self) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        for key, entry in self.items():
            row = key.as_dict()  # type: ignore[attr-defined]
            row.update(entry.as_dict())  # type: ignore[attr-defined]
            rows.append(row)
        return rows

    def __len__(self) -> int:
        return len(self._entries)


class OperationStatsEntry:
    """Streaming statistics for one group of :class:`OperationRecord` values.

    ``count`` counts every record folded in; duration figures only see the
    records that carried ``durationMillis``. Averages use integer division.
    """

    def __init__(self) -> None:
        self.count = 0
        self.duration = DistributionStat()
        self.keys_examined = DistributionStat()
        self.docs_examined = DistributionStat()
        self.total_returned = 0
        self.total_reslen = 0
        self.total_shards = 0
        self.total_write_conflicts = 0
        self.storage_read = RunningStat()
        self.storage_written = RunningStat()
        self.sample_line: Optional[str] = None
        self._sample_duration = -1

    def add(self, record: OperationRecord, line: Optional[str] = None) -> None:
        self.count += 1
        if record.duration_ms is not None:
            self.duration.add(record.duration_ms)
        if record.keys_examined is not None:
            self.keys_examined.add(record.keys_examined)
        if record.docs_examined is not None:
            self.docs_examined.add(record.docs_examined)
        if record.n_returned is not None:
            self.total_returned += record.n_returned
        if record.reslen is not None:
            self.total_reslen += record.reslen
        if record.n_shards is not None:
            self.total_shards += record.n_shards
        if record.write_conflicts is not None:
            self.total_write_conflicts += record.write_conflicts
        if record.storage_bytes_read is not None:
            self.storage_read.add(record.storage_bytes_read)
        if record.storage_bytes_written is not None:
            self.storage_written.add(record.storage_bytes_written)
        self._keep_sample(record.duration_ms, line)

    def _keep_sample(self, duration_ms: Optional[int], line: Optional[str]) -> None:
        if line is None:
            return
        if duration_ms is not None and duration_ms >= self._sample_duration:
            self.sample_line = line
            self._sample_duration = duration_ms
        elif self.sample_line is None:
            self.sample_line = line

    # Derived figures ------------------------------------------------------

    @property
    def min_ms(self) -> int:
        return self.duration.min if self.duration.min is not None else 0

    @property
    def max_ms(self) -> int:
        return self.duration.max if self.duration.max is not None else 0

    @property
    def avg_ms(self) -> int:
        return self.duration.avg

    @property
    def total_ms(self) -> int:
        return self.duration.total

    @property
    def p95_ms(self) -> float:
        return self.duration.percentile(95.0)

    def _per_record(self, total: int) -> int:
        return total // self.count if self.count else 0

    @property
    def avg_returned(self) -> int:
        return self._per_record(self.total_returned)

    @property
    def avg_keys_examined(self) -> int:
        return self._per_record(self.keys_examined.total)

    @property
    def avg_docs_examined(self) -> int:
        return self._per_record(self.docs_examined.total)

    @property
    def avg_shards(self) -> int:
        return self._per_record(self.total_shards)

    @property
    def examined_to_returned_ratio(self) -> int:
        if self.total_returned > 0:
            return self.docs_examined.total // self.total_returned
        return 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "min_ms": self.min_ms,
            "max_ms": self.max_ms,
            "avg_ms": self.avg_ms,
            "total_ms": self.total_ms,
            "p95_ms": round(self.p95_ms, 2),
            "total_keys_examined": self.keys_examined.total,
            "avg_keys_examined": self.avg_keys_examined,
            "p95_keys_examined": round(self.keys_examined.percentile(95.0), 2),
            "total_docs_examined": self.docs_examined.total,
            "avg_docs_examined": self.avg_docs_examined,
            "p95_docs_examined": round(self.docs_examined.percentile(95.0), 2),
            "total_returned": self.total_returned,
            "avg_returned": self.avg_returned,
            "examined_to_returned_ratio": self.examined_to_returned_ratio,
            "total_reslen": self.total_reslen,
            "avg_shards": self.avg_shards,
            "write_conflicts": self.total_write_conflicts,
            "storage_bytes_read_total": self.storage_read.total,
            "storage_bytes_read_max": self.storage_read.max or 0,
            "storage_bytes_read_avg": self._per_record(self.storage_read.total),
            "storage_bytes_written_total": self.storage_written.total,
            "storage_bytes_written_max": self.storage_written.max or 0,
            "storage_bytes_written_avg": self._per_record(self.storage_written.total),
            "sample_line": self.sample_line,
        }
