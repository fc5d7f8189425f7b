"""Per-dimension accumulators over :class:`OperationRecord` values."""

from __future__ import annotations

from typing import Any, Dict, Optional

from ..ingest.records import OperationRecord
from .base import KeyedAccumulator, OperationStatsEntry
from .keys import IndexUsageKey, NamespaceOperationKey, PlanCacheKey, QueryHashKey
from .stats import DistributionStat

# ---------------------------------------------------------------------------
# Namespace + operation (main table, also used for TTL deletes)


class NamespaceOperationAccumulator(KeyedAccumulator[NamespaceOperationKey, OperationStatsEntry]):
    def key_for(self, record: OperationRecord) -> Optional[NamespaceOperationKey]:
        return NamespaceOperationKey(str(record.namespace), record.op_type.value)

    def new_entry(self, key: NamespaceOperationKey) -> OperationStatsEntry:
        return OperationStatsEntry()


# ---------------------------------------------------------------------------
# Query shape


class _PlanningMixin:
    def _init_planning(self) -> None:
        self.planning_micros = DistributionStat()
        self.replanned_count = 0
        self.multi_planner_count = 0
        self.replan_reasons: Dict[str, int] = {}

    def _add_planning(self, record: OperationRecord) -> None:
        if record.planning_time_micros is not None:
            self.planning_micros.add(record.planning_time_micros)
        if record.replanned:
            self.replanned_count += 1
            if record.replan_reason:
                self.replan_reasons[record.replan_reason] = (
                    self.replan_reasons.get(record.replan_reason, 0) + 1
                )
        if record.from_multi_planner:
            self.multi_planner_count += 1

    def _planning_dict(self) -> Dict[str, Any]:
        return {
            "planning_count": self.planning_micros.count,
            "planning_min_micros": self.planning_micros.min or 0,
            "planning_max_micros": self.planning_micros.max or 0,
            "planning_avg_micros": self.planning_micros.avg,
            "planning_p95_micros": round(self.planning_micros.percentile(95.0), 2),
            "replanned_count": self.replanned_count,
            "replan_reasons": dict(self.replan_reasons),
            "multi_planner_count": self.multi_planner_count,
        }


class QueryHashEntry(OperationStatsEntry, _PlanningMixin):
    def __init__(self) -> None:
        super().__init__()
        self._init_planning()
        self.plan_summary: Optional[str] = None
        self.read_preferences: Dict[str, int] = {}
        self.sanitized_filter: Optional[str] = None

    def add(self, record: OperationRecord, line: Optional[str] = None) -> None:
        super().add(record, line)
        self._add_planning(record)
        if record.plan_summary:
            self.plan_summary = record.plan_summary
        preference = record.read_preference or "none"
        self.read_preferences[preference] = self.read_preferences.get(preference, 0) + 1
        if self.sanitized_filter is None and record.sanitized_filter is not None:
            self.sanitized_filter = record.sanitized_filter

    def as_dict(self) -> Dict[str, Any]:
        payload = super().as_dict()
        payload.update(self._planning_dict())
        payload["plan_summary"] = self.plan_summary
        payload["read_preferences"] = dict(self.read_preferences)
        payload["sanitized_filter"] = self.sanitized_filter
        return payload


class QueryHashAccumulator(KeyedAccumulator[QueryHashKey, QueryHashEntry]):
    def key_for(self, record: OperationRecord) -> Optional[QueryHashKey]:
        if not record.query_hash:
            return None
        return QueryHashKey(record.query_hash, str(record.namespace), record.op_type.value)

    def new_entry(self, key: QueryHashKey) -> QueryHashEntry:
        return QueryHashEntry()


# ---------------------------------------------------------------------------
# Plan cache


class PlanCacheEntry(OperationStatsEntry, _PlanningMixin):
    def __init__(self, collection_scan: bool) -> None:
        super().__init__()
        self._init_planning()
        self.collection_scan = collection_scan

    def add(self, record: OperationRecord, line: Optional[str] = None) -> None:
        super().add(record, line)
        self._add_planning(record)

    def as_dict(self) -> Dict[str, Any]:
        payload = super().as_dict()
        payload.update(self._planning_dict())
        payload["collection_scan"] = self.collection_scan
        return payload


class PlanCacheAccumulator(KeyedAccumulator[PlanCacheKey, PlanCacheEntry]):
    def key_for(self, record: OperationRecord) -> Optional[PlanCacheKey]:
        if not record.plan_cache_key or not record.plan_summary:
            return None
        return PlanCacheKey(
            str(record.namespace),
            record.query_hash,
            record.plan_cache_key,
            record.plan_summary,
        )

    def new_entry(self, key: PlanCacheKey) -> PlanCacheEntry:
        return PlanCacheEntry("COLLSCAN" in key.plan_summary)

    def collection_scan_count(self) -> int:
        return sum(entry.count for _, entry in self.items() if entry.collection_scan)


# ---------------------------------------------------------------------------
# Index usage


class IndexUsageEntry(OperationStatsEntry):
    def __init__(self, collection_scan: bool) -> None:
        super().__init__()
        self.collection_scan = collection_scan

    def as_dict(self) -> Dict[str, Any]:
        payload = super().as_dict()
        payload["collection_scan"] = self.collection_scan
        return payload


class IndexUsageAccumulator(KeyedAccumulator[IndexUsageKey, IndexUsageEntry]):
    def key_for(self, record: OperationRecord) -> Optional[IndexUsageKey]:
        if not record.plan_summary:
            return None
        return IndexUsageKey(str(record.namespace), record.plan_summary)

    def new_entry(self, key: IndexUsageKey) -> IndexUsageEntry:
        return IndexUsageEntry("COLLSCAN" in key.plan_summary)
