"""The bundle of accumulators one worker batch writes into."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict

from .operations import (
    IndexUsageAccumulator,
    NamespaceOperationAccumulator,
    PlanCacheAccumulator,
    QueryHashAccumulator,
)
from .side import ErrorCodeAccumulator, TransactionAccumulator


@dataclass
class AccumulatorSet:
    """One full set of per-dimension accumulators (global or per shard)."""

    main: NamespaceOperationAccumulator = field(default_factory=NamespaceOperationAccumulator)
    ttl: NamespaceOperationAccumulator = field(default_factory=NamespaceOperationAccumulator)
    query_hash: QueryHashAccumulator = field(default_factory=QueryHashAccumulator)
    plan_cache: PlanCacheAccumulator = field(default_factory=PlanCacheAccumulator)
    error_codes: ErrorCodeAccumulator = field(default_factory=ErrorCodeAccumulator)
    transactions: TransactionAccumulator = field(default_factory=TransactionAccumulator)
    index_usage: IndexUsageAccumulator = field(default_factory=IndexUsageAccumulator)

    def is_empty(self) -> bool:
        return not any(len(accumulator) for accumulator in self.tables().values())

    def tables(self) -> Dict[str, Any]:
        return {
            "namespace_ops": self.main,
            "ttl": self.ttl,
            "query_hash": self.query_hash,
            "plan_cache": self.plan_cache,
            "error_codes": self.error_codes,
            "transactions": self.transactions,
            "index_usage": self.index_usage,
        }

    def sizes(self) -> Dict[str, int]:
        return {name: len(accumulator) for name, accumulator in self.tables().items()}

    def snapshot(self) -> Dict[str, Any]:
        return {name: accumulator.snapshot() for name, accumulator in self.tables().items()}
