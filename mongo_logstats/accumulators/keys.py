"""Composite grouping keys for the accumulator family."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class NamespaceOperationKey:
    namespace: str
    operation: str

    def as_dict(self) -> Dict[str, Any]:
        return {"namespace": self.namespace, "operation": self.operation}


@dataclass(frozen=True)
class QueryHashKey:
    query_hash: str
    namespace: str
    operation: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "query_hash": self.query_hash,
            "namespace": self.namespace,
            "operation": self.operation,
        }


@dataclass(frozen=True)
class PlanCacheKey:
    namespace: str
    query_hash: Optional[str]
    plan_cache_key: str
    plan_summary: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "namespace": self.namespace,
            "query_hash": self.query_hash,
            "plan_cache_key": self.plan_cache_key,
            "plan_summary": self.plan_summary,
        }


@dataclass(frozen=True)
class ErrorCodeKey:
    code_name: str

    def as_dict(self) -> Dict[str, Any]:
        return {"code_name": self.code_name}


@dataclass(frozen=True)
class TransactionKey:
    retry_counter: Optional[int]
    termination_cause: Optional[str]
    commit_type: Optional[str]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "retry_counter": self.retry_counter,
            "termination_cause": self.termination_cause,
            "commit_type": self.commit_type,
        }


@dataclass(frozen=True)
class IndexUsageKey:
    namespace: str
    plan_summary: str

    def as_dict(self) -> Dict[str, Any]:
        return {"namespace": self.namespace, "plan_summary": self.plan_summary}
