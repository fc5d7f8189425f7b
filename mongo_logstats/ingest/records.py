"""Normalized records produced by the extractor."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class OpType(str, Enum):
    """Operation kinds, valued by the names used in reports."""

    CMD = "command"
    QUERY = "find"
    GETMORE = "getMore"
    INSERT = "insert"
    UPDATE = "update"
    UPDATE_W = "update_w"
    REMOVE = "remove"
    AGGREGATE = "aggregate"
    FIND_AND_MODIFY = "findAndModify"
    DISTINCT = "distinct"
    COUNT = "count"
    TTL_DELETE = "ttl_delete"


@dataclass(frozen=True)
class Namespace:
    """A ``database.collection`` pair; the collection may be empty."""

    database: str
    collection: str = ""

    @classmethod
    def parse(cls, text: str) -> "Namespace":
        database, _, collection = str(text).partition(".")
        return cls(database, collection)

    def with_collection(self, collection: str) -> "Namespace":
        return Namespace(self.database, collection)

    def __str__(self) -> str:
        if self.collection:
            return f"{self.database}.{self.collection}"
        return self.database


@dataclass(frozen=True)
class OperationRecord:
    """Performance-relevant fields pulled from one log line."""

    namespace: Namespace
    op_type: OpType
    stat_name: str
    duration_ms: Optional[int] = None
    keys_examined: Optional[int] = None
    docs_examined: Optional[int] = None
    n_returned: Optional[int] = None
    reslen: Optional[int] = None
    storage_bytes_read: Optional[int] = None
    storage_bytes_written: Optional[int] = None
    query_hash: Optional[str] = None
    plan_cache_key: Optional[str] = None
    plan_summary: Optional[str] = None
    planning_time_micros: Optional[int] = None
    replanned: bool = False
    replan_reason: Optional[str] = None
    from_multi_planner: bool = False
    read_preference: Optional[str] = None
    sanitized_filter: Optional[str] = None
    n_shards: Optional[int] = None
    write_conflicts: Optional[int] = None
    app_name: Optional[str] = None
    remote: Optional[str] = None


@dataclass(frozen=True)
class ErrorRecord:
    code_name: str
    code: Optional[int]
    message: Optional[str]


@dataclass(frozen=True)
class TransactionRecord:
    retry_counter: Optional[int]
    termination_cause: Optional[str]
    commit_type: Optional[str]
    duration_ms: Optional[int]
    commit_duration_micros: Optional[int]
    time_active_micros: Optional[int]
    time_inactive_micros: Optional[int]
