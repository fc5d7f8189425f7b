"""Cheap substring-level keep/ignore decisions made before JSON parsing."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from ..utils.counters import KeyCounter
from .filter_config import FilterConfig


TARGET_OPERATION_MARKERS = (
    '"find":',
    '"aggregate":',
    '"update":',
    '"insert":',
    '"delete":',
    '"findAndModify":',
    '"getMore":',
    '"count":',
    '"distinct":',
)

CLIENT_METADATA_MARKER = '"msg":"client metadata"'
ACCESS_COMPONENT_MARKER = '"c":"ACCESS"'
AUTH_SUCCESS_MARKER = '"msg":"Successfully authenticated"'
NETWORK_COMPONENT_MARKER = '"c":"NETWORK"'
CONNECTION_ACCEPTED_MARKER = '"msg":"Connection accepted"'
CONNECTION_ENDED_MARKER = '"msg":"Connection ended"'


class IgnoredCategory(str, Enum):
    NON_JSON = "NON_JSON"
    NETWORK = "NETWORK"
    ACCESS = "ACCESS"
    STORAGE = "STORAGE"
    CONTROL = "CONTROL"
    HEALTH_CHECK = "HEALTH_CHECK"
    REPLICATION = "REPLICATION"
    ADMIN_DB = "ADMIN_DB"
    LOCAL_DB = "LOCAL_DB"
    CONFIG_DB = "CONFIG_DB"
    PROFILING = "PROFILING"
    TTL_MONITOR = "TTL_MONITOR"
    OTHER = "OTHER"


_CATEGORY_MARKERS = (
    (IgnoredCategory.NETWORK, ('"c":"NETWORK"',)),
    (IgnoredCategory.ACCESS, ('"c":"ACCESS"',)),
    (IgnoredCategory.STORAGE, ('"c":"STORAGE"',)),
    (IgnoredCategory.CONTROL, ('"c":"CONTROL"',)),
    (IgnoredCategory.HEALTH_CHECK, ('"hello":1', '"isMaster":1')),
    (IgnoredCategory.REPLICATION, ('"replSetHeartbeat"',)),
    (IgnoredCategory.ADMIN_DB, ('"$db":"admin"',)),
    (IgnoredCategory.LOCAL_DB, ('"$db":"local"',)),
    (IgnoredCategory.CONFIG_DB, ('"$db":"config"',)),
    (IgnoredCategory.PROFILING, ('"profile":',)),
    (IgnoredCategory.TTL_MONITOR, ("TTL",)),
)


def is_json_like(line: str) -> bool:
    # leading whitespace before the opening brace is tolerated
    return line.lstrip().startswith("{")


def is_ttl_operation(line: str) -> bool:
    """Return True for background TTL deletion lines."""

    return "TTL" in line and ("deleted" in line or "Deleted expired documents" in line)


def is_auth_success(line: str) -> bool:
    return ACCESS_COMPONENT_MARKER in line and AUTH_SUCCESS_MARKER in line


def is_client_metadata(line: str) -> bool:
    return CLIENT_METADATA_MARKER in line


def is_connection_lifecycle(line: str) -> bool:
    return NETWORK_COMPONENT_MARKER in line and (
        CONNECTION_ACCEPTED_MARKER in line or CONNECTION_ENDED_MARKER in line
    )


def contains_target_operation(line: str) -> bool:
    for marker in TARGET_OPERATION_MARKERS:
        if marker in line:
            return True
    return False


def categorize_ignored(line: str) -> IgnoredCategory:
    if not is_json_like(line):
        return IgnoredCategory.NON_JSON
    for category, markers in _CATEGORY_MARKERS:
        for marker in markers:
            if marker in line:
                return category
    return IgnoredCategory.OTHER


class LineFilter:
    """Decide whether a raw line is worth handing to the extractor.

    Ignored lines are tallied per :class:`IgnoredCategory` in the injected
    counter so the run summary can explain what was thrown away.
    """

    def __init__(
        self,
        config: Optional[FilterConfig] = None,
        *,
        ignored_counter: Optional[KeyCounter] = None,
    ) -> None:
        self.config = config or FilterConfig()
        self.ignored_counter = ignored_counter if ignored_counter is not None else KeyCounter()

    def is_retained(self, line: str) -> bool:
        if not is_json_like(line):
            return False
        if contains_target_operation(line):
            return True
        if is_client_metadata(line) or is_auth_success(line) or is_connection_lifecycle(line):
            return True
        return not self.config.should_ignore(line)

    def should_ignore(self, line: str) -> bool:
        if self.is_retained(line):
            return False
        self.ignored_counter.increment(categorize_ignored(line).value)
        return True
