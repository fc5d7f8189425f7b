"""Per-driver connection statistics fed by the two-pass correlator."""

from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set

from .stats import RunningStat

INTERNAL_DRIVER_PREFIXES = ("NetworkInterface",)
INTERNAL_DRIVER_NAMES = frozenset({"MongoDB Internal Client"})
NONE_PLACEHOLDER = "none"
UNKNOWN_PLACEHOLDER = "unknown"


def is_internal_driver(name: Optional[str]) -> bool:
    if not isinstance(name, str) or not name:
        return False
    return name in INTERNAL_DRIVER_NAMES or name.startswith(INTERNAL_DRIVER_PREFIXES)


def host_from_remote(remote: str) -> str:
    """Strip the port from ``host:port`` or ``[v6]:port`` remotes."""

    remote = remote.strip()
    if remote.startswith("["):
        closing = remote.find("]")
        if closing > 0:
            return remote[1:closing]
        return remote
    if remote.count(":") == 1:
        return remote.split(":", 1)[0]
    return remote


@dataclass(frozen=True)
class ClientMetadata:
    """Driver / OS fields from a ``client metadata`` log line."""

    driver_name: Optional[str] = None
    driver_version: Optional[str] = None
    os_type: Optional[str] = None
    os_name: Optional[str] = None
    platform: Optional[str] = None
    compressors: FrozenSet[str] = field(default_factory=frozenset)
    app_name: Optional[str] = None

    def driver_key(self, username: Optional[str]) -> str:
        compressors = ",".join(sorted(self.compressors)) if self.compressors else NONE_PLACEHOLDER
        return "|".join(
            (
                self.driver_name or UNKNOWN_PLACEHOLDER,
                self.driver_version or UNKNOWN_PLACEHOLDER,
                self.os_type or UNKNOWN_PLACEHOLDER,
                self.platform or UNKNOWN_PLACEHOLDER,
                compressors,
                username or NONE_PLACEHOLDER,
            )
        )


class DriverStatsEntry:
    def __init__(self, metadata: ClientMetadata) -> None:
        self.metadata = metadata
        self.connection_count = 0
        self.remote_hosts: Set[str] = set()
        self.usernames: Set[str] = set()
        self.compressor_usage: Dict[str, int] = {}
        self.lifetimes = RunningStat()
        self.sample_metadata_line: Optional[str] = None
        self.sample_auth_line: Optional[str] = None

    def add_connection(
        self,
        *,
        remote: Optional[str],
        username: Optional[str],
        metadata_line: Optional[str],
        auth_line: Optional[str],
    ) -> None:
        self.connection_count += 1
        if remote:
            self.remote_hosts.add(host_from_remote(remote))
        if username:
            self.usernames.add(username)
        for compressor in self.metadata.compressors or (NONE_PLACEHOLDER,):
            self.compressor_usage[compressor] = self.compressor_usage.get(compressor, 0) + 1
        if self.sample_metadata_line is None and metadata_line:
            self.sample_metadata_line = metadata_line
        if self.sample_auth_line is None and auth_line:
            self.sample_auth_line = auth_line

    def add_lifetime(self, lifetime_ms: int) -> None:
        if lifetime_ms > 0:
            self.lifetimes.add(lifetime_ms)

    def as_dict(self) -> Dict[str, Any]:
        meta = self.metadata
        return {
            "driver_name": meta.driver_name or UNKNOWN_PLACEHOLDER,
            "driver_version": meta.driver_version or UNKNOWN_PLACEHOLDER,
            "os_type": meta.os_type or UNKNOWN_PLACEHOLDER,
            "os_name": meta.os_name or UNKNOWN_PLACEHOLDER,
            "platform": meta.platform or UNKNOWN_PLACEHOLDER,
            "compressors": sorted(meta.compressors),
            "connection_count": self.connection_count,
            "unique_hosts": len(self.remote_hosts),
            "usernames": sorted(self.usernames),
            "compressor_usage": dict(self.compressor_usage),
            "lifetimes_observed": self.lifetimes.count,
            "avg_lifetime_ms": self.lifetimes.avg,
            "max_lifetime_ms": self.lifetimes.max or 0,
            "sample_metadata_line": self.sample_metadata_line,
            "sample_auth_line": self.sample_auth_line,
        }


class DriverStatsAccumulator:
    """Driver entries keyed by driver/version/os/platform/compressors/user."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._entries: Dict[str, DriverStatsEntry] = {}

    def record_connection(
        self,
        metadata: ClientMetadata,
        *,
        username: Optional[str],
        remote: Optional[str],
        metadata_line: Optional[str] = None,
        auth_line: Optional[str] = None,
    ) -> Optional[str]:
        """Count one connection; returns the driver key or None for internal clients."""

        if is_internal_driver(metadata.driver_name):
            return None
        key = metadata.driver_key(username)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = DriverStatsEntry(metadata)
                self._entries[key] = entry
            entry.add_connection(
                remote=remote,
                username=username,
                metadata_line=metadata_line,
                auth_line=auth_line,
            )
        return key

    def record_lifetime(self, driver_key: str, lifetime_ms: int) -> bool:
        with self._lock:
            entry = self._entries.get(driver_key)
            if entry is None or lifetime_ms <= 0:
                return False
            entry.add_lifetime(lifetime_ms)
        return True

    def get(self, driver_key: str) -> Optional[DriverStatsEntry]:
        return self._entries.get(driver_key)

    def keys(self) -> Iterable[str]:
        return list(self._entries)

    def total_connections(self) -> int:
        return sum(entry.connection_count for entry in self._entries.values())

    def snapshot(self) -> List[Dict[str, Any]]:
        rows = []
        for key, entry in sorted(self._entries.items()):
            row = {"driver_key": key}
            row.update(entry.as_dict())
            rows.append(row)
        return rows

    def __len__(self) -> int:
        return len(self._entries)
