"""Two-pass connection correlation feeding :class:`DriverStatsAccumulator`.

Pass 1 scans a file in parallel batches and builds the connection identity
map (who authenticated on which ``connNNN``) plus first-seen start times.
Pass 2 re-reads the same file strictly in order, joins client metadata to
those identities and turns ``Connection ended`` lines into lifetimes.
"""

from __future__ import annotations

import json
import threading
from concurrent.futures import Future, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..accumulators.drivers import ClientMetadata, DriverStatsAccumulator
from ..config import settings
from ..ingest.line_filter import (
    AUTH_SUCCESS_MARKER,
    CONNECTION_ENDED_MARKER,
    is_client_metadata,
)
from ..ingest.line_source import LineSource
from ..ingest.timestamps import parse_epoch_millis
from ..utils.concurrency import create_thread_pool
from ..utils.logging_utils import get_logger

LOGGER = get_logger("correlate.correlator")

AUTH_MARKERS = (AUTH_SUCCESS_MARKER, '"msg":"Authentication succeeded"')


@dataclass(frozen=True)
class AuthIdentity:
    username: str
    database: Optional[str] = None
    mechanism: Optional[str] = None
    line: Optional[str] = None


@dataclass
class ConnectionContext:
    """Pass-2 view of one open connection."""

    start_ms: Optional[int] = None
    driver_key: Optional[str] = None
    last_seen_ms: int = 0


@dataclass
class CorrelatorStats:
    auth_lines: int = 0
    metadata_lines: int = 0
    connection_end_lines: int = 0
    connections_recorded: int = 0
    internal_connections: int = 0
    lifetimes_recorded: int = 0
    evicted: int = 0
    unmatched_dropped: int = 0
    pass1_batches_failed: int = 0
    line_errors: int = 0

    def as_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)


@dataclass
class _Pass1Result:
    identities: Dict[str, Tuple[int, AuthIdentity]] = field(default_factory=dict)
    starts: Dict[str, int] = field(default_factory=dict)
    auth_lines: int = 0
    metadata_lines: int = 0


def _is_auth_line(line: str) -> bool:
    return any(marker in line for marker in AUTH_MARKERS)


def _load(line: str) -> Optional[Dict[str, Any]]:
    try:
        entry = json.loads(line)
    except ValueError:
        return None
    return entry if isinstance(entry, dict) else None


def _connection_id(entry: Dict[str, Any]) -> Optional[str]:
    ctx = entry.get("ctx")
    if isinstance(ctx, str) and ctx.startswith("conn"):
        return ctx
    return None


def _timestamp(entry: Dict[str, Any]) -> Optional[int]:
    return parse_epoch_millis(entry.get("t"))


def scan_pass1_batch(lines: Iterable[str]) -> _Pass1Result:
    """Collect auth identities and connection starts from one batch."""

    result = _Pass1Result()
    for line in lines:
        entry = _load(line)
        if entry is None:
            continue
        ctx = _connection_id(entry)
        if ctx is None:
            continue
        attr = entry.get("attr") if isinstance(entry.get("attr"), dict) else {}
        stamp = _timestamp(entry)

        if _is_auth_line(line):
            username = attr.get("user") or attr.get("principalName")
            if not username:
                continue
            result.auth_lines += 1
            identity = AuthIdentity(
                username=str(username),
                database=attr.get("db") or attr.get("authenticationDatabase"),
                mechanism=attr.get("mechanism"),
                line=line,
            )
            order = stamp if stamp is not None else 0
            current = result.identities.get(ctx)
            if current is None or order < current[0]:
                result.identities[ctx] = (order, identity)
        elif is_client_metadata(line) and stamp is not None:
            result.metadata_lines += 1
            current_start = result.starts.get(ctx)
            if current_start is None or stamp < current_start:
                result.starts[ctx] = stamp
    return result


def _string(source: Dict[str, Any], key: str) -> Optional[str]:
    value = source.get(key)
    return value if isinstance(value, str) and value else None


def parse_client_metadata(attr: Dict[str, Any]) -> Optional[ClientMetadata]:
    doc = attr.get("doc")
    if not isinstance(doc, dict):
        return None
    driver = doc.get("driver") if isinstance(doc.get("driver"), dict) else {}
    os_info = doc.get("os") if isinstance(doc.get("os"), dict) else {}
    application = doc.get("application") if isinstance(doc.get("application"), dict) else {}
    compressors = attr.get("negotiatedCompressors")
    if not isinstance(compressors, list):
        compressors = []
    return ClientMetadata(
        driver_name=_string(driver, "name"),
        driver_version=_string(driver, "version"),
        os_type=_string(os_info, "type"),
        os_name=_string(os_info, "name"),
        platform=_string(os_info, "architecture"),
        compressors=frozenset(item for item in compressors if isinstance(item, str) and item),
        app_name=_string(application, "name"),
    )


class ConnectionCorrelator:
    """Run the two correlation passes for one file at a time."""

    def __init__(
        self,
        drivers: DriverStatsAccumulator,
        *,
        pass1_workers: Optional[int] = None,
        batch_size: Optional[int] = None,
        max_age_ms: Optional[int] = None,
        cleanup_every: Optional[int] = None,
    ) -> None:
        self.drivers = drivers
        self.pass1_workers = pass1_workers or settings.pass1_workers
        self.batch_size = batch_size or settings.batch_size
        self.max_age_ms = max_age_ms or settings.correlator_max_age_ms
        self.cleanup_every = cleanup_every or settings.correlator_cleanup_every
        self.pass1_complete = threading.Event()
        self.stats = CorrelatorStats()
        self._lock = threading.Lock()
        self._identities: Dict[str, Tuple[int, AuthIdentity]] = {}
        self._starts: Dict[str, int] = {}
        self._contexts: Dict[str, ConnectionContext] = {}
        self._pending_ends: Dict[str, int] = {}
        self._newest_ms = 0

    # ------------------------------------------------------------------
    # Orchestration

    def correlate_file(self, path: Path, *, max_line_bytes: Optional[int] = None) -> CorrelatorStats:
        """Run both passes over *path*; the second pass re-opens the file."""

        self.reset()
        with LineSource.open(path, max_line_bytes=max_line_bytes) as source:
            self.run_pass1(source)
        with LineSource.open(path, max_line_bytes=max_line_bytes) as source:
            self.run_pass2(source)
        LOGGER.info("Correlated %s: %s", path, self.stats.as_dict())
        return self.stats

    def reset(self) -> None:
        with self._lock:
            self.pass1_complete.clear()
            self.stats = CorrelatorStats()
            self._identities.clear()
            self._starts.clear()
            self._contexts.clear()
            self._pending_ends.clear()
            self._newest_ms = 0

    def identity_for(self, ctx: str) -> Optional[AuthIdentity]:
        with self._lock:
            found = self._identities.get(ctx)
        return found[1] if found else None

    # ------------------------------------------------------------------
    # Pass 1

    def run_pass1(self, lines: Iterable[str]) -> None:
        futures: List[Future] = []
        batch: List[str] = []
        with create_thread_pool(self.pass1_workers, prefix="logstats-pass1") as pool:
            for line in lines:
                if not (_is_auth_line(line) or is_client_metadata(line)):
                    continue
                batch.append(line)
                if len(batch) >= self.batch_size:
                    futures.append(pool.submit(scan_pass1_batch, batch))
                    batch = []
            if batch:
                futures.append(pool.submit(scan_pass1_batch, batch))

            wait(futures)
            for future in futures:
                try:
                    partial = future.result()
                except Exception:
                    self.stats.pass1_batches_failed += 1
                    LOGGER.error("Pass 1 batch failed", exc_info=True)
                    continue
                self._merge_pass1(partial)

        self.pass1_complete.set()
        LOGGER.debug(
            "Pass 1 complete: %d identities, %d connection starts",
            len(self._identities),
            len(self._starts),
        )

    def _merge_pass1(self, partial: _Pass1Result) -> None:
        with self._lock:
            for ctx, candidate in partial.identities.items():
                current = self._identities.get(ctx)
                if current is None or candidate[0] < current[0]:
                    self._identities[ctx] = candidate
            for ctx, start in partial.starts.items():
                current_start = self._starts.get(ctx)
                if current_start is None or start < current_start:
                    self._starts[ctx] = start
            self.stats.auth_lines += partial.auth_lines
            self.stats.metadata_lines += partial.metadata_lines

    # ------------------------------------------------------------------
    # Pass 2

    def run_pass2(self, lines: Iterable[str]) -> None:
        if not self.pass1_complete.is_set():
            raise RuntimeError("Pass 2 cannot start before pass 1 has completed")

        for index, line in enumerate(lines, 1):
            try:
                if is_client_metadata(line):
                    self._handle_metadata(line)
                elif CONNECTION_ENDED_MARKER in line:
                    self._handle_end(line)
            except Exception:
                self.stats.line_errors += 1
                LOGGER.warning("Skipping connection line: %s", line[:200], exc_info=True)
            if index % self.cleanup_every == 0:
                self.evict_stale()

        self._reconcile()
        self.stats.unmatched_dropped += len(self._contexts) + len(self._pending_ends)
        self._contexts.clear()
        self._pending_ends.clear()

    def _handle_metadata(self, line: str) -> None:
        entry = _load(line)
        if entry is None:
            return
        ctx = _connection_id(entry)
        stamp = _timestamp(entry)
        attr = entry.get("attr")
        if ctx is None or stamp is None or not isinstance(attr, dict):
            return
        metadata = parse_client_metadata(attr)
        if metadata is None:
            return
        self._newest_ms = max(self._newest_ms, stamp)

        identity = self.identity_for(ctx)
        remote = attr.get("remote") if isinstance(attr.get("remote"), str) else None
        driver_key = self.drivers.record_connection(
            metadata,
            username=identity.username if identity else None,
            remote=remote,
            metadata_line=line,
            auth_line=identity.line if identity else None,
        )
        if driver_key is None:
            self.stats.internal_connections += 1
            return
        self.stats.connections_recorded += 1

        context = self._contexts.setdefault(ctx, ConnectionContext())
        context.driver_key = driver_key
        if context.start_ms is None:
            context.start_ms = self._starts.get(ctx, stamp)
        context.last_seen_ms = stamp

        end_ms = self._pending_ends.pop(ctx, None)
        if end_ms is not None:
            self._close(ctx, context, end_ms)

    def _handle_end(self, line: str) -> None:
        entry = _load(line)
        if entry is None:
            return
        ctx = _connection_id(entry)
        stamp = _timestamp(entry)
        if ctx is None or stamp is None:
            return
        self.stats.connection_end_lines += 1
        self._newest_ms = max(self._newest_ms, stamp)

        context = self._contexts.get(ctx)
        if context is not None and context.driver_key and context.start_ms is not None:
            self._close(ctx, context, stamp)
        else:
            self._pending_ends[ctx] = stamp

    def _close(self, ctx: str, context: ConnectionContext, end_ms: int) -> None:
        lifetime = end_ms - (context.start_ms or end_ms)
        if context.driver_key and self.drivers.record_lifetime(context.driver_key, lifetime):
            self.stats.lifetimes_recorded += 1
        self._contexts.pop(ctx, None)

    def evict_stale(self) -> int:
        """Drop unmatched entries older than ``max_age_ms`` before the newest timestamp."""

        cutoff = self._newest_ms - self.max_age_ms
        stale_contexts = [
            ctx for ctx, context in self._contexts.items() if context.last_seen_ms < cutoff
        ]
        stale_ends = [ctx for ctx, stamp in self._pending_ends.items() if stamp < cutoff]
        for ctx in stale_contexts:
            del self._contexts[ctx]
        for ctx in stale_ends:
            del self._pending_ends[ctx]
        evicted = len(stale_contexts) + len(stale_ends)
        if evicted:
            self.stats.evicted += evicted
            LOGGER.debug("Evicted %d stale connection entries", evicted)
        return evicted

    def _reconcile(self) -> None:
        for ctx in list(self._pending_ends):
            context = self._contexts.get(ctx)
            if context is None or not context.driver_key or context.start_ms is None:
                continue
            self._close(ctx, context, self._pending_ends.pop(ctx))
