"""Substring rule set deciding which log lines are noise."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from ..utils.logging_utils import get_logger

LOGGER = get_logger("ingest.filter_config")


DEFAULT_IGNORE_PATTERNS: List[str] = [
    # components
    '"c":"NETWORK"',
    '"c":"ACCESS"',
    '"c":"CONNPOOL"',
    # health checks and server introspection
    '"hello":1',
    '"isMaster":1',
    '"ping":1',
    '"serverStatus":1',
    '"buildInfo"',
    '"getParameter":',
    '"getCmdLineOpts":1',
    '"getDefaultRWConcern":1',
    '"listDatabases":1',
    # sessions / auth handshakes
    '"endSessions":',
    '"startSession"',
    '"saslContinue":1',
    # replication chatter
    '"replSetHeartbeat":"',
    "replSetUpdatePosition",
    '"replSetGetStatus":1',
    # internal databases
    '"$db":"local"',
    '"$db":"config"',
    '"ns":"local.oplog.rs"',
    '"ns":"local.clustermanager"',
    '"ns":"config.system.sessions"',
    '"ns":"config.mongos"',
    # storage / control / sharding components
    '"c":"STORAGE"',
    '"c":"CONTROL"',
    '"c":"SHARDING"',
    # stats commands
    '"dbstats":1',
    '"collStats":"',
    '"listIndexes":"',
    # maintenance
    '"ctx":"TTLMonitor"',
    '"logRotate":"',
]


def _clean(patterns: Iterable[Any]) -> List[str]:
    cleaned: List[str] = []
    for pattern in patterns:
        if not isinstance(pattern, str):
            LOGGER.warning("Ignoring non-string filter pattern %r", pattern)
            continue
        if pattern.strip():
            cleaned.append(pattern.strip())
    return cleaned


class FilterConfig:
    """Ordered list of substrings; any hit marks the line as ignorable."""

    def __init__(self, patterns: Optional[Iterable[str]] = None) -> None:
        source = DEFAULT_IGNORE_PATTERNS if patterns is None else patterns
        self.patterns: List[str] = _clean(source)

    def should_ignore(self, line: str) -> bool:
        for pattern in self.patterns:
            if pattern in line:
                return True
        return False

    # ------------------------------------------------------------------
    # Loading

    @classmethod
    def from_mapping(cls, payload: Dict[str, Any]) -> "FilterConfig":
        """Build a config from ``ignore_patterns``/``add_patterns``/``remove_patterns``."""

        if "ignore_patterns" in payload:
            patterns = _clean(payload.get("ignore_patterns") or [])
        else:
            patterns = list(DEFAULT_IGNORE_PATTERNS)

        for pattern in _clean(payload.get("add_patterns") or []):
            if pattern not in patterns:
                patterns.append(pattern)

        removals = set(_clean(payload.get("remove_patterns") or []))
        if removals:
            patterns = [pattern for pattern in patterns if pattern not in removals]

        return cls(patterns)

    @classmethod
    def load(cls, path: Optional[Path]) -> "FilterConfig":
        """Load overrides from a JSON file; fall back to defaults on any problem."""

        if path is None:
            return cls()

        path = Path(path)
        if not path.exists():
            LOGGER.warning("Filter config %s not found; using default patterns", path)
            return cls()
        try:
            with path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except json.JSONDecodeError:
            LOGGER.warning("Filter config at %s is corrupt; using default patterns", path)
            return cls()

        if not isinstance(payload, dict):
            LOGGER.warning("Filter config at %s is not an object; using default patterns", path)
            return cls()

        config = cls.from_mapping(payload)
        LOGGER.info("Loaded %d ignore patterns from %s", len(config.patterns), path)
        return config
