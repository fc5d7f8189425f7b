"""Timestamp parsing and the run-wide earliest/latest tracker."""

from __future__ import annotations

import math
from datetime import datetime
from threading import Lock
from typing import Any, Dict, Optional

ISO_PARSE_FORMATS = (
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
)


def parse_epoch_millis(raw: Any) -> Optional[int]:
    """Return epoch milliseconds for a log ``$date`` value, or None."""

    if raw is None:
        return None
    if isinstance(raw, dict):
        raw = raw.get("$date")
        if raw is None:
            return None
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        if isinstance(raw, float) and not math.isfinite(raw):
            return None
        return int(raw)

    text = str(raw).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    for fmt in ISO_PARSE_FORMATS:
        try:
            return int(datetime.strptime(text, fmt).timestamp() * 1000)
        except ValueError:
            continue
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return int(parsed.timestamp() * 1000)


def entry_date(entry: Dict[str, Any]) -> Optional[str]:
    stamp = entry.get("t")
    if isinstance(stamp, dict):
        value = stamp.get("$date")
        return str(value) if value is not None else None
    if isinstance(stamp, str):
        return stamp
    return None


class TimestampRange:
    """Thread-safe earliest/latest observed log timestamps."""

    def __init__(self) -> None:
        self._lock = Lock()
        self.earliest: Optional[str] = None
        self.latest: Optional[str] = None
        self._earliest_ms: Optional[int] = None
        self._latest_ms: Optional[int] = None

    def observe(self, raw: Optional[str]) -> None:
        millis = parse_epoch_millis(raw)
        if millis is None:
            return
        with self._lock:
            if self._earliest_ms is None or millis < self._earliest_ms:
                self._earliest_ms = millis
                self.earliest = raw
            if self._latest_ms is None or millis > self._latest_ms:
                self._latest_ms = millis
                self.latest = raw

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {"earliest": self.earliest, "latest": self.latest}
