"""Query filter serialization with optional literal redaction."""

from __future__ import annotations

import json
import re
from typing import Any

from ..utils.logging_utils import get_logger

LOGGER = get_logger("ingest.sanitizer")

REDACTED = "xxx"
_DIGIT = re.compile(r"\d")

# Extended-JSON wrappers and operators whose values describe shape, not data.
PRESERVED_KEYS = frozenset(
    {
        "$date",
        "$oid",
        "$timestamp",
        "$uuid",
        "$numberLong",
        "$numberInt",
        "$skip",
        "$limit",
        "$geometry",
        "$geoWithin",
        "$geoIntersects",
        "$near",
        "$nearSphere",
        "$box",
        "$center",
        "$centerSphere",
        "$polygon",
        "$maxDistance",
        "$minDistance",
    }
)


def _redact_number(value: Any) -> Any:
    if value in (1, -1) and not isinstance(value, bool):
        return value
    text = _DIGIT.sub("9", repr(value))
    try:
        return int(text) if isinstance(value, int) else float(text)
    except ValueError:
        return text


def redact_value(value: Any, key: str = "") -> Any:
    """Recursively replace literals while keeping the document's shape."""

    if key in PRESERVED_KEYS:
        return value
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, (int, float)):
        return _redact_number(value)
    if isinstance(value, str):
        return REDACTED
    if isinstance(value, list):
        return [redact_value(item) for item in value]
    if isinstance(value, dict):
        if key == "$regularExpression":
            redacted = dict(value)
            if "pattern" in redacted:
                redacted["pattern"] = REDACTED
            return redacted
        return {name: redact_value(item, name) for name, item in value.items()}
    return REDACTED


def sanitize_filter(filter_doc: Any, *, redact: bool) -> str:
    """Serialize *filter_doc* compactly, redacting literals when asked."""

    payload = redact_value(filter_doc) if redact else filter_doc
    try:
        return json.dumps(payload, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        LOGGER.debug("Could not serialize filter %r", filter_doc, exc_info=True)
        return json.dumps({"sanitization_error": REDACTED})
