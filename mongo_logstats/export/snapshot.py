"""JSON snapshot export of an :class:`AnalysisResult`."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

from ..utils.logging_utils import get_logger

LOGGER = get_logger("export.snapshot")


def write_snapshot(payload: Dict[str, Any], destination: Path) -> Dict[str, Any]:
    """Write *payload* (``AnalysisResult.as_dict()``) as indented JSON."""

    path = Path(destination)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2, default=str)
    size = path.stat().st_size
    LOGGER.info("Wrote analysis snapshot to %s (%d bytes)", path, size)
    return {"path": str(path), "bytes": size}


def load_snapshot(path: Path) -> Dict[str, Any]:
    with Path(path).open("r", encoding="utf-8") as handle:
        return json.load(handle)
