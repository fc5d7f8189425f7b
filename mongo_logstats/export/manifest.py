"""Run manifest stored next to exported Parquet tables."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

from ..utils.logging_utils import get_logger

LOGGER = get_logger("export.manifest")

MANIFEST_NAME = "manifest.json"
MANIFEST_VERSION = 1


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def load_manifest(path: Path) -> Dict[str, Any] | None:
    if not path.exists():
        return None
    try:
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except json.JSONDecodeError:
        LOGGER.warning("Manifest at %s is corrupt; starting fresh", path)
        return None


def append_run_entry(
    path: Path,
    *,
    source_files: List[str],
    failed_files: Dict[str, str],
    row_counts: Dict[str, int],
    artifacts: Dict[str, str],
    status: Dict[str, Any],
) -> Dict[str, Any]:
    """Record one export run; earlier runs stay listed under ``runs``."""

    manifest = load_manifest(path)
    now = _now()

    if manifest is None:
        manifest = {
            "manifest_version": MANIFEST_VERSION,
            "created_at": now,
            "runs": [],
        }

    manifest["updated_at"] = now
    run_entry = {
        "run_id": len(manifest["runs"]) + 1,
        "created_at": now,
        "source_files": list(source_files),
        "failed_files": dict(failed_files),
        "row_counts": dict(row_counts),
        "artifacts": dict(artifacts),
        "status": status,
    }
    manifest["runs"].append(run_entry)

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(manifest, handle, indent=2, default=str)

    LOGGER.info("Updated manifest at %s with run #%d", path, run_entry["run_id"])
    return {"path": str(path), "run_id": run_entry["run_id"]}
