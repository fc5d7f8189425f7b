"""Runtime status helpers for an analysis run."""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Iterable, Optional

RECENT_FILES_LIMIT = 10


def _now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _initial_state() -> Dict[str, Any]:
    return {
        "run_in_progress": False,
        "run_started_at": None,
        "run_finished_at": None,
        "files_total": 0,
        "files_succeeded": 0,
        "files_failed": 0,
        "current_file": None,
        "last_file": None,
        "recent_files": [],
    }


_LOCK = Lock()
_STATE: Dict[str, Any] = _initial_state()


def reset() -> None:
    """Forget everything recorded so far."""

    with _LOCK:
        _STATE.clear()
        _STATE.update(_initial_state())


def run_started(paths: Iterable[Any]) -> None:
    """Mark the beginning of a run over *paths*."""

    files = [str(path) for path in paths]
    with _LOCK:
        _STATE.update(_initial_state())
        _STATE["run_in_progress"] = True
        _STATE["run_started_at"] = _now_iso()
        _STATE["files_total"] = len(files)


def file_started(path: Any, *, shard: Optional[str] = None) -> None:
    now = _now_iso()
    with _LOCK:
        _STATE["current_file"] = {
            "file": str(path),
            "shard": shard,
            "phase": "starting",
            "started_at": now,
            "updated_at": now,
            "metrics": {},
        }


def file_phase(
    path: Any,
    phase: str,
    *,
    detail: Optional[str] = None,
    metrics: Optional[Dict[str, Any]] = None,
) -> None:
    """Update the active file with a new *phase* and optional metrics."""

    now = _now_iso()
    with _LOCK:
        current = _STATE.get("current_file")
        if current is None or current.get("file") != str(path):
            current = {
                "file": str(path),
                "started_at": now,
                "metrics": {},
            }
            _STATE["current_file"] = current
        current["phase"] = phase
        current["updated_at"] = now
        if detail is not None:
            current["detail"] = detail
        if metrics:
            stored = current.setdefault("metrics", {})
            stored.update(metrics)


def _remember(summary: Dict[str, Any]) -> None:
    _STATE["last_file"] = summary
    _STATE["current_file"] = None
    recent = _STATE.setdefault("recent_files", [])
    recent.append(summary)
    if len(recent) > RECENT_FILES_LIMIT:
        del recent[:-RECENT_FILES_LIMIT]


def file_finished(
    path: Any,
    *,
    duration_seconds: float,
    stats: Dict[str, Any],
    timings: Dict[str, float],
) -> None:
    """Record successful completion of *path*."""

    summary = {
        "file": str(path),
        "completed_at": _now_iso(),
        "success": True,
        "duration_seconds": duration_seconds,
        "stats": dict(stats),
        "timings": dict(timings),
    }
    with _LOCK:
        _STATE["files_succeeded"] += 1
        _remember(summary)


def file_failed(path: Any, error: str, *, duration_seconds: Optional[float] = None) -> None:
    """Capture failure details for *path*."""

    summary: Dict[str, Any] = {
        "file": str(path),
        "completed_at": _now_iso(),
        "success": False,
        "error": error,
    }
    if duration_seconds is not None:
        summary["duration_seconds"] = duration_seconds
    with _LOCK:
        _STATE["files_failed"] += 1
        _remember(summary)


def run_finished() -> None:
    with _LOCK:
        _STATE["run_in_progress"] = False
        _STATE["run_finished_at"] = _now_iso()
        _STATE["current_file"] = None


def get_status() -> Dict[str, Any]:
    """Return a snapshot of the current processing status."""

    with _LOCK:
        return copy.deepcopy(_STATE)
