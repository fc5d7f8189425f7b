"""Configuration primitives for the log statistics engine."""

from __future__ import annotations

from dataclasses import dataclass, field
import os

from .utils.logging_utils import get_logger

LOGGER = get_logger("config")


def _env_flag(name: str, *, default: bool) -> bool:
    """Interpret common truthy/falsey environment values."""

    value = os.environ.get(name)
    if value is None:
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _env_int(name: str, default: int) -> int:
    """Read a positive integer from the environment, falling back on bad input."""

    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        LOGGER.warning(
            "Ignoring invalid integer %s=%r; using %d", name, value, default
        )
        return default
    if parsed <= 0:
        LOGGER.warning(
            "Ignoring non-positive %s=%d; using %d", name, parsed, default
        )
        return default
    return parsed


def _default_workers() -> int:
    return _env_int("MONGO_LOGSTATS_WORKERS", os.cpu_count() or 1)


def _default_pass1_workers() -> int:
    return _env_int("MONGO_LOGSTATS_PASS1_WORKERS", 2 * _default_workers())


@dataclass(frozen=True)
class Settings:
    """Runtime configuration defaults for the analyzer."""

    batch_size: int = _env_int("MONGO_LOGSTATS_BATCH_SIZE", 25000)
    max_line_bytes: int = _env_int("MONGO_LOGSTATS_MAX_LINE_BYTES", 1024 * 1024)
    workers: int = field(default_factory=_default_workers)
    pass1_workers: int = field(default_factory=_default_pass1_workers)
    redact_queries: bool = _env_flag("MONGO_LOGSTATS_REDACT", default=False)
    enable_driver_stats: bool = _env_flag("MONGO_LOGSTATS_DRIVER_STATS", default=False)
    enable_shard_tracking: bool = _env_flag("MONGO_LOGSTATS_SHARDS", default=False)
    enable_app_name_stats: bool = _env_flag("MONGO_LOGSTATS_APP_NAMES", default=True)
    progress_interval_seconds: int = _env_int("MONGO_LOGSTATS_PROGRESS_SECONDS", 5)
    correlator_max_age_ms: int = _env_int(
        "MONGO_LOGSTATS_CORRELATOR_MAX_AGE_MS", 60 * 60 * 1000
    )
    correlator_cleanup_every: int = _env_int(
        "MONGO_LOGSTATS_CORRELATOR_CLEANUP_EVERY", 100_000
    )
    slow_planning_top_n: int = _env_int("MONGO_LOGSTATS_SLOW_PLANNING_TOP", 50)
    parquet_compression: str = os.environ.get(
        "MONGO_LOGSTATS_PARQUET_COMPRESSION", "snappy"
    )


settings = Settings()
