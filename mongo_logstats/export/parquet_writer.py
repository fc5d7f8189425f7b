"""Parquet serialization of accumulator snapshots."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import pyarrow as pa
import pyarrow.parquet as pq

from ..accumulators.accumulator_set import AccumulatorSet
from ..config import settings
from ..utils.logging_utils import get_logger

LOGGER = get_logger("export.parquet_writer")

TABLE_NAMES = (
    "namespace_ops",
    "ttl",
    "query_hash",
    "plan_cache",
    "error_codes",
    "transactions",
    "index_usage",
)

ROW_CHUNK = 1000


def _flatten_row(row: Mapping[str, Any], shard: Optional[str]) -> Dict[str, Any]:
    """Nested mappings and lists become JSON text so every column is scalar."""

    payload: Dict[str, Any] = {"shard": shard}
    for key, value in row.items():
        if isinstance(value, (dict, list, tuple, set)):
            if isinstance(value, set):
                value = sorted(value)
            payload[key] = json.dumps(value, sort_keys=True, default=str)
        else:
            payload[key] = value
    return payload


class ParquetBatchWriter:
    """Minimal batching wrapper around :class:`pyarrow.parquet.ParquetWriter`.

    The schema is inferred from the first batch when none is supplied.
    """

    def __init__(
        self,
        destination: Path,
        schema: Optional[pa.Schema] = None,
        *,
        compression: str,
    ) -> None:
        self.destination = Path(destination)
        self.schema = schema
        self.compression = compression
        self._writer: Optional[pq.ParquetWriter] = None
        self._rows_written = 0

    def write_rows(self, rows: List[Dict[str, Any]]) -> None:
        if not rows:
            return
        table = pa.Table.from_pylist(rows, schema=self.schema)
        if self._writer is None:
            self.schema = table.schema
            self.destination.parent.mkdir(parents=True, exist_ok=True)
            self._writer = pq.ParquetWriter(
                self.destination, self.schema, compression=self.compression
            )
        assert self._writer is not None
        self._writer.write_table(table)
        self._rows_written += int(table.num_rows)
        LOGGER.debug(
            "Appended %d rows to %s (total=%d)",
            table.num_rows,
            self.destination,
            self._rows_written,
        )

    def finalize(self) -> Dict[str, Any]:
        if self._writer is not None:
            self._writer.close()
        return {"rows_written": self._rows_written, "path": str(self.destination)}


def _infer_schema(rows: List[Dict[str, Any]]) -> pa.Schema:
    # inferring over every row keeps a column that is None in the first
    # chunk from being pinned to the null type
    return pa.Table.from_pylist(rows).schema


def write_table(
    rows: Iterable[Dict[str, Any]],
    destination: Path,
    *,
    compression: Optional[str] = None,
) -> Dict[str, Any]:
    materialized = list(rows)
    schema = _infer_schema(materialized) if materialized else None
    writer = ParquetBatchWriter(
        destination, schema, compression=compression or settings.parquet_compression
    )
    for start in range(0, len(materialized), ROW_CHUNK):
        writer.write_rows(materialized[start : start + ROW_CHUNK])
    return writer.finalize()


def collect_rows(
    sets: Mapping[Optional[str], AccumulatorSet],
) -> Dict[str, List[Dict[str, Any]]]:
    """Flatten every set's snapshot into per-table rows tagged with ``shard``."""

    tables: Dict[str, List[Dict[str, Any]]] = {name: [] for name in TABLE_NAMES}
    for shard, targets in sets.items():
        for name, snapshot in targets.snapshot().items():
            tables[name].extend(_flatten_row(row, shard) for row in snapshot)
    return tables


def export_accumulators(
    sets: Mapping[Optional[str], AccumulatorSet],
    output_dir: Path,
    *,
    compression: Optional[str] = None,
) -> Dict[str, Dict[str, Any]]:
    """Write ``<output_dir>/<table>/<table>.parquet`` for each non-empty table."""

    root = Path(output_dir)
    codec = compression or settings.parquet_compression
    artifacts: Dict[str, Dict[str, Any]] = {}
    for name, rows in collect_rows(sets).items():
        target = root / name / f"{name}.parquet"
        if target.exists():
            target.unlink()
        info = write_table(rows, target, compression=codec)
        artifacts[name] = info
        LOGGER.info("Wrote %d %s rows to %s", info["rows_written"], name, info["path"])
    return artifacts
