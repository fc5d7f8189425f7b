"""DuckDB-backed summaries over exported accumulator tables."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List

from ..export.parquet_writer import TABLE_NAMES
from ..utils.logging_utils import get_logger

try:
    import duckdb  # type: ignore
except ImportError as exc:  # pragma: no cover - optional dependency
    raise RuntimeError(
        "DuckDB is required for analytics (pip install duckdb)."
    ) from exc

LOGGER = get_logger("analytics.duckdb")


class DuckDBService:
    """Thin wrapper providing analytical queries over Parquet outputs."""

    def __init__(self, *, dataset_root: Path, eager: bool = True) -> None:
        self.dataset_root = Path(dataset_root)
        self._conn = duckdb.connect(database=":memory:")
        self._available_views: Dict[str, bool] = {}
        if eager:
            self.refresh()

    @property
    def connection(self) -> duckdb.DuckDBPyConnection:
        return self._conn

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Dataset discovery / registration

    def refresh(self) -> None:
        """Re-scan the dataset root and register Parquet views."""

        LOGGER.debug("Refreshing DuckDB views under %s", self.dataset_root)
        for name in TABLE_NAMES:
            self._register_parquet_view(name, self._collect_files(name))

    def _collect_files(self, subdir: str) -> List[str]:
        directory = self.dataset_root / subdir
        if not directory.exists():
            return []
        return [str(path.resolve()) for path in sorted(directory.glob("*.parquet"))]

    def _register_parquet_view(self, name: str, files: List[str]) -> None:
        if files:
            quoted = [f"'{item}'" for item in (path.replace("'", "''") for path in files)]
            self._conn.execute(
                f"CREATE OR REPLACE VIEW {name} AS SELECT * FROM read_parquet([{', '.join(quoted)}])"
            )
            self._available_views[name] = True
            LOGGER.debug("Registered view %s with %d files", name, len(files))
        else:
            self._conn.execute(f"DROP VIEW IF EXISTS {name}")
            self._available_views[name] = False
            LOGGER.debug("View %s dropped (no files)", name)

    def has_view(self, name: str) -> bool:
        return self._available_views.get(name, False)

    def _run(self, query: str, params: List[Any]) -> List[Dict[str, Any]]:
        cursor = self._conn.execute(query, params)
        columns = [desc[0] for desc in cursor.description]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]

    # ------------------------------------------------------------------
    # Summaries

    def table_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for name in TABLE_NAMES:
            if not self.has_view(name):
                counts[name] = 0
                continue
            row = self._conn.execute(f"SELECT COUNT(*) FROM {name}").fetchone()
            counts[name] = int(row[0]) if row else 0
        return counts

    def top_namespaces(self, *, limit: int = 10) -> List[Dict[str, Any]]:
        """Namespaces ordered by total time spent across all operations."""

        if not self.has_view("namespace_ops"):
            return []
        query = """
            SELECT
                namespace,
                SUM("count") AS operations,
                SUM(total_ms) AS total_ms,
                MAX(max_ms) AS max_ms,
                CASE WHEN SUM("count") > 0 THEN SUM(total_ms) / SUM("count") ELSE 0 END AS avg_ms
            FROM namespace_ops
            GROUP BY namespace
            ORDER BY total_ms DESC, namespace
            LIMIT ?
        """
        return self._run(query, [limit])

    def top_query_hashes(self, *, limit: int = 10) -> List[Dict[str, Any]]:
        """Query shapes ordered by total time."""

        if not self.has_view("query_hash"):
            return []
        query = """
            SELECT
                query_hash,
                namespace,
                operation,
                shard,
                "count",
                avg_ms,
                max_ms,
                total_ms,
                plan_summary
            FROM query_hash
            ORDER BY total_ms DESC, "count" DESC, query_hash
            LIMIT ?
        """
        return self._run(query, [limit])

    def collection_scans(self, *, limit: int = 10) -> List[Dict[str, Any]]:
        """Namespaces whose plans include ``COLLSCAN``, busiest first."""

        if not self.has_view("index_usage"):
            return []
        query = """
            SELECT
                namespace,
                plan_summary,
                shard,
                "count",
                avg_ms,
                total_docs_examined,
                total_returned
            FROM index_usage
            WHERE collection_scan
            ORDER BY "count" DESC, namespace
            LIMIT ?
        """
        return self._run(query, [limit])
