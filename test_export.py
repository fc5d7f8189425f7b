#!/usr/bin/env python3
"""
Tests for Parquet/JSON export, the run manifest, DuckDB summaries and the CLI
"""

import json
import tempfile
from pathlib import Path

import pyarrow.parquet as pq
import pytest

from mongo_logstats.analytics.duckdb_service import DuckDBService
from mongo_logstats.cli.analyze import main
from mongo_logstats.export.manifest import MANIFEST_NAME, append_run_entry, load_manifest
from mongo_logstats.export.parquet_writer import collect_rows, export_accumulators
from mongo_logstats.export.snapshot import load_snapshot, write_snapshot
from mongo_logstats.pipeline.analyzer import Analyzer


def _slow(ns, command, ms, *, plan="COLLSCAN", query_hash="AAAA1111"):
    return json.dumps(
        {
            "t": {"$date": "2024-03-01T10:00:00.000Z"},
            "c": "COMMAND",
            "ctx": "conn4",
            "msg": "Slow query",
            "attr": {
                "type": "command",
                "ns": ns,
                "command": command,
                "planSummary": plan,
                "docsExamined": 500,
                "nreturned": 5,
                "queryHash": query_hash,
                "planCacheKey": "PCK" + query_hash,
                "durationMillis": ms,
            },
        },
        separators=(",", ":"),
    )


LINES = [
    _slow("shop.orders", {"find": "orders", "filter": {"status": "A"}, "$db": "shop"}, 100),
    _slow("shop.orders", {"find": "orders", "filter": {"status": "B"}, "$db": "shop"}, 300),
    _slow(
        "shop.users",
        {"find": "users", "filter": {"email": "x@example.com"}, "$db": "shop"},
        20,
        plan="IXSCAN { email: 1 }",
        query_hash="BBBB2222",
    ),
]


def _analyze(root):
    log = root / "mongod.log"
    log.write_text("\n".join(LINES) + "\n", encoding="utf-8")
    return log, Analyzer(workers=1).run([log])


def test_collect_rows_flattens_nested_values_and_tags_shard():
    with tempfile.TemporaryDirectory() as tmp:
        _, result = _analyze(Path(tmp))
    tables = collect_rows(result.all_sets())
    plan_rows = tables["plan_cache"]
    assert {row["shard"] for row in plan_rows} == {None}
    assert tables["error_codes"] == []
    for rows in tables.values():
        for row in rows:
            assert not any(isinstance(value, (dict, list, set)) for value in row.values())


def test_parquet_export_and_duckdb_summaries():
    with tempfile.TemporaryDirectory() as tmp:
        root = Path(tmp)
        _, result = _analyze(root)
        artifacts = export_accumulators(result.all_sets(), root / "out", compression="snappy")

        assert artifacts["namespace_ops"]["rows_written"] == 2
        assert artifacts["error_codes"]["rows_written"] == 0
        assert not (root / "out" / "error_codes" / "error_codes.parquet").exists()
        table = pq.read_table(root / "out" / "namespace_ops" / "namespace_ops.parquet")
        assert table.num_rows == 2
        assert "shard" in table.column_names

        service = DuckDBService(dataset_root=root / "out")
        try:
            counts = service.table_counts()
            assert counts["namespace_ops"] == 2
            assert counts["error_codes"] == 0

            namespaces = service.top_namespaces(limit=5)
            assert [row["namespace"] for row in namespaces] == ["shop.orders", "shop.users"]
            assert namespaces[0]["total_ms"] == 400
            assert namespaces[0]["max_ms"] == 300

            hashes = service.top_query_hashes(limit=1)
            assert hashes[0]["query_hash"] == "AAAA1111"
            assert hashes[0]["count"] == 2

            scans = service.collection_scans()
            assert [row["namespace"] for row in scans] == ["shop.orders"]
        finally:
            service.close()


def test_duckdb_service_without_exports_is_empty():
    with tempfile.TemporaryDirectory() as tmp:
        service = DuckDBService(dataset_root=Path(tmp))
        try:
            assert not any(service.table_counts().values())
            assert service.top_namespaces() == []
            assert service.collection_scans() == []
        finally:
            service.close()


def test_json_snapshot_round_trip():
    with tempfile.TemporaryDirectory() as tmp:
        root = Path(tmp)
        _, result = _analyze(root)
        info = write_snapshot(result.as_dict(), root / "report" / "snapshot.json")
        assert info["bytes"] > 0
        loaded = load_snapshot(Path(info["path"]))
    assert loaded["summary"]["found_ops"] == 3
    assert {row["namespace"] for row in loaded["namespace_ops"]} == {"shop.orders", "shop.users"}


def test_manifest_appends_runs():
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / MANIFEST_NAME
        assert load_manifest(path) is None
        first = append_run_entry(
            path, source_files=["a.log"], failed_files={}, row_counts={"ttl": 0}, artifacts={}, status={}
        )
        second = append_run_entry(
            path,
            source_files=["b.log"],
            failed_files={"c.log": "missing"},
            row_counts={"namespace_ops": 3},
            artifacts={},
            status={"files_failed": 1},
        )
        manifest = load_manifest(path)

        path.write_text("{broken", encoding="utf-8")
        assert load_manifest(path) is None

    assert (first["run_id"], second["run_id"]) == (1, 2)
    assert [run["source_files"] for run in manifest["runs"]] == [["a.log"], ["b.log"]]
    assert manifest["runs"][1]["failed_files"] == {"c.log": "missing"}


def test_cli_commands_and_exit_codes(capsys):
    with tempfile.TemporaryDirectory() as tmp:
        root = Path(tmp)
        log = root / "mongod.log"
        log.write_text("\n".join(LINES) + "\n", encoding="utf-8")
        out = root / "dataset"
        snapshot = root / "snapshot.json"

        assert main(["status", "--parquet", str(out)]) == 1
        assert main(["summaries", "--parquet", str(out)]) == 1
        assert main(["analyze", str(root / "absent.log")]) == 1

        assert main(["analyze", str(log), "--json", str(snapshot), "--parquet", str(out)]) == 0
        assert snapshot.exists()
        assert (out / MANIFEST_NAME).exists()

        assert main(["summaries", "--parquet", str(out), "--limit", "3"]) == 0
        assert main(["status", "--parquet", str(out)]) == 0

    printed = capsys.readouterr().out
    assert "Files analyzed: 1" in printed
    assert "Top namespaces by total time" in printed
    assert "Run count: 1" in printed


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-v"]))
