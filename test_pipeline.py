#!/usr/bin/env python3
"""
End-to-end tests for the multi-file analyzer: per-file isolation, limits,
TTL routing, run status and deterministic re-runs
"""

import gzip
import json
import tempfile
from pathlib import Path

import pytest

from mongo_logstats.accumulators.accumulator_set import AccumulatorSet
from mongo_logstats.accumulators.keys import NamespaceOperationKey
from mongo_logstats.ingest.extractor import Extractor
from mongo_logstats.ingest.line_filter import LineFilter
from mongo_logstats.ingest.scheduler import FileStats, Scheduler
from mongo_logstats.pipeline.analyzer import AnalysisError, Analyzer
from mongo_logstats.runtime import status as status_tracker


def _line(entry):
    return json.dumps(entry, separators=(",", ":"))


def _find(ms, *, coll="orders", db="shop", second=0, query_hash="ABC123"):
    return _line(
        {
            "t": {"$date": f"2024-03-01T10:00:{second:02d}.000Z"},
            "s": "I",
            "c": "COMMAND",
            "id": 51803,
            "ctx": "conn1",
            "msg": "Slow query",
            "attr": {
                "type": "command",
                "ns": f"{db}.{coll}",
                "command": {"find": coll, "filter": {"status": "A"}, "$db": db},
                "planSummary": "COLLSCAN",
                "docsExamined": ms * 10,
                "nreturned": 2,
                "queryHash": query_hash,
                "durationMillis": ms,
            },
        }
    )


def _ttl(deleted):
    return _line(
        {
            "t": {"$date": "2024-03-01T10:00:30.000Z"},
            "c": "INDEX",
            "ctx": "TTLMonitor",
            "msg": "Deleted expired documents using index",
            "attr": {"namespace": "shop.sessions", "numDeleted": deleted, "durationMillis": 7},
        }
    )


NOISE = _line({"t": {"$date": "2024-03-01T10:00:00.000Z"}, "c": "NETWORK", "ctx": "listener", "msg": "Listening"})


def _write(path, lines):
    payload = ("\n".join(lines) + "\n").encode("utf-8")
    if path.suffix == ".gz":
        with gzip.open(path, "wb") as handle:
            handle.write(payload)
    else:
        path.write_bytes(payload)
    return path


def _rows(result, table="namespace_ops"):
    return {(row["namespace"], row["operation"]): row for row in result.accumulators.snapshot()[table]}


def test_multiple_files_share_accumulators_and_failures_are_isolated():
    status_tracker.reset()
    with tempfile.TemporaryDirectory() as tmp:
        root = Path(tmp)
        first = _write(root / "a.log", [_find(10, second=1), NOISE, _find(20, second=2), _find(30, second=3)])
        second = _write(root / "b.log.gz", [_find(40, second=4), "not json at all"])
        missing = root / "missing.log"

        result = Analyzer(workers=2, batch_size=2).run([first, missing, second])

    assert result.files_succeeded == 2
    assert list(result.failed_files) == [str(missing)]

    row = _rows(result)[("shop.orders", "find")]
    assert (row["count"], row["min_ms"], row["max_ms"], row["avg_ms"]) == (4, 10, 40, 25)
    assert row["total_docs_examined"] == 1000
    assert result.operation_counter.get("find") == 4
    assert result.ignored_counter.as_dict() == {"NETWORK": 1, "NON_JSON": 1}
    assert result.timestamps.as_dict() == {"earliest": "2024-03-01T10:00:01.000Z", "latest": "2024-03-01T10:00:04.000Z"}

    payload = result.as_dict()
    assert payload["summary"]["files_failed"] == 1
    assert payload["summary"]["found_ops"] == 4
    assert payload["summary"]["total_lines"] == 6

    status = status_tracker.get_status()
    assert status["run_in_progress"] is False
    assert status["files_total"] == 3
    assert status["files_succeeded"] == 2
    assert status["files_failed"] == 1
    assert [item["success"] for item in status["recent_files"]] == [True, False, True]


def test_run_fails_when_no_file_can_be_read():
    with tempfile.TemporaryDirectory() as tmp:
        with pytest.raises(AnalysisError):
            Analyzer(workers=1).run([Path(tmp) / "nope.log", Path(tmp) / "also-nope.log"])
    with pytest.raises(AnalysisError):
        Analyzer(workers=1).run([])


def test_line_limit_stops_each_file_early():
    with tempfile.TemporaryDirectory() as tmp:
        log = _write(Path(tmp) / "mongod.log", [_find(ms) for ms in (1, 2, 3, 4, 5)])
        result = Analyzer(workers=1, batch_size=10, line_limit=2).run([log])

    stats = result.files[0]
    assert stats.stopped_at_limit
    assert stats.lines_read == 2
    assert _rows(result)[("shop.orders", "find")]["count"] == 2


def test_over_length_line_is_skipped_and_processing_continues():
    padding = _line({"c": "COMMAND", "attr": {"pad": "x" * 600}})
    with tempfile.TemporaryDirectory() as tmp:
        log = _write(Path(tmp) / "mongod.log", [_find(5), padding, _find(15)])
        result = Analyzer(workers=1, max_line_bytes=400).run([log])

    stats = result.files[0]
    assert stats.lines_skipped_overlength == 1
    assert stats.lines_read == 2
    assert _rows(result)[("shop.orders", "find")]["count"] == 2


def test_ttl_deletions_go_to_their_own_table():
    with tempfile.TemporaryDirectory() as tmp:
        log = _write(Path(tmp) / "mongod.log", [_find(12), _ttl(5)])
        result = Analyzer(workers=1).run([log])

    ttl_rows = _rows(result, "ttl")
    assert ttl_rows[("shop.sessions", "ttl_delete")]["count"] == 1
    assert ttl_rows[("shop.sessions", "ttl_delete")]["avg_returned"] == 5
    assert ("shop.sessions", "ttl_delete") not in _rows(result)
    assert result.files[0].ttl_lines == 1
    assert result.ignored_counter.get("TTL_MONITOR") == 1


def test_namespace_filter_limits_what_is_accumulated():
    with tempfile.TemporaryDirectory() as tmp:
        log = _write(Path(tmp) / "mongod.log", [_find(5), _find(6, db="billing", coll="invoices")])
        result = Analyzer(workers=1, namespaces=["billing.*"]).run([log])

    assert list(_rows(result)) == [("billing.invoices", "find")]
    assert result.files[0].namespace_filtered == 1


def test_reprocessing_is_deterministic():
    lines = [_find(ms, query_hash=f"H{ms % 3}", second=ms % 60) for ms in range(1, 121)]
    with tempfile.TemporaryDirectory() as tmp:
        log = _write(Path(tmp) / "mongod.log", lines)
        first = Analyzer(workers=4, batch_size=7).run([log]).accumulators.snapshot()
        second = Analyzer(workers=4, batch_size=7).run([log]).accumulators.snapshot()

    def ordered(snapshot):
        return {name: sorted(rows, key=lambda row: json.dumps(row, sort_keys=True)) for name, rows in snapshot.items()}

    assert ordered(first) == ordered(second)
    assert {row["query_hash"] for row in first["query_hash"]} == {"H0", "H1", "H2"}


class _FailsOnThirteen(Extractor):
    def process_batch(self, lines, targets, **kwargs):
        if any('"durationMillis":13}' in line for line in lines):
            raise RuntimeError("worker exploded")
        return super().process_batch(lines, targets, **kwargs)


def test_failed_batch_is_counted_and_remaining_batches_are_drained():
    targets = AccumulatorSet()
    scheduler = Scheduler(_FailsOnThirteen(), LineFilter(), batch_size=1, workers=2)
    stats = scheduler.process(
        [_find(10), _find(13), NOISE, _find(20), _find(30)], targets, FileStats(path="memory")
    )

    assert stats.batches_submitted == 4
    assert stats.batches_failed == 1
    assert stats.lines_retained == 4
    assert stats.lines_ignored == 1
    assert stats.found_ops == 3
    entry = targets.main.get(NamespaceOperationKey("shop.orders", "find"))
    assert (entry.count, entry.min_ms, entry.max_ms) == (3, 10, 30)


def test_failed_batch_does_not_stop_the_run(monkeypatch):
    original = Extractor.process_batch

    def failing(self, lines, targets, **kwargs):
        if any('"durationMillis":13}' in line for line in lines):
            raise RuntimeError("worker exploded")
        return original(self, lines, targets, **kwargs)

    monkeypatch.setattr(Extractor, "process_batch", failing)
    with tempfile.TemporaryDirectory() as tmp:
        root = Path(tmp)
        first = _write(root / "a.log", [_find(10), _find(13), _find(20)])
        second = _write(root / "b.log", [_find(40)])
        result = Analyzer(workers=2, batch_size=1).run([first, second])

    assert result.failed_files == {}
    assert [stats.batches_failed for stats in result.files] == [1, 0]
    assert _rows(result)[("shop.orders", "find")]["count"] == 3
    assert result.as_dict()["summary"]["found_ops"] == 3


def test_truncated_gzip_keeps_totals_consistent():
    lines = [_find(index + 1, second=index % 60, query_hash=f"{index:08X}") for index in range(2000)]
    with tempfile.TemporaryDirectory() as tmp:
        root = Path(tmp)
        good = _write(root / "a.log", [_find(5), _find(7)])
        bad = _write(root / "b.log.gz", lines)
        raw = bad.read_bytes()
        bad.write_bytes(raw[: len(raw) * 3 // 4])

        result = Analyzer(workers=2, batch_size=10).run([good, bad])

    assert [stats.path for stats in result.files] == [str(good)]
    assert str(bad) in result.failed_files
    assert [stats.path for stats in result.partial_files] == [str(bad)]
    partial = result.partial_files[0]
    assert 0 < partial.found_ops < len(lines)
    assert partial.batches_failed == 0

    found = sum(stats.found_ops for stats in result.ingested_files())
    assert _rows(result)[("shop.orders", "find")]["count"] == found
    summary = result.as_dict()["summary"]
    assert summary["found_ops"] == found
    assert summary["files_partial"] == 1


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-v"]))
