#!/usr/bin/env python3
"""
Tests for turning MongoDB JSON log lines into operation records
"""

import json

from mongo_logstats.accumulators.accumulator_set import AccumulatorSet
from mongo_logstats.accumulators.keys import (
    ErrorCodeKey,
    IndexUsageKey,
    NamespaceOperationKey,
    QueryHashKey,
)
from mongo_logstats.accumulators.side import SlowPlanningAccumulator
from mongo_logstats.ingest.extractor import Extractor, ExtractionStats, resolve_command
from mongo_logstats.ingest.namespace_filter import NamespaceFilter
from mongo_logstats.ingest.records import OpType
from mongo_logstats.ingest.timestamps import parse_epoch_millis


def _line(attr, *, c="COMMAND", msg="Slow query", ctx="conn1", ts="2024-03-01T10:00:00.000+00:00"):
    entry = {"t": {"$date": ts}, "s": "I", "c": c, "id": 51803, "ctx": ctx, "msg": msg, "attr": attr}
    return json.dumps(entry, separators=(",", ":"))


def _find(duration, *, ns="db.coll", query_hash="ABC123", plan="IXSCAN { a: 1 }", **extra):
    attr = {
        "type": "command",
        "ns": ns,
        "command": {"find": ns.split(".", 1)[1], "filter": {"a": 1}, "$db": ns.split(".", 1)[0]},
        "planSummary": plan,
        "keysExamined": 1,
        "docsExamined": 4,
        "nreturned": 2,
        "queryHash": query_hash,
        "planCacheKey": "PCK1",
        "reslen": 230,
        "durationMillis": duration,
    }
    attr.update(extra)
    return _line(attr)


def test_three_finds_aggregate_into_one_entry():
    """count/min/max/avg over three finds on the same namespace"""
    targets = AccumulatorSet()
    stats = Extractor().process_batch([_find(10), _find(20), _find(30)], targets)

    assert stats.found_ops == 3
    entry = targets.main.get(NamespaceOperationKey("db.coll", "find"))
    assert entry is not None
    assert entry.count == 3
    assert entry.min_ms == 10
    assert entry.max_ms == 30
    assert entry.avg_ms == 20
    assert entry.total_returned == 6
    assert len(targets.main) == 1


def test_find_feeds_query_hash_plan_cache_and_index_usage():
    targets = AccumulatorSet()
    slow = SlowPlanningAccumulator(top_n=5)
    Extractor().process_batch(
        [_find(15, planningTimeMicros=2500), _find(5, plan="COLLSCAN")],
        targets,
        slow_planning=slow,
    )

    shape = targets.query_hash.get(QueryHashKey("ABC123", "db.coll", "find"))
    assert shape is not None and shape.count == 2
    assert shape.sanitized_filter == '{"a":1}'
    assert shape.read_preferences == {"none": 2}

    scan = targets.index_usage.get(IndexUsageKey("db.coll", "COLLSCAN"))
    assert scan is not None and scan.collection_scan
    assert len(targets.plan_cache) == 2
    assert targets.plan_cache.collection_scan_count() == 1

    rows = slow.snapshot()
    assert len(rows) == 1
    assert rows[0]["planning_time_micros"] == 2500


def test_sample_line_is_slowest():
    targets = AccumulatorSet()
    slowest = _find(99)
    Extractor().process_batch([_find(3), slowest, _find(7)], targets)
    entry = targets.main.get(NamespaceOperationKey("db.coll", "find"))
    assert entry.sample_line == slowest


def test_resolve_command_priority_and_renames():
    assert resolve_command({"find": "users"}) == (OpType.QUERY, "find", "users")
    assert resolve_command({"findAndModify": "jobs", "update": {"$set": {}}}) == (
        OpType.FIND_AND_MODIFY,
        "findAndModify",
        "jobs",
    )
    assert resolve_command({"aggregate": 1, "pipeline": []}) == (OpType.AGGREGATE, "aggregate", None)
    assert resolve_command({"aggregate": "1", "pipeline": []}) == (OpType.AGGREGATE, "aggregate", None)
    assert resolve_command({"getMore": 12345, "collection": "orders"}) == (
        OpType.GETMORE,
        "getMore",
        "orders",
    )
    assert resolve_command({"createIndexes": "orders"}) == (OpType.CMD, "createIndexes", None)
    assert resolve_command({"_shardsvrMoveRange": "x"}) == (OpType.CMD, "shard__shardsvrMoveRange", None)
    assert resolve_command({"hello": 1}) is None


def test_aggregate_renames_cmd_namespace_and_uses_match_filter():
    attr = {
        "type": "command",
        "ns": "shop.$cmd",
        "command": {
            "aggregate": "orders",
            "pipeline": [{"$sort": {"ts": -1}}, {"$match": {"status": "A", "qty": 25}}],
            "$readPreference": {"mode": "secondaryPreferred"},
        },
        "queryHash": "FFEE",
        "durationMillis": 40,
    }
    targets = AccumulatorSet()
    Extractor(redact_queries=True).process_batch([_line(attr)], targets)

    entry = targets.main.get(NamespaceOperationKey("shop.orders", "aggregate"))
    assert entry is not None and entry.count == 1
    shape = targets.query_hash.get(QueryHashKey("FFEE", "shop.orders", "aggregate"))
    assert shape.sanitized_filter == '{"status":"xxx","qty":99}'
    assert shape.read_preferences == {'{"mode":"secondaryPreferred"}': 1}


def test_get_more_uses_collection_field():
    attr = {
        "type": "command",
        "ns": "shop.orders",
        "command": {"getMore": 7788, "collection": "orders"},
        "originatingCommand": {"find": "orders", "filter": {"sku": "abc"}},
        "nreturned": 101,
        "queryHash": "AA11",
        "durationMillis": 12,
    }
    targets = AccumulatorSet()
    Extractor().process_batch([_line(attr)], targets)
    entry = targets.main.get(NamespaceOperationKey("shop.orders", "getMore"))
    assert entry is not None and entry.total_returned == 101
    shape = targets.query_hash.get(QueryHashKey("AA11", "shop.orders", "getMore"))
    assert shape.sanitized_filter == '{"sku":"abc"}'


def test_write_entries_use_write_operation_types():
    update_attr = {
        "type": "update",
        "ns": "shop.users",
        "command": {"q": {"_id": 1}, "u": {"$set": {"a": 1}}},
        "nMatched": 1,
        "nModified": 1,
        "durationMillis": 5,
    }
    remove_attr = {"type": "remove", "ns": "shop.users", "ndeleted": 3, "durationMillis": 9}
    targets = AccumulatorSet()
    extractor = Extractor()
    stats = extractor.process_batch(
        [_line(update_attr, c="WRITE"), _line(remove_attr, c="WRITE")], targets
    )

    assert stats.found_ops == 2
    update = targets.main.get(NamespaceOperationKey("shop.users", "update_w"))
    assert update is not None and update.total_returned == 1
    remove = targets.main.get(NamespaceOperationKey("shop.users", "remove"))
    assert remove is not None and remove.total_returned == 3
    counts = extractor.operation_counter.as_dict()
    assert counts["update_w"] == 1
    assert counts["delete_w"] == 1


def test_per_line_problems_are_counted_not_raised():
    lines = [
        "{not json",
        _line(None),
        json.dumps({"t": {"$date": "2024-03-01T10:00:00Z"}, "c": "COMMAND", "msg": "x"}),
        _line({"type": "command", "command": {"find": "coll"}, "durationMillis": 1}),
        _line({"type": "command", "ns": "admin.$cmd", "command": {"hello": 1}, "durationMillis": 1}),
        "",
        _find(10),
    ]
    stats = Extractor().process_batch(lines, AccumulatorSet())
    assert isinstance(stats, ExtractionStats)
    assert stats.parse_errors == 1
    assert stats.no_attr == 2
    assert stats.no_namespace == 1
    assert stats.no_command == 1
    assert stats.found_ops == 1


def test_namespace_filter_applies_before_accumulation():
    extractor = Extractor(namespace_filter=NamespaceFilter(["mydb.*"]))
    targets = AccumulatorSet()
    stats = extractor.process_batch(
        [_find(10, ns="mydb.coll"), _find(10, ns="otherdb.coll"), _find(10, ns="config.system.sessions")],
        targets,
    )
    assert stats.found_ops == 1
    assert stats.namespace_filtered == 2
    assert [key.namespace for key, _ in targets.main.items()] == ["mydb.coll"]


def test_index_component_lines():
    build = _line(
        {"namespace": "shop.orders", "buildUUID": {"uuid": "x"}, "durationMillis": 1500},
        c="INDEX",
        msg="Index build: done building",
    )
    ttl = _line(
        {"namespace": "shop.sessions", "index": "expire_1", "numDeleted": 5, "durationMillis": 7},
        c="INDEX",
        msg="Deleted expired documents using index",
        ctx="TTLMonitor",
    )
    missing = _line({"index": "x"}, c="INDEX", msg="Index build: starting")
    extractor = Extractor()
    targets = AccumulatorSet()
    stats = extractor.process_batch([build, ttl, missing], targets)

    assert targets.main.get(NamespaceOperationKey("shop.orders", "command")).max_ms == 1500
    ttl_entry = targets.main.get(NamespaceOperationKey("shop.sessions", "ttl_delete"))
    assert ttl_entry.total_returned == 5
    assert stats.no_namespace == 1
    counts = extractor.operation_counter.as_dict()
    assert counts["index_build"] == 1
    assert counts["index_operation"] == 1
    assert counts["ttl_delete"] == 1


def test_ttl_special_case_path():
    ttl = _line(
        {"namespace": "shop.sessions", "index": "expire_1", "numDeleted": 5, "durationMillis": 7},
        c="INDEX",
        msg="Deleted expired documents using index",
        ctx="TTLMonitor",
    )
    targets = AccumulatorSet()
    extractor = Extractor()
    assert extractor.process_ttl_line(ttl, targets.ttl)
    assert not extractor.process_ttl_line("TTL deleted garbage", targets.ttl)

    entry = targets.ttl.get(NamespaceOperationKey("shop.sessions", "ttl_delete"))
    assert entry.count == 1
    assert entry.avg_returned == 5
    assert entry.avg_ms == 7

    filtered = Extractor(namespace_filter=NamespaceFilter(["other"]))
    assert not filtered.process_ttl_line(ttl, AccumulatorSet().ttl)


def test_error_and_transaction_side_records():
    error = _line(
        {
            "type": "command",
            "ns": "shop.orders",
            "command": {"find": "orders"},
            "error": {"code": 50, "codeName": "MaxTimeMSExpired", "errmsg": "operation exceeded time limit"},
            "durationMillis": 1000,
        }
    )
    disconnect = _line({"opId": 4455}, msg="Interrupted operation as its client disconnected")
    txn = _line(
        {
            "parameters": {"txnRetryCounter": 0, "lsid": {}},
            "terminationCause": "committed",
            "commitType": "singleShard",
            "durationMillis": 25,
            "commitDurationMicros": 1500,
            "timeActiveMicros": 2400,
            "timeInactiveMicros": 600,
        },
        c="TXN",
        msg="transaction",
    )
    targets = AccumulatorSet()
    Extractor().process_batch([error, error, disconnect, txn], targets)

    expired = targets.error_codes.get(ErrorCodeKey("MaxTimeMSExpired"))
    assert expired.count == 2 and expired.code == 50
    interrupted = targets.error_codes.get(ErrorCodeKey("InterruptedByClientDisconnect"))
    assert interrupted.sample_message.endswith("(opId: 4455)")

    rows = targets.transactions.snapshot()
    assert len(rows) == 1
    assert rows[0]["termination_cause"] == "committed"
    assert rows[0]["max_commit_ms"] == 2
    assert rows[0]["avg_time_active_ms"] == 2


def test_number_wrappers_and_storage_metrics():
    line = _find(
        {"$numberLong": "12"},
        storage={"data": {"bytesRead": 4096, "bytesWritten": {"$numberLong": "512"}}},
    )
    targets = AccumulatorSet()
    Extractor().process_batch([line], targets)
    entry = targets.main.get(NamespaceOperationKey("db.coll", "find"))
    assert entry.max_ms == 12
    assert entry.storage_read.total == 4096
    assert entry.storage_written.total == 512


def test_timestamps_are_tracked():
    extractor = Extractor()
    extractor.process_batch(
        [
            _find(1).replace("2024-03-01T10:00:00.000+00:00", "2024-03-01T12:00:00.000+00:00"),
            _find(1),
        ],
        AccumulatorSet(),
    )
    assert extractor.timestamps.as_dict() == {
        "earliest": "2024-03-01T10:00:00.000+00:00",
        "latest": "2024-03-01T12:00:00.000+00:00",
    }


def test_non_finite_numbers_do_not_abort_the_batch():
    targets = AccumulatorSet()
    lines = [_find(10), _find({"$numberDouble": "Infinity"}), _find(float("inf")), _find(float("nan")), _find(20)]
    stats = Extractor().process_batch(lines, targets)

    assert stats.found_ops == 5
    assert stats.line_errors == 0
    entry = targets.main.get(NamespaceOperationKey("db.coll", "find"))
    assert entry.count == 5
    assert entry.duration.count == 2
    assert (entry.min_ms, entry.max_ms) == (10, 20)


def test_non_finite_timestamps_are_ignored():
    assert parse_epoch_millis(float("inf")) is None
    assert parse_epoch_millis({"$date": float("nan")}) is None

    extractor = Extractor()
    line = _find(10).replace('"$date":"2024-03-01T10:00:00.000+00:00"', '"$date":Infinity')
    assert '"$date":Infinity' in line
    stats = extractor.process_batch([line], AccumulatorSet())
    assert stats.found_ops == 1
    assert extractor.timestamps.as_dict() == {"earliest": None, "latest": None}


def test_unexpected_line_failure_is_counted_and_skipped():
    class FailsOnThirteen(Extractor):
        def classify(self, entry, attr, stats):
            if attr.get("durationMillis") == 13:
                raise RuntimeError("unexpected shape")
            return super().classify(entry, attr, stats)

    targets = AccumulatorSet()
    stats = FailsOnThirteen().process_batch([_find(10), _find(13), _find(20)], targets)

    assert stats.line_errors == 1
    assert stats.found_ops == 2
    assert targets.main.get(NamespaceOperationKey("db.coll", "find")).count == 2


if __name__ == "__main__":
    import pytest

    raise SystemExit(pytest.main([__file__, "-v"]))
