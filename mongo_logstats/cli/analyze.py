"""Command-line entry point for the log statistics engine."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config import settings
from ..export.manifest import MANIFEST_NAME, append_run_entry, load_manifest
from ..export.parquet_writer import export_accumulators
from ..export.snapshot import write_snapshot
from ..ingest.filter_config import FilterConfig
from ..pipeline.analyzer import AnalysisError, AnalysisResult, Analyzer
from ..runtime import status as status_tracker
from ..utils.logging_utils import get_logger, set_verbosity

LOGGER = get_logger("cli.analyze")


def _positive_int(value: str) -> int:
    parsed = int(value)
    if parsed <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value}")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="MongoDB log statistics CLI")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    analyze_parser = sub.add_parser("analyze", help="Aggregate statistics from log files")
    analyze_parser.add_argument("files", nargs="+", type=Path, help="MongoDB log files (plain, gzip or zip)")
    analyze_parser.add_argument(
        "--namespace",
        action="append",
        default=[],
        dest="namespaces",
        help="Only include this namespace (db.coll, db.*, db or a glob); repeatable",
    )
    analyze_parser.add_argument(
        "--shards", action="store_true", default=None, help="Track statistics per shard"
    )
    analyze_parser.add_argument(
        "--drivers", action="store_true", default=None, help="Collect driver/connection statistics"
    )
    analyze_parser.add_argument(
        "--redact", action="store_true", default=None, help="Redact literal values in query filters"
    )
    analyze_parser.add_argument(
        "--line-limit", type=_positive_int, default=None, help="Stop reading each file after N lines"
    )
    analyze_parser.add_argument(
        "--filter-config", type=Path, default=None, help="JSON file overriding ignore patterns"
    )
    analyze_parser.add_argument("--json", type=Path, default=None, dest="json_out", help="Write the full snapshot as JSON")
    analyze_parser.add_argument(
        "--parquet", type=Path, default=None, help="Export accumulator tables to this directory"
    )
    analyze_parser.add_argument(
        "--compression",
        type=str,
        default=None,
        help="Parquet compression codec (default: config value)",
    )

    summaries_parser = sub.add_parser("summaries", help="Display quick summaries of exported tables")
    summaries_parser.add_argument("--parquet", type=Path, required=True, help="Exported dataset directory")
    summaries_parser.add_argument("--limit", type=int, default=10, help="Rows per section")

    status_parser = sub.add_parser("status", help="Show the run manifest of an export directory")
    status_parser.add_argument("--parquet", type=Path, required=True, help="Exported dataset directory")

    return parser


def _print_summary(result: AnalysisResult) -> None:
    summary = result.as_dict()["summary"]
    print(
        f"Files analyzed: {summary['files_succeeded']} "
        f"(failed: {summary['files_failed']}) in {summary['duration_seconds']:.2f}s"
    )
    time_range = summary["time_range"]
    print(f"  time range: {time_range['earliest']} .. {time_range['latest']}")
    print(f"  lines: {summary['total_lines']}  operations: {summary['found_ops']}")
    for name, size in result.accumulators.sizes().items():
        print(f"  {name}: {size} entries")
    if result.shard_sets:
        print(f"  shards: {', '.join(result.shard_sets)}")
    if result.drivers is not None:
        print(
            f"  drivers: {len(result.drivers)} keys, "
            f"{result.drivers.total_connections()} connections"
        )
    top = result.operation_counter.most_common()[:5]
    if top:
        print("  top operations: " + ", ".join(f"{name}={count}" for name, count in top))
    for path, error in result.failed_files.items():
        print(f"  FAILED {path}: {error}")


def _run_analyze(args: argparse.Namespace) -> int:
    filter_config = FilterConfig.load(args.filter_config) if args.filter_config else None
    analyzer = Analyzer(
        namespaces=args.namespaces,
        filter_config=filter_config,
        redact_queries=args.redact,
        enable_driver_stats=args.drivers,
        enable_shard_tracking=args.shards,
        line_limit=args.line_limit,
    )
    try:
        result = analyzer.run(args.files)
    except AnalysisError as exc:
        LOGGER.error("%s", exc)
        return 1

    _print_summary(result)

    if args.json_out is not None:
        info = write_snapshot(result.as_dict(), args.json_out)
        print(f"  snapshot: {info['path']}")

    if args.parquet is not None:
        artifacts = export_accumulators(
            result.all_sets(),
            args.parquet,
            compression=args.compression or settings.parquet_compression,
        )
        manifest = append_run_entry(
            args.parquet / MANIFEST_NAME,
            source_files=[stats.path for stats in result.files],
            failed_files=result.failed_files,
            row_counts={name: info["rows_written"] for name, info in artifacts.items()},
            artifacts={name: info["path"] for name, info in artifacts.items()},
            status=status_tracker.get_status(),
        )
        print(f"  parquet: {args.parquet} (run #{manifest['run_id']})")
    return 0


def _print_rows(title: str, rows: List[Dict[str, Any]], columns: List[str]) -> None:
    print(f"{title}:")
    if not rows:
        print("  (none)")
        return
    for row in rows:
        print("  " + "  ".join(f"{column}={row.get(column)}" for column in columns))


def _run_summaries(args: argparse.Namespace) -> int:
    try:
        from ..analytics.duckdb_service import DuckDBService

        service = DuckDBService(dataset_root=args.parquet)
    except RuntimeError as exc:
        print(f"DuckDB unavailable: {exc}")
        return 1
    limit = max(1, min(args.limit, 100))
    try:
        counts = service.table_counts()
        if not any(counts.values()):
            print(f"No exported tables found under {args.parquet}")
            return 1
        _print_rows(
            "Top namespaces by total time",
            service.top_namespaces(limit=limit),
            ["namespace", "operations", "total_ms", "max_ms"],
        )
        _print_rows(
            "Top query hashes",
            service.top_query_hashes(limit=limit),
            ["query_hash", "namespace", "operation", "count", "avg_ms", "plan_summary"],
        )
        _print_rows(
            "Collection scans",
            service.collection_scans(limit=limit),
            ["namespace", "count", "avg_ms", "total_docs_examined"],
        )
    finally:
        service.close()
    return 0


def _run_status(args: argparse.Namespace) -> int:
    manifest = load_manifest(Path(args.parquet) / MANIFEST_NAME)
    if not manifest:
        print(f"No manifest found under {args.parquet}")
        return 1
    print(f"Created at: {manifest.get('created_at')}")
    print(f"Updated at: {manifest.get('updated_at')}")
    runs = manifest.get("runs", [])
    print(f"Run count: {len(runs)}")
    for run in runs[-5:]:
        row_counts = run.get("row_counts", {})
        status = run.get("status", {})
        print(
            f"  #{run.get('run_id')} files={len(run.get('source_files', []))} "
            f"failed={len(run.get('failed_files', {}))} "
            f"namespace_ops={row_counts.get('namespace_ops', 0)} "
            f"finished_at={status.get('run_finished_at')}"
        )
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    set_verbosity(args.verbose)

    if args.command == "analyze":
        return _run_analyze(args)
    if args.command == "summaries":
        return _run_summaries(args)
    if args.command == "status":
        return _run_status(args)

    parser.error("Unknown command")
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
