"""apitrack command-line interface."""

from __future__ import annotations

import argparse
import json
import sys
from datetime import UTC, datetime, timedelta
from urllib.error import URLError
from urllib.request import urlopen

from apitrack.aggregation import aggregate_buckets
from apitrack.errors import InputError
from apitrack.models import Granularity, RecordFilters, RetentionResponse
from apitrack.service import PERIODS, resolve_time_range
from apitrack.store import SQLiteRepository


def run_api() -> None:
    from apitrack.main import run

    run()


def _positive_int(raw: str) -> int:
    value = int(raw)
    if value < 1:
        raise argparse.ArgumentTypeError("must be at least 1")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="apitrack operations CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("serve-api", help="Run apitrack API server")

    sqlite = subparsers.add_parser("init-sqlite", help="Initialize SQLite database")
    sqlite.add_argument("--db", default="apitrack.db")

    purge = subparsers.add_parser("purge", help="Delete telemetry records past retention")
    purge.add_argument("--db", default="apitrack.db")
    purge.add_argument("--days", type=_positive_int, default=90)

    buckets = subparsers.add_parser("buckets", help="Print time-bucket summaries as JSON")
    buckets.add_argument("--db", default="apitrack.db")
    buckets.add_argument(
        "--granularity",
        choices=[item.value for item in Granularity],
        default=Granularity.HOUR.value,
    )
    buckets.add_argument("--period", choices=sorted(PERIODS), default="24h")

    health = subparsers.add_parser("health", help="Run HTTP health check")
    health.add_argument("--url", default="http://localhost:8080/healthz")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "serve-api":
        run_api()
        return 0

    if args.command == "init-sqlite":
        SQLiteRepository(args.db).close()
        print(f"Initialized SQLite DB at {args.db}")
        return 0

    if args.command == "purge":
        cutoff = datetime.now(UTC) - timedelta(days=args.days)
        repository = SQLiteRepository(args.db)
        try:
            purged = repository.purge_older_than(cutoff)
        finally:
            repository.close()
        result = RetentionResponse(purged_count=purged, cutoff=cutoff, retention_days=args.days)
        print(result.model_dump_json(indent=2))
        return 0

    if args.command == "buckets":
        try:
            time_range = resolve_time_range(period=args.period)
        except InputError as exc:
            print(f"Invalid range: {exc}", file=sys.stderr)
            return 2
        repository = SQLiteRepository(args.db)
        try:
            summaries = aggregate_buckets(
                repository.iter_records(time_range, RecordFilters()),
                Granularity(args.granularity),
            )
        finally:
            repository.close()
        print(json.dumps([item.model_dump(mode="json") for item in summaries], indent=2))
        return 0

    if args.command == "health":
        try:
            with urlopen(args.url, timeout=5) as response:
                payload = response.read().decode("utf-8")
            print(payload)
            return 0
        except URLError as exc:
            print(f"Health check failed: {exc}", file=sys.stderr)
            return 1

    parser.error(f"Unsupported command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
