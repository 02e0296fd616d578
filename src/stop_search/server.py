"""Stop search MCP server and the ``stop-search`` command line.

Without a subcommand the MCP server runs on stdio. The subcommands prepare
the database (``ingest``, ``sync-aliases``) or query it (``search``).
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel

import stop_search.tools.search_tools  # noqa: F401  (registers the search tools)
from stop_search import __version__
from stop_search.app import mcp
from stop_search.data.config import get_search_settings
from stop_search.search.engine import QueryTooShortError

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class HealthResponse(BaseModel):
    """Server liveness and the database it searches."""

    status: str
    version: str
    timestamp: str
    database: str


@mcp.tool()
def health() -> HealthResponse:
    """Check that the stop search server is up.

    Status is "degraded" while the stop database has not been ingested yet.
    """
    db_path = get_search_settings().db_path
    return HealthResponse(
        status="ok" if db_path.exists() else "degraded",
        version=__version__,
        timestamp=datetime.now(UTC).isoformat(),
        database=str(db_path),
    )


async def run_ingest(gtfs_path: Path, db_path: Path) -> None:
    from stop_search.data.gtfs_loader import GTFSLoader

    counts = await GTFSLoader(db_path).ingest(gtfs_path)

    width = max(len(table) for table in counts)
    print(f"\nIngestion complete ({db_path}):")
    for table, count in counts.items():
        print(f"  {table:<{width}}  {count:>10,}")


async def run_sync_aliases(seed_path: Path, db_path: Path, report_path: Path | None) -> None:
    """Sync alias seed specs and print the JSON report."""
    from stop_search.data.alias_sync import load_seed_specs, sync_stop_aliases
    from stop_search.data.database import get_db

    specs = load_seed_specs(seed_path)
    async with get_db(db_path, search_functions=False) as db:
        report = await sync_stop_aliases(db, specs)

    output = report.model_dump_json(indent=2)
    print(output)
    if report_path is not None:
        report_path.write_text(f"{output}\n", encoding="utf-8")


async def run_search(query: str, limit: int, db_path: Path, debug: bool) -> None:
    from stop_search.services.stop_service import search_stops

    response = await search_stops(query, limit=limit, debug=debug, db_path=db_path)
    print(response.model_dump_json(indent=2, exclude_none=True))


def build_parser(default_db: Path) -> argparse.ArgumentParser:
    """Argument parser with one subparser per command."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--db",
        type=Path,
        default=default_db,
        help=f"SQLite database path (default: {default_db}, or STOP_SEARCH_DB_PATH)",
    )
    common.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")

    parser = argparse.ArgumentParser(prog="stop-search", description="Stop Search MCP Server")
    commands = parser.add_subparsers(dest="command")

    ingest = commands.add_parser(
        "ingest", parents=[common], help="Load a GTFS feed and build the stop search index"
    )
    ingest.add_argument("gtfs_path", type=Path, help="GTFS directory or ZIP archive")

    sync = commands.add_parser(
        "sync-aliases", parents=[common], help="Resolve alias seed specs against the stops and upsert them"
    )
    sync.add_argument("seed_path", type=Path, help="CSV with canonical_key,target_name,alias_text,weight[,active]")
    sync.add_argument("--report", type=Path, default=None, help="Also write the JSON report to this file")

    search = commands.add_parser("search", parents=[common], help="Print ranked stops for a query as JSON")
    search.add_argument("query", help="Stop name, e.g. 'Lausanne, Bel-Air'")
    search.add_argument("-n", "--limit", type=int, default=20, help="Maximum results (1-50)")
    search.add_argument("--debug", action="store_true", help="Include retrieval stages and score breakdown")

    return parser


def _sync_aliases_or_exit(args: argparse.Namespace) -> None:
    try:
        asyncio.run(run_sync_aliases(args.seed_path, args.db, args.report))
    except Exception as exc:
        failure = {
            "timestamp": datetime.now(UTC).isoformat(),
            "status": "failed",
            "degraded": True,
            "error": str(exc),
        }
        print(json.dumps(failure, indent=2), file=sys.stderr)
        raise SystemExit(1) from exc


def main(argv: list[str] | None = None) -> None:
    parser = build_parser(get_search_settings().db_path)
    args = parser.parse_args(argv)

    if args.command is None:
        mcp.run()
        return

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )

    if args.command == "ingest":
        asyncio.run(run_ingest(args.gtfs_path, args.db))
    elif args.command == "sync-aliases":
        _sync_aliases_or_exit(args)
    elif args.command == "search":
        try:
            asyncio.run(run_search(args.query, args.limit, args.db, args.debug))
        except QueryTooShortError as exc:
            parser.error(str(exc))


if __name__ == "__main__":
    main()
