"""CLI entry point.

Usage:
    python -m dashpack list-tables                       # tables in the catalog
    python -m dashpack group-meta TABLE_ID FIELD         # group counts for a table
    python -m dashpack group-meta TABLE_ID FIELD --rows 5 --json
    python -m dashpack serve                             # launch the JSON API
"""

from __future__ import annotations

import argparse
import json
import logging
import sqlite3
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import config
from .database import get_connection
from .views.engine import GroupMetaEngine, GroupMetaRequest
from .views.errors import GroupMetaError
from .views.registry import load_catalog

console = Console()


def _catalog(args: argparse.Namespace):
    return load_catalog(args.catalog or config.CATALOG_PATH)


# ---------------------------------------------------------------------------
# Subcommand: list-tables
# ---------------------------------------------------------------------------

def cmd_list_tables(args: argparse.Namespace) -> None:
    """List the tables the catalog exposes."""
    catalog = _catalog(args)
    table = Table(title="Tables")
    table.add_column("Table ID", style="cyan")
    table.add_column("Entity")
    table.add_column("Storage")
    table.add_column("Fields", justify="right")
    for spec in sorted(catalog, key=lambda s: s.key):
        if not spec.table_id:
            continue
        table.add_row(spec.table_id, spec.key, spec.table or "-", str(len(spec.fields)))
    console.print(table)


# ---------------------------------------------------------------------------
# Subcommand: group-meta
# ---------------------------------------------------------------------------

def cmd_group_meta(args: argparse.Namespace) -> None:
    """Print the groups of a table."""
    body = {
        "tableId": args.table_id,
        "groupBy": {
            "field": args.field,
            "orderBy": args.order_by,
            "orderDirection": args.direction,
        },
        "filters": json.loads(args.filters) if args.filters else [],
        "filterMode": args.filter_mode,
        "search": args.search or "",
        "includeRows": args.rows is not None,
        "groupPageSize": args.rows,
        "callerId": args.caller,
    }
    engine = GroupMetaEngine(_catalog(args))
    try:
        with get_connection(args.db, read_only=True) as conn:
            result = engine.build_group_meta(conn, GroupMetaRequest.from_dict(body))
    except GroupMetaError as exc:
        console.print(f"[red]Error ({exc.status}):[/red] {exc.message}")
        sys.exit(1)
    except sqlite3.Error as exc:
        console.print(f"[red]Store unavailable:[/red] {exc}")
        sys.exit(1)

    if args.json:
        print(json.dumps(result, indent=2, default=str))
        return

    gb = result["groupBy"]
    table = Table(title=f"{result['tableId']} by {gb['field']} ({gb['orderBy']}, {gb['orderDirection']})")
    table.add_column("Group")
    table.add_column("Count", justify="right")
    if "groups" in result:
        table.add_column("Rows", justify="right")
    groups = {g["key"]: g for g in result.get("groups", [])}
    for key in result["groupOrder"]:
        row = [key or "[dim](empty)[/dim]", str(result["groupCounts"][key])]
        if groups:
            row.append(str(len(groups[key]["rows"])))
        table.add_row(*row)
    console.print(table)


# ---------------------------------------------------------------------------
# Subcommand: serve
# ---------------------------------------------------------------------------

def cmd_serve(args: argparse.Namespace) -> None:
    """Launch the JSON API."""
    import uvicorn

    from .web.app import create_app

    app = create_app(catalog=_catalog(args))
    console.print(f"\n[bold]Starting dashpack API at http://{args.host}:{args.port}[/bold]")
    uvicorn.run(app, host=args.host, port=args.port)


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m dashpack",
        description="Dashboard table grouping engine",
    )
    parser.add_argument("--catalog", type=Path, help="Entity catalog JSON file")
    parser.add_argument("--db", type=Path, help="Path to the SQLite database file")
    sub = parser.add_subparsers(dest="command")

    # list-tables
    sub.add_parser("list-tables", help="List tables in the entity catalog")

    # group-meta
    gm = sub.add_parser("group-meta", help="Show group counts for a table")
    gm.add_argument("table_id", help="Table identifier")
    gm.add_argument("field", help="Group-by field")
    gm.add_argument(
        "--order-by", default="auto",
        choices=["auto", "value", "count", "relatedSortOrder"],
        help="Group ordering policy (default: auto)",
    )
    gm.add_argument("--direction", choices=["asc", "desc"], help="Order direction")
    gm.add_argument("--filters", help="Filter clauses as a JSON list")
    gm.add_argument("--filter-mode", default="all", choices=["all", "any"])
    gm.add_argument("--search", help="Free-text search")
    gm.add_argument("--rows", type=int, help="Also fetch up to N rows per group")
    gm.add_argument("--caller", help="Caller id substituted for __current_user__")
    gm.add_argument("--json", action="store_true", help="Print the raw JSON envelope")

    # serve
    sv = sub.add_parser("serve", help="Launch the JSON API")
    sv.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    sv.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")

    return parser


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )

    parser = build_parser()
    args = parser.parse_args()

    commands = {
        "list-tables": cmd_list_tables,
        "group-meta": cmd_group_meta,
        "serve": cmd_serve,
    }

    if not args.command:
        parser.print_help()
        sys.exit(2)
    commands[args.command](args)


if __name__ == "__main__":
    main()
