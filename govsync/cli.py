"""
govsync command line.

Usage:
    govsync init-db                       Create the schema
    govsync seed-domains                  Insert the baseline domains
    govsync sync PATH... [--commit SHA] [--deleted PATH...]
    govsync resync [--ref REF] [--passes N]
    govsync refresh [--force]             One cache refresh cycle
    govsync status [--limit N]            Recent sync runs and cache entries
    govsync sources                       List source configurations
    govsync serve [--host H] [--port P]   Run the API
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from .clock import to_iso
from .context import SyncContext, build_context
from .log import setup_logging
from .pipeline import SyncReport, SyncRequest
from .source_config import list_sources

console = Console()


def _status_style(status: str) -> str:
    colour = {"completed": "green", "partial": "yellow", "failed": "red"}.get(status, "blue")
    return f"[{colour}]{status}[/{colour}]"


def _print_report(report: SyncReport) -> None:
    table = Table(title=f"Sync run {report.run_id}")
    table.add_column("Outcome", style="cyan")
    table.add_column("Paths")
    for label, paths in (
        ("synced", report.synced),
        ("not indexable", report.not_indexable),
        ("unavailable", report.unavailable),
        ("retired", report.retired),
        ("failed", report.failed),
    ):
        if paths:
            table.add_row(label, "\n".join(paths))
    console.print(table)
    console.print(f"Status: {_status_style(report.status)}")


def cmd_init_db(ctx: SyncContext, args: argparse.Namespace) -> int:
    # build_context() already applied the schema.
    console.print("[green]Schema ready[/green]")
    return 0


def cmd_seed_domains(ctx: SyncContext, args: argparse.Namespace) -> int:
    count = ctx.graph.seed_domains()
    console.print(f"[green]Seeded domains:[/green] {count}")
    return 0


async def cmd_sync(ctx: SyncContext, args: argparse.Namespace) -> int:
    if args.commit:
        commit_id, ref = args.commit, None
    else:
        # A fresh commit marker per branch sync; identical ids would replay memoized steps.
        ref = ctx.source.github.branch
        commit_id = f"sync:{ref}:{to_iso(ctx.pipeline.clock())}"
    request = SyncRequest(
        changed_paths=args.paths,
        deleted_paths=args.deleted or [],
        commit_id=commit_id,
        ref=ref,
    )
    report = await ctx.pipeline.run(request)
    _print_report(report)
    return 0 if report.status == "completed" else 1


async def cmd_resync(ctx: SyncContext, args: argparse.Namespace) -> int:
    reports = await ctx.pipeline.resync(ref=args.ref, passes=args.passes)
    if not reports:
        console.print("[yellow]No documents found to sync[/yellow]")
        return 0
    for report in reports:
        _print_report(report)
    return 0 if all(r.status == "completed" for r in reports) else 1


async def cmd_refresh(ctx: SyncContext, args: argparse.Namespace) -> int:
    report = await ctx.refresher.refresh_all(force=args.force)
    table = Table(title="Cache refresh")
    table.add_column("Key", style="cyan")
    table.add_column("Result", justify="center")
    for key in report.refreshed:
        table.add_row(key, "[green]refreshed[/green]")
    for key in report.skipped:
        table.add_row(key, "fresh")
    for key, error in report.failed.items():
        table.add_row(key, f"[red]{error}[/red]")
    for key in report.invalidated:
        table.add_row(key, "[yellow]invalidated[/yellow]")
    console.print(table)
    return 0 if not report.failed else 1


def cmd_status(ctx: SyncContext, args: argparse.Namespace) -> int:
    runs = Table(title="Sync runs")
    runs.add_column("Run", style="cyan")
    runs.add_column("Commit", max_width=24)
    runs.add_column("Status", justify="center")
    runs.add_column("Changed", justify="right")
    runs.add_column("Deleted", justify="right")
    runs.add_column("Started")
    for run in ctx.tracker.list_runs(limit=args.limit):
        runs.add_row(
            run["id"],
            run["commit_id"],
            _status_style(run["status"]),
            str(len(run["changed_paths"])),
            str(len(run["deleted_paths"])),
            run["started_at"],
        )
    console.print(runs)

    cache = Table(title="Aggregate cache")
    cache.add_column("Key", style="cyan")
    cache.add_column("Refreshed")
    cache.add_column("Expires")
    cache.add_column("Live", justify="center")
    for entry in ctx.cache.entries():
        cache.add_row(
            entry["cache_key"],
            entry["refreshed_at"],
            entry["expires_at"],
            "[green]yes[/green]" if entry["live"] else "[red]no[/red]",
        )
    console.print(cache)
    console.print(f"Documents: {ctx.graph.count_documents()}")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("api.server:app", host=args.host, port=args.port, log_config=None)
    return 0


async def _run(args: argparse.Namespace) -> int:
    ctx = build_context()
    try:
        handler = COMMANDS[args.command]
        result = handler(ctx, args)
        if asyncio.iscoroutine(result):
            result = await result
        return result
    finally:
        await ctx.aclose()


COMMANDS = {
    "init-db": cmd_init_db,
    "seed-domains": cmd_seed_domains,
    "sync": cmd_sync,
    "resync": cmd_resync,
    "refresh": cmd_refresh,
    "status": cmd_status,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="govsync",
        description="Sync a governance corpus into the graph store and keep DAO aggregates cached",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level (default INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the schema")
    sub.add_parser("seed-domains", help="Insert the baseline classification domains")

    sync = sub.add_parser("sync", help="Sync specific repository paths")
    sync.add_argument("paths", nargs="*", help="Changed paths (e.g. agreements/charter.md)")
    sync.add_argument("--commit", help="Commit SHA to fetch (default: the configured branch)")
    sync.add_argument("--deleted", nargs="*", help="Deleted paths to retire")

    resync = sub.add_parser("resync", help="Sync every document in the repository")
    resync.add_argument("--ref", help="Branch, tag or commit (default: the configured branch)")
    resync.add_argument(
        "--passes",
        type=int,
        default=2,
        help="Sync passes; a second pass links relationships to documents created in the first",
    )

    refresh = sub.add_parser("refresh", help="Run one cache refresh cycle")
    refresh.add_argument("--force", action="store_true", help="Refresh every key regardless of age")

    status = sub.add_parser("status", help="Show recent sync runs and cache entries")
    status.add_argument("--limit", type=int, default=20)

    sub.add_parser("sources", help="List available source configurations")

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8102)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    load_dotenv(override=False)
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    if args.command == "sources":
        sources = list_sources()
        if sources:
            console.print("[bold]Available sources:[/bold]")
            for source in sources:
                console.print(f"  - {source}")
        else:
            console.print("[yellow]No source configurations found in config/sources/[/yellow]")
        return 0

    if args.command == "serve":
        return cmd_serve(args)

    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
