"""Admin CLI for the forum database.

Usage:
    python -m forum.cli migrate
    python -m forum.cli status
    python -m forum.cli posts --limit 20 --offset 20
    python -m forum.cli events
    python -m forum.cli stats --history 10
    python -m forum.cli record-stats
    python -m forum.cli prune-sessions
    python -m forum.cli reset --yes
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import sys
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from forum.config import DEFAULT_CONFIG_PATH, StorageConfig, load_config
from forum.factory import open_storage
from forum.storage.errors import StorageError, translate_error
from forum.storage.migrations import apply_migrations, reset_database
from forum.storage.models import Statistics

console = Console()


def run_async(coro):
    """Run an async function to completion."""
    return asyncio.run(coro)


def _config(ctx) -> StorageConfig:
    config = load_config(ctx.obj["config_path"])
    if ctx.obj.get("db_path"):
        config.db_path = ctx.obj["db_path"]
    return config


def _fmt(ts) -> str:
    return ts.strftime("%Y-%m-%d %H:%M") if ts else "?"


def _stats_table(rows, title: str) -> Table:
    table = Table(title=title)
    table.add_column("#", style="dim", justify="right")
    table.add_column("Updated")
    table.add_column("Members", justify="right", style="cyan")
    table.add_column("Active", justify="right", style="green")
    table.add_column("Posts", justify="right")
    table.add_column("Comments", justify="right")
    table.add_column("Events", justify="right")
    for s in rows:
        table.add_row(
            str(s.id),
            _fmt(s.last_updated),
            str(s.total_members),
            str(s.active_members),
            str(s.total_posts),
            str(s.total_comments),
            str(s.total_events),
        )
    return table


@click.group()
@click.option("--db", default=None, help="Database path (overrides config)")
@click.option("--config", default=DEFAULT_CONFIG_PATH, help="Config file path")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, db: Optional[str], config: str, verbose: bool):
    """Forum storage admin CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db
    ctx.obj["config_path"] = config


@cli.command()
@click.pass_context
def migrate(ctx):
    """Apply pending schema migrations."""
    config = _config(ctx)
    try:
        version = apply_migrations(config.db_path)
    except (sqlite3.Error, OSError) as e:
        console.print(f"[red]Migration failed:[/red] {translate_error(e)}")
        sys.exit(1)
    console.print(f"[green]Schema at v{version}[/green] ({config.db_path})")


@cli.command()
@click.option("--yes", is_flag=True, help="Confirm dropping every table")
@click.pass_context
def reset(ctx, yes: bool):
    """Drop all tables and rebuild the schema."""
    config = _config(ctx)
    if not yes:
        console.print("[red]Refusing to reset without --yes[/red]")
        sys.exit(1)
    try:
        version = reset_database(config.db_path)
    except (sqlite3.Error, OSError) as e:
        console.print(f"[red]Reset failed:[/red] {translate_error(e)}")
        sys.exit(1)
    console.print(f"[yellow]Database reset.[/yellow] Schema at v{version}")


@cli.command()
@click.pass_context
def status(ctx):
    """Show row counts and the latest statistics snapshot."""

    async def _run():
        config = _config(ctx)
        storage = await open_storage(config)
        try:
            counts = await storage.count_rows()
            latest = await storage.get_statistics()

            console.print("\n[bold]Database Status[/bold]")
            console.print(f"  Path: {config.db_path}")
            for table, cnt in counts.items():
                console.print(f"  {table}: {cnt}")

            if latest:
                console.print()
                console.print(_stats_table([latest], "Latest Statistics"))
            else:
                console.print("\n[yellow]No statistics recorded yet[/yellow]")
        finally:
            await storage.close()

    run_async(_run())


@cli.command()
@click.option("--limit", "-n", default=10, help="Page size")
@click.option("--offset", "-o", default=0, help="Rows to skip")
@click.pass_context
def posts(ctx, limit: int, offset: int):
    """List posts, newest first."""

    async def _run():
        storage = await open_storage(_config(ctx))
        try:
            rows = await storage.get_posts(limit=limit, offset=offset)
            if not rows:
                console.print("[yellow]No posts[/yellow]")
                return

            table = Table(title="Posts")
            table.add_column("ID", justify="right", style="dim")
            table.add_column("User", justify="right", style="cyan")
            table.add_column("Title", max_width=50)
            table.add_column("Comments", justify="right", style="green")
            table.add_column("Created", width=16)
            for p in rows:
                table.add_row(
                    str(p.id),
                    str(p.user_id),
                    (p.title or p.content)[:50],
                    str(p.comments),
                    _fmt(p.created_at),
                )
            console.print(table)
        finally:
            await storage.close()

    try:
        run_async(_run())
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


@cli.command()
@click.option("--limit", "-n", default=5, help="Max events")
@click.pass_context
def events(ctx, limit: int):
    """List events, soonest first."""

    async def _run():
        storage = await open_storage(_config(ctx))
        try:
            rows = await storage.get_events(limit=limit)
            if not rows:
                console.print("[yellow]No events[/yellow]")
                return

            table = Table(title="Events")
            table.add_column("ID", justify="right", style="dim")
            table.add_column("Date", width=16)
            table.add_column("Title", max_width=50)
            table.add_column("Location")
            for e in rows:
                table.add_row(str(e.id), _fmt(e.event_date), e.title, e.location or "")
            console.print(table)
        finally:
            await storage.close()

    try:
        run_async(_run())
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


@cli.command()
@click.option("--history", "history", type=int, default=None, help="Show the last N snapshots")
@click.pass_context
def stats(ctx, history: Optional[int]):
    """Show the latest statistics snapshot, or the recorded history."""

    async def _run():
        storage = await open_storage(_config(ctx))
        try:
            if history is not None:
                rows = await storage.get_statistics_history(limit=history)
            else:
                latest = await storage.get_statistics()
                rows = [latest] if latest else []
            if not rows:
                console.print("[yellow]No statistics recorded yet[/yellow]")
                return
            console.print(_stats_table(rows, "Statistics"))
        finally:
            await storage.close()

    run_async(_run())


@cli.command("record-stats")
@click.pass_context
def record_stats(ctx):
    """Compute site statistics from the tables and append a snapshot."""

    async def _run() -> Statistics:
        storage = await open_storage(_config(ctx))
        try:
            payload = await storage.compute_statistics()
            return await storage.record_statistics(payload)
        finally:
            await storage.close()

    try:
        recorded = run_async(_run())
    except StorageError as e:
        console.print(f"[red]Failed to record statistics:[/red] {e}")
        sys.exit(1)
    console.print(_stats_table([recorded], "Recorded Statistics"))


@cli.command("prune-sessions")
@click.pass_context
def prune_sessions(ctx):
    """Delete expired sessions."""

    async def _run() -> int:
        storage = await open_storage(_config(ctx))
        try:
            return await storage.session_store.prune()
        finally:
            await storage.close()

    pruned = run_async(_run())
    console.print(f"[green]Pruned {pruned} expired session(s)[/green]")


def main():
    cli()


if __name__ == "__main__":
    main()
