"""Project Autopilot CLI.

Usage:
    autopilot serve                  # Run the local API server with the timer tick
    autopilot init-db                # Create the SQLite database and tables
    autopilot analytics              # Dashboard totals as a table
    autopilot repair-hours           # Credit hours left behind by failed stops
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from .analytics import compute_analytics, debugging_insights
from .config import load_settings
from .errors import ConfigError, StorageError
from .log import configure_logging
from .reconcile import repair_unapplied_hours
from .store import SqliteStore

console = Console()


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--db", "db_path", type=click.Path(dir_okay=False, path_type=Path),
              help="SQLite database path (overrides AUTOPILOT_DB).")
@click.option("-v", "--verbose", is_flag=True, help="Log at DEBUG level.")
@click.pass_context
def cli(ctx, db_path, verbose):
    """Project Autopilot - track building, debugging and learning time."""
    try:
        settings = load_settings()
    except ConfigError as e:
        raise click.ClickException(str(e))
    if db_path is not None:
        settings.db_path = db_path
    if verbose:
        settings.log_level = "DEBUG"

    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


def _store(ctx) -> SqliteStore:
    return SqliteStore(ctx.obj["settings"].db_path)


@cli.command()
@click.option("--host", default=None, help="Bind address (overrides AUTOPILOT_HOST).")
@click.option("--port", type=int, default=None, help="Port (overrides AUTOPILOT_PORT).")
@click.pass_context
def serve(ctx, host, port):
    """Run the API server."""
    import uvicorn

    from .api import create_app

    settings = ctx.obj["settings"]
    configure_logging(settings.log_level)
    app = create_app(settings)
    uvicorn.run(
        app,
        host=host or settings.host,
        port=port or settings.port,
        log_level=settings.log_level.lower(),
    )


@cli.command("init-db")
@click.pass_context
def init_db(ctx):
    """Create the database file and tables."""
    store = _store(ctx)
    try:
        asyncio.run(store.initialize())
    except StorageError as e:
        raise click.ClickException(str(e))
    click.echo(f"Database ready: {store.db_path}")


async def _load_analytics(store: SqliteStore, user_id: str):
    await store.initialize()
    projects = await store.list_projects(user_id)
    debug_logs = await store.list_debug_logs(user_id)
    learning_minutes = await store.total_learning_minutes(user_id)
    return projects, compute_analytics(projects, debug_logs, learning_minutes)


@cli.command()
@click.pass_context
def analytics(ctx):
    """Show hour totals and ratios."""
    settings = ctx.obj["settings"]
    try:
        projects, stats = asyncio.run(_load_analytics(_store(ctx), settings.user_id))
    except StorageError as e:
        raise click.ClickException(str(e))

    table = Table(title="Projects", show_lines=False)
    table.add_column("Project", style="bold")
    table.add_column("Status")
    table.add_column("Building", justify="right", style="green")
    table.add_column("Debugging", justify="right", style="red")
    table.add_column("Progress", justify="right")
    for p in projects:
        table.add_row(
            p.name,
            p.status,
            f"{p.building_hours:.1f}h",
            f"{p.debugging_hours:.1f}h",
            f"{p.progress}%",
        )
    console.print(table)

    summary = Table(show_header=False, box=None)
    summary.add_column(style="dim")
    summary.add_column(justify="right")
    summary.add_row("Total hours", f"{stats.total_hours:.1f}")
    summary.add_row("Building / debugging", f"{stats.building_ratio}% / {stats.debugging_ratio}%")
    summary.add_row("Completion rate", f"{stats.completion_rate}%")
    summary.add_row("Avg debug time", f"{stats.avg_debug_time:.1f} min")
    summary.add_row("Active projects", str(stats.active_projects))
    summary.add_row("Completed this month", str(stats.completed_this_month))
    summary.add_row("Learning hours", f"{stats.learning_hours:.1f}")
    console.print(summary)

    for insight in debugging_insights(projects):
        console.print(f"[yellow]![/yellow] {insight.title}: {insight.description}")


@cli.command("repair-hours")
@click.pass_context
def repair_hours(ctx):
    """Credit projects for closed time logs whose hours were never applied."""
    settings = ctx.obj["settings"]
    configure_logging(settings.log_level, console=False)
    store = _store(ctx)

    async def _repair():
        await store.initialize()
        return await repair_unapplied_hours(store, settings.user_id)

    try:
        repaired = asyncio.run(_repair())
    except StorageError as e:
        raise click.ClickException(str(e))

    if not repaired:
        click.echo("Nothing to repair.")
        return
    for result in repaired:
        click.echo(
            f"{result.record.id}: +{result.hours_added:.2f}h "
            f"{result.record.kind.value} on {result.record.project_id}"
        )
    click.echo(f"Repaired {len(repaired)} time logs.")


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
