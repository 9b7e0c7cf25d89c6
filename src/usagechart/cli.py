"""CLI interface for usagechart."""

import asyncio
import logging
from pathlib import Path

import click
import httpx
import uvicorn
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AGENTS_DIR, DB_PATH, HOST, PORT
from .db import Database
from .models import DateRange
from .stats import collect_stats
from .sync import SyncError, sync_sessions

console = Console()

LOG_LEVELS = ["debug", "info", "warning", "error"]


def _setup_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )


@click.group()
@click.version_option(__version__)
@click.option("--db-path", type=click.Path(path_type=Path), default=DB_PATH, help="SQLite cache file")
@click.option(
    "--agents-dir", type=click.Path(path_type=Path), default=AGENTS_DIR, help="Agent session log root"
)
@click.pass_context
def cli(ctx, db_path, agents_dir):
    """usagechart - token usage statistics from agent session logs."""
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path
    ctx.obj["agents_dir"] = agents_dir


@cli.command()
@click.option("--host", default=HOST, help="Bind address")
@click.option("--port", "-p", default=PORT, help="Server port")
@click.option("--log-level", default="info", type=click.Choice(LOG_LEVELS))
@click.pass_obj
def serve(obj, host, port, log_level):
    """Serve the stats API."""
    from .app import create_app

    _setup_logging(log_level)
    console.print(f"[bold green]usagechart v{__version__}[/]")
    console.print(f"  API:        http://localhost:{port}/api/stats")
    console.print(f"  Agents dir: {obj['agents_dir']}")
    console.print(f"  DB cache:   {obj['db_path']}")
    console.print()

    app = create_app(obj["db_path"], obj["agents_dir"])
    uvicorn.run(app, host=host, port=port, log_level=log_level)


@cli.command()
@click.option("--start", "-s", default=None, help="First day to include (YYYY-MM-DD)")
@click.option("--end", "-e", default=None, help="Last day to include (YYYY-MM-DD)")
@click.option("--json", "as_json", is_flag=True, help="Print the raw stats document")
@click.pass_obj
def stats(obj, start, end, as_json):
    """Sync the cache and show usage statistics."""
    try:
        date_range = DateRange(start=start, end=end)
    except ValidationError as exc:
        raise click.BadParameter(exc.errors()[0]["msg"], param_hint="--start/--end") from exc

    try:
        s = asyncio.run(_collect(obj["db_path"], obj["agents_dir"], date_range))
    except SyncError as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        click.echo(s.model_dump_json(indent=2))
        return
    _print_stats(s, date_range)


async def _collect(db_path, agents_dir, date_range):
    db = Database(db_path)
    await db.init()
    try:
        return await collect_stats(db, agents_dir, date_range)
    finally:
        await db.close()


def _totals_table(title, rows, label):
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column(label, style="white")
    table.add_column("Records", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right", style="yellow")
    for name, records, tokens, cost in rows:
        table.add_row(name, str(records), f"{tokens:,}", f"${cost:.4f}" if cost else "-")
    return table


def _print_stats(s, date_range):
    if date_range.bounded:
        span = f"{date_range.start or '...'} to {date_range.end or '...'}"
    else:
        span = "all time"
    console.print(f"\n[bold]Usage[/] ({span})\n")

    summary = s.summary
    console.print(
        f"  {summary.usage_records:,} records, {summary.total_tokens:,} tokens, "
        f"${summary.total_cost:.4f} across {summary.agent_count} agents, "
        f"{summary.model_count} models, {summary.day_count} days "
        f"({summary.session_files} session files)"
    )
    console.print(
        f"  [dim]sync: +{s.sync.new_records} records, {s.sync.synced_files} synced, "
        f"{s.sync.skipped_files} skipped[/]\n"
    )

    console.print(
        _totals_table("Agents", [(a.agent, a.records, a.tokens, a.cost) for a in s.agent_totals], "Agent")
    )
    console.print(
        _totals_table("Models", [(m.model, m.records, m.tokens, m.cost) for m in s.model_totals], "Model")
    )
    console.print(
        _totals_table("Daily", [(d.date, d.records, d.tokens, d.cost) for d in s.daily_tokens], "Date")
    )
    console.print()


@cli.command()
@click.pass_obj
def sync(obj):
    """Run one sync pass over the session logs."""
    try:
        result = asyncio.run(_sync(obj["db_path"], obj["agents_dir"]))
    except SyncError as exc:
        raise click.ClickException(str(exc)) from exc
    console.print(
        f"[green]+{result.new_records} records[/] from {result.synced_files} files "
        f"({result.skipped_files} skipped, {result.failed_files} failed)"
    )


async def _sync(db_path, agents_dir):
    db = Database(db_path)
    await db.init()
    try:
        return await sync_sessions(db, agents_dir)
    finally:
        await db.close()


@cli.command()
@click.option("--port", "-p", default=PORT, help="Server port")
def status(port):
    """Check if the usagechart server is running."""
    try:
        resp = httpx.get(f"http://localhost:{port}/health", timeout=3)
    except httpx.HTTPError:
        console.print(f"[red]usagechart is not running on port {port}[/]")
        return
    if resp.status_code == 200:
        console.print(f"[green]usagechart is running on port {port}[/]")
    else:
        console.print(f"[yellow]Server responded with status {resp.status_code}[/]")


@cli.command()
@click.confirmation_option(prompt="Delete the usage cache? It is rebuilt from the logs on next sync.")
@click.pass_obj
def reset(obj):
    """Delete the SQLite cache and its WAL files."""
    db_path = Path(obj["db_path"])
    for path in (db_path, db_path.with_name(db_path.name + "-wal"), db_path.with_name(db_path.name + "-shm")):
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as exc:
            console.print(f"[red]Could not delete {path}: {exc}[/]")
    console.print(f"[green]Cache cleared:[/] {db_path}")
