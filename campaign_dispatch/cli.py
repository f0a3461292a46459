"""Command-line interface for the campaign dispatch engine.

Operators use it to prepare the database and to drive the email queue by
hand, without going through the HTTP API.

Usage:
    campaign-dispatch init-db
    campaign-dispatch process-queue --limit 10
    campaign-dispatch requeue-stuck --stuck-seconds 600
    campaign-dispatch campaign-status spring-sale
    campaign-dispatch jobs --campaign spring-sale --active-only
"""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime, timezone
from typing import Any, Optional

import click
from rich.console import Console
from rich.table import Table

from .config import DEFAULT_QUEUE_LIMIT, DEFAULT_STUCK_LIMIT, load_settings
from .core import DispatchCore
from .errors import DispatchError
from .logger import configure_logging

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    console.print_json(json.dumps(data, indent=2, default=str))


def _format_ms(value: Optional[int]) -> str:
    if not value:
        return "-"
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _build_core(ctx: click.Context) -> DispatchCore:
    settings = load_settings(ctx.obj.get("config"))
    if ctx.obj.get("db"):
        settings["db_path"] = ctx.obj["db"]
    return DispatchCore.from_settings(settings)


async def _command(core: DispatchCore, cmd: str, payload: dict) -> dict:
    await core.init()
    return await core.handle_command(cmd, payload)


def _run_command(ctx: click.Context, cmd: str, payload: dict) -> dict:
    core = _build_core(ctx)
    try:
        return run_async(_command(core, cmd, payload))
    except DispatchError as exc:
        print_error(exc.describe())
        sys.exit(1)


@click.group()
@click.option("--config", "-c", type=click.Path(dir_okay=False), help="Path to the INI configuration file.")
@click.option("--db", help="Database path (overrides the configuration).")
@click.option("--log-level", default="WARNING", show_default=True, help="Logging level for engine messages.")
@click.pass_context
def main(ctx: click.Context, config: Optional[str], db: Optional[str], log_level: str) -> None:
    """Operate the campaign dispatch engine."""
    configure_logging(log_level)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["db"] = db


@main.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the database schema if it does not exist."""
    core = _build_core(ctx)
    run_async(core.init())
    print_success(f"Database ready at {core.persistence.db_path}")


@main.command("process-queue")
@click.option("--limit", "-l", type=int, default=DEFAULT_QUEUE_LIMIT, show_default=True, help="Maximum jobs to claim.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def process_queue(ctx: click.Context, limit: int, as_json: bool) -> None:
    """Claim due email jobs and attempt delivery."""
    result = _run_command(ctx, "processQueue", {"limit": limit})
    if as_json:
        print_json(result)
        return
    console.print(
        f"Processed {result['processed']}: "
        f"[green]{result['sent']} sent[/green], "
        f"[yellow]{result['retried']} retried[/yellow], "
        f"[red]{result['failed']} failed[/red], "
        f"[red]{result['dead']} dead[/red]"
    )


@main.command("requeue-stuck")
@click.option("--stuck-seconds", type=int, default=None, help="Minimum age of an expired lease (default: configured value).")
@click.option("--limit", "-l", type=int, default=DEFAULT_STUCK_LIMIT, show_default=True)
@click.pass_context
def requeue_stuck(ctx: click.Context, stuck_seconds: Optional[int], limit: int) -> None:
    """Release jobs whose worker lease expired."""
    result = _run_command(ctx, "requeueStuck", {"stuck_seconds": stuck_seconds, "limit": limit})
    print_success(f"Requeued {result['requeued']} job(s), dead-lettered {result['dead']}")


@main.command("campaign-status")
@click.argument("campaign_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def campaign_status(ctx: click.Context, campaign_id: str, as_json: bool) -> None:
    """Show a campaign's rolled-up status and per-state counts."""
    result = _run_command(ctx, "campaignStatus", {"campaign_id": campaign_id})
    if not result.get("ok"):
        print_error(result.get("error") or "unknown error")
        sys.exit(1)
    if as_json:
        print_json(result)
        return

    table = Table(title=f"Campaign {campaign_id}: {result['status']}")
    table.add_column("State", style="cyan")
    table.add_column("Count", justify="right")
    for state, count in sorted(result["counts"].items()):
        table.add_row(state, str(count))
    console.print(table)


@main.command("jobs")
@click.option("--campaign", "campaign_id", help="Only jobs of this campaign.")
@click.option("--active-only", "-a", is_flag=True, help="Show only pending and processing jobs.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def jobs(ctx: click.Context, campaign_id: Optional[str], active_only: bool, as_json: bool) -> None:
    """List email queue jobs."""
    result = _run_command(ctx, "listJobs", {"campaign_id": campaign_id, "active_only": active_only})
    rows = result["jobs"]
    if as_json:
        print_json(rows)
        return
    if not rows:
        console.print("[dim]No jobs found.[/dim]")
        return

    table = Table(title="Email Queue")
    table.add_column("ID", style="cyan")
    table.add_column("Campaign")
    table.add_column("Email")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Scheduled (UTC)")
    table.add_column("Last Error")
    for job in rows:
        table.add_row(
            job["id"],
            job["campaign_id"],
            job.get("email") or "-",
            job["status"],
            f"{job.get('attempts', 0)}/{job.get('max_attempts', 0)}",
            _format_ms(job.get("scheduled_for")),
            (job.get("last_error") or "-")[:60],
        )
    console.print(table)


if __name__ == "__main__":
    main()
