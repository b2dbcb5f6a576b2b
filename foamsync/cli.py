"""foamsync CLI.

Commands:
- init: Initialize database schema
- create-org: Create an organization (and its stock row)
- set-pin: Set or rotate an organization's crew PIN
- issue-token: Issue a capability token for an organization
- process-queue: Replay due retry-queue rows once
- cleanup-queue: Purge completed/failed retry-queue rows past retention
- queue-status: Retry-queue counts per status
- serve: Run the HTTP API
"""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from foamsync.auth.capability import issue_capability
from foamsync.config import get_config
from foamsync.core.logging import configure_logging
from foamsync.db.connection import close_db, get_session_factory, init_db
from foamsync.models import RetryStatus, SessionRole
from foamsync.realtime.broker import get_broker
from foamsync.store.service import StoreService

app = typer.Typer(
    name="foamsync",
    help="foamsync - offline-tolerant sync and inventory reconciliation",
    no_args_is_help=True,
)

console = Console()


def _store() -> StoreService:
    config = get_config()
    return StoreService(get_session_factory(), get_broker(config.realtime), config.retry_queue)


def _run(coro):
    async def _wrapped():
        try:
            return await coro
        finally:
            await close_db()

    return asyncio.run(_wrapped())


@app.command()
def init(
    drop: bool = typer.Option(False, "--drop", help="Drop existing tables"),
):
    """Initialize database schema."""
    config = get_config()
    console.print(f"[bold]Initializing database:[/bold] {config.db.url}")
    if drop:
        console.print("[yellow]Dropping existing tables...[/yellow]")
    _run(init_db(drop=drop))
    console.print("[bold green]✓[/bold green] Database initialized")


@app.command(name="create-org")
def create_org(
    name: str = typer.Argument(..., help="Company name"),
    pin: str | None = typer.Option(None, "--pin", help="Crew PIN"),
):
    """Create an organization with a zeroed stock row."""
    organization = _run(_store().create_organization(name, crew_pin=pin))
    console.print(f"[bold green]✓[/bold green] Created {organization.name}: {organization.id}")
    if not pin:
        console.print("[yellow]No crew PIN set; crew login is disabled until one is.[/yellow]")


@app.command(name="set-pin")
def set_pin(
    org_id: str = typer.Argument(..., help="Organization ID"),
    pin: str = typer.Option(..., "--pin", prompt=True, hide_input=True, help="New crew PIN"),
):
    """Set or rotate the crew PIN."""
    _run(_store().set_crew_pin(org_id, pin))
    console.print("[bold green]✓[/bold green] Crew PIN updated")


@app.command(name="issue-token")
def issue_token(
    org_id: str = typer.Argument(..., help="Organization ID"),
    username: str = typer.Option("admin", "--username", help="Session username"),
    role: SessionRole = typer.Option(SessionRole.ADMIN, "--role", help="Session role"),
):
    """Print a signed capability token."""
    config = get_config()
    token = issue_capability(
        org_id, role, username, config.auth.secret_key, ttl_hours=config.auth.capability_ttl_hours
    )
    console.print(token)


@app.command(name="process-queue")
def process_queue(
    batch_size: int | None = typer.Option(None, "--batch-size", help="Rows to claim"),
    via_worker: bool = typer.Option(
        False, "--via-worker", help="Ask the arq worker to run the batch"
    ),
):
    """Replay due retry-queue rows once."""
    configure_logging()
    if via_worker:
        from foamsync.core.queue import request_batch_run

        job_id = asyncio.run(request_batch_run(batch_size))
        console.print(f"[green]Queued worker batch run[/green] {job_id}")
        return

    result = _run(_store().process_retry_batch(batch_size=batch_size))

    table = Table(title="Retry Batch")
    table.add_column("Processed", justify="right")
    table.add_column("Succeeded", justify="right", style="green")
    table.add_column("Retrying", justify="right", style="yellow")
    table.add_column("Failed", justify="right", style="red")
    table.add_row(
        str(result.processed), str(result.succeeded), str(result.retrying), str(result.failed)
    )
    console.print(table)


@app.command(name="cleanup-queue")
def cleanup_queue(
    retention_days: int | None = typer.Option(None, "--retention-days"),
    failed_retention_days: int | None = typer.Option(None, "--failed-retention-days"),
):
    """Purge completed and failed retry-queue rows past retention."""
    result = _run(_store().cleanup_retry_queue(retention_days, failed_retention_days))
    console.print(
        f"[bold green]✓[/bold green] Purged {result.purged_completed} completed, "
        f"{result.purged_failed} failed"
    )


@app.command(name="queue-status")
def queue_status(
    org_id: str | None = typer.Option(None, "--org", help="Organization ID"),
):
    """Show retry-queue counts per status."""
    counts = _run(_store().queue_stats(org_id))

    table = Table(title=f"Retry Queue{f' ({org_id})' if org_id else ''}")
    table.add_column("Status")
    table.add_column("Rows", justify="right")
    for status in RetryStatus:
        table.add_row(status.value, str(counts.get(status.value, 0)))
    console.print(table)


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host"),
    port: int = typer.Option(8000, "--port"),
    reload: bool = typer.Option(False, "--reload"),
):
    """Run the HTTP API with uvicorn."""
    import uvicorn

    uvicorn.run("foamsync.web.app:build_app", host=host, port=port, reload=reload, factory=True)


if __name__ == "__main__":
    app()
