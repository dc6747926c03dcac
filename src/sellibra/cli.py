"""
Sellibra CLI Tool
Command-line interface for operating the quota store and job queues.
"""

import asyncio
import json
import sys
from typing import Any, Awaitable, Callable, TypeVar

import click
from rich.console import Console
from rich.table import Table

from sellibra.config import get_settings
from sellibra.errors import SellibraError
from sellibra.logging_config import configure_logging
from sellibra.main import Application

console = Console()

T = TypeVar("T")


def run_with_app(
    action: Callable[[Application], Awaitable[T]],
    connect_queue: bool = False,
) -> T:
    """Build a worker-less application, run ``action`` and tear it down."""

    async def runner() -> T:
        app = Application(get_settings(), run_workers=False)
        await asyncio.to_thread(app.db_manager.init_db)
        if connect_queue:
            await app.queue.connect()
        try:
            return await action(app)
        finally:
            await app.queue.close()
            app.db_manager.close()

    try:
        return asyncio.run(runner())
    except SellibraError as e:
        console.print(f"❌ [red]{e}[/red]")
        sys.exit(1)


def print_balance(balance: dict[str, Any], as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(balance, indent=2))
        return

    table = Table(title=f"Tokens for {balance['user_id']}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    for key in ("daily_tokens", "allowance", "last_token_reset", "next_reset_at", "status"):
        table.add_row(key, str(balance[key]))
    console.print(table)


def transport_name(app: Application) -> str | None:
    return app.transport.name if app.transport is not None else None


def print_memory_note() -> None:
    # A memory transport only holds the jobs of its own process
    console.print(
        "⚠️ [yellow]Memory backend: only jobs of this CLI process are visible, "
        "not those of a running server or worker. Set QUEUE_BACKEND=redis "
        "to inspect them.[/yellow]"
    )


@click.group()
@click.option("--log-level", default=None, help="Override the configured log level")
def cli(log_level: str | None):
    """Sellibra CLI - token quotas and AI job queues."""
    configure_logging(log_level or get_settings().log_level)


@cli.command()
def worker():
    """Run queue workers and maintenance until interrupted."""
    from sellibra.main import main

    main()


@cli.command()
@click.option("--host", default=None, help="Bind address")
@click.option("--port", default=None, type=int, help="Bind port")
def serve(host: str | None, port: int | None):
    """Run the HTTP API."""
    import uvicorn

    from sellibra.api.app import create_app

    settings = get_settings()
    uvicorn.run(
        create_app(settings=settings),
        host=host or settings.api_host,
        port=port or settings.api_port,
    )


# --- Tokens ---


@cli.group()
def tokens():
    """Inspect and adjust user token balances."""


@tokens.command("show")
@click.argument("user_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def tokens_show(user_id: str, as_json: bool):
    """Show a user's effective balance."""

    async def action(app: Application) -> dict[str, Any]:
        return (await app.quota.get_balance(user_id)).to_dict()

    print_balance(run_with_app(action), as_json)


@tokens.command("set")
@click.argument("user_id")
@click.argument("amount", type=click.IntRange(min=0))
def tokens_set(user_id: str, amount: int):
    """Overwrite a user's balance and restart the window."""

    async def action(app: Application) -> dict[str, Any]:
        return (await app.quota.set_tokens(user_id, amount)).to_dict()

    balance = run_with_app(action)
    console.print(f"✅ [green]{user_id} now has {balance['daily_tokens']} tokens[/green]")


@tokens.command("reset")
@click.argument("user_id")
def tokens_reset(user_id: str):
    """Refill a user's balance to the default allowance."""

    async def action(app: Application) -> dict[str, Any]:
        return (await app.quota.reset_tokens(user_id)).to_dict()

    balance = run_with_app(action)
    console.print(f"✅ [green]{user_id} reset to {balance['daily_tokens']} tokens[/green]")


# --- Users ---


@cli.group()
def users():
    """Manage quota users."""


@users.command("create")
@click.option("--user-id", default=None, help="Explicit user id")
@click.option("--email", default=None, help="User email")
def users_create(user_id: str | None, email: str | None):
    """Create a user with the default allowance."""

    async def action(app: Application) -> dict[str, Any]:
        return (await app.quota.create_user(user_id=user_id, email=email)).to_dict()

    balance = run_with_app(action)
    console.print(
        f"✅ [green]Created {balance['user_id']} with {balance['daily_tokens']} tokens[/green]"
    )


# --- Jobs ---


@cli.group()
def jobs():
    """Inspect job queues."""


@jobs.command("stats")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def jobs_stats(as_json: bool):
    """Show job counts per queue and state."""

    async def action(app: Application) -> tuple[str | None, bool, dict[str, dict[str, int]]]:
        return transport_name(app), app.queue.is_available(), await app.queue.counts()

    backend, available, counts = run_with_app(action, connect_queue=True)

    if as_json:
        click.echo(
            json.dumps(
                {"transport": backend, "available": available, "queues": counts}, indent=2
            )
        )
        return

    if backend == "memory":
        print_memory_note()

    if not available:
        console.print("⚠️ [yellow]Job queue unavailable[/yellow]")
        return

    states = ["waiting", "delayed", "active", "completed", "failed"]
    table = Table(title="Job Queues")
    table.add_column("Queue", style="cyan")
    for state in states:
        table.add_column(state.capitalize(), justify="right")
    for name, by_state in counts.items():
        table.add_row(name, *(str(by_state.get(state, 0)) for state in states))
    console.print(table)


@jobs.command("show")
@click.argument("job_id")
def jobs_show(job_id: str):
    """Show one job record."""

    async def action(app: Application):
        return transport_name(app), await app.queue.get_job(job_id)

    backend, job = run_with_app(action, connect_queue=True)
    if job is None:
        console.print(f"❌ [red]Job not found: {job_id}[/red]")
        if backend == "memory":
            print_memory_note()
        sys.exit(1)
    click.echo(json.dumps(job.to_dict(), indent=2, default=str))


@cli.command()
def maintenance():
    """Run lease reaping, job pruning and temp cleanup once."""

    async def action(app: Application) -> dict[str, int]:
        return await app.run_maintenance()

    for key, value in run_with_app(action, connect_queue=True).items():
        console.print(f"{key}: {value}")


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
