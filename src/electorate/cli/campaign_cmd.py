"""CLI command for running for leadership.

Usage:
    electorate campaign scheduler node-1
    electorate campaign --ttl 10 --backend redis scheduler node-1
"""

from __future__ import annotations

import asyncio

import typer

from electorate.cli.common import setup

app = typer.Typer(help="Run for leadership and hold it until interrupted")


@app.callback(invoke_without_command=True)
def campaign(
    name: str = typer.Argument(..., help="Election name"),
    value: str = typer.Argument(..., help="Value to publish while leader"),
    ttl: int | None = typer.Option(
        None,
        "--ttl",
        "-t",
        help="Lease TTL in seconds",
    ),
    backend: str | None = typer.Option(
        None,
        "--backend",
        "-b",
        help="Coordination store: memory or redis",
    ),
    log_level: str | None = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Log level: debug, info, warning, error",
    ),
    log_json: bool | None = typer.Option(
        None,
        "--log-json/--no-log-json",
        help="Emit JSON logs",
    ),
) -> None:
    """Campaign in an election.

    Blocks until elected, then holds leadership until interrupted (Ctrl+C)
    or until the session lease is lost. Resigns on exit.
    """
    setup(backend, log_level, log_json)
    try:
        lost = asyncio.run(_campaign(name, value, ttl))
    except KeyboardInterrupt:
        # Leadership was resigned on the way out
        return
    if lost:
        raise typer.Exit(code=1)


async def _campaign(name: str, value: str, ttl: int | None) -> bool:
    """Async implementation of campaign command. Returns True if the lease was lost."""
    from rich.console import Console

    from electorate.election import Election
    from electorate.errors import LeaseLostError
    from electorate.observability.logging import LogContext
    from electorate.runtime import close_store, get_store

    console = Console()
    election = Election(get_store(), name, ttl=ttl)
    lease_lost = asyncio.Event()

    async def on_error(error: Exception) -> None:
        console.print(f"[red]Error:[/red] {error}")
        if isinstance(error, LeaseLostError):
            lease_lost.set()

    election.on_error(on_error)

    try:
        with LogContext(election=name):
            await election.ready()
            console.print(f"[blue]Campaigning[/blue] in '{name}' with lease {election.lease_id}")

            with LogContext(lease_id=election.lease_id):
                await election.campaign(value)
                console.print(f"[green]Elected:[/green] {election.leader_key}")

                # Hold leadership until interrupted or the lease goes away
                await lease_lost.wait()
                return True
    finally:
        await election.close()
        await close_store()
