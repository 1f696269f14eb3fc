"""CLI command for following leadership changes.

Usage:
    electorate observe scheduler
    electorate observe --count 3 --backend redis scheduler
"""

from __future__ import annotations

import asyncio

import typer

from electorate.cli.common import setup

app = typer.Typer(help="Follow leadership changes of an election")


@app.callback(invoke_without_command=True)
def observe(
    name: str = typer.Argument(..., help="Election name"),
    count: int = typer.Option(
        0,
        "--count",
        "-n",
        help="Stop after this many leader changes (0 = run until interrupted)",
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
) -> None:
    """Print each new leader as it takes over."""
    setup(backend, log_level, log_json=False)
    try:
        asyncio.run(_observe(name, count))
    except KeyboardInterrupt:
        pass


async def _observe(name: str, count: int) -> None:
    """Async implementation of observe command."""
    from rich.console import Console

    from electorate.election import Election
    from electorate.errors import ObservationError
    from electorate.runtime import close_store, get_store

    console = Console()
    election = Election(get_store(), name)
    done = asyncio.Event()
    seen = 0

    async def on_leader(key: str) -> None:
        nonlocal seen
        seen += 1
        console.print(f"[green]Leader:[/green] {key}")
        if count and seen >= count:
            done.set()

    async def on_error(error: Exception) -> None:
        console.print(f"[red]Error:[/red] {error}")
        if isinstance(error, ObservationError):
            done.set()

    election.on_error(on_error)
    election.on_leader(on_leader)

    try:
        await done.wait()
    finally:
        await election.close()
        await close_store()
