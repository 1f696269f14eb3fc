"""CLI command for showing the current leader.

Usage:
    electorate leader scheduler
    electorate leader --backend redis scheduler
"""

from __future__ import annotations

import asyncio

import typer

from electorate.cli.common import setup

app = typer.Typer(help="Show the current leader of an election")


@app.callback(invoke_without_command=True)
def leader(
    name: str = typer.Argument(..., help="Election name"),
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
    """Print the current leader key and value.

    Exits with code 1 if the election has no leader.
    """
    setup(backend, log_level, log_json=False)
    asyncio.run(_leader(name))


async def _leader(name: str) -> None:
    """Async implementation of leader command."""
    from rich.console import Console
    from rich.table import Table

    from electorate.election import Election
    from electorate.errors import NoLeaderError
    from electorate.runtime import close_store, get_store

    console = Console()
    election = Election(get_store(), name)

    try:
        record = await election.get_leader_record()
    except NoLeaderError as e:
        console.print(f"[yellow]No leader[/yellow] for '{name}'")
        raise typer.Exit(code=1) from e
    finally:
        await close_store()

    table = Table(title=f"Leader of '{name}'")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Key", record.key)
    table.add_row("Lease", election.candidate_id(record.key))
    table.add_row("Value", record.value)
    table.add_row("Created at revision", str(record.create_revision))
    console.print(table)
