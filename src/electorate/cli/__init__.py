"""CLI commands for Electorate.

Provides command-line interface using Typer:
- electorate campaign: Run for leadership and hold it until interrupted
- electorate leader: Show the current leader
- electorate observe: Follow leadership changes

Usage:
    electorate --help
    electorate campaign --backend redis scheduler node-1
    electorate leader scheduler
    electorate observe --count 3 scheduler
"""

import typer

from electorate.cli.campaign_cmd import app as campaign_app
from electorate.cli.leader_cmd import app as leader_app
from electorate.cli.observe_cmd import app as observe_app

# Main CLI application
app = typer.Typer(
    name="electorate",
    help="Electorate: leader election on a coordination store",
    no_args_is_help=True,
)

app.add_typer(campaign_app, name="campaign")
app.add_typer(leader_app, name="leader")
app.add_typer(observe_app, name="observe")


@app.callback()
def callback() -> None:
    """Electorate: leader election on a coordination store."""
    pass


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
