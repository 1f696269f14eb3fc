"""Tests for the command-line interface."""

from unittest.mock import MagicMock

import pytest
from typer.testing import CliRunner

from electorate import runtime
from electorate.cli import app
from electorate.cli import common

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated(monkeypatch):
    """Keep CLI runs from touching global logging and store state."""
    monkeypatch.setattr(common, "configure_logging", MagicMock())
    monkeypatch.setattr(common.settings, "store_backend", "memory")
    monkeypatch.setattr(runtime, "_store", None)


class TestCli:
    """Test CLI commands."""

    def test_help_lists_commands(self) -> None:
        result = runner.invoke(app, ["--help"])

        assert result.exit_code == 0
        for command in ("campaign", "leader", "observe"):
            assert command in result.output

    def test_leader_without_candidates(self) -> None:
        result = runner.invoke(app, ["leader", "scheduler"])

        assert result.exit_code == 1
        assert "No leader" in result.output

    def test_backend_option_is_applied(self) -> None:
        result = runner.invoke(app, ["leader", "--backend", "zookeeper", "scheduler"])

        assert result.exit_code != 0
        assert isinstance(result.exception, ValueError)

    def test_log_options_reach_logging(self) -> None:
        runner.invoke(app, ["leader", "--log-level", "debug", "scheduler"])

        common.configure_logging.assert_called_once_with(json_format=False, level="debug")
