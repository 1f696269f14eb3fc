"""Shared setup for CLI commands."""

from __future__ import annotations

from electorate.config import settings
from electorate.observability.logging import configure_logging


def setup(backend: str | None, log_level: str | None, log_json: bool | None) -> None:
    """Apply command-line overrides and configure logging."""
    if backend is not None:
        settings.store_backend = backend
    configure_logging(
        json_format=settings.log_json if log_json is None else log_json,
        level=log_level or settings.log_level,
    )
