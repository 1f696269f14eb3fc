"""Observability module for Electorate.

Provides structured logging:
- JSON and console formatters
- Election context (name, lease ID) on every record
"""

from electorate.observability.logging import (
    LogContext,
    configure_logging,
    election_var,
    lease_id_var,
)

__all__ = [
    "configure_logging",
    "LogContext",
    "election_var",
    "lease_id_var",
]
