"""Electorate: leader election on a revision-versioned key-value store.

Example:
    from electorate import Election, InMemoryStore

    election = Election(InMemoryStore(), "singleton-service")

    # Blocks until elected
    await election.campaign("node-1")
"""

from electorate.election import Election, Subscription
from electorate.errors import (
    ElectionError,
    LeaseLostError,
    LeaseNotFoundError,
    NoLeaderError,
    NotLeaderError,
    ObservationError,
    StoreError,
    WatchError,
)
from electorate.lease import Lease
from electorate.namespace import Namespace
from electorate.retry import RetryPolicy
from electorate.store import CoordinationStore, InMemoryStore, RedisStore

__version__ = "0.1.0"

__all__ = [
    "CoordinationStore",
    "Election",
    "ElectionError",
    "InMemoryStore",
    "Lease",
    "LeaseLostError",
    "LeaseNotFoundError",
    "Namespace",
    "NoLeaderError",
    "NotLeaderError",
    "ObservationError",
    "RedisStore",
    "RetryPolicy",
    "StoreError",
    "Subscription",
    "WatchError",
]
