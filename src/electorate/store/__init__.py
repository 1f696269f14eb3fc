"""Coordination stores for Electorate.

Provides the revision-versioned key-value interface elections run on:
- InMemoryStore: single process
- RedisStore: shared through Redis
"""

from electorate.store.base import (
    Compare,
    CompareTarget,
    CoordinationStore,
    Delete,
    EventType,
    Get,
    KeyValue,
    OpResponse,
    Put,
    SortOrder,
    SortTarget,
    TxnOp,
    TxnResult,
    WatchEvent,
    Watcher,
)
from electorate.store.memory import InMemoryStore
from electorate.store.redis import RedisStore

__all__ = [
    "Compare",
    "CompareTarget",
    "CoordinationStore",
    "Delete",
    "EventType",
    "Get",
    "InMemoryStore",
    "KeyValue",
    "OpResponse",
    "Put",
    "RedisStore",
    "SortOrder",
    "SortTarget",
    "TxnOp",
    "TxnResult",
    "WatchEvent",
    "Watcher",
]
