"""Coordination store interface.

Describes the revision-versioned key-value store elections run on:
- Range reads ordered and filtered by creation revision
- Atomic compare-and-branch transactions
- Leases that delete their keys when they expire or are revoked
- Watches over a key or a prefix

Backends:
- InMemoryStore: single process, used for tests and local runs
- RedisStore: shared between processes through Redis
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

from electorate.errors import WatchError

logger = logging.getLogger(__name__)


class SortTarget(str, Enum):
    """Field used to order range results."""

    KEY = "key"
    CREATE = "create"
    MOD = "mod"


class SortOrder(str, Enum):
    """Direction of range results."""

    ASCEND = "ascend"
    DESCEND = "descend"


class CompareTarget(str, Enum):
    """Field of a key checked by a transaction condition."""

    CREATE = "create"
    MOD = "mod"
    VERSION = "version"
    VALUE = "value"
    LEASE = "lease"


class EventType(str, Enum):
    """Kind of change delivered by a watch."""

    PUT = "put"
    DELETE = "delete"


@dataclass(frozen=True)
class KeyValue:
    """A stored key with its revision metadata."""

    key: str
    value: str = ""
    create_revision: int = 0
    mod_revision: int = 0
    version: int = 0
    lease: int = 0

    def field(self, target: CompareTarget) -> int | str:
        """Return the field a transaction condition compares against."""
        if target == CompareTarget.CREATE:
            return self.create_revision
        if target == CompareTarget.MOD:
            return self.mod_revision
        if target == CompareTarget.VERSION:
            return self.version
        if target == CompareTarget.LEASE:
            return self.lease
        return self.value


@dataclass(frozen=True)
class Compare:
    """Transaction condition: ``<target of key> <op> <value>``.

    A key that does not exist compares as revision 0 and value "".
    """

    key: str
    target: CompareTarget
    op: str
    value: int | str

    def __post_init__(self) -> None:
        if self.op not in ("==", "!=", "<", ">"):
            raise ValueError(f"Unsupported compare operator: {self.op!r}")

    @classmethod
    def create(cls, key: str, op: str, value: int) -> Compare:
        return cls(key, CompareTarget.CREATE, op, value)

    @classmethod
    def version(cls, key: str, op: str, value: int) -> Compare:
        return cls(key, CompareTarget.VERSION, op, value)

    @classmethod
    def value_of(cls, key: str, op: str, value: str) -> Compare:
        return cls(key, CompareTarget.VALUE, op, value)

    def matches(self, kv: KeyValue | None) -> bool:
        """Evaluate the condition against the current state of the key."""
        actual = (kv or KeyValue(self.key)).field(self.target)
        expected = self.value
        if self.op == "==":
            return actual == expected
        if self.op == "!=":
            return actual != expected
        if self.op == "<":
            return actual < expected  # type: ignore[operator]
        return actual > expected  # type: ignore[operator]


@dataclass(frozen=True)
class Put:
    """Write ``value`` to ``key``, optionally bound to a lease."""

    key: str
    value: str
    lease: int = 0


@dataclass(frozen=True)
class Get:
    """Read ``key``."""

    key: str


@dataclass(frozen=True)
class Delete:
    """Delete ``key``."""

    key: str


TxnOp = Put | Get | Delete


@dataclass
class OpResponse:
    """Result of one transaction operation."""

    kvs: list[KeyValue] = field(default_factory=list)
    deleted: int = 0


@dataclass
class TxnResult:
    """Result of a transaction.

    ``revision`` is the store revision after the transaction ran.
    ``responses`` line up with the operations of the branch that ran.
    """

    succeeded: bool
    revision: int
    responses: list[OpResponse] = field(default_factory=list)


@dataclass(frozen=True)
class WatchEvent:
    """A change to a watched key."""

    type: EventType
    kv: KeyValue


class Watcher(ABC):
    """Stream of watch events for one key or prefix.

    Events are queued from the moment the watcher is created. Errors from the
    underlying transport are raised from ``get`` as WatchError.
    """

    def __init__(self, key: str | None = None, prefix: str | None = None):
        if (key is None) == (prefix is None):
            raise ValueError("Watcher needs exactly one of key or prefix")
        self.key = key
        self.prefix = prefix
        self._queue: asyncio.Queue[WatchEvent | BaseException] = asyncio.Queue()
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def matches(self, key: str) -> bool:
        """Check whether a changed key belongs to this watcher."""
        if self.key is not None:
            return key == self.key
        return self.prefix is not None and key.startswith(self.prefix)

    def feed(self, event: WatchEvent) -> None:
        """Deliver an event if it belongs to this watcher."""
        if not self._cancelled and self.matches(event.kv.key):
            self._queue.put_nowait(event)

    def fail(self, error: BaseException) -> None:
        """Make the next ``get`` raise."""
        if not self._cancelled:
            self._queue.put_nowait(error)

    async def get(self) -> WatchEvent:
        """Wait for the next event."""
        if self._cancelled:
            raise WatchError("watcher cancelled")
        item = await self._queue.get()
        if isinstance(item, WatchError):
            raise item
        if isinstance(item, BaseException):
            raise WatchError(str(item) or type(item).__name__) from item
        return item

    async def wait_for(self, event_type: EventType) -> WatchEvent:
        """Wait for the next event of the given type, skipping others."""
        while True:
            event = await self.get()
            if event.type == event_type:
                return event

    def __aiter__(self) -> Watcher:
        return self

    async def __anext__(self) -> WatchEvent:
        if self._cancelled:
            raise StopAsyncIteration
        return await self.get()

    async def cancel(self) -> None:
        """Stop the watch. Safe to call more than once."""
        if self._cancelled:
            return
        self._cancelled = True
        await self._close()

    @abstractmethod
    async def _close(self) -> None:
        """Release backend resources held by the watch."""


class CoordinationStore(ABC):
    """Abstract revision-versioned key-value store."""

    @abstractmethod
    async def get(self, key: str) -> KeyValue | None:
        """Read a single key."""

    @abstractmethod
    async def get_range(
        self,
        prefix: str,
        *,
        sort_target: SortTarget = SortTarget.CREATE,
        sort_order: SortOrder = SortOrder.ASCEND,
        max_create_revision: int | None = None,
        limit: int = 0,
    ) -> list[KeyValue]:
        """Read every key under ``prefix``.

        Args:
            prefix: Key prefix to scan
            sort_target: Field to order by
            sort_order: Ascending or descending
            max_create_revision: Inclusive upper bound on creation revision
            limit: Maximum number of results (0 = no limit)
        """

    @abstractmethod
    async def txn(
        self,
        compare: Sequence[Compare],
        success: Sequence[TxnOp],
        failure: Sequence[TxnOp] = (),
    ) -> TxnResult:
        """Run ``success`` if every condition holds, otherwise ``failure``."""

    @abstractmethod
    async def watch(self, *, key: str | None = None, prefix: str | None = None) -> Watcher:
        """Open a watch on a key or a prefix."""

    @abstractmethod
    async def grant_lease(self, ttl: int) -> int:
        """Grant a lease and return its ID."""

    @abstractmethod
    async def refresh_lease(self, lease_id: int) -> int:
        """Keep a lease alive.

        Returns:
            The remaining TTL in seconds, or a value <= 0 if the lease is gone.
        """

    @abstractmethod
    async def revoke_lease(self, lease_id: int) -> bool:
        """Revoke a lease and delete its keys.

        Returns:
            False if the lease was already gone.
        """

    async def close(self) -> None:
        """Release backend resources."""
        return None


def sort_records(
    records: list[KeyValue], sort_target: SortTarget, sort_order: SortOrder
) -> list[KeyValue]:
    """Order records the way range queries do."""
    if sort_target == SortTarget.KEY:
        ordered = sorted(records, key=lambda kv: kv.key)
    elif sort_target == SortTarget.MOD:
        ordered = sorted(records, key=lambda kv: (kv.mod_revision, kv.key))
    else:
        ordered = sorted(records, key=lambda kv: (kv.create_revision, kv.key))
    if sort_order == SortOrder.DESCEND:
        ordered.reverse()
    return ordered
