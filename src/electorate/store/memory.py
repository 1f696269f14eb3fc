"""In-memory coordination store.

Keeps the full store semantics inside one process: a global revision
counter, per-key creation revisions, leases that expire on the event loop
and watches fed synchronously on every change. Suitable for tests and
single-process deployments. For multiple processes, use RedisStore.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from electorate.errors import LeaseNotFoundError, StoreError, WatchError
from electorate.store.base import (
    Compare,
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
    sort_records,
)

logger = logging.getLogger(__name__)


@dataclass
class _LeaseEntry:
    ttl: int
    keys: set[str] = field(default_factory=set)
    timer: asyncio.TimerHandle | None = None


class InMemoryWatcher(Watcher):
    """Watcher registered directly with an InMemoryStore."""

    def __init__(self, store: InMemoryStore, key: str | None = None, prefix: str | None = None):
        super().__init__(key=key, prefix=prefix)
        self._store = store

    async def _close(self) -> None:
        self._store._watchers.discard(self)


class InMemoryStore(CoordinationStore):
    """Coordination store held in process memory.

    Example:
        store = InMemoryStore()
        lease_id = await store.grant_lease(10)
        await store.txn(
            [Compare.create("a", "==", 0)],
            [Put("a", "1", lease=lease_id)],
        )
    """

    def __init__(self) -> None:
        self._revision = 0
        self._data: dict[str, KeyValue] = {}
        self._leases: dict[int, _LeaseEntry] = {}
        self._next_lease_id = 0x694D0000
        self._watchers: set[InMemoryWatcher] = set()
        self._closed = False

    @property
    def revision(self) -> int:
        """Current store revision."""
        return self._revision

    @property
    def watcher_count(self) -> int:
        """Number of open watchers."""
        return len(self._watchers)

    def _check_open(self) -> None:
        if self._closed:
            raise StoreError("store is closed")

    def _notify(self, event: WatchEvent) -> None:
        for watcher in list(self._watchers):
            watcher.feed(event)

    # -------------------------------------------------------------------------
    # Key-value operations
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> KeyValue | None:
        self._check_open()
        return self._data.get(key)

    async def get_range(
        self,
        prefix: str,
        *,
        sort_target: SortTarget = SortTarget.CREATE,
        sort_order: SortOrder = SortOrder.ASCEND,
        max_create_revision: int | None = None,
        limit: int = 0,
    ) -> list[KeyValue]:
        self._check_open()
        records = [
            kv
            for key, kv in self._data.items()
            if key.startswith(prefix)
            and (max_create_revision is None or kv.create_revision <= max_create_revision)
        ]
        records = sort_records(records, sort_target, sort_order)
        return records[:limit] if limit > 0 else records

    async def txn(
        self,
        compare: Sequence[Compare],
        success: Sequence[TxnOp],
        failure: Sequence[TxnOp] = (),
    ) -> TxnResult:
        self._check_open()
        succeeded = all(cond.matches(self._data.get(cond.key)) for cond in compare)
        ops = success if succeeded else failure

        # Validate before applying so a bad lease leaves the store untouched
        for op in ops:
            if isinstance(op, Put) and op.lease and op.lease not in self._leases:
                raise LeaseNotFoundError(op.lease)

        writes = any(isinstance(op, Put) for op in ops) or any(
            isinstance(op, Delete) and op.key in self._data for op in ops
        )
        revision = self._revision + 1 if writes else self._revision

        events: list[WatchEvent] = []
        responses: list[OpResponse] = []
        for op in ops:
            if isinstance(op, Get):
                kv = self._data.get(op.key)
                responses.append(OpResponse(kvs=[kv] if kv else []))
            elif isinstance(op, Put):
                kv = self._put(op, revision)
                events.append(WatchEvent(EventType.PUT, kv))
                responses.append(OpResponse())
            elif isinstance(op, Delete):
                deleted = self._delete(op.key, revision)
                if deleted is not None:
                    events.append(WatchEvent(EventType.DELETE, deleted))
                responses.append(OpResponse(deleted=1 if deleted else 0))

        self._revision = revision
        for event in events:
            self._notify(event)

        return TxnResult(succeeded=succeeded, revision=revision, responses=responses)

    def _put(self, op: Put, revision: int) -> KeyValue:
        previous = self._data.get(op.key)
        if previous is not None and previous.lease and previous.lease != op.lease:
            entry = self._leases.get(previous.lease)
            if entry is not None:
                entry.keys.discard(op.key)

        kv = KeyValue(
            key=op.key,
            value=op.value,
            create_revision=previous.create_revision if previous else revision,
            mod_revision=revision,
            version=previous.version + 1 if previous else 1,
            lease=op.lease,
        )
        self._data[op.key] = kv
        if op.lease:
            self._leases[op.lease].keys.add(op.key)
        return kv

    def _delete(self, key: str, revision: int) -> KeyValue | None:
        previous = self._data.pop(key, None)
        if previous is None:
            return None
        if previous.lease:
            entry = self._leases.get(previous.lease)
            if entry is not None:
                entry.keys.discard(key)
        return KeyValue(key=key, mod_revision=revision)

    # -------------------------------------------------------------------------
    # Watches
    # -------------------------------------------------------------------------

    async def watch(self, *, key: str | None = None, prefix: str | None = None) -> Watcher:
        self._check_open()
        watcher = InMemoryWatcher(self, key=key, prefix=prefix)
        self._watchers.add(watcher)
        return watcher

    def fail_watchers(self, error: BaseException) -> None:
        """Fail every open watcher with ``error``."""
        for watcher in list(self._watchers):
            watcher.fail(error)

    # -------------------------------------------------------------------------
    # Leases
    # -------------------------------------------------------------------------

    async def grant_lease(self, ttl: int) -> int:
        self._check_open()
        self._next_lease_id += 1
        lease_id = self._next_lease_id
        entry = _LeaseEntry(ttl=ttl)
        self._leases[lease_id] = entry
        self._schedule_expiry(lease_id, entry)
        logger.debug(f"Granted lease {lease_id:x} (ttl={ttl}s)")
        return lease_id

    async def refresh_lease(self, lease_id: int) -> int:
        self._check_open()
        entry = self._leases.get(lease_id)
        if entry is None:
            return -1
        self._schedule_expiry(lease_id, entry)
        return entry.ttl

    async def revoke_lease(self, lease_id: int) -> bool:
        self._check_open()
        return self._drop_lease(lease_id)

    def expire_lease(self, lease_id: int) -> bool:
        """Expire a lease immediately, as if its TTL had elapsed."""
        return self._drop_lease(lease_id)

    def _schedule_expiry(self, lease_id: int, entry: _LeaseEntry) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
        loop = asyncio.get_running_loop()
        entry.timer = loop.call_later(entry.ttl, self._drop_lease, lease_id)

    def _drop_lease(self, lease_id: int) -> bool:
        entry = self._leases.pop(lease_id, None)
        if entry is None:
            return False
        if entry.timer is not None:
            entry.timer.cancel()

        if entry.keys:
            # All keys of a lease go away in a single revision
            self._revision += 1
            events = []
            for key in sorted(entry.keys):
                deleted = self._delete(key, self._revision)
                if deleted is not None:
                    events.append(WatchEvent(EventType.DELETE, deleted))
            for event in events:
                self._notify(event)

        logger.debug(f"Dropped lease {lease_id:x}")
        return True

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for entry in self._leases.values():
            if entry.timer is not None:
                entry.timer.cancel()
        self.fail_watchers(WatchError("store closed"))
        self._watchers.clear()
