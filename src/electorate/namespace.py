"""Key-prefixed view over a coordination store."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import replace

from electorate.store.base import (
    Compare,
    CoordinationStore,
    KeyValue,
    SortOrder,
    SortTarget,
    TxnOp,
    TxnResult,
    Watcher,
)


class Namespace:
    """Scopes every key of a store under ``prefix``.

    Keys passed in and returned are relative to the prefix. Watch events
    are left untouched and carry full keys; use ``relative_key`` on them.
    """

    def __init__(self, store: CoordinationStore, prefix: str):
        self.store = store
        self.prefix = prefix

    def full_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def relative_key(self, key: str) -> str:
        if not key.startswith(self.prefix):
            raise ValueError(f"Key {key!r} is outside namespace {self.prefix!r}")
        return key[len(self.prefix) :]

    def _strip(self, kv: KeyValue) -> KeyValue:
        return replace(kv, key=self.relative_key(kv.key))

    async def get(self, key: str) -> KeyValue | None:
        kv = await self.store.get(self.full_key(key))
        return self._strip(kv) if kv is not None else None

    async def records(
        self,
        *,
        sort_target: SortTarget = SortTarget.CREATE,
        sort_order: SortOrder = SortOrder.ASCEND,
        max_create_revision: int | None = None,
        limit: int = 0,
    ) -> list[KeyValue]:
        """Read every record in the namespace."""
        kvs = await self.store.get_range(
            self.prefix,
            sort_target=sort_target,
            sort_order=sort_order,
            max_create_revision=max_create_revision,
            limit=limit,
        )
        return [self._strip(kv) for kv in kvs]

    async def keys(
        self,
        *,
        sort_target: SortTarget = SortTarget.CREATE,
        sort_order: SortOrder = SortOrder.ASCEND,
        max_create_revision: int | None = None,
        limit: int = 0,
    ) -> list[str]:
        """Read every key in the namespace."""
        kvs = await self.records(
            sort_target=sort_target,
            sort_order=sort_order,
            max_create_revision=max_create_revision,
            limit=limit,
        )
        return [kv.key for kv in kvs]

    async def txn(
        self,
        compare: Sequence[Compare],
        success: Sequence[TxnOp],
        failure: Sequence[TxnOp] = (),
    ) -> TxnResult:
        result = await self.store.txn(
            [replace(cond, key=self.full_key(cond.key)) for cond in compare],
            [replace(op, key=self.full_key(op.key)) for op in success],
            [replace(op, key=self.full_key(op.key)) for op in failure],
        )
        for response in result.responses:
            response.kvs = [self._strip(kv) for kv in response.kvs]
        return result

    async def watch_key(self, key: str) -> Watcher:
        return await self.store.watch(key=self.full_key(key))

    async def watch_prefix(self) -> Watcher:
        return await self.store.watch(prefix=self.prefix)

