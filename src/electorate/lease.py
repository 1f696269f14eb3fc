"""Session leases for elections.

A lease is an ephemeral identity granted by the coordination store. Keys
bound to it are deleted when it expires or is revoked. The Lease keeps its
grant alive in the background:
1. grant() asks the store for a lease with a TTL
2. A keepalive task refreshes it every ttl/3 seconds
3. If the store reports the lease gone, or refreshes keep failing for longer
   than the TTL, the lease is marked lost and ``lost`` callbacks fire

Example:
    lease = Lease(store, ttl=30)
    lease.on_lost(handle_lost)
    lease_id = await lease.grant()
    ...
    await lease.revoke()
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from electorate.errors import LeaseLostError
from electorate.store.base import CoordinationStore

logger = logging.getLogger(__name__)

LostCallback = Callable[["Lease", LeaseLostError], Awaitable[None]]


class Lease:
    """A store lease with automatic keepalive.

    Args:
        store: Coordination store granting the lease
        ttl: Lease TTL in seconds
        keepalive_interval: Seconds between refreshes (default ttl / 3)
    """

    def __init__(
        self,
        store: CoordinationStore,
        ttl: int,
        keepalive_interval: float | None = None,
    ):
        if ttl <= 0:
            raise ValueError("Lease TTL must be positive")
        self.store = store
        self.ttl = ttl
        self.keepalive_interval = keepalive_interval or ttl / 3

        self._id: int | None = None
        self._revoked = False
        self._lost = False
        self._task: asyncio.Task[None] | None = None
        self._grant_lock = asyncio.Lock()
        self._on_lost: list[LostCallback] = []
        self._lost_event = asyncio.Event()

    @property
    def id(self) -> int | None:
        """Granted lease ID, or None before grant()."""
        return self._id

    @property
    def hex_id(self) -> str:
        """Lease ID as used in keys, or "" before grant()."""
        return f"{self._id:x}" if self._id is not None else ""

    @property
    def granted(self) -> bool:
        return self._id is not None

    @property
    def revoked(self) -> bool:
        return self._revoked

    @property
    def lost(self) -> bool:
        return self._lost

    async def wait_lost(self) -> None:
        """Block until the lease is lost."""
        await self._lost_event.wait()

    def on_lost(self, callback: LostCallback) -> None:
        """Register a callback fired once if the lease disappears."""
        self._on_lost.append(callback)

    async def grant(self) -> int:
        """Grant the lease on first call and return its ID."""
        async with self._grant_lock:
            if self._revoked or self._lost:
                raise LeaseLostError(self._id, "lease already revoked or lost")
            if self._id is None:
                self._id = await self.store.grant_lease(self.ttl)
                self._task = asyncio.create_task(self._keepalive_loop())
                logger.debug(f"Lease {self._id:x} granted (ttl={self.ttl}s)")
            return self._id

    async def revoke(self) -> None:
        """Revoke the lease. No-op if never granted or already revoked."""
        if self._revoked:
            return
        self._revoked = True

        # The keepalive task itself may be revoking from a lost callback
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        if self._id is not None:
            revoked = await self.store.revoke_lease(self._id)
            logger.debug(f"Lease {self._id:x} revoked (existed={revoked})")

    async def _keepalive_loop(self) -> None:
        """Refresh the lease until it is revoked or lost."""
        lease_id = self._id
        if lease_id is None:
            return
        last_refresh = time.monotonic()

        while not self._revoked:
            await asyncio.sleep(self.keepalive_interval)
            try:
                remaining = await self.store.refresh_lease(lease_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if time.monotonic() - last_refresh < self.ttl:
                    logger.warning(f"Lease {lease_id:x} refresh failed, retrying: {e}")
                    continue
                logger.error(f"Lease {lease_id:x} not refreshed within its TTL: {e}")
                await self._mark_lost(LeaseLostError(lease_id))
                return

            if remaining <= 0:
                logger.warning(f"Lease {lease_id:x} expired")
                await self._mark_lost(LeaseLostError(lease_id))
                return
            last_refresh = time.monotonic()

    async def _mark_lost(self, error: LeaseLostError) -> None:
        if self._revoked or self._lost:
            return
        self._lost = True
        self._lost_event.set()
        for callback in list(self._on_lost):
            try:
                await callback(self, error)
            except Exception:
                logger.exception("Error in lease lost callback")
