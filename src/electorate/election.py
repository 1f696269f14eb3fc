"""Leader election on a coordination store.

Candidates race for a named resource by creating a key bound to their
lease under ``election/<name>/``. The live key with the lowest creation
revision is the leader. Every other candidate waits for the keys created
before its own to be deleted, oldest-first, so no newcomer can overtake
a candidate that is already waiting.

Leadership ends when the leader resigns (its key is deleted) or when its
lease is lost (the store deletes the key on expiry).

Processes that do not campaign can follow leadership through observation:
while at least one ``leader`` handler is subscribed (or observation was
started explicitly) the election watches for the current leader key and
reports every change.

Example:
    store = InMemoryStore()
    election = Election(store, "singleton-service")

    # Blocks until elected
    await election.campaign("node-1")
    await election.proclaim("node-1:ready")
    await election.resign()

    # Or hold leadership for a block
    async with election.leadership("node-1"):
        await do_leader_work()

    # Follow leadership without campaigning
    subscription = election.on_leader(handle_new_leader)
    ...
    subscription.cancel()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import replace
from types import TracebackType

from electorate.config import settings
from electorate.errors import LeaseLostError, NoLeaderError, NotLeaderError, ObservationError
from electorate.lease import Lease
from electorate.namespace import Namespace
from electorate.retry import RetryPolicy
from electorate.store.base import (
    Compare,
    CoordinationStore,
    Delete,
    EventType,
    Get,
    KeyValue,
    Put,
    SortOrder,
)
from electorate.waiting import wait_for_delete, wait_for_deletes

logger = logging.getLogger(__name__)

LeaderHandler = Callable[[str], Awaitable[None]]
ErrorHandler = Callable[[Exception], Awaitable[None]]


def _discard(handlers: list, handler: object) -> None:
    if handler in handlers:
        handlers.remove(handler)


class Subscription:
    """Handle for a registered election handler."""

    def __init__(self, remove: Callable[[], None]):
        self._remove = remove
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        """Unregister the handler. Safe to call more than once."""
        if self._active:
            self._active = False
            self._remove()


class Election:
    """Leader election for one named resource.

    Args:
        store: Coordination store shared by all candidates
        name: Name of the contested resource (e.g. "scheduler")
        ttl: Lease TTL in seconds; a dead leader is replaced after at most this long
        keepalive_interval: Seconds between lease refreshes (default ttl / 3)
        retry: Backoff policy for the observation loop
    """

    KEY_ROOT = "election"

    def __init__(
        self,
        store: CoordinationStore,
        name: str,
        ttl: int | None = None,
        keepalive_interval: float | None = None,
        retry: RetryPolicy | None = None,
    ):
        if not name:
            raise ValueError("Election name must not be empty")
        self.store = store
        self.name = name
        self.ttl = ttl or settings.lease_ttl
        self.keepalive_interval = keepalive_interval or settings.keepalive_interval
        self.retry = retry or RetryPolicy.from_settings()
        self.namespace = Namespace(store, self.prefix)

        # Session
        self._lease: Lease | None = None
        self._lease_lock = asyncio.Lock()
        self._leader_key = ""
        self._leader_revision = 0
        self._value: str | None = None
        self._is_campaigning = False
        self._is_leader = False

        # Observation
        self._leader_handlers: list[LeaderHandler] = []
        self._error_handlers: list[ErrorHandler] = []
        self._observe_requested = False
        self._observe_task: asyncio.Task[None] | None = None
        self._in_cycle = False
        self._last_observed: tuple[str, int] | None = None
        self._current_leader: str | None = None
        self._deliveries: set[asyncio.Task[None]] = set()

    @property
    def prefix(self) -> str:
        """Key prefix shared by every candidate of this election."""
        return f"{self.KEY_ROOT}/{self.name}/"

    @property
    def lease_id(self) -> str:
        """Session lease ID as used in keys, or "" before one is granted."""
        return self._lease.hex_id if self._lease is not None else ""

    @property
    def leader_key(self) -> str:
        """Full key held by this session while campaigning, else ""."""
        return self._leader_key

    @property
    def leader_revision(self) -> int:
        """Creation revision of this session's key while campaigning, else 0."""
        return self._leader_revision

    @property
    def is_ready(self) -> bool:
        return self._lease is not None

    @property
    def is_campaigning(self) -> bool:
        return self._is_campaigning

    @property
    def is_leader(self) -> bool:
        """True from a successful campaign until resignation or lease loss."""
        return self._is_leader

    @property
    def is_observing(self) -> bool:
        observing = self._observe_task is not None and not self._observe_task.done()
        return observing or self._in_cycle

    def candidate_id(self, key: str) -> str:
        """Strip the election prefix off a full key, leaving the lease ID."""
        return self.namespace.relative_key(key)

    # -------------------------------------------------------------------------
    # Session lease
    # -------------------------------------------------------------------------

    async def ready(self) -> None:
        """Acquire the session lease if none is held."""
        await self._ensure_lease()

    async def _ensure_lease(self) -> Lease:
        async with self._lease_lock:
            if self._lease is None:
                lease = Lease(self.store, self.ttl, self.keepalive_interval)
                lease.on_lost(self._handle_lease_lost)
                await lease.grant()
                self._lease = lease
                logger.debug(f"Election '{self.name}' acquired lease {lease.hex_id}")
            return self._lease

    async def _discard_lease(self, lease: Lease) -> None:
        if self._lease is lease:
            self._lease = None
        await lease.revoke()

    async def _handle_lease_lost(self, lease: Lease, error: LeaseLostError) -> None:
        """Reset the session after its lease disappeared and grant a fresh one."""
        if lease is not self._lease:
            return

        logger.warning(f"Election '{self.name}' lost lease {lease.hex_id}, resetting session")
        self._lease = None
        self._clear_leadership()

        try:
            await lease.revoke()
        except Exception as e:
            # The store may already have dropped it
            logger.debug(f"Revoking lost lease {lease.hex_id} failed: {e}")

        await self._emit_error(error)

        try:
            await self._ensure_lease()
        except Exception as e:
            logger.error(f"Election '{self.name}' could not acquire a new lease: {e}")
            await self._emit_error(e)

    def _clear_leadership(self) -> None:
        self._leader_key = ""
        self._leader_revision = 0
        self._value = None
        self._is_campaigning = False
        self._is_leader = False

    # -------------------------------------------------------------------------
    # Campaigning
    # -------------------------------------------------------------------------

    async def campaign(self, value: str) -> None:
        """Run for leadership and block until elected.

        Re-campaigning on the same lease reuses the existing key and keeps
        its place in line, publishing ``value`` if it changed.

        Raises:
            NotLeaderError: If the key was lost while reconciling its value
            WatchError: If watching a predecessor failed
            LeaseLostError: If the session lease was lost before election
        """
        lease = await self._ensure_lease()
        if lease.id is None:
            raise LeaseLostError()
        key = lease.hex_id

        result = await self.namespace.txn(
            [Compare.create(key, "==", 0)],
            [Put(key, value, lease=lease.id)],
            [Get(key)],
        )

        if lease is not self._lease:
            # Session reset while the transaction was in flight
            raise LeaseLostError(lease.id)

        self._leader_key = self.namespace.full_key(key)
        self._leader_revision = result.revision
        self._value = value
        self._is_campaigning = True

        if not result.succeeded:
            try:
                kvs = result.responses[0].kvs if result.responses else []
                if not kvs:
                    raise NotLeaderError("election: campaign key vanished")
                self._leader_revision = kvs[0].create_revision
                self._value = kvs[0].value
                if kvs[0].value != value:
                    await self.proclaim(value)
            except (Exception, asyncio.CancelledError):
                await self.resign()
                raise

        try:
            await self._wait_for_elected(lease)
        except (Exception, asyncio.CancelledError):
            await self.resign()
            raise

        self._is_leader = True
        logger.info(f"Elected leader of '{self.name}' as {self._leader_key}")

    async def _wait_for_elected(self, lease: Lease) -> None:
        """Wait until every key created before ours is gone."""
        revision = self._leader_revision
        keys = await self.namespace.keys(
            sort_order=SortOrder.DESCEND,
            max_create_revision=revision - 1,
        )

        if keys:
            logger.debug(
                f"Election '{self.name}': waiting on {len(keys)} earlier candidate(s)"
            )
            waiter = asyncio.ensure_future(wait_for_deletes(self.namespace, keys))
            lost = asyncio.ensure_future(lease.wait_lost())
            try:
                await asyncio.wait({waiter, lost}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in (waiter, lost):
                    task.cancel()
                await asyncio.gather(waiter, lost, return_exceptions=True)

            if not waiter.cancelled():
                # Raises if the wait failed
                waiter.result()
            if lost.done() and not lost.cancelled():
                raise LeaseLostError(lease.id)

        if not self._is_campaigning or self._leader_revision != revision:
            raise NotLeaderError("election: resigned while campaigning")

    async def proclaim(self, value: str) -> None:
        """Publish a new value while keeping leadership.

        The value is written only if this session's key still has the
        creation revision it campaigned with. Proclaiming the current value
        checks leadership without writing.

        Raises:
            NotLeaderError: If not campaigning or the key was lost
        """
        lease = self._lease
        if not self._is_campaigning or lease is None or lease.id is None:
            raise NotLeaderError()

        key = lease.hex_id
        ops = [] if value == self._value else [Put(key, value, lease=lease.id)]
        result = await self.namespace.txn(
            [Compare.create(key, "==", self._leader_revision)],
            ops,
        )

        if not result.succeeded:
            logger.warning(f"Election '{self.name}': leadership lost before proclaim")
            self._clear_leadership()
            raise NotLeaderError()

        self._value = value

    async def resign(self) -> None:
        """Give up leadership or candidacy. No-op when not campaigning.

        If our key is already gone (for example the lease expired first) the
        lease is revoked and dropped so the next campaign starts clean.
        """
        if not self._is_campaigning:
            return

        lease = self._lease
        revision = self._leader_revision
        try:
            if lease is None:
                return
            key = lease.hex_id
            result = await self.namespace.txn(
                [Compare.create(key, "==", revision)],
                [Delete(key)],
            )
            if not result.succeeded:
                logger.info(f"Election '{self.name}': key already gone, revoking lease")
                await self._discard_lease(lease)
        finally:
            self._clear_leadership()

        logger.info(f"Resigned from election '{self.name}'")

    @asynccontextmanager
    async def leadership(self, value: str) -> AsyncIterator[Election]:
        """Campaign on enter and resign on exit."""
        await self.campaign(value)
        try:
            yield self
        finally:
            await self.resign()

    # -------------------------------------------------------------------------
    # Leader discovery
    # -------------------------------------------------------------------------

    async def get_leader(self) -> str:
        """Return the full key of the current leader.

        Raises:
            NoLeaderError: If there are no live candidates
        """
        keys = await self.namespace.keys(limit=1)
        if not keys:
            raise NoLeaderError()
        return self.namespace.full_key(keys[0])

    async def get_leader_record(self) -> KeyValue:
        """Return the current leader's record, with its full key.

        Raises:
            NoLeaderError: If there are no live candidates
        """
        records = await self.namespace.records(limit=1)
        if not records:
            raise NoLeaderError()
        return replace(records[0], key=self.namespace.full_key(records[0].key))

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    def on_leader(self, handler: LeaderHandler) -> Subscription:
        """Subscribe to leader changes; starts observation if needed.

        If a running cycle already reported the current leader, the new
        handler is told about it right away. Must be called from a running
        event loop.
        """
        self._leader_handlers.append(handler)
        if self._current_leader is not None:
            task = asyncio.create_task(self._deliver_leader(handler, self._current_leader))
            self._deliveries.add(task)
            task.add_done_callback(self._deliveries.discard)
        self._ensure_observing()
        return Subscription(lambda: _discard(self._leader_handlers, handler))

    def on_error(self, handler: ErrorHandler) -> Subscription:
        """Subscribe to observation and lease recovery errors."""
        self._error_handlers.append(handler)
        return Subscription(lambda: _discard(self._error_handlers, handler))

    def start_observing(self) -> None:
        """Observe even while no leader handler is subscribed."""
        self._observe_requested = True
        self._ensure_observing()

    async def stop_observing(self) -> None:
        """Stop observing now, even if leader handlers remain subscribed."""
        self._observe_requested = False
        task = self._observe_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._last_observed = None

    def _wants_observation(self) -> bool:
        return self._observe_requested or bool(self._leader_handlers)

    def _ensure_observing(self, fresh: bool = True) -> None:
        # A manual observe() cycle hands over to the loop when it ends
        if self.is_observing:
            return
        self._observe_task = asyncio.create_task(self._observe_loop(fresh))

    async def observe(self) -> str | None:
        """Run one observation cycle.

        Finds (or waits for) the current leader, reports it to leader
        handlers, then waits until its key is deleted.

        Returns:
            The observed leader key, or None if observation is already running
        """
        if self.is_observing:
            return None
        self._in_cycle = True
        try:
            return await self._observe_cycle()
        finally:
            self._in_cycle = False
            if self._wants_observation():
                # Subscribed while the cycle ran; they already heard this leader
                self._ensure_observing(fresh=False)

    async def _observe_cycle(self) -> str:
        records = await self.namespace.records(limit=1)
        if records:
            leader = records[0]
        else:
            watcher = await self.namespace.watch_prefix()
            try:
                # A leader may have appeared before the watch was in place
                records = await self.namespace.records(limit=1)
                if records:
                    leader = records[0]
                else:
                    event = await watcher.wait_for(EventType.PUT)
                    leader = replace(event.kv, key=self.namespace.relative_key(event.kv.key))
            finally:
                await watcher.cancel()

        leader_key = self.namespace.full_key(leader.key)
        try:
            await self._emit_leader(leader_key, leader.create_revision)
            await wait_for_delete(self.namespace, leader.key, leader.create_revision)
        finally:
            self._current_leader = None
        return leader_key

    async def _observe_loop(self, fresh: bool = True) -> None:
        """Repeat observation cycles while anyone wants them.

        A fresh loop reports the current leader again even if an earlier
        loop already did; only retries within one loop are deduplicated.
        """
        if fresh:
            self._last_observed = None
        failures = 0
        while self._wants_observation():
            before = self._last_observed
            try:
                await self._observe_cycle()
                failures = 0
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self._last_observed != before:
                    failures = 0
                failures += 1
                logger.warning(
                    f"Observation of '{self.name}' failed (attempt {failures}): {e}"
                )
                await self._emit_error(e)

                if self.retry.exhausted(failures):
                    logger.error(f"Observation of '{self.name}' stopped after {failures} failures")
                    await self._emit_error(ObservationError(failures, e))
                    return

                await asyncio.sleep(self.retry.delay(failures))

    async def _emit_leader(self, leader_key: str, create_revision: int) -> None:
        self._current_leader = leader_key
        observed = (leader_key, create_revision)
        if observed == self._last_observed:
            return
        self._last_observed = observed
        logger.info(f"Leader of '{self.name}' is {leader_key}")

        for handler in list(self._leader_handlers):
            try:
                await handler(leader_key)
            except Exception:
                logger.exception("Error in leader handler")

    async def _deliver_leader(self, handler: LeaderHandler, leader_key: str) -> None:
        """Tell a late subscriber about the leader its cycle already reported."""
        if leader_key != self._current_leader or handler not in self._leader_handlers:
            return
        try:
            await handler(leader_key)
        except Exception:
            logger.exception("Error in leader handler")

    async def _emit_error(self, error: Exception) -> None:
        if not self._error_handlers:
            logger.error(f"Election '{self.name}' error: {error}")
            return

        for handler in list(self._error_handlers):
            try:
                await handler(error)
            except Exception:
                logger.exception("Error in error handler")

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Stop observing, resign and revoke the session lease."""
        self._leader_handlers.clear()
        await self.stop_observing()
        for task in list(self._deliveries):
            task.cancel()
        await self.resign()
        if self._lease is not None:
            await self._discard_lease(self._lease)

    async def __aenter__(self) -> Election:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
