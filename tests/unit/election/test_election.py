"""Tests for campaigning, proclaiming and resigning."""

import asyncio
from collections.abc import Callable

import pytest

from electorate.election import Election
from electorate.errors import LeaseLostError, NoLeaderError, NotLeaderError, WatchError
from electorate.store.base import Delete, Put
from electorate.store.memory import InMemoryStore


async def _eventually(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Poll until predicate() is true or fail after timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
async def make_election(store: InMemoryStore):
    """Factory for elections that are closed after the test."""
    created: list[Election] = []

    def factory(name: str = "test", **kwargs) -> Election:
        election = Election(store, name, ttl=kwargs.pop("ttl", 10), **kwargs)
        created.append(election)
        return election

    yield factory

    for election in created:
        await election.close()


class TestElectionSetup:
    """Test construction and session setup."""

    async def test_empty_name_rejected(self, store: InMemoryStore) -> None:
        with pytest.raises(ValueError):
            Election(store, "")

    async def test_ready_grants_lease(self, make_election) -> None:
        election = make_election()
        assert not election.is_ready
        assert election.lease_id == ""

        await election.ready()

        assert election.is_ready
        assert election.lease_id
        assert election.prefix == "election/test/"

    async def test_candidate_id(self, make_election) -> None:
        election = make_election()
        await election.campaign("node-1")

        assert election.candidate_id(election.leader_key) == election.lease_id


class TestCampaign:
    """Test campaign ordering."""

    async def test_first_candidate_is_elected(self, make_election) -> None:
        election = make_election()

        await election.campaign("node-1")

        assert election.is_leader
        assert election.is_campaigning
        assert election.leader_key == f"election/test/{election.lease_id}"
        assert election.leader_revision > 0
        assert await election.get_leader() == election.leader_key

    async def test_second_candidate_waits_for_resign(self, make_election) -> None:
        first = make_election()
        second = make_election()
        await first.campaign("node-1")

        task = asyncio.create_task(second.campaign("node-2"))
        await _eventually(lambda: second.is_campaigning)
        await asyncio.sleep(0.05)
        assert not task.done()
        assert not second.is_leader

        await first.resign()
        await asyncio.wait_for(task, 1)

        assert second.is_leader
        assert not first.is_leader
        assert await second.get_leader() == second.leader_key

    async def test_candidates_elected_in_creation_order(self, make_election) -> None:
        """A candidate waits for every predecessor, not just the leader."""
        first, second, third = make_election(), make_election(), make_election()
        await first.campaign("node-1")
        second_task = asyncio.create_task(second.campaign("node-2"))
        await _eventually(lambda: second.is_campaigning)
        third_task = asyncio.create_task(third.campaign("node-3"))
        await _eventually(lambda: third.is_campaigning)

        await first.resign()
        await asyncio.wait_for(second_task, 1)
        await asyncio.sleep(0.05)
        assert not third_task.done()

        await second.resign()
        await asyncio.wait_for(third_task, 1)
        assert third.is_leader

    async def test_withdrawn_predecessor_does_not_elect(self, make_election) -> None:
        """A waiting candidate that gives up hands its place in line to the next."""
        first, second, third = make_election(), make_election(), make_election()
        await first.campaign("node-1")
        second_task = asyncio.create_task(second.campaign("node-2"))
        await _eventually(lambda: second.is_campaigning)
        third_task = asyncio.create_task(third.campaign("node-3"))
        await _eventually(lambda: third.is_campaigning)

        second_task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await second_task
        await asyncio.sleep(0.05)
        assert not third_task.done()

        await first.resign()
        await asyncio.wait_for(third_task, 1)
        assert third.is_leader

    async def test_recampaign_keeps_place(self, make_election) -> None:
        """Campaigning again on the same lease reuses the key and updates the value."""
        election = make_election()
        await election.campaign("node-1")
        key, revision = election.leader_key, election.leader_revision

        await election.campaign("node-1b")

        assert election.leader_key == key
        assert election.leader_revision == revision
        assert (await election.get_leader_record()).value == "node-1b"

    async def test_leader_lease_expiry_elects_next(
        self, make_election, store: InMemoryStore
    ) -> None:
        first = make_election()
        second = make_election()
        await first.campaign("node-1")
        task = asyncio.create_task(second.campaign("node-2"))
        await _eventually(lambda: second.is_campaigning)

        store.expire_lease(int(first.lease_id, 16))

        await asyncio.wait_for(task, 1)
        assert second.is_leader

    async def test_watch_failure_withdraws_candidate(
        self, make_election, store: InMemoryStore
    ) -> None:
        first = make_election()
        second = make_election()
        await first.campaign("node-1")
        task = asyncio.create_task(second.campaign("node-2"))
        await _eventually(lambda: second.is_campaigning)
        await asyncio.sleep(0.01)

        store.fail_watchers(ConnectionError("stream reset"))

        with pytest.raises(WatchError):
            await task
        assert not second.is_campaigning
        assert second.leader_key == ""
        assert len(await store.get_range(first.prefix)) == 1

    async def test_cancel_withdraws_candidate(
        self, make_election, store: InMemoryStore
    ) -> None:
        first = make_election()
        second = make_election()
        await first.campaign("node-1")
        task = asyncio.create_task(second.campaign("node-2"))
        await _eventually(lambda: second.is_campaigning)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not second.is_campaigning
        assert [kv.key for kv in await store.get_range(first.prefix)] == [first.leader_key]
        assert store.watcher_count == 0

    async def test_lease_lost_while_waiting(self, make_election, store: InMemoryStore) -> None:
        first = make_election()
        second = make_election(keepalive_interval=0.05)
        await first.campaign("node-1")
        task = asyncio.create_task(second.campaign("node-2"))
        await _eventually(lambda: second.is_campaigning)
        old_lease = second.lease_id

        store.expire_lease(int(old_lease, 16))

        with pytest.raises(LeaseLostError):
            await asyncio.wait_for(task, 1)
        assert not second.is_campaigning
        await _eventually(lambda: second.is_ready and second.lease_id != old_lease)

    async def test_resign_while_waiting(self, make_election) -> None:
        """A candidate that resigns mid-wait is not elected later."""
        first = make_election()
        second = make_election()
        await first.campaign("node-1")
        task = asyncio.create_task(second.campaign("node-2"))
        await _eventually(lambda: second.is_campaigning)

        await second.resign()
        await first.resign()

        with pytest.raises(NotLeaderError):
            await asyncio.wait_for(task, 1)
        assert not second.is_leader


class TestProclaim:
    """Test publishing values."""

    async def test_requires_campaign(self, make_election, store: InMemoryStore) -> None:
        """A non-leading session cannot write, and the store is left as it was."""
        leader = make_election()
        follower = make_election()
        await leader.campaign("node-1")
        revision = store.revision
        records = await store.get_range(leader.prefix)

        with pytest.raises(NotLeaderError):
            await follower.proclaim("value")

        assert store.revision == revision
        assert await store.get_range(leader.prefix) == records

    async def test_taken_over_key_is_not_overwritten(
        self, make_election, store: InMemoryStore
    ) -> None:
        """A key recreated by someone else fails the creation-revision check."""
        election = make_election()
        await election.campaign("node-1")
        key = election.leader_key
        await store.txn([], [Delete(key)])
        await store.txn([], [Put(key, "intruder")])
        revision = store.revision

        with pytest.raises(NotLeaderError):
            await election.proclaim("node-1:ready")

        assert store.revision == revision
        assert (await store.get(key)).value == "intruder"  # type: ignore[union-attr]
        assert not election.is_campaigning

    async def test_updates_value(self, make_election) -> None:
        election = make_election()
        await election.campaign("node-1")
        revision = election.leader_revision

        await election.proclaim("node-1:ready")

        record = await election.get_leader_record()
        assert record.value == "node-1:ready"
        assert record.create_revision == revision
        assert record.key == election.leader_key

    async def test_same_value_skips_write(
        self, make_election, store: InMemoryStore
    ) -> None:
        election = make_election()
        await election.campaign("node-1")
        revision = store.revision

        await election.proclaim("node-1")

        assert store.revision == revision

    async def test_lost_key_clears_leadership(
        self, make_election, store: InMemoryStore
    ) -> None:
        election = make_election()
        await election.campaign("node-1")
        await store.txn([], [Delete(election.leader_key)])

        with pytest.raises(NotLeaderError):
            await election.proclaim("node-1:ready")

        assert not election.is_campaigning
        assert not election.is_leader
        assert election.leader_key == ""
        assert election.leader_revision == 0


class TestResign:
    """Test giving up leadership."""

    async def test_noop_when_not_campaigning(self, make_election, store: InMemoryStore) -> None:
        election = make_election()
        await election.resign()
        assert store.revision == 0

    async def test_resign_deletes_key(self, make_election) -> None:
        election = make_election()
        await election.campaign("node-1")
        lease_id = election.lease_id

        await election.resign()

        assert not election.is_leader
        assert election.leader_key == ""
        assert election.lease_id == lease_id
        with pytest.raises(NoLeaderError):
            await election.get_leader()

    async def test_missing_key_drops_lease(self, make_election, store: InMemoryStore) -> None:
        """Resigning after the key vanished revokes the lease for a clean restart."""
        election = make_election()
        await election.campaign("node-1")
        old_lease = election.lease_id
        await store.txn([], [Delete(election.leader_key)])

        await election.resign()

        assert not election.is_ready
        assert await store.refresh_lease(int(old_lease, 16)) <= 0

        await election.campaign("node-1")
        assert election.lease_id != old_lease
        assert election.is_leader

    async def test_leadership_context(self, make_election) -> None:
        election = make_election()

        async with election.leadership("node-1") as held:
            assert held.is_leader

        assert not election.is_campaigning
        with pytest.raises(NoLeaderError):
            await election.get_leader()


class TestLeaderDiscovery:
    """Test get_leader and get_leader_record."""

    async def test_no_leader(self, make_election) -> None:
        election = make_election()

        with pytest.raises(NoLeaderError):
            await election.get_leader()
        with pytest.raises(NoLeaderError):
            await election.get_leader_record()

    async def test_leader_is_oldest_candidate(self, make_election) -> None:
        first = make_election()
        second = make_election()
        observer = make_election()
        await first.campaign("node-1")
        task = asyncio.create_task(second.campaign("node-2"))
        await _eventually(lambda: second.is_campaigning)

        assert await observer.get_leader() == first.leader_key
        record = await observer.get_leader_record()
        assert record.value == "node-1"

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    async def test_elections_are_isolated(self, make_election) -> None:
        jobs = make_election("jobs")
        jobs_old = make_election("jobs-old")
        await jobs_old.campaign("node-1")

        with pytest.raises(NoLeaderError):
            await jobs.get_leader()


class TestLeaseRecovery:
    """Test session reset after lease loss."""

    async def test_lost_leader_recovers_new_lease(
        self, make_election, store: InMemoryStore
    ) -> None:
        election = make_election(keepalive_interval=0.05)
        errors: list[Exception] = []

        async def on_error(error: Exception) -> None:
            errors.append(error)

        election.on_error(on_error)
        await election.campaign("node-1")
        old_lease = election.lease_id

        store.expire_lease(int(old_lease, 16))

        await _eventually(lambda: bool(errors))
        assert isinstance(errors[0], LeaseLostError)
        assert not election.is_leader
        assert election.leader_key == ""
        await _eventually(lambda: election.is_ready and election.lease_id != old_lease)

        await election.campaign("node-1")
        assert election.is_leader

    async def test_close_revokes_lease(self, make_election, store: InMemoryStore) -> None:
        election = make_election()
        await election.campaign("node-1")
        lease_id = int(election.lease_id, 16)

        await election.close()

        assert not election.is_ready
        assert await store.get_range(election.prefix) == []
        assert await store.refresh_lease(lease_id) <= 0

    async def test_async_context_manager(self, store: InMemoryStore) -> None:
        async with Election(store, "test", ttl=10) as election:
            await election.campaign("node-1")

        assert await store.get_range("election/test/") == []
