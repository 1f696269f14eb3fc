"""Tests for store wiring."""

import pytest

from electorate import runtime
from electorate.store.memory import InMemoryStore
from electorate.store.redis import RedisStore


@pytest.fixture(autouse=True)
async def reset_store(monkeypatch):
    monkeypatch.setattr(runtime, "_store", None)
    yield
    await runtime.close_store()


class TestCreateStore:
    """Test create_store backend selection."""

    async def test_memory(self, monkeypatch) -> None:
        monkeypatch.setattr(runtime.settings, "store_backend", "memory")
        assert isinstance(runtime.create_store(), InMemoryStore)

    async def test_redis(self, monkeypatch) -> None:
        monkeypatch.setattr(runtime.settings, "store_backend", "redis")
        monkeypatch.setattr(runtime.settings, "redis_namespace", "jobs")

        store = runtime.create_store()

        assert isinstance(store, RedisStore)
        assert store.channel == "{jobs}:events"

    async def test_unknown_backend(self, monkeypatch) -> None:
        monkeypatch.setattr(runtime.settings, "store_backend", "zookeeper")

        with pytest.raises(ValueError, match="Unsupported store_backend"):
            runtime.create_store()


class TestStoreSingleton:
    """Test get_store and close_store."""

    async def test_get_store_is_cached(self, monkeypatch) -> None:
        monkeypatch.setattr(runtime.settings, "store_backend", "memory")

        assert runtime.get_store() is runtime.get_store()

    async def test_close_store_resets(self, monkeypatch) -> None:
        monkeypatch.setattr(runtime.settings, "store_backend", "memory")
        first = runtime.get_store()

        await runtime.close_store()

        assert runtime.get_store() is not first
