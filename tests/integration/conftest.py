"""Integration test fixtures using Docker.

Provides a containerized Redis for exercising RedisStore and elections
across store instances that only share the Redis server.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Iterator
from uuid import uuid4

import pytest
import pytest_asyncio
from redis.asyncio import Redis

from electorate.store.redis import RedisStore
from tests.integration.docker_utils import get_docker_client, redis_server


def pytest_collection_modifyitems(config, items):
    """Mark every test in this directory as an integration test."""
    for item in items:
        if "tests/integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


@pytest.fixture(scope="session")
def docker_client():
    """Create a Docker client or skip if Docker is unavailable."""
    try:
        client = get_docker_client()
        client.ping()
    except Exception as exc:
        pytest.skip(f"Docker not available: {exc}")
    yield client
    client.close()


@pytest.fixture(scope="session")
def redis_url(docker_client) -> Iterator[str]:
    """Start a Redis container for the test session and return its URL."""
    with redis_server(docker_client) as url:
        yield url


@pytest_asyncio.fixture
async def redis_client(redis_url: str) -> AsyncIterator[Redis]:
    """Create a Redis client for tests."""
    import redis.asyncio as redis

    client = redis.from_url(redis_url)
    await _wait_for_redis(client)
    yield client
    await client.flushdb()  # Clean up after each test
    await client.aclose()


@pytest.fixture
def store_namespace() -> str:
    """Unique namespace so tests never see each other's keys."""
    return f"test-{uuid4().hex[:8]}"


@pytest_asyncio.fixture
async def make_store(redis_client: Redis, store_namespace: str):
    """Factory for RedisStore instances sharing one namespace, closed after the test."""
    stores: list[RedisStore] = []

    def factory() -> RedisStore:
        store = RedisStore(client=redis_client, namespace=store_namespace, reaper_interval=0.1)
        stores.append(store)
        return store

    yield factory

    for store in stores:
        await store.close()


@pytest_asyncio.fixture
async def redis_store(make_store) -> RedisStore:
    """A single RedisStore."""
    return make_store()


async def _wait_for_redis(client: Redis, timeout: float = 30.0) -> None:
    """Wait for Redis to accept connections."""
    deadline = time.monotonic() + timeout
    while True:
        try:
            await client.ping()
            return
        except Exception:
            if time.monotonic() >= deadline:
                raise
            await asyncio.sleep(0.5)
