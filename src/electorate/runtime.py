"""Runtime wiring for the coordination store."""

from __future__ import annotations

import logging

from electorate.config import settings
from electorate.store.base import CoordinationStore
from electorate.store.memory import InMemoryStore
from electorate.store.redis import RedisStore, close_redis

logger = logging.getLogger(__name__)

_store: CoordinationStore | None = None


def create_store() -> CoordinationStore:
    """Create a coordination store based on configuration."""
    backend = settings.store_backend.lower()

    if backend in {"memory", "inmemory", "in_memory"}:
        return InMemoryStore()

    if backend == "redis":
        return RedisStore(
            namespace=settings.redis_namespace,
            reaper_interval=settings.reaper_interval,
        )

    raise ValueError("Unsupported store_backend. Supported values: memory, redis.")


def get_store() -> CoordinationStore:
    """Get the singleton coordination store."""
    global _store
    if _store is None:
        _store = create_store()
        logger.info("Coordination store created (%s)", type(_store).__name__)
    return _store


async def close_store() -> None:
    """Close the configured store and its connections."""
    global _store
    if _store is None:
        return
    await _store.close()
    if isinstance(_store, RedisStore):
        await close_redis()
    logger.info("Coordination store closed (%s)", type(_store).__name__)
    _store = None
