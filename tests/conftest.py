"""Global pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
import pytest_asyncio

from electorate.retry import RetryPolicy
from electorate.store.memory import InMemoryStore


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: tests that need Docker")


@pytest_asyncio.fixture
async def store() -> AsyncIterator[InMemoryStore]:
    """Create a fresh in-memory store."""
    store = InMemoryStore()
    yield store
    await store.close()


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Retry policy with near-zero backoff."""
    return RetryPolicy(delay_initial=0.01, delay_max=0.01, multiplier=1.0, max_attempts=3)
