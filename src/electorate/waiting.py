"""Waiting for election keys to disappear.

Candidates wait for every key created before their own to be deleted,
one key at a time from the newest predecessor to the oldest. Deleting one
predecessor says nothing about the others, so each is checked in turn.

Each wait opens a watch first and only then re-reads the key, so a delete
landing between the range query and the watch is never missed. Watches are
cancelled on every exit path.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from electorate.namespace import Namespace
from electorate.store.base import EventType

logger = logging.getLogger(__name__)


async def wait_for_delete(namespace: Namespace, key: str, create_revision: int = 0) -> None:
    """Block until ``key`` (relative to the namespace) is deleted.

    With ``create_revision``, a key that was deleted and created again in
    the meantime counts as deleted.

    Raises:
        WatchError: If the watch fails before the delete arrives
    """
    watcher = await namespace.watch_key(key)
    try:
        kv = await namespace.get(key)
        if kv is None or (create_revision and kv.create_revision != create_revision):
            return
        logger.debug(f"Waiting for deletion of {namespace.full_key(key)}")
        await watcher.wait_for(EventType.DELETE)
    finally:
        await watcher.cancel()


async def wait_for_deletes(namespace: Namespace, keys: Iterable[str]) -> None:
    """Wait for each key in order; keys already gone are skipped."""
    for key in keys:
        await wait_for_delete(namespace, key)
