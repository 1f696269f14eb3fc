"""Redis-backed coordination store.

Keeps the store state in Redis so elections can span processes and hosts:
- A revision counter bumped once per writing transaction
- A hash of records (value, creation/mod revision, version, lease)
- A sorted set indexing keys by creation revision for ordered ranges
- A sorted set of lease deadlines plus one set of bound keys per lease

Every operation runs as a single Lua script, which makes transactions atomic
and lets each script reap expired leases before it looks at any key. Changes
are published on a pub/sub channel and fanned out to watchers by one shared
subscription. While watchers are open a background task keeps reaping
expired leases, so deletions caused by a dead holder still reach them.

All keys share a hash tag ("{namespace}:...") so the scripts stay valid on
Redis Cluster.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import orjson
import redis.asyncio as redis

from electorate.config import settings
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

if TYPE_CHECKING:
    from redis.asyncio import Redis
    from redis.asyncio.client import PubSub
    from redis.commands.core import AsyncScript

logger = logging.getLogger(__name__)

# Module-level client shared by stores created without one
_redis_client: Redis | None = None

SUBSCRIBE_TIMEOUT = 5.0  # Seconds to wait for the channel subscription
POLL_TIMEOUT = 1.0


async def get_redis() -> Redis:
    """Get or create the Redis client."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(  # type: ignore[no-untyped-call]
            settings.redis_url,
            encoding="utf-8",
            decode_responses=False,
        )
    return _redis_client


async def close_redis() -> None:
    """Close Redis connections."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


# -----------------------------------------------------------------------------
# Lua scripts
# -----------------------------------------------------------------------------

# KEYS: rev, kv, idx, leases, lease_ttl, lease_seq
# ARGV[1]: key root (used for per-lease key sets and the event channel)
_PRELUDE = """
local K_REV, K_KV, K_IDX, K_LEASES, K_TTL, K_SEQ = KEYS[1], KEYS[2], KEYS[3], KEYS[4], KEYS[5], KEYS[6]
local ROOT = ARGV[1]
local CHANNEL = ROOT .. ':events'

local function now_ms()
  local t = redis.call('TIME')
  return tonumber(t[1]) * 1000 + math.floor(tonumber(t[2]) / 1000)
end

local function lease_set(id)
  return ROOT .. ':lease_keys:' .. tostring(id)
end

local function load(key)
  local raw = redis.call('HGET', K_KV, key)
  if not raw then
    return nil
  end
  return cjson.decode(raw)
end

local function export(key, rec)
  return {key = key, value = rec.v, create_revision = rec.c, mod_revision = rec.m,
          version = rec.ver, lease = rec.l}
end

local function publish(kind, key, rec, rev)
  local event
  if rec then
    event = export(key, rec)
  else
    event = {key = key, mod_revision = rev}
  end
  event.type = kind
  redis.call('PUBLISH', CHANNEL, cjson.encode(event))
end

local function remove_key(key, rev)
  local rec = load(key)
  if not rec then
    return false
  end
  redis.call('HDEL', K_KV, key)
  redis.call('ZREM', K_IDX, key)
  if rec.l ~= 0 then
    redis.call('SREM', lease_set(rec.l), key)
  end
  publish('delete', key, nil, rev)
  return true
end

local function drop_lease(id)
  local existed = redis.call('ZREM', K_LEASES, id) == 1
  redis.call('HDEL', K_TTL, id)
  local keys = redis.call('SMEMBERS', lease_set(id))
  if #keys > 0 then
    local rev = redis.call('INCR', K_REV)
    table.sort(keys)
    for _, key in ipairs(keys) do
      remove_key(key, rev)
    end
  end
  redis.call('DEL', lease_set(id))
  return existed
end

local function reap()
  local expired = redis.call('ZRANGEBYSCORE', K_LEASES, '-inf', now_ms())
  for _, id in ipairs(expired) do
    drop_lease(id)
  end
  return #expired
end
"""

_SCRIPTS: dict[str, str] = {
    "reap": """
return reap()
""",
    "get": """
reap()
local rec = load(ARGV[2])
if not rec then
  return nil
end
return cjson.encode(export(ARGV[2], rec))
""",
    # ARGV[2]: prefix, ARGV[3]: max create revision, ARGV[4]: order, ARGV[5]: limit
    "range": """
reap()
local prefix, maxrev, order, limit = ARGV[2], ARGV[3], ARGV[4], tonumber(ARGV[5])
local members
if order == 'descend' then
  members = redis.call('ZREVRANGEBYSCORE', K_IDX, maxrev, '-inf')
else
  members = redis.call('ZRANGEBYSCORE', K_IDX, '-inf', maxrev)
end
local out = {}
for _, key in ipairs(members) do
  if string.sub(key, 1, #prefix) == prefix then
    local rec = load(key)
    if rec then
      out[#out + 1] = export(key, rec)
    end
    if limit > 0 and #out >= limit then
      break
    end
  end
end
return cjson.encode(out)
""",
    # ARGV[2]: JSON {compare, success, failure}
    "txn": """
reap()
local req = cjson.decode(ARGV[2])

local function field(rec, target)
  if not rec then
    if target == 'value' then
      return ''
    end
    return 0
  end
  if target == 'create' then
    return rec.c
  elseif target == 'mod' then
    return rec.m
  elseif target == 'version' then
    return rec.ver
  elseif target == 'lease' then
    return rec.l
  end
  return rec.v
end

local function check(cond)
  local actual = field(load(cond.key), cond.target)
  local expected = cond.value
  if cond.op == '==' then
    return actual == expected
  elseif cond.op == '!=' then
    return actual ~= expected
  elseif cond.op == '<' then
    return actual < expected
  end
  return actual > expected
end

local succeeded = true
for _, cond in ipairs(req.compare) do
  if not check(cond) then
    succeeded = false
    break
  end
end

local ops = req.failure
if succeeded then
  ops = req.success
end

local writes = false
for _, op in ipairs(ops) do
  if op.op == 'put' then
    writes = true
    if op.lease ~= 0 and not redis.call('ZSCORE', K_LEASES, tostring(op.lease)) then
      return cjson.encode({error = 'lease_not_found', lease = op.lease})
    end
  elseif op.op == 'delete' and redis.call('HEXISTS', K_KV, op.key) == 1 then
    writes = true
  end
end

local rev = tonumber(redis.call('GET', K_REV) or '0')
if writes then
  rev = redis.call('INCR', K_REV)
end

local responses = {}
for i, op in ipairs(ops) do
  if op.op == 'get' then
    local rec = load(op.key)
    local kvs = {}
    if rec then
      kvs[1] = export(op.key, rec)
    end
    responses[i] = {kvs = kvs, deleted = 0}
  elseif op.op == 'put' then
    local prev = load(op.key)
    local rec = {v = op.value, c = rev, m = rev, ver = 1, l = op.lease}
    if prev then
      rec.c = prev.c
      rec.ver = prev.ver + 1
      if prev.l ~= 0 and prev.l ~= op.lease then
        redis.call('SREM', lease_set(prev.l), op.key)
      end
    end
    redis.call('HSET', K_KV, op.key, cjson.encode(rec))
    redis.call('ZADD', K_IDX, rec.c, op.key)
    if op.lease ~= 0 then
      redis.call('SADD', lease_set(op.lease), op.key)
    end
    publish('put', op.key, rec, rev)
    responses[i] = {kvs = {}, deleted = 0}
  else
    local removed = remove_key(op.key, rev)
    responses[i] = {kvs = {}, deleted = removed and 1 or 0}
  end
end

return cjson.encode({succeeded = succeeded, revision = rev, responses = responses})
""",
    # ARGV[2]: ttl seconds
    "grant": """
reap()
local ttl = tonumber(ARGV[2])
local id = redis.call('INCR', K_SEQ)
redis.call('ZADD', K_LEASES, now_ms() + ttl * 1000, id)
redis.call('HSET', K_TTL, id, ttl)
return id
""",
    # ARGV[2]: lease id
    "refresh": """
reap()
local id = ARGV[2]
if not redis.call('ZSCORE', K_LEASES, id) then
  return -1
end
local ttl = tonumber(redis.call('HGET', K_TTL, id))
redis.call('ZADD', K_LEASES, now_ms() + ttl * 1000, id)
return ttl
""",
    # ARGV[2]: lease id
    "revoke": """
reap()
if drop_lease(ARGV[2]) then
  return 1
end
return 0
""",
}


def _as_list(value: Any) -> list[Any]:
    """Normalize Lua empty tables, which cjson encodes as objects."""
    return value if isinstance(value, list) else []


def _to_key_value(data: dict[str, Any]) -> KeyValue:
    key = data["key"]
    return KeyValue(
        key=key.decode() if isinstance(key, bytes) else key,
        value=data.get("value", ""),
        create_revision=int(data.get("create_revision", 0)),
        mod_revision=int(data.get("mod_revision", 0)),
        version=int(data.get("version", 0)),
        lease=int(data.get("lease", 0)),
    )


def _encode_op(op: TxnOp) -> dict[str, Any]:
    if isinstance(op, Put):
        return {"op": "put", "key": op.key, "value": op.value, "lease": op.lease}
    if isinstance(op, Get):
        return {"op": "get", "key": op.key}
    return {"op": "delete", "key": op.key}


def _encode_compare(cond: Compare) -> dict[str, Any]:
    return {"key": cond.key, "target": cond.target.value, "op": cond.op, "value": cond.value}


class RedisWatcher(Watcher):
    """Watcher fed by the shared pub/sub subscription of a RedisStore."""

    def __init__(self, store: RedisStore, key: str | None = None, prefix: str | None = None):
        super().__init__(key=key, prefix=prefix)
        self._store = store

    async def _close(self) -> None:
        self._store._watchers.discard(self)


class RedisStore(CoordinationStore):
    """Coordination store kept in Redis.

    Example:
        store = RedisStore(namespace="electorate")
        election = Election(store, "scheduler")
        await election.campaign("node-1")

    Args:
        client: Redis client (the module-level client is used if None)
        namespace: Prefix for every Redis key the store touches
        reaper_interval: Seconds between lease reaping passes while watched
    """

    def __init__(
        self,
        client: Redis | None = None,
        namespace: str | None = None,
        reaper_interval: float | None = None,
    ):
        self._redis = client
        self.namespace = namespace or settings.redis_namespace
        self.reaper_interval = (
            reaper_interval if reaper_interval is not None else settings.reaper_interval
        )

        self._root = f"{{{self.namespace}}}"
        self.channel = f"{self._root}:events"
        self._keys = [
            f"{self._root}:rev",
            f"{self._root}:kv",
            f"{self._root}:idx",
            f"{self._root}:leases",
            f"{self._root}:lease_ttl",
            f"{self._root}:lease_seq",
        ]

        self._scripts: dict[str, AsyncScript] = {}
        self._watchers: set[RedisWatcher] = set()
        self._pubsub: PubSub | None = None
        self._listener: asyncio.Task[None] | None = None
        self._reaper: asyncio.Task[None] | None = None
        self._subscribe_lock = asyncio.Lock()
        self._closed = False

    async def _get_redis(self) -> Redis:
        """Get Redis client, initializing if needed."""
        if self._redis is None:
            self._redis = await get_redis()
        return self._redis

    async def _run(self, name: str, *args: Any) -> Any:
        """Run one of the store scripts."""
        if self._closed:
            raise StoreError("store is closed")
        client = await self._get_redis()
        script = self._scripts.get(name)
        if script is None:
            script = client.register_script(_PRELUDE + _SCRIPTS[name])
            self._scripts[name] = script
        return await script(keys=self._keys, args=[self._root, *args])

    # -------------------------------------------------------------------------
    # Key-value operations
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> KeyValue | None:
        raw = await self._run("get", key)
        if raw is None:
            return None
        return _to_key_value(orjson.loads(raw))

    async def get_range(
        self,
        prefix: str,
        *,
        sort_target: SortTarget = SortTarget.CREATE,
        sort_order: SortOrder = SortOrder.ASCEND,
        max_create_revision: int | None = None,
        limit: int = 0,
    ) -> list[KeyValue]:
        by_create = sort_target == SortTarget.CREATE
        raw = await self._run(
            "range",
            prefix,
            "+inf" if max_create_revision is None else str(max_create_revision),
            sort_order.value if by_create else SortOrder.ASCEND.value,
            limit if by_create else 0,
        )
        records = [_to_key_value(item) for item in _as_list(orjson.loads(raw))]
        if by_create:
            return records

        records = sort_records(records, sort_target, sort_order)
        return records[:limit] if limit > 0 else records

    async def txn(
        self,
        compare: Sequence[Compare],
        success: Sequence[TxnOp],
        failure: Sequence[TxnOp] = (),
    ) -> TxnResult:
        request = orjson.dumps(
            {
                "compare": [_encode_compare(cond) for cond in compare],
                "success": [_encode_op(op) for op in success],
                "failure": [_encode_op(op) for op in failure],
            }
        )
        data = orjson.loads(await self._run("txn", request))

        if "error" in data:
            raise LeaseNotFoundError(int(data["lease"]))

        responses = [
            OpResponse(
                kvs=[_to_key_value(kv) for kv in _as_list(item.get("kvs"))],
                deleted=int(item.get("deleted", 0)),
            )
            for item in _as_list(data.get("responses"))
        ]
        return TxnResult(
            succeeded=bool(data["succeeded"]),
            revision=int(data["revision"]),
            responses=responses,
        )

    # -------------------------------------------------------------------------
    # Leases
    # -------------------------------------------------------------------------

    async def grant_lease(self, ttl: int) -> int:
        lease_id = int(await self._run("grant", ttl))
        logger.debug(f"Granted lease {lease_id:x} (ttl={ttl}s)")
        return lease_id

    async def refresh_lease(self, lease_id: int) -> int:
        return int(await self._run("refresh", lease_id))

    async def revoke_lease(self, lease_id: int) -> bool:
        return bool(await self._run("revoke", lease_id))

    async def reap(self) -> int:
        """Drop expired leases and their keys. Returns how many leases expired."""
        return int(await self._run("reap"))

    # -------------------------------------------------------------------------
    # Watches
    # -------------------------------------------------------------------------

    async def watch(self, *, key: str | None = None, prefix: str | None = None) -> Watcher:
        if self._closed:
            raise StoreError("store is closed")
        watcher = RedisWatcher(self, key=key, prefix=prefix)
        await self._ensure_subscribed()
        self._watchers.add(watcher)

        if self._reaper is None or self._reaper.done():
            self._reaper = asyncio.create_task(self._reap_loop())
        return watcher

    async def _ensure_subscribed(self) -> None:
        """Subscribe to the event channel once, confirming before returning."""
        async with self._subscribe_lock:
            if self._listener is not None and not self._listener.done():
                return

            if self._pubsub is not None:
                # Subscription from a listener that failed
                await self._pubsub.aclose()
                self._pubsub = None

            client = await self._get_redis()
            pubsub = client.pubsub()
            await pubsub.subscribe(self.channel)

            try:
                async with asyncio.timeout(SUBSCRIBE_TIMEOUT):
                    while True:
                        message = await pubsub.get_message(timeout=POLL_TIMEOUT)
                        if message is not None and message["type"] == "subscribe":
                            break
            except TimeoutError as e:
                await pubsub.aclose()
                raise StoreError(f"Timed out subscribing to {self.channel}") from e

            self._pubsub = pubsub
            self._listener = asyncio.create_task(self._listen(pubsub))
            logger.debug(f"Subscribed to {self.channel}")

    async def _listen(self, pubsub: PubSub) -> None:
        """Fan out channel messages to every open watcher."""
        try:
            while True:
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=POLL_TIMEOUT
                )
                if message is None or message["type"] != "message":
                    continue

                data = orjson.loads(message["data"])
                event = WatchEvent(EventType(data["type"]), _to_key_value(data))
                for watcher in list(self._watchers):
                    watcher.feed(event)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Watch subscription on {self.channel} failed: {e}")
            for watcher in list(self._watchers):
                watcher.fail(e)
            self._watchers.clear()

    async def _reap_loop(self) -> None:
        """Reap expired leases while anyone is watching."""
        while self._watchers and not self._closed:
            try:
                await self.reap()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning(f"Lease reaping failed: {e}")
            await asyncio.sleep(self.reaper_interval)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        for task in (self._listener, self._reaper):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
            self._pubsub = None

        for watcher in list(self._watchers):
            watcher.fail(WatchError("store closed"))
        self._watchers.clear()
