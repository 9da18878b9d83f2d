from __future__ import annotations

import hashlib
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


def _normalize_rate_key(bucket: str, subject: str, shard: Optional[int] = None) -> str:
    """Build a collision-resistant rate key.

    The subject is hashed so delimiter characters in caller-supplied ids
    cannot alias another subject's bucket.
    """

    digest = hashlib.sha256(subject.encode()).hexdigest()
    key = f"rate:{bucket}:{digest}"
    if shard is not None:
        key += f":{shard}"
    return key


def _parse_bucket_reply(reply) -> Tuple[bool, float, int]:
    allowed, tokens, retry_after = reply
    return bool(int(allowed)), float(tokens), int(retry_after)


def _parse_window_reply(reply) -> Tuple[bool, int]:
    allowed, remaining = reply
    return bool(int(allowed)), int(remaining)


class RedisCache:
    """Redis wrapper holding rate-limit state shared across workers."""

    # Atomic refill + consume. A denied call writes nothing; ARGV[5] = 0 probes
    # without consuming.
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_per_ms = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local apply = tonumber(ARGV[5])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

tokens = math.min(capacity, tokens + math.max(0, now - last) * refill_per_ms)

if tokens < cost then
  return {0, tostring(tokens), math.ceil((cost - tokens) / refill_per_ms)}
end

if apply == 1 then
  tokens = tokens - cost
  redis.call('HSET', key, 'tokens', tostring(tokens), 'ts', tostring(now))
  redis.call('PEXPIRE', key, math.max(1, math.ceil(capacity / refill_per_ms)))
end
return {1, tostring(tokens), 0}
"""

    # Counter for one epoch-aligned window; the caller folds the window index
    # into the key.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local cost = tonumber(ARGV[2])
local ttl_ms = tonumber(ARGV[3])
local apply = tonumber(ARGV[4])

local used = tonumber(redis.call('GET', key) or '0')
if used + cost > limit then
  return {0, limit - used}
end
if apply == 1 then
  redis.call('INCRBY', key, cost)
  redis.call('PEXPIRE', key, math.max(1, ttl_ms))
end
return {1, limit - used - cost}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # A short-lived sync client keeps the async client off the startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def token_bucket(
        self,
        key: str,
        *,
        now_ms: int,
        refill_per_ms: float,
        capacity: int,
        cost: int = 1,
        apply: bool = True,
    ) -> Tuple[bool, float, int]:
        """Returns ``(allowed, tokens_left, retry_after_ms)``."""

        reply = await self._token_bucket(
            keys=[key], args=[now_ms, refill_per_ms, capacity, cost, int(apply)]
        )
        return _parse_bucket_reply(reply)

    async def fixed_window(
        self,
        key: str,
        *,
        limit: int,
        ttl_ms: int,
        cost: int = 1,
        apply: bool = True,
    ) -> Tuple[bool, int]:
        """Returns ``(allowed, remaining)`` for the window the key names."""

        reply = await self._fixed_window(keys=[key], args=[limit, cost, ttl_ms, int(apply)])
        return _parse_window_reply(reply)

    async def delete_rate_keys(self, pattern: str) -> int:
        deleted = 0
        async for key in self.client.scan_iter(match=pattern):
            deleted += await self.client.delete(key)
        return deleted

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Runs the same scripts on a blocking client so pytest's per-test event loops
    never own a pooled async connection, while keeping the awaitable surface of
    :class:`RedisCache`.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(
            RedisCache._TOKEN_BUCKET_SCRIPT
        )
        self._fixed_window = self._sync_client.register_script(
            RedisCache._FIXED_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def token_bucket(
        self,
        key: str,
        *,
        now_ms: int,
        refill_per_ms: float,
        capacity: int,
        cost: int = 1,
        apply: bool = True,
    ) -> Tuple[bool, float, int]:
        reply = self._token_bucket(
            keys=[key], args=[now_ms, refill_per_ms, capacity, cost, int(apply)]
        )
        return _parse_bucket_reply(reply)

    async def fixed_window(
        self,
        key: str,
        *,
        limit: int,
        ttl_ms: int,
        cost: int = 1,
        apply: bool = True,
    ) -> Tuple[bool, int]:
        reply = self._fixed_window(keys=[key], args=[limit, cost, ttl_ms, int(apply)])
        return _parse_window_reply(reply)

    async def delete_rate_keys(self, pattern: str) -> int:
        deleted = 0
        for key in self._sync_client.scan_iter(match=pattern):
            deleted += self._sync_client.delete(key)
        return deleted

    async def close(self) -> None:
        self._sync_client.close()


__all__ = ["RedisCache", "SyncRedisCache", "_normalize_rate_key"]
