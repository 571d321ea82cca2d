from __future__ import annotations

import hashlib
import time
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for the token blacklist and rate limits."""

    # atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
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

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Compute a TTL from an absolute expiry timestamp.

        Naive timestamps are treated as UTC. The result is clamped to at least
        1 second because Redis rejects zero or negative expirations.
        """

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    @staticmethod
    def _blacklist_key(token_fingerprint: str) -> str:
        return f"auth:blacklist:{token_fingerprint}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, _tokens, _reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, 1],
        )
        return bool(int(allowed))

    async def blacklist_token(self, token_fingerprint: str, expires_at: datetime) -> None:
        """Blacklist a token until ``expires_at``; an existing longer TTL is kept."""
        key = self._blacklist_key(token_fingerprint)
        ttl = self._ttl_seconds(expires_at)
        current_ttl = await self.client.ttl(key)
        if current_ttl is not None and current_ttl > ttl:
            return
        await self.client.set(key, "1", ex=ttl)

    async def is_token_blacklisted(self, token_fingerprint: str) -> bool:
        return bool(await self.client.exists(self._blacklist_key(token_fingerprint)))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    in pytest, but exposes the same async methods as RedisCache.
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

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        safe_key = RedisCache._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, _tokens, _reset_after = self._token_bucket(
            keys=[safe_key], args=[time.time(), refill_rate, limit, 1]
        )
        return bool(int(allowed))

    async def blacklist_token(self, token_fingerprint: str, expires_at: datetime) -> None:
        key = RedisCache._blacklist_key(token_fingerprint)
        ttl = RedisCache._ttl_seconds(expires_at)
        current_ttl: Optional[int] = self._sync_client.ttl(key)
        if current_ttl is not None and current_ttl > ttl:
            return
        self._sync_client.set(key, "1", ex=ttl)

    async def is_token_blacklisted(self, token_fingerprint: str) -> bool:
        return bool(self._sync_client.exists(RedisCache._blacklist_key(token_fingerprint)))

    async def close(self) -> None:
        self._sync_client.close()
