from __future__ import annotations

import hashlib
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for shared fixed-window rate counters."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    # Atomic increment; the first hit of a window arms its expiry so every
    # process sees the same window boundary. Returns {count, pttl}.
    _WINDOW_INCR_SCRIPT = """
local key = KEYS[1]
local window_ms = tonumber(ARGV[1])

local count = redis.call('INCR', key)
if count == 1 then
  redis.call('PEXPIRE', key, window_ms)
end
local ttl = redis.call('PTTL', key)
if ttl < 0 then
  redis.call('PEXPIRE', key, window_ms)
  ttl = window_ms
end
return {count, ttl}
"""

    # Read the window without counting. Returns {count, pttl}; an absent
    # window reads as {0, 0}.
    _WINDOW_PEEK_SCRIPT = """
local key = KEYS[1]
local count = tonumber(redis.call('GET', key) or '0')
local ttl = redis.call('PTTL', key)
if ttl < 0 then
  ttl = 0
end
return {count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._window_incr = self.client.register_script(self._WINDOW_INCR_SCRIPT)
        self._window_peek = self.client.register_script(self._WINDOW_PEEK_SCRIPT)

    @staticmethod
    def _normalize_rate_key(policy: str, scope_key: str) -> str:
        """Generate collision-resistant window keys.

        The scope key is hashed so client-supplied values (forwarded IPs)
        cannot inject delimiters into the key space.
        """

        digest = hashlib.sha256(scope_key.encode()).hexdigest()
        return f"rate:{policy}:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        """Round-trip to Redis on the running event loop."""
        return bool(await self.client.ping())

    async def incr_window(
        self, policy: str, scope_key: str, window_ms: int
    ) -> Tuple[int, int]:
        """Count one hit against the current window.

        Returns ``(count, reset_in_ms)`` after the increment.
        """
        count, ttl = await self._window_incr(
            keys=[self._normalize_rate_key(policy, scope_key)], args=[window_ms]
        )
        return int(count), int(ttl)

    async def peek_window(self, policy: str, scope_key: str) -> Tuple[int, int]:
        count, ttl = await self._window_peek(
            keys=[self._normalize_rate_key(policy, scope_key)]
        )
        return int(count), int(ttl)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._window_incr = self._sync_client.register_script(
            RedisCache._WINDOW_INCR_SCRIPT
        )
        self._window_peek = self._sync_client.register_script(
            RedisCache._WINDOW_PEEK_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def ping(self) -> bool:
        return bool(self._sync_client.ping())

    async def incr_window(
        self, policy: str, scope_key: str, window_ms: int
    ) -> Tuple[int, int]:
        count, ttl = self._window_incr(
            keys=[RedisCache._normalize_rate_key(policy, scope_key)], args=[window_ms]
        )
        return int(count), int(ttl)

    async def peek_window(self, policy: str, scope_key: str) -> Tuple[int, int]:
        count, ttl = self._window_peek(
            keys=[RedisCache._normalize_rate_key(policy, scope_key)]
        )
        return int(count), int(ttl)

    async def close(self) -> None:
        self._sync_client.close()
