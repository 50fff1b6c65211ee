from unittest.mock import AsyncMock, MagicMock

from chatharbor.storage.redis_cache import RedisCache, SyncRedisCache


def _async_cache() -> RedisCache:
    cache: RedisCache = RedisCache.__new__(RedisCache)
    cache._window_incr = AsyncMock(return_value=[3, 4500])
    cache._window_peek = AsyncMock(return_value=[7, 1200])
    return cache


def test_rate_keys_hash_scope():
    key = RedisCache._normalize_rate_key("chat-turn", "10.0.0.1:evil")
    assert key.startswith("rate:chat-turn:")
    assert "10.0.0.1" not in key
    assert key == RedisCache._normalize_rate_key("chat-turn", "10.0.0.1:evil")
    assert key != RedisCache._normalize_rate_key("general", "10.0.0.1:evil")


def test_incr_script_arms_expiry_on_first_hit():
    script = RedisCache._WINDOW_INCR_SCRIPT
    assert "INCR" in script
    assert "PEXPIRE" in script
    assert "count == 1" in script


async def test_incr_window_passes_window_ms():
    cache = _async_cache()
    count, reset_ms = await cache.incr_window("general", "ip", 900_000)
    assert (count, reset_ms) == (3, 4500)
    call = cache._window_incr.await_args
    assert call.kwargs["args"] == [900_000]
    assert call.kwargs["keys"] == [RedisCache._normalize_rate_key("general", "ip")]


async def test_peek_window_returns_ints():
    cache = _async_cache()
    assert await cache.peek_window("general", "ip") == (7, 1200)


async def test_sync_cache_exposes_same_contract():
    cache: SyncRedisCache = SyncRedisCache.__new__(SyncRedisCache)
    cache._window_incr = MagicMock(return_value=["1", "60000"])
    cache._window_peek = MagicMock(return_value=["1", "59000"])
    assert await cache.incr_window("chat-turn", "ip", 60_000) == (1, 60_000)
    assert await cache.peek_window("chat-turn", "ip") == (1, 59_000)


async def test_ping_uses_async_client():
    cache: RedisCache = RedisCache.__new__(RedisCache)
    cache.client = MagicMock()
    cache.client.ping = AsyncMock(return_value=True)
    assert await cache.ping() is True
    cache.client.ping.assert_awaited_once()
