"""Tests for the Redis-backed and in-process fixed-window rate limiters."""

from unittest.mock import AsyncMock, MagicMock

from sessionauth.service.runtime import check_rate_limit, get_runtime
from sessionauth.storage.redis_cache import RedisCache


def _cache_with_count(count: int) -> tuple[RedisCache, MagicMock]:
    cache = RedisCache("redis://localhost:6379/15")
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[count, True])
    client = MagicMock()
    client.pipeline.return_value = pipe
    cache.client = client
    return cache, pipe


async def test_redis_counter_within_limit():
    cache, pipe = _cache_with_count(3)
    allowed, remaining, reset = await cache.check_rate_limit("signin:1.2.3.4", 20, 60, now=1_000_000.0)
    assert allowed is True
    assert remaining == 17
    # 1_000_000 sits 40s into its 60s window
    assert reset == 20
    key = pipe.incr.call_args.args[0]
    pipe.expire.assert_called_once_with(key, 60)


async def test_redis_counter_over_limit():
    cache, _ = _cache_with_count(21)
    allowed, remaining, _ = await cache.check_rate_limit("signin:1.2.3.4", 20, 60)
    assert allowed is False
    assert remaining == 0


def test_rate_keys_are_hashed_per_window():
    first = RedisCache._normalize_rate_key("signin:1.2.3.4", 60)
    assert first.startswith("rate:")
    assert first.endswith(":60")
    assert "1.2.3.4" not in first
    assert first != RedisCache._normalize_rate_key("signin:1.2.3.4", 120)
    assert first != RedisCache._normalize_rate_key("signup:1.2.3.4", 60)


async def test_runtime_delegates_to_redis_when_configured():
    runtime = get_runtime()
    cache = MagicMock()
    cache.check_rate_limit = AsyncMock(return_value=(True, 5, 30))
    runtime.cache = cache
    assert await check_rate_limit(runtime, "refresh:ip", 20, 60) == (True, 5, 30)
    cache.check_rate_limit.assert_awaited_once_with("refresh:ip", 20, 60)


async def test_local_limiter_counts_per_key():
    runtime = get_runtime()
    for expected_remaining in (2, 1, 0):
        allowed, remaining, reset = await check_rate_limit(runtime, "signin:a", 3, 60)
        assert allowed is True
        assert remaining == expected_remaining
        assert 1 <= reset <= 60
    allowed, remaining, _ = await check_rate_limit(runtime, "signin:a", 3, 60)
    assert allowed is False
    assert remaining == 0
    allowed, _, _ = await check_rate_limit(runtime, "signin:b", 3, 60)
    assert allowed is True


async def test_zero_limit_disables_throttling():
    runtime = get_runtime()
    for _ in range(5):
        allowed, _, _ = await check_rate_limit(runtime, "signup:a", 0, 60)
        assert allowed is True
