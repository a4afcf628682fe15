from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for shared rate-limit counters."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off the startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str, window_start: int) -> str:
        """Hash the subject so client-supplied values cannot collide across delimiters."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}:{window_start}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        now: Optional[float] = None,
    ) -> Tuple[bool, int, int]:
        """Fixed-window counter: INCR the current window's key and compare.

        Returns:
            (allowed, remaining, seconds until the window resets)
        """
        current = time.time() if now is None else now
        window_start = int(current // window_seconds) * window_seconds
        reset_seconds = max(1, int(window_start + window_seconds - current))
        safe_key = self._normalize_rate_key(key, window_start)
        pipe = self.client.pipeline()
        pipe.incr(safe_key)
        pipe.expire(safe_key, window_seconds)
        count, _ = await pipe.execute()
        count = int(count)
        return count <= limit, max(0, limit - count), reset_seconds

    async def close(self) -> None:
        """Close the Redis connection pool on shutdown or runtime reset."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
