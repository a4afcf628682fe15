from __future__ import annotations

import asyncio
import threading
import time
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from sessionauth.config import get_settings, reset_settings_cache
from sessionauth.logging import get_logger
from sessionauth.service.auth import AuthConfig, SessionManager
from sessionauth.storage.memory import MemoryStore
from sessionauth.storage.postgres import PostgresStore
from sessionauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        self.settings.validate_durations()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="Rate limit counters are in-process only.",
                )

        self.auth = SessionManager(
            self.store,
            self.store,
            AuthConfig.from_settings(self.settings),
        )
        # (key, window_start) -> count, used when Redis is not configured
        self._local_rate_limits: Dict[Tuple[str, int], int] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            access_ttl=str(self.auth.config.access_ttl),
            refresh_ttl=str(self.auth.config.refresh_ttl),
            fingerprint_policy=self.auth.config.fingerprint_policy.value,
            redis_enabled=self.cache is not None,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking so the fast path takes no lock.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
) -> Tuple[bool, int, int]:
    """Fixed-window rate limit, shared through Redis when it is available.

    Args:
        runtime: Runtime instance with cache
        key: Rate limit key, e.g. ``"signin:203.0.113.7"``
        limit: Maximum requests per window
        window_seconds: Window duration in seconds

    Returns:
        (allowed, remaining, reset_seconds)
    """
    if limit <= 0:
        return True, limit, 0
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds)
    now = time.time()
    window_start = int(now // window_seconds) * window_seconds
    reset_seconds = max(1, int(window_start + window_seconds - now))
    async with runtime._local_rate_limit_lock:
        # Drop counters from windows that have already closed
        for stale in [k for k in runtime._local_rate_limits if k[1] < window_start]:
            runtime._local_rate_limits.pop(stale, None)
        count = runtime._local_rate_limits.get((key, window_start), 0) + 1
        runtime._local_rate_limits[(key, window_start)] = count
    return count <= limit, max(0, limit - count), reset_seconds
