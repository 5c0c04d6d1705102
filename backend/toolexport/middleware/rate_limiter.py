"""Per-user rate limiting for polled export endpoints."""

import asyncio
import logging
import time
from functools import wraps
from typing import Callable

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from toolexport.core.errors import RateLimitedError
from toolexport.middleware.prometheus import record_rate_limit_exceeded


logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Fixed-window rate limiter.

    Counts live in Redis when a client is configured, otherwise in process
    memory. Redis errors fail open with a warning.
    """

    def __init__(self, redis_client: aioredis.Redis | None = None):
        self.redis = redis_client
        self._memory: dict[str, tuple[int, float]] = {}
        self._memory_lock = asyncio.Lock()

    def configure(self, redis_client: aioredis.Redis | None) -> None:
        self.redis = redis_client
        self.reset()

    def reset(self) -> None:
        self._memory.clear()

    async def hit(self, key: str, max_requests: int, window_seconds: int) -> None:
        """
        Count one request against ``key``.

        Raises:
            RateLimitedError: the window already holds ``max_requests`` hits
        """
        if self.redis is not None:
            try:
                current = await self.redis.incr(key)
                if current == 1:
                    await self.redis.expire(key, window_seconds)
                if current <= max_requests:
                    return
                ttl = await self.redis.ttl(key)
            except RedisError:
                logger.warning("Rate limiter backend unavailable; allowing request", exc_info=True)
                return
            retry_after = ttl if isinstance(ttl, int) and ttl > 0 else window_seconds
        else:
            now = time.monotonic()
            async with self._memory_lock:
                count, expires_at = self._memory.get(key, (0, now + window_seconds))
                if now >= expires_at:
                    count = 0
                    expires_at = now + window_seconds
                count += 1
                self._memory[key] = (count, expires_at)
            if count <= max_requests:
                return
            retry_after = int(expires_at - now) + 1

        raise RateLimitedError(
            f"Rate limit exceeded. Max {max_requests} requests per {window_seconds}s.",
            retry_after=retry_after,
        )

    def limit(
        self,
        key_prefix: str,
        max_requests: int = 100,
        window_seconds: int = 60,
    ) -> Callable:
        """
        Rate limit decorator for FastAPI endpoints.

        The bucket is per caller: it reads ``auth.user_id`` from the endpoint
        kwargs and falls back to a shared anonymous bucket.
        """

        def decorator(func: Callable) -> Callable:
            @wraps(func)
            async def wrapper(*args, **kwargs):
                subject = getattr(kwargs.get("auth"), "user_id", None) or "anonymous"
                try:
                    await self.hit(f"ratelimit:{key_prefix}:{subject}", max_requests, window_seconds)
                except RateLimitedError:
                    record_rate_limit_exceeded(key_prefix)
                    raise
                return await func(*args, **kwargs)

            return wrapper

        return decorator


# Global rate limiter instance (Redis client attached at startup when configured)
rate_limiter = RateLimiter()


def init_rate_limiter(redis_client: aioredis.Redis | None) -> None:
    rate_limiter.configure(redis_client)
