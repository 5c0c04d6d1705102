"""Tests for the per-user rate limiter."""

from types import SimpleNamespace

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from toolexport.core.errors import RateLimitedError
from toolexport.middleware.rate_limiter import RateLimiter


class FakeRedis:
    """Minimal INCR/EXPIRE/TTL double."""

    def __init__(self, ttl: int = 42):
        self.counts: dict[str, int] = {}
        self.expiries: dict[str, int] = {}
        self._ttl = ttl

    async def incr(self, key):
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    async def expire(self, key, seconds):
        self.expiries[key] = seconds

    async def ttl(self, key):
        return self._ttl


class BrokenRedis:
    async def incr(self, key):
        raise RedisConnectionError("connection refused")


@pytest.mark.asyncio
async def test_memory_window_blocks_after_limit():
    limiter = RateLimiter()

    for _ in range(3):
        await limiter.hit("k", max_requests=3, window_seconds=60)

    with pytest.raises(RateLimitedError) as exc_info:
        await limiter.hit("k", max_requests=3, window_seconds=60)

    assert exc_info.value.status_code == 429
    assert exc_info.value.code == "RATE_LIMITED"
    assert 1 <= exc_info.value.retry_after <= 61

    # Other keys have their own window
    await limiter.hit("other", max_requests=3, window_seconds=60)

    limiter.reset()
    await limiter.hit("k", max_requests=3, window_seconds=60)


@pytest.mark.asyncio
async def test_memory_window_expires():
    limiter = RateLimiter()
    limiter._memory["k"] = (5, 0.0)

    # Expired window starts over
    await limiter.hit("k", max_requests=1, window_seconds=60)
    assert limiter._memory["k"][0] == 1


@pytest.mark.asyncio
async def test_redis_backend_counts_and_reports_ttl():
    redis = FakeRedis(ttl=7)
    limiter = RateLimiter(redis)

    await limiter.hit("k", max_requests=2, window_seconds=30)
    await limiter.hit("k", max_requests=2, window_seconds=30)
    assert redis.expiries == {"k": 30}

    with pytest.raises(RateLimitedError) as exc_info:
        await limiter.hit("k", max_requests=2, window_seconds=30)
    assert exc_info.value.retry_after == 7


@pytest.mark.asyncio
async def test_redis_errors_fail_open():
    limiter = RateLimiter(BrokenRedis())

    for _ in range(10):
        await limiter.hit("k", max_requests=1, window_seconds=30)


@pytest.mark.asyncio
async def test_decorator_buckets_per_user():
    limiter = RateLimiter()
    calls = []

    @limiter.limit("status", max_requests=2, window_seconds=60)
    async def endpoint(job_id: str, auth=None):
        calls.append((job_id, auth.user_id))
        return job_id

    alice = SimpleNamespace(user_id="alice")
    bob = SimpleNamespace(user_id="bob")

    assert await endpoint("j1", auth=alice) == "j1"
    await endpoint("j2", auth=alice)
    with pytest.raises(RateLimitedError):
        await endpoint("j3", auth=alice)

    await endpoint("j1", auth=bob)
    assert calls == [("j1", "alice"), ("j2", "alice"), ("j1", "bob")]
    assert set(limiter._memory) == {"ratelimit:status:alice", "ratelimit:status:bob"}
