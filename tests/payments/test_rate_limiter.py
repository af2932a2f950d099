import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from domain.common.exceptions import RateLimitExceededException
from infrastructure.cache.rate_limiter import FixedWindowRateLimiter


class FakeCache:
    def __init__(self, fail: bool = False) -> None:
        self.counts: dict[str, int] = {}
        self.fail = fail

    async def incr_window(self, key: str, ttl: int):
        if self.fail:
            raise RedisConnectionError("connection refused")
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key], ttl


@pytest.mark.asyncio
async def test_limit_exceeded_within_window():
    cache = FakeCache()
    limiter = FixedWindowRateLimiter("user", 2, 60, lambda: cache, clock=lambda: 120.0)

    await limiter.hit("1")
    await limiter.hit("1")
    with pytest.raises(RateLimitExceededException):
        await limiter.hit("1")
    await limiter.hit("2")
    assert cache.counts == {"ratelimit:user:1:2": 3, "ratelimit:user:2:2": 1}


@pytest.mark.asyncio
async def test_new_window_resets_count():
    cache = FakeCache()
    now = [0.0]
    limiter = FixedWindowRateLimiter("webhook", 1, 60, lambda: cache, clock=lambda: now[0])

    await limiter.hit("10.0.0.1")
    now[0] = 61.0
    await limiter.hit("10.0.0.1")


@pytest.mark.asyncio
async def test_no_cache_or_backend_error_lets_requests_through():
    await FixedWindowRateLimiter("user", 0, 60, lambda: None).hit("1")
    await FixedWindowRateLimiter("user", 0, 60, lambda: FakeCache(fail=True)).hit("1")
