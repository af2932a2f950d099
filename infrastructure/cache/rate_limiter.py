"""
Fixed-window rate limiter backed by a Redis counter.

Window keys embed the window index so each window starts from zero.
When Redis is not configured the limiter lets everything through.
"""
from __future__ import annotations

import time
from typing import Callable, Optional

from redis.exceptions import RedisError

from core.logging_config import get_logger
from domain.common.exceptions import RateLimitExceededException
from infrastructure.cache.redis_cache import RedisCache


logger = get_logger(__name__)


class FixedWindowRateLimiter:
    def __init__(
        self,
        scope: str,
        limit: int,
        window_seconds: int,
        cache_getter: Callable[[], Optional[RedisCache]],
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.scope = scope
        self.limit = limit
        self.window_seconds = window_seconds
        self._cache_getter = cache_getter
        self._clock = clock

    def _key(self, identity: str) -> str:
        window = int(self._clock() // self.window_seconds)
        return f"ratelimit:{self.scope}:{identity}:{window}"

    async def hit(self, identity: str) -> None:
        """Count one request; raises RateLimitExceededException over the limit."""
        cache = self._cache_getter()
        if cache is None:
            return
        try:
            count, remaining = await cache.incr_window(self._key(identity), self.window_seconds)
        except RedisError as exc:
            # fail open
            logger.warning("rate_limit_backend_unavailable", scope=self.scope, error=str(exc))
            return
        if count > self.limit:
            logger.warning("rate_limit_exceeded", scope=self.scope, identity=identity, count=count)
            raise RateLimitExceededException(self.scope, retry_after=remaining)
