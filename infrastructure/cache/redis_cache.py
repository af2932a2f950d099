"""Redis 客户端生命周期与计数器"""
from __future__ import annotations

import asyncio
from typing import Optional

from redis import asyncio as aioredis

from core.config import settings
from core.logging_config import get_logger

logger = get_logger(__name__)


class RedisCache:
    """带命名空间的 Redis 计数器"""

    def __init__(self, client: aioredis.Redis, namespace: str = "") -> None:
        self._client = client
        self._namespace = namespace.strip(":")

    def _format_key(self, key: str) -> str:
        if not self._namespace:
            return key
        return f"{self._namespace}:{key}"

    async def incr_window(self, key: str, ttl: int) -> tuple[int, int]:
        """
        计数加一；首次写入时设置过期时间

        Returns:
            (当前计数, 剩余秒数)
        """
        formatted_key = self._format_key(key)
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.incr(formatted_key)
            pipe.expire(formatted_key, ttl, nx=True)
            pipe.ttl(formatted_key)
            count, _, remaining = await pipe.execute()
        return int(count), int(remaining) if remaining and remaining > 0 else ttl

    async def ping(self) -> bool:
        return bool(await self._client.ping())


_redis_client: Optional[aioredis.Redis] = None
_cache_instance: Optional[RedisCache] = None
_lock = asyncio.Lock()


async def init_redis_cache(namespace: Optional[str] = None) -> RedisCache:
    """初始化Redis实例"""
    global _redis_client, _cache_instance

    if _cache_instance is not None:
        return _cache_instance

    async with _lock:
        if _cache_instance is not None:
            return _cache_instance

        if not settings.redis.url:
            raise RuntimeError("REDIS__URL 未配置，无法初始化Redis")

        client = aioredis.from_url(
            settings.redis.url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=settings.redis.max_connections,
        )

        _redis_client = client
        _cache_instance = RedisCache(
            client=client,
            namespace=namespace or settings.redis.namespace,
        )
        logger.info("redis_initialized", namespace=namespace or settings.redis.namespace)
        return _cache_instance


def get_redis_cache() -> Optional[RedisCache]:
    """获取全局Redis实例；未初始化时返回 None"""
    return _cache_instance


async def shutdown_redis_cache() -> None:
    """关闭Redis连接"""
    global _redis_client, _cache_instance

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        _cache_instance = None
