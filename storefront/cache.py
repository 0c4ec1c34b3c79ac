"""
Storefront — 商品一覧キャッシュ

Redis に JSON で TTL 付きで置く。キャッシュは最適化にすぎないので、
Redis が落ちていても読み書きの失敗はログに残して素通りする。
"""

import json
import logging

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

PRODUCTS_PREFIX = "products:"


class CatalogCache:
    def __init__(self, redis: aioredis.Redis | None, ttl: int):
        self.redis = redis
        self.ttl = ttl

    async def get(self, key: str):
        if self.redis is None:
            return None
        try:
            raw = await self.redis.get(key)
        except aioredis.RedisError:
            logger.warning("Cache read failed for %s", key, exc_info=True)
            return None
        return json.loads(raw) if raw else None

    async def set(self, key: str, value) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.set(key, json.dumps(value, default=str), ex=self.ttl)
        except aioredis.RedisError:
            logger.warning("Cache write failed for %s", key, exc_info=True)

    async def invalidate(self, prefix: str = PRODUCTS_PREFIX) -> None:
        if self.redis is None:
            return
        try:
            keys = [key async for key in self.redis.scan_iter(match=f"{prefix}*")]
            if keys:
                await self.redis.delete(*keys)
        except aioredis.RedisError:
            logger.warning("Cache invalidation failed for %s*", prefix, exc_info=True)


def products_key(status: str | None, limit: int, offset: int) -> str:
    return f"{PRODUCTS_PREFIX}{status or 'all'}:{limit}:{offset}"
