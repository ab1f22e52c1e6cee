import json
import logging
from typing import Any, List, Optional

import redis
import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


class RedisService:
    """Best-effort cache. Every method degrades to a miss when Redis is unavailable."""

    def __init__(self, client: Optional[Any] = None):
        self.redis_client = client

    @classmethod
    async def from_settings(cls, host: Optional[str], port: int, username: Optional[str] = None, password: Optional[str] = None) -> "RedisService":
        if not host:
            logger.info("[CACHE] REDIS_HOST not set, caching disabled")
            return cls(None)
        try:
            client = aioredis.Redis(
                host=host,
                port=port,
                decode_responses=True,
                username=username,
                password=password,
            )
            await client.ping()
            logger.info("[CACHE] Redis connected successfully")
            return cls(client)
        except redis.RedisError as e:
            logger.warning("[CACHE][WARN] Redis connection failed: %s", e)
            return cls(None)

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()

    async def _get_json(self, key: str) -> Optional[Any]:
        if self.redis_client is None:
            return None
        try:
            data = await self.redis_client.get(key)
        except redis.RedisError as e:
            logger.warning("[CACHE][WARN] read %s failed: %s", key, e)
            return None
        return json.loads(data) if data else None

    async def _set_json(self, key: str, value: Any, ttl: int) -> None:
        if self.redis_client is None:
            return
        try:
            await self.redis_client.setex(key, ttl, json.dumps(value, default=str))
        except redis.RedisError as e:
            logger.warning("[CACHE][WARN] write %s failed: %s", key, e)

    async def _delete(self, *keys: str) -> None:
        if self.redis_client is None:
            return
        try:
            await self.redis_client.delete(*keys)
        except redis.RedisError as e:
            logger.warning("[CACHE][WARN] delete failed: %s", e)

    async def cache_flow_suggestion(self, product_id: str, pages: List[dict], ttl: int = 3600) -> None:
        """Cache generated page proposals for a product"""
        await self._set_json(f"flow:suggestion:{product_id}", pages, ttl)

    async def get_cached_flow_suggestion(self, product_id: str) -> Optional[List[dict]]:
        return await self._get_json(f"flow:suggestion:{product_id}")

    async def cache_personas(self, product_id: str, personas: List[dict], ttl: int = 7200) -> None:
        await self._set_json(f"personas:{product_id}", personas, ttl)

    async def get_cached_personas(self, product_id: str) -> Optional[List[dict]]:
        return await self._get_json(f"personas:{product_id}")

    async def clear_product(self, product_id: str) -> None:
        """Drop every cached entry derived from a product"""
        await self._delete(f"flow:suggestion:{product_id}", f"personas:{product_id}")
