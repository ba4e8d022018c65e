import redis.asyncio as aioredis
from redis.asyncio import Redis
from typing import Optional
import json

from shipyard.core.config import settings
from shipyard.core.logging_config import logger


class RedisClient:
    """Redis client backing the shared conversation cache"""

    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.REDIS_URL
        self.redis: Optional[Redis] = None

    @property
    def connected(self) -> bool:
        return self.redis is not None

    async def connect(self):
        """Connect to Redis"""
        try:
            self.redis = aioredis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True
            )
            await self.redis.ping()
            logger.info("Redis connected successfully")
        except Exception as e:
            logger.error(f"Redis connection error: {e}")
            self.redis = None
            raise

    async def disconnect(self):
        """Disconnect from Redis"""
        if self.redis:
            await self.redis.aclose()
            self.redis = None
        logger.info("Redis disconnected")

    async def cache_get(self, key: str) -> Optional[dict]:
        """Get cached JSON value"""
        try:
            value = await self.redis.get(key)
            return json.loads(value) if value else None
        except Exception as e:
            logger.error(f"Cache GET error: {e}")
            return None

    async def cache_set(self, key: str, value: dict, expire: int = 3600) -> bool:
        """Set cached JSON value"""
        try:
            return await self.redis.setex(key, expire, json.dumps(value))
        except Exception as e:
            logger.error(f"Cache SET error: {e}")
            return False

    async def cache_delete(self, key: str) -> bool:
        """Delete cached value"""
        try:
            return await self.redis.delete(key) > 0
        except Exception as e:
            logger.error(f"Cache DELETE error: {e}")
            return False


redis_client = RedisClient()
