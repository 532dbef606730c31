"""
Redis Client & Cache Management
Optional Redis connection used as a read-through cache for public listings
"""
import json
from typing import Any, Optional, Dict
import redis.asyncio as aioredis
from zephsole.config import REDIS_URL, CACHE_TTL_SECONDS
from zephsole.logger import get_logger

logger = get_logger(__name__)

class RedisClient:
    """Async Redis client with cache helpers. A disconnected client is a permanent cache miss."""

    def __init__(self):
        self.redis: Optional[aioredis.Redis] = None
        self._connected = False

    async def connect(self, url: str = REDIS_URL):
        """Initialize Redis connection"""
        try:
            self.redis = aioredis.from_url(
                url,
                encoding="utf-8",
                decode_responses=False,
                max_connections=50
            )
            await self.redis.ping()
            self._connected = True
            logger.info(f"Redis connected: {url}")
        except Exception as e:
            logger.warning(f"Redis unavailable, caching disabled: {e}")
            self.redis = None
            self._connected = False

    async def disconnect(self):
        """Close Redis connection"""
        if self.redis:
            await self.redis.aclose()
            self.redis = None
            self._connected = False
            logger.info("Redis disconnected")

    @property
    def is_connected(self) -> bool:
        return self._connected

    # =============================================================================
    # Basic Operations
    # =============================================================================

    async def get(self, key: str) -> Optional[str]:
        """Get string value"""
        if not self._connected:
            return None
        try:
            value = await self.redis.get(key)
            return value.decode() if value else None
        except Exception as e:
            logger.error(f"Redis GET error for {key}: {e}")
            return None

    async def set(self, key: str, value: str, ex: Optional[int] = None):
        """Set string value with optional expiration (seconds)"""
        if not self._connected:
            return
        try:
            await self.redis.set(key, value, ex=ex)
        except Exception as e:
            logger.error(f"Redis SET error for {key}: {e}")

    async def delete(self, *keys: str):
        """Delete one or more keys"""
        if not self._connected:
            return
        try:
            await self.redis.delete(*keys)
        except Exception as e:
            logger.error(f"Redis DELETE error: {e}")

    # =============================================================================
    # JSON Operations
    # =============================================================================

    async def get_json(self, key: str) -> Optional[Any]:
        """Get JSON value"""
        value = await self.get(key)
        if value:
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                logger.error(f"Failed to decode JSON for key: {key}")
        return None

    async def set_json(self, key: str, value: Any, ex: Optional[int] = None):
        """Set JSON value"""
        await self.set(key, json.dumps(value), ex=ex)

    # =============================================================================
    # Cache Utilities
    # =============================================================================

    def cache_key(self, *parts: str) -> str:
        """Generate cache key"""
        return ":".join(["zephsole", *(str(p) for p in parts)])

    async def cache_get(self, *key_parts: str) -> Optional[Any]:
        """Get from cache with auto-deserialization"""
        return await self.get_json(self.cache_key(*key_parts))

    async def cache_set(self, *key_parts: str, value: Any, ttl: int = CACHE_TTL_SECONDS):
        """Set cache with auto-serialization"""
        await self.set_json(self.cache_key(*key_parts), value, ex=ttl)

    async def cache_delete(self, *key_parts: str):
        """Delete from cache"""
        await self.delete(self.cache_key(*key_parts))

# Global instance
redis_client = RedisClient()

__all__ = ["redis_client", "RedisClient"]
