import redis.asyncio as redis
import json
from typing import Any, Optional
import structlog

from app.core.config import settings

logger = structlog.get_logger(__name__)


class RedisClient:
    """Redis client backing the shared availability cache."""

    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.REDIS_URL
        self.redis_pool = None

    @property
    def is_configured(self) -> bool:
        return bool(self.url)

    async def init_redis(self):
        """Initialize Redis connection pool."""
        try:
            self.redis_pool = redis.ConnectionPool.from_url(
                self.url,
                decode_responses=True,
                retry_on_timeout=True,
                socket_keepalive=True,
                socket_keepalive_options={},
            )

            # Test connection
            async with redis.Redis(connection_pool=self.redis_pool) as r:
                await r.ping()
                logger.info("Redis connection established")

        except Exception as e:
            logger.error("Failed to connect to Redis", exc_info=e)
            raise

    async def get_redis(self) -> redis.Redis:
        """Get Redis client instance."""
        if not self.redis_pool:
            await self.init_redis()
        return redis.Redis(connection_pool=self.redis_pool)

    async def close(self):
        if self.redis_pool:
            await self.redis_pool.disconnect()
            self.redis_pool = None

    async def set(self, key: str, value: Any, expire: Optional[int] = None) -> bool:
        """Set a key-value pair in Redis."""
        try:
            client = await self.get_redis()
            serialized_value = json.dumps(value) if not isinstance(value, str) else value

            if expire:
                return await client.setex(key, expire, serialized_value)
            else:
                return await client.set(key, serialized_value)

        except Exception as e:
            logger.error("Redis SET error", key=key, exc_info=e)
            return False

    async def get(self, key: str) -> Optional[Any]:
        """Get a value from Redis."""
        try:
            client = await self.get_redis()
            value = await client.get(key)

            if value is None:
                return None

            # Try to deserialize JSON, fallback to string
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return value

        except Exception as e:
            logger.error("Redis GET error", key=key, exc_info=e)
            return None

    async def incr(self, key: str) -> Optional[int]:
        """Increment a counter, returning None when Redis is unreachable."""
        try:
            client = await self.get_redis()
            return await client.incr(key)
        except Exception as e:
            logger.error("Redis INCR error", key=key, exc_info=e)
            return None

    async def get_int(self, key: str) -> int:
        value = await self.get(key)
        try:
            return int(value) if value is not None else 0
        except (TypeError, ValueError):
            return 0


# Global Redis client instance
redis_client = RedisClient()
