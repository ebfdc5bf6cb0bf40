# app/services/redis_client.py
"""
Pooled asyncio Redis client.

Redis carries the reminder queue fed by committed bookings. Calls never
raise into request handlers: failures are logged and reported through the
return value, since nothing in the booking path may depend on Redis.
"""

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class FastRedisClient:
    """Redis operations over a shared connection pool"""

    def __init__(self, url: str | None = None):
        self.url = url
        self.pool: ConnectionPool | None = None
        self.client: redis.Redis | None = None
        self._initialized = False

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        url = self.url or settings.REDIS_URL
        try:
            self.pool = ConnectionPool.from_url(
                url,
                max_connections=settings.REDIS_MAX_CONNECTIONS,
                retry_on_timeout=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                health_check_interval=30,
                decode_responses=True,
            )
            self.client = redis.Redis(connection_pool=self.pool)

            await self.client.ping()
            self._initialized = True
            logger.info(
                "Redis client initialized",
                max_connections=settings.REDIS_MAX_CONNECTIONS,
                url_preview=url.split("@")[-1][:40],
            )

        except Exception as e:
            logger.error("Failed to initialize Redis client", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    async def close(self):
        """Clean shutdown"""
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            logger.info("Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))
        finally:
            self._initialized = False

    async def _ensure_initialized(self):
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            await self._ensure_initialized()
            return bool(await self.client.ping())
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def rpush(self, key: str, *values: str) -> int | None:
        """Append values to a list; returns the new length or None on failure."""
        if not values:
            return 0
        try:
            await self._ensure_initialized()
            return int(await self.client.rpush(key, *values))
        except Exception as e:
            logger.error("Redis RPUSH failed", key=key[:30], count=len(values), error=str(e))
            return None


# Global instance
fast_redis = FastRedisClient()
