# app/services/redis_client.py
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Delete the lock only if we still own it
_RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

# Reset the lock TTL only if we still own it
_EXTEND_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("expire", KEYS[1], ARGV[2])
else
    return 0
end
"""


class FastRedisClient:
    """Pooled async Redis client used for config locks and the stage event queue."""

    def __init__(self):
        self.pool = None
        self.client = None
        self._initialized = False

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        try:
            self.pool = ConnectionPool.from_url(
                settings.REDIS_URL,
                max_connections=20,
                retry_on_timeout=True,
                socket_connect_timeout=10,
                socket_timeout=10,
                health_check_interval=30,
                decode_responses=True,
            )
            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True
            logger.info("Redis client initialized successfully", max_connections=20)

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
            self._initialized = False
            logger.info("Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))

    async def _ensure_initialized(self):
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()
            if not self._initialized:
                raise ConnectionError("Redis client not available")

    async def ping(self) -> bool:
        try:
            await self._ensure_initialized()
            return bool(await self.client.ping())
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def acquire_lock(self, key: str, token: str, ttl_s: int) -> bool:
        """SET NX EX; True only if this caller now holds the lock."""
        try:
            await self._ensure_initialized()
            return bool(await self.client.set(key, token, nx=True, ex=ttl_s))
        except Exception as e:
            logger.error("Redis lock acquire failed", key=key[:60], error=str(e))
            return False

    async def release_lock(self, key: str, token: str) -> bool:
        try:
            await self._ensure_initialized()
            released = await self.client.eval(_RELEASE_LOCK_SCRIPT, 1, key, token)
            return bool(released)
        except Exception as e:
            logger.error("Redis lock release failed", key=key[:60], error=str(e))
            return False

    async def extend_lock(self, key: str, token: str, ttl_s: int) -> bool:
        try:
            await self._ensure_initialized()
            extended = await self.client.eval(_EXTEND_LOCK_SCRIPT, 1, key, token, ttl_s)
            return bool(extended)
        except Exception as e:
            logger.error("Redis lock extend failed", key=key[:60], error=str(e))
            return False

    async def push_to_list(self, key: str, value: str, left: bool = True) -> bool:
        """Push a value onto a Redis list (used as a lightweight queue)."""
        try:
            await self._ensure_initialized()
            if left:
                result = await self.client.lpush(key, value)
            else:
                result = await self.client.rpush(key, value)
            return result > 0
        except Exception as e:
            logger.error("Redis LIST push failed", key=key[:60], error=str(e))
            return False

    async def pop_to_inflight(
        self, source_key: str, inflight_key: str, timeout: int = 0
    ) -> str | None:
        """
        Pop a value from a list and push to an in-flight list (acked queue).

        Uses BRPOPLPUSH for blocking behavior to avoid losing events on worker crash.
        """
        try:
            await self._ensure_initialized()
            if timeout > 0:
                return await self.client.brpoplpush(source_key, inflight_key, timeout=timeout)
            return await self.client.rpoplpush(source_key, inflight_key)
        except Exception as e:
            logger.error(
                "Redis LIST inflight pop failed",
                source_key=source_key[:60],
                inflight_key=inflight_key[:60],
                error=str(e),
            )
            return None

    async def ack_from_inflight(self, inflight_key: str, value: str) -> bool:
        """Remove a processed item from the in-flight list."""
        try:
            await self._ensure_initialized()
            return await self.client.lrem(inflight_key, 1, value) > 0
        except Exception as e:
            logger.error("Redis inflight ack failed", inflight_key=inflight_key[:60], error=str(e))
            return False

    async def requeue_from_inflight(
        self, inflight_key: str, destination_key: str, value: str
    ) -> bool:
        """
        Move an item from the in-flight list back to the consuming end of the queue.

        RPUSH puts it next in line so it is retried before newer events for
        the same partition, keeping per-application order.
        """
        try:
            await self._ensure_initialized()
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.lrem(inflight_key, 1, value)
                pipe.rpush(destination_key, value)
                results = await pipe.execute()
            return bool(results and results[-1])
        except Exception as e:
            logger.error(
                "Redis inflight requeue failed",
                inflight_key=inflight_key[:60],
                destination_key=destination_key[:60],
                error=str(e),
            )
            return False

    async def list_range(self, key: str, start: int = 0, end: int = -1) -> list[str]:
        try:
            await self._ensure_initialized()
            result = await self.client.lrange(key, start, end)
            return [str(item) for item in result] if result else []
        except Exception as e:
            logger.error("Redis LRANGE failed", key=key[:60], error=str(e))
            return []


# Global instance
fast_redis = FastRedisClient()
