"""
Redis client with connection pooling and async support.

Used by the distributed order lock. Besides plain get/set/delete it
provides set_if_absent() for lock acquisition and a compare-and-delete
script so a lock is only released by the holder that owns it.
"""

from typing import Optional, Union

from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import (
    ConnectionError,
    RedisError,
    TimeoutError,
)

from orderflow.core.config import get_settings
from orderflow.core.logging import get_logger

logger = get_logger(__name__)

# KEYS[1] = key, ARGV[1] = expected value
_COMPARE_AND_DELETE = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


class RedisClient:
    """
    Async Redis client with connection pooling and retry logic.

    Wraps redis.asyncio with connection management and structured
    logging of failed operations.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        max_connections: Optional[int] = None,
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
        retry_on_timeout: bool = True,
        health_check_interval: int = 30,
        client: Optional[Redis] = None,
    ):
        """
        Initialize Redis client.

        Args:
            url: Redis connection URL (defaults to settings.redis_url)
            max_connections: Maximum pool connections (defaults to settings)
            socket_timeout: Socket operation timeout in seconds
            socket_connect_timeout: Socket connection timeout in seconds
            retry_on_timeout: Enable automatic retry on timeout
            health_check_interval: Health check interval in seconds
            client: Pre-built redis client, used as is and never pooled here
        """
        settings = get_settings()
        self._url = url or settings.redis_url
        self._max_connections = max_connections or settings.redis_max_connections
        self._socket_timeout = socket_timeout
        self._socket_connect_timeout = socket_connect_timeout
        self._retry_on_timeout = retry_on_timeout
        self._health_check_interval = health_check_interval

        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = client
        self._is_connected = client is not None

    @staticmethod
    def _sanitize_url(url: str) -> str:
        """Remove the password from a Redis URL for logging."""
        if "@" in url:
            protocol, rest = url.split("://", 1)
            if "@" in rest:
                _, host_part = rest.split("@", 1)
                return f"{protocol}://***@{host_part}"
        return url

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    async def connect(self) -> None:
        """
        Create the connection pool and verify connectivity with ping.

        Raises:
            ConnectionError: If connection cannot be established
        """
        if self._is_connected:
            logger.warning("Redis client already connected")
            return

        try:
            retry = Retry(
                ExponentialBackoff(base=0.1, cap=2.0),
                retries=3,
            )

            self._pool = ConnectionPool.from_url(
                self._url,
                max_connections=self._max_connections,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_connect_timeout,
                retry_on_timeout=self._retry_on_timeout,
                health_check_interval=self._health_check_interval,
                retry=retry,
                decode_responses=True,
            )

            self._client = Redis(connection_pool=self._pool)

            await self._client.ping()
            self._is_connected = True

            logger.info(
                "Redis connection established",
                url=self._sanitize_url(self._url),
                pool_size=self._max_connections,
            )

        except (ConnectionError, TimeoutError) as e:
            logger.error(
                "Failed to connect to Redis",
                error=str(e),
                url=self._sanitize_url(self._url),
            )
            await self._teardown()
            raise ConnectionError(f"Redis connection failed: {e}") from e

    async def disconnect(self) -> None:
        """Close the client and its pool."""
        if not self._is_connected:
            return
        await self._teardown()
        logger.info("Redis connection closed")

    async def _teardown(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._pool is not None:
            await self._pool.aclose()
            self._pool = None
        self._is_connected = False

    async def health_check(self) -> bool:
        """Return True if Redis answers a ping."""
        if not self._is_connected or not self._client:
            logger.warning("Redis health check failed: not connected")
            return False

        try:
            await self._client.ping()
            return True
        except RedisError as e:
            logger.error(
                "Redis health check failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

    def _ensure_connected(self) -> Redis:
        if not self._is_connected or self._client is None:
            raise ConnectionError("Redis client is not connected")
        return self._client

    async def get(self, key: str) -> Optional[str]:
        client = self._ensure_connected()
        try:
            return await client.get(key)
        except RedisError as e:
            logger.error("Redis GET operation failed", key=key, error=str(e))
            raise

    async def set(
        self,
        key: str,
        value: Union[str, bytes, int, float],
        ex: Optional[int] = None,
        px: Optional[int] = None,
        nx: bool = False,
    ) -> bool:
        """
        Set value in Redis with optional expiration.

        Returns:
            True if the value was written

        Raises:
            ConnectionError: If Redis is not connected
            RedisError: If Redis operation fails
        """
        client = self._ensure_connected()
        try:
            result = await client.set(key, value, ex=ex, px=px, nx=nx)
            return bool(result)
        except RedisError as e:
            logger.error("Redis SET operation failed", key=key, error=str(e))
            raise

    async def delete(self, *keys: str) -> int:
        client = self._ensure_connected()
        try:
            return await client.delete(*keys)
        except RedisError as e:
            logger.error("Redis DELETE operation failed", keys=keys, error=str(e))
            raise

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        """SET key value NX PX ttl_ms. Returns True if the key was created."""
        return await self.set(key, value, px=ttl_ms, nx=True)

    async def delete_if_equals(self, key: str, value: str) -> bool:
        """
        Delete key only if it still holds value.

        Returns:
            True if the key was deleted
        """
        client = self._ensure_connected()
        try:
            deleted = await client.eval(_COMPARE_AND_DELETE, 1, key, value)
            return int(deleted) == 1
        except RedisError as e:
            logger.error("Redis compare-and-delete failed", key=key, error=str(e))
            raise


class CacheKeyManager:
    """
    Builds namespaced Redis keys.

    Example:
        >>> CacheKeyManager("orderflow").make_key("lock", "order", 42)
        'orderflow:lock:order:42'
    """

    def __init__(self, namespace: str = "orderflow"):
        self.namespace = namespace

    def make_key(self, *parts: Union[str, int]) -> str:
        key_parts = [str(part) for part in parts if part]
        return ":".join([self.namespace] + key_parts)


_redis_client: Optional[RedisClient] = None


async def get_redis_client() -> RedisClient:
    """
    Get or create the shared Redis client.

    Raises:
        ConnectionError: If Redis connection fails
    """
    global _redis_client

    if _redis_client is None:
        client = RedisClient()
        await client.connect()
        _redis_client = client

    return _redis_client


async def close_redis_client() -> None:
    global _redis_client

    if _redis_client is not None:
        await _redis_client.disconnect()
        _redis_client = None
