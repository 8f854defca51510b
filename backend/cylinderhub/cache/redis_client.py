"""
Redis client configuration with connection pooling and async support.

Redis carries two concerns for the fulfillment service: fan-out of order
events to notification workers over pub/sub channels, and the cross-process
lock that keeps a single mirror reconciliation pass in flight.
"""

from typing import Optional, Union

from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from cylinderhub.core.config import get_settings
from cylinderhub.core.logging import get_logger

logger = get_logger(__name__)

# Deletes the key only if it still holds the caller's token.
_RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class RedisClient:
    """
    Async Redis client with connection pooling and retry logic.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        max_connections: Optional[int] = None,
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
        health_check_interval: int = 30,
    ):
        settings = get_settings()
        self._url = url or settings.redis_url
        self._max_connections = max_connections or settings.redis_max_connections
        self._socket_timeout = socket_timeout
        self._socket_connect_timeout = socket_connect_timeout
        self._health_check_interval = health_check_interval

        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None
        self._is_connected = False

    @staticmethod
    def _sanitize_url(url: str) -> str:
        """Remove credentials from a Redis URL for logging."""
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
        Establish Redis connection with retry logic.

        Raises:
            ConnectionError: If connection cannot be established
        """
        if self._is_connected:
            logger.warning("Redis client already connected")
            return

        try:
            self._pool = ConnectionPool.from_url(
                self._url,
                max_connections=self._max_connections,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_connect_timeout,
                health_check_interval=self._health_check_interval,
                retry=Retry(ExponentialBackoff(base=0.1, cap=2.0), retries=3),
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
            await self._reset()
            raise ConnectionError(f"Redis connection failed: {e}") from e

    async def _reset(self) -> None:
        if self._client is not None:
            await self._client.aclose()
        if self._pool is not None:
            await self._pool.aclose()
        self._client = None
        self._pool = None
        self._is_connected = False

    async def disconnect(self) -> None:
        """Close Redis connection and release the pool."""
        if not self._is_connected:
            return
        await self._reset()
        logger.info("Redis connection closed")

    async def health_check(self) -> bool:
        if not self._is_connected or self._client is None:
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

    async def set(
        self,
        key: str,
        value: Union[str, int, float],
        ex: Optional[int] = None,
        nx: bool = False,
    ) -> bool:
        """
        Set a key, optionally only if absent and with expiry in seconds.

        Returns:
            True if the key was written
        """
        client = self._ensure_connected()
        result = await client.set(key, value, ex=ex, nx=nx)
        logger.debug("Redis SET operation", key=key, ex=ex, nx=nx, success=bool(result))
        return bool(result)

    async def delete(self, *keys: str) -> int:
        client = self._ensure_connected()
        return await client.delete(*keys)

    async def release_lock(self, key: str, token: str) -> bool:
        """Delete a lock key if it is still owned by ``token``."""
        client = self._ensure_connected()
        released = await client.eval(_RELEASE_LOCK_SCRIPT, 1, key, token)
        return bool(released)

    async def publish(self, channel: str, message: str) -> int:
        """
        Publish a message to a pub/sub channel.

        Returns:
            Number of subscribers that received the message
        """
        client = self._ensure_connected()
        receivers = await client.publish(channel, message)
        logger.debug("Redis PUBLISH operation", channel=channel, receivers=receivers)
        return receivers


_redis_client: Optional[RedisClient] = None


async def get_redis_client() -> RedisClient:
    """
    Get or create global Redis client instance.

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
