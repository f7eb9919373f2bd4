"""
Async Redis client with retry logic.

Used by the chat sync service for two things: a per-branch lock that keeps
two reconciliation passes of the same branch from interleaving, and the
cursor state of the message backup job.

Example:
    >>> client = RedisClient(host="localhost", port=6379)
    >>> await client.connect()
    >>> await client.set("chat_sync:backup:42:group_skip", "100", ttl=86400)
    >>> await client.get("chat_sync:backup:42:group_skip")
    '100'
    >>> await client.close()
"""

from __future__ import annotations

import logging
from typing import cast

import redis.asyncio as redis_async
from redis.asyncio.lock import Lock
from redis.exceptions import ConnectionError, RedisError, TimeoutError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)


class RedisConnectionError(Exception):
    """Raised when Redis connection fails."""

    pass


class RedisClient:
    """
    Async Redis connection manager.

    Attributes:
        host: Redis server hostname
        port: Redis server port
        db: Redis database number (0-15)

    Notes:
        - The underlying redis.asyncio client pools connections itself
        - Transient connection errors are retried three times
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: str | None = None,
        max_connections: int = 10,
        socket_connect_timeout: int = 5,
        socket_timeout: int = 5,
        client: redis_async.Redis | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self._client = client or redis_async.Redis(
            host=host,
            port=port,
            db=db,
            password=password,
            decode_responses=True,
            max_connections=max_connections,
            socket_connect_timeout=socket_connect_timeout,
            socket_timeout=socket_timeout,
        )

    async def connect(self) -> None:
        """
        Verify the connection with a PING.

        Raises:
            RedisConnectionError: If Redis is unreachable
        """
        try:
            await self._client.ping()
            logger.info(
                "Redis connection established",
                extra={"host": self.host, "port": self.port, "db": self.db},
            )
        except (ConnectionError, TimeoutError) as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise RedisConnectionError(f"Cannot connect to Redis at {self.host}:{self.port}") from e

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception_type((ConnectionError, TimeoutError)),
    )
    async def get(self, key: str) -> str | None:
        try:
            return cast(str | None, await self._client.get(key))
        except RedisError as e:
            logger.error(f"Redis GET failed for key '{key}': {e}")
            raise

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception_type((ConnectionError, TimeoutError)),
    )
    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        """
        Set a value, with an optional time-to-live in seconds.

        Raises:
            RedisError: If operation fails after retries
        """
        try:
            await self._client.set(key, value, ex=ttl)
        except RedisError as e:
            logger.error(f"Redis SET failed for key '{key}': {e}")
            raise

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception_type((ConnectionError, TimeoutError)),
    )
    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return cast(int, await self._client.delete(*keys))
        except RedisError as e:
            logger.error(f"Redis DELETE failed for keys {keys}: {e}")
            raise

    def lock(self, name: str, timeout: int, blocking_timeout: float | None = None) -> Lock:
        """
        Create a Redis-based distributed lock.

        Args:
            name: Lock key name
            timeout: Lock lease time in seconds
            blocking_timeout: Max seconds to wait for the lock (None waits forever)
        """
        return self._client.lock(name, timeout=timeout, blocking_timeout=blocking_timeout)

    async def health_check(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError as e:
            logger.warning(f"Redis health check failed: {e}")
            return False

    async def close(self) -> None:
        await self._client.aclose()
        logger.info("Redis connection closed")
