"""
Redis client library for the chat sync service.

Components:
    RedisClient: Async connection manager with retry logic
    RedisKeys: Key format definitions

Usage:
    from libs.redis_client import RedisClient, RedisKeys

    redis_client = RedisClient(host="localhost", port=6379)
    await redis_client.connect()
    lock = redis_client.lock(RedisKeys.branch_lock("42"), timeout=600, blocking_timeout=0)
"""

from .client import RedisClient, RedisConnectionError
from .keys import RedisKeys

__all__ = [
    "RedisClient",
    "RedisConnectionError",
    "RedisKeys",
]

__version__ = "0.1.0"
