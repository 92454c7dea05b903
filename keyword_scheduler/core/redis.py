"""Redis client helpers."""

import logging
from typing import Any, Awaitable, cast

from redis.asyncio import Redis

from keyword_scheduler.config import settings

logger = logging.getLogger(__name__)

_redis_client: Redis | None = None

# Delete the key only while it still holds the caller's token.
_COMPARE_AND_DELETE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

# Extend the key's TTL only while it still holds the caller's token.
_COMPARE_AND_EXPIRE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('pexpire', KEYS[1], ARGV[2])
end
return 0
"""


class RedisQueueClient:
    """Typed list-queue operations over the shared Redis client."""

    def __init__(self, client: Redis) -> None:
        self._client = client

    async def llen(self, key: str) -> int:
        """Return queue length."""
        value = await cast(Awaitable[int], self._client.llen(key))
        return int(value)

    async def rpush(self, key: str, payload: str) -> int:
        """Push payload to the queue tail."""
        value = await cast(Awaitable[int], self._client.rpush(key, payload))
        return int(value)

    async def blpop(self, key: str, *, timeout: int) -> tuple[str, str] | None:
        """Pop one payload from queue head."""
        raw = await cast(
            Awaitable[list[Any] | None],
            self._client.blpop([key], timeout=timeout),
        )
        if not raw or len(raw) < 2:
            return None
        return str(raw[0]), str(raw[1])


class RedisLeaseClient:
    """Token-guarded lease primitives (SET NX PX with compare-and-delete)."""

    def __init__(self, client: Redis) -> None:
        self._client = client

    async def acquire(self, key: str, token: str, *, ttl_ms: int) -> bool:
        """Set the key to ``token`` only if absent; True when acquired."""
        acquired = await self._client.set(key, token, nx=True, px=ttl_ms)
        return bool(acquired)

    async def release(self, key: str, token: str) -> bool:
        """Delete the key only if it still holds ``token``."""
        deleted = await cast(
            Awaitable[int],
            self._client.eval(_COMPARE_AND_DELETE, 1, key, token),
        )
        return int(deleted) == 1

    async def extend(self, key: str, token: str, *, ttl_ms: int) -> bool:
        """Refresh the TTL only if the key still holds ``token``."""
        extended = await cast(
            Awaitable[int],
            self._client.eval(_COMPARE_AND_EXPIRE, 1, key, token, ttl_ms),
        )
        return int(extended) == 1

    async def holder(self, key: str) -> str | None:
        """Return the current token holding the key, if any."""
        value = await self._client.get(key)
        return str(value) if value is not None else None


def get_redis_client() -> Redis:
    """Get a shared Redis client."""
    global _redis_client
    if _redis_client is None:
        _redis_client = Redis.from_url(settings.redis_url, decode_responses=True)
    return _redis_client


def get_redis_queue_client() -> RedisQueueClient:
    """Get typed queue operations on the shared Redis client."""
    return RedisQueueClient(get_redis_client())


def get_redis_lease_client() -> RedisLeaseClient:
    """Get lease operations on the shared Redis client."""
    return RedisLeaseClient(get_redis_client())


async def close_redis() -> None:
    """Close Redis client connections."""
    global _redis_client
    if _redis_client is None:
        return

    await _redis_client.aclose()
    _redis_client = None
    logger.info("Redis connection closed")
