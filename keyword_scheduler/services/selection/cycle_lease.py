"""Per-coverage mutual exclusion for cycles."""

from __future__ import annotations

import logging
from types import TracebackType

from keyword_scheduler.core.exceptions import ConcurrentCycleConflict
from keyword_scheduler.core.ids import generate_lease_token
from keyword_scheduler.core.redis import RedisLeaseClient, get_redis_lease_client

logger = logging.getLogger(__name__)


def lease_key(coverage_key: str) -> str:
    return f"keyword:cycle-lease:{coverage_key}"


class CycleLease:
    """Redis lease with an owner token; expires on its own if the worker dies."""

    def __init__(
        self,
        coverage_key: str,
        *,
        ttl_seconds: int,
        client: RedisLeaseClient | None = None,
        token: str | None = None,
    ) -> None:
        self.coverage_key = coverage_key
        self.ttl_ms = max(1, int(ttl_seconds * 1000))
        self.token = token or generate_lease_token()
        self._client = client or get_redis_lease_client()
        self._held = False

    @property
    def key(self) -> str:
        return lease_key(self.coverage_key)

    @property
    def held(self) -> bool:
        return self._held

    async def acquire(self) -> None:
        acquired = await self._client.acquire(self.key, self.token, ttl_ms=self.ttl_ms)
        if not acquired:
            raise ConcurrentCycleConflict(self.coverage_key)
        self._held = True
        logger.debug("Cycle lease acquired", extra={"coverage_key": self.coverage_key})

    async def release(self) -> bool:
        if not self._held:
            return False
        self._held = False
        released = await self._client.release(self.key, self.token)
        if not released:
            logger.warning(
                "Cycle lease expired before release",
                extra={"coverage_key": self.coverage_key},
            )
        return released

    async def __aenter__(self) -> "CycleLease":
        await self.acquire()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.release()
