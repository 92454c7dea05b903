"""Hand-off of final keyword lists to the search execution layer."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Protocol

from keyword_scheduler.core.redis import RedisQueueClient, get_redis_queue_client
from keyword_scheduler.services.selection.types import CoverageAreaView, KeywordCandidate

logger = logging.getLogger(__name__)


class KeywordDispatcher(Protocol):
    async def dispatch(
        self,
        coverage: CoverageAreaView,
        final_list: Sequence[KeywordCandidate],
        cycle_id: str,
    ) -> None: ...


def dispatch_queue_key(coverage_key: str) -> str:
    return f"keyword:dispatch:{coverage_key}"


def build_dispatch_payload(
    coverage: CoverageAreaView,
    final_list: Sequence[KeywordCandidate],
    cycle_id: str,
    *,
    dispatched_at: datetime,
) -> str:
    return json.dumps(
        {
            "cycle_id": cycle_id,
            "coverage_key": coverage.coverage_key,
            "execution_targets": list(coverage.execution_targets),
            "dispatched_at": dispatched_at.isoformat(),
            "keywords": [candidate.to_dict() for candidate in final_list],
        },
        separators=(",", ":"),
    )


class RedisDispatchQueue:
    """Pushes one JSON job per cycle onto the coverage area's dispatch list."""

    def __init__(self, client: RedisQueueClient | None = None) -> None:
        self._client = client or get_redis_queue_client()

    async def dispatch(
        self,
        coverage: CoverageAreaView,
        final_list: Sequence[KeywordCandidate],
        cycle_id: str,
    ) -> None:
        payload = build_dispatch_payload(
            coverage,
            final_list,
            cycle_id,
            dispatched_at=datetime.now(timezone.utc),
        )
        queue_size = await self._client.rpush(dispatch_queue_key(coverage.coverage_key), payload)
        logger.info(
            "Keyword list dispatched",
            extra={
                "cycle_id": cycle_id,
                "coverage_key": coverage.coverage_key,
                "keyword_count": len(final_list),
                "queue_size": queue_size,
            },
        )
