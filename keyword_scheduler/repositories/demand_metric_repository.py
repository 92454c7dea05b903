"""Replace-on-write persistence for windowed demand metrics."""

from __future__ import annotations

from collections.abc import Sequence

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from keyword_scheduler.core.db_kernel import db_read, db_write
from keyword_scheduler.models.entity import DemandMetric
from keyword_scheduler.services.selection.types import DemandSignals


class DemandMetricRepository:
    """Each write supersedes the previous aggregate for (entity, window)."""

    def __init__(self, *, attempts: int = 3) -> None:
        self.attempts = attempts

    async def replace(self, metrics: Sequence[DemandSignals], *, window_days: int) -> int:
        if not metrics:
            return 0
        entity_ids = [metric.entity_id for metric in metrics]
        rows = [
            {
                "entity_id": metric.entity_id,
                "window_days": window_days,
                "distinct_favoriters": metric.distinct_favoriters,
                "distinct_high_intent_users": metric.distinct_high_intent_users,
                "distinct_query_users": metric.distinct_query_users,
                "query_credit": metric.query_credit,
                "computed_at": metric.computed_at,
            }
            for metric in metrics
        ]

        async def _write(session: AsyncSession) -> int:
            await session.execute(
                delete(DemandMetric).where(
                    DemandMetric.entity_id.in_(entity_ids),
                    DemandMetric.window_days == window_days,
                )
            )
            await session.execute(insert(DemandMetric).values(rows))
            return len(rows)

        return await db_write(
            _write,
            operation_name="demand_metrics_replace",
            attempts=self.attempts,
            log_context={"window_days": window_days, "entity_count": len(rows)},
        )

    async def get(self, entity_ids: Sequence[str], *, window_days: int) -> dict[str, DemandSignals]:
        if not entity_ids:
            return {}
        ids = list(entity_ids)

        async def _read(session: AsyncSession) -> dict[str, DemandSignals]:
            result = await session.execute(
                select(DemandMetric).where(
                    DemandMetric.entity_id.in_(ids),
                    DemandMetric.window_days == window_days,
                )
            )
            return {
                row.entity_id: DemandSignals(
                    entity_id=row.entity_id,
                    window_days=row.window_days,
                    distinct_favoriters=row.distinct_favoriters,
                    distinct_high_intent_users=row.distinct_high_intent_users,
                    distinct_query_users=row.distinct_query_users,
                    query_credit=row.query_credit,
                    computed_at=row.computed_at,
                )
                for row in result.scalars().all()
            }

        return await db_read(_read, operation_name="demand_metrics_get")
