"""Bulk reads over source engagement events."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import and_, distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from keyword_scheduler.core.db_kernel import db_read
from keyword_scheduler.models.entity import EngagementEvent, Entity
from keyword_scheduler.services.selection.types import TrendSignals


@dataclass(slots=True, frozen=True)
class EngagementRow:
    """Distinct (entity, event type, user, search) tuple inside a window."""

    entity_id: str
    category: str
    event_type: str
    user_id: str
    search_id: str | None = None


class EngagementRepository:
    """Grouped event reads keyed by entity-id sets. One round trip per batch."""

    async def fetch_engagement_rows(
        self,
        entity_ids: Sequence[str],
        *,
        since: datetime,
        coverage_key: str | None = None,
    ) -> list[EngagementRow]:
        """Distinct identified engagement tuples for ``entity_ids`` since ``since``.

        Events without a user identity are excluded at the source.
        """
        if not entity_ids:
            return []
        ids = list(entity_ids)

        async def _read(session: AsyncSession) -> list[EngagementRow]:
            conditions = [
                EngagementEvent.entity_id.in_(ids),
                EngagementEvent.occurred_at >= since,
                EngagementEvent.user_id.is_not(None),
            ]
            if coverage_key is not None:
                conditions.append(EngagementEvent.coverage_key == coverage_key)
            stmt = (
                select(
                    EngagementEvent.entity_id,
                    Entity.category,
                    EngagementEvent.event_type,
                    EngagementEvent.user_id,
                    EngagementEvent.search_id,
                )
                .join(Entity, Entity.entity_id == EngagementEvent.entity_id)
                .where(and_(*conditions))
                .group_by(
                    EngagementEvent.entity_id,
                    Entity.category,
                    EngagementEvent.event_type,
                    EngagementEvent.user_id,
                    EngagementEvent.search_id,
                )
            )
            result = await session.execute(stmt)
            return [
                EngagementRow(
                    entity_id=row.entity_id,
                    category=row.category,
                    event_type=row.event_type,
                    user_id=str(row.user_id),
                    search_id=row.search_id,
                )
                for row in result.all()
            ]

        return await db_read(
            _read,
            operation_name="engagement_rows",
            log_context={"coverage_key": coverage_key, "entity_count": len(ids)},
        )

    async def fetch_search_fanout(
        self,
        search_ids: Sequence[str],
        *,
        since: datetime,
    ) -> dict[str, int]:
        """Number of distinct entities each search resolved to."""
        if not search_ids:
            return {}
        ids = list(search_ids)

        async def _read(session: AsyncSession) -> dict[str, int]:
            stmt = (
                select(
                    EngagementEvent.search_id,
                    func.count(distinct(EngagementEvent.entity_id)),
                )
                .where(
                    EngagementEvent.search_id.in_(ids),
                    EngagementEvent.event_type == "search",
                    EngagementEvent.occurred_at >= since,
                )
                .group_by(EngagementEvent.search_id)
            )
            result = await session.execute(stmt)
            return {str(search_id): int(count) for search_id, count in result.all()}

        return await db_read(_read, operation_name="engagement_search_fanout")

    async def fetch_trend_signals(
        self,
        entity_ids: Sequence[str],
        *,
        coverage_key: str | None,
        recent_start: datetime,
        previous_start: datetime,
        window_start: datetime,
    ) -> dict[str, TrendSignals]:
        """Distinct query users per entity over the trend and demand windows."""
        if not entity_ids:
            return {}
        ids = list(entity_ids)
        user = distinct(EngagementEvent.user_id)
        occurred = EngagementEvent.occurred_at
        is_local = (
            EngagementEvent.coverage_key == coverage_key
            if coverage_key is not None
            else EngagementEvent.coverage_key.is_not(None)
        )

        async def _read(session: AsyncSession) -> dict[str, TrendSignals]:
            stmt = (
                select(
                    EngagementEvent.entity_id,
                    func.count(user).filter(and_(is_local, occurred >= recent_start)),
                    func.count(user).filter(
                        and_(is_local, occurred >= previous_start, occurred < recent_start)
                    ),
                    func.count(user).filter(and_(is_local, occurred >= window_start)),
                    func.count(user).filter(occurred >= window_start),
                )
                .where(
                    EngagementEvent.entity_id.in_(ids),
                    EngagementEvent.event_type == "search",
                    EngagementEvent.user_id.is_not(None),
                    occurred >= min(previous_start, window_start),
                )
                .group_by(EngagementEvent.entity_id)
            )
            result = await session.execute(stmt)
            return {
                entity_id: TrendSignals(
                    entity_id=entity_id,
                    recent_query_users=int(recent or 0),
                    previous_query_users=int(previous or 0),
                    local_query_users=int(local or 0),
                    global_query_users=int(global_ or 0),
                )
                for entity_id, recent, previous, local, global_ in result.all()
            }

        return await db_read(
            _read,
            operation_name="engagement_trend_signals",
            log_context={"coverage_key": coverage_key, "entity_count": len(ids)},
        )

    async def list_engaged_entity_ids(
        self,
        *,
        coverage_key: str,
        since: datetime,
        limit: int,
    ) -> list[str]:
        """Entities with identified engagement in a coverage area, most-engaged first."""

        async def _read(session: AsyncSession) -> list[str]:
            users = func.count(distinct(EngagementEvent.user_id))
            stmt = (
                select(EngagementEvent.entity_id)
                .where(
                    EngagementEvent.coverage_key == coverage_key,
                    EngagementEvent.occurred_at >= since,
                    EngagementEvent.user_id.is_not(None),
                )
                .group_by(EngagementEvent.entity_id)
                .order_by(users.desc(), EngagementEvent.entity_id.asc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [str(entity_id) for entity_id in result.scalars().all()]

        return await db_read(
            _read,
            operation_name="engagement_engaged_entities",
            log_context={"coverage_key": coverage_key},
        )
