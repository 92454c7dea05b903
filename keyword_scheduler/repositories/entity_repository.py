"""Repository for entity catalog reads."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from keyword_scheduler.core.db_kernel import db_read
from keyword_scheduler.models.entity import Entity
from keyword_scheduler.services.selection.types import EntitySnapshot

logger = logging.getLogger(__name__)


def to_snapshot(entity: Entity) -> EntitySnapshot:
    return EntitySnapshot(
        entity_id=entity.entity_id,
        name=entity.name,
        category=entity.category,
        last_updated_at=entity.last_updated_at,
        quality_score=float(entity.quality_score or 0.0),
        locality_key=entity.locality_key,
        last_selected_at=entity.last_selected_at,
    )


class EntityRepository:
    """Reads entity snapshots for candidate generation; never writes the catalog."""

    def __init__(self, *, batch_size: int = 500) -> None:
        self.batch_size = max(1, batch_size)

    async def list_refresh_pool(
        self,
        *,
        locality_key: str,
        limit: int,
    ) -> list[EntitySnapshot]:
        """Stalest-first entities for a locality (plus locality-less entities)."""

        async def _read(session: AsyncSession) -> list[EntitySnapshot]:
            stmt = (
                select(Entity)
                .where(or_(Entity.locality_key == locality_key, Entity.locality_key.is_(None)))
                .order_by(Entity.last_updated_at.asc(), Entity.entity_id.asc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [to_snapshot(entity) for entity in result.scalars().all()]

        return await db_read(
            _read,
            operation_name="entity_refresh_pool",
            log_context={"coverage_key": locality_key},
        )

    async def get_by_ids(self, entity_ids: Sequence[str]) -> list[EntitySnapshot]:
        unique_ids = sorted(set(entity_ids))
        snapshots: list[EntitySnapshot] = []
        for start in range(0, len(unique_ids), self.batch_size):
            batch = unique_ids[start : start + self.batch_size]

            async def _read(session: AsyncSession, ids: list[str] = batch) -> list[EntitySnapshot]:
                result = await session.execute(select(Entity).where(Entity.entity_id.in_(ids)))
                return [to_snapshot(entity) for entity in result.scalars().all()]

            snapshots.extend(await db_read(_read, operation_name="entity_get_by_ids"))
        return snapshots

    async def get_by_category(self, category: str, *, limit: int | None = None) -> list[EntitySnapshot]:
        async def _read(session: AsyncSession) -> list[EntitySnapshot]:
            stmt = select(Entity).where(Entity.category == category).order_by(Entity.entity_id)
            if limit is not None:
                stmt = stmt.limit(limit)
            result = await session.execute(stmt)
            return [to_snapshot(entity) for entity in result.scalars().all()]

        return await db_read(
            _read,
            operation_name="entity_get_by_category",
            log_context={"category": category},
        )
