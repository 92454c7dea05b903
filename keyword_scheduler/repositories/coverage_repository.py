"""Repository for the coverage area registry."""

from __future__ import annotations

import logging

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from keyword_scheduler.core.db_kernel import db_read, db_write, db_write_no_retry
from keyword_scheduler.core.ids import generate_cuid
from keyword_scheduler.models.coverage import CoverageArea
from keyword_scheduler.services.selection.types import CoverageAreaView

logger = logging.getLogger(__name__)


def to_view(area: CoverageArea, *, max_targets: int | None = None) -> CoverageAreaView:
    targets = tuple(str(target) for target in (area.execution_targets or []) if target)
    if max_targets is not None:
        targets = targets[:max_targets]
    if area.source_type != "full":
        targets = ()
    return CoverageAreaView(
        coverage_key=area.coverage_key,
        display_name=area.display_name,
        source_type=area.source_type,
        execution_targets=targets,
        safe_interval_days=float(area.safe_interval_days or 7.0),
        center_latitude=area.center_latitude,
        center_longitude=area.center_longitude,
        viewport_ne_lat=area.viewport_ne_lat,
        viewport_ne_lng=area.viewport_ne_lng,
        viewport_sw_lat=area.viewport_sw_lat,
        viewport_sw_lng=area.viewport_sw_lng,
        is_active=area.is_active,
    )


class CoverageRepository:
    """Coverage rows are read often and written rarely (idempotently)."""

    def __init__(self, *, max_execution_targets: int | None = None) -> None:
        self.max_execution_targets = max_execution_targets

    async def list_active(self) -> list[CoverageAreaView]:
        async def _read(session: AsyncSession) -> list[CoverageAreaView]:
            result = await session.execute(
                select(CoverageArea)
                .where(CoverageArea.is_active.is_(True))
                .order_by(CoverageArea.coverage_key)
            )
            return [
                to_view(area, max_targets=self.max_execution_targets)
                for area in result.scalars().all()
            ]

        return await db_read(_read, operation_name="coverage_list_active")

    async def get_by_key(self, coverage_key: str) -> CoverageAreaView | None:
        async def _read(session: AsyncSession) -> CoverageAreaView | None:
            result = await session.execute(
                select(CoverageArea).where(CoverageArea.coverage_key == coverage_key)
            )
            area = result.scalar_one_or_none()
            if area is None:
                return None
            return to_view(area, max_targets=self.max_execution_targets)

        return await db_read(
            _read,
            operation_name="coverage_get_by_key",
            log_context={"coverage_key": coverage_key},
        )

    async def insert_identity_only(
        self,
        *,
        coverage_key: str,
        display_name: str | None,
        center_latitude: float | None = None,
        center_longitude: float | None = None,
    ) -> CoverageAreaView:
        """Insert an identity-only area unless the key exists, then return the stored row."""

        async def _write(session: AsyncSession) -> bool:
            stmt = (
                insert(CoverageArea)
                .values(
                    id=generate_cuid(),
                    coverage_key=coverage_key,
                    display_name=display_name,
                    source_type="identity-only",
                    execution_targets=[],
                    is_active=True,
                    safe_interval_days=7.0,
                    center_latitude=center_latitude,
                    center_longitude=center_longitude,
                )
                .on_conflict_do_nothing(index_elements=[CoverageArea.coverage_key])
                .returning(CoverageArea.id)
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none() is not None

        created = await db_write_no_retry(
            _write,
            operation_name="coverage_insert_identity_only",
            log_context={"coverage_key": coverage_key},
        )
        if created:
            logger.info("Created identity-only coverage area", extra={"coverage_key": coverage_key})

        stored = await self.get_by_key(coverage_key)
        if stored is None:
            raise RuntimeError(f"Coverage area vanished after upsert: {coverage_key}")
        return stored

    async def update_activity(
        self,
        coverage_key: str,
        *,
        avg_posts_per_day: float | None,
        safe_interval_days: float,
    ) -> bool:
        async def _write(session: AsyncSession) -> bool:
            result = await session.execute(
                update(CoverageArea)
                .where(CoverageArea.coverage_key == coverage_key)
                .values(avg_posts_per_day=avg_posts_per_day, safe_interval_days=safe_interval_days)
            )
            return bool(result.rowcount)

        return await db_write(
            _write,
            operation_name="coverage_update_activity",
            log_context={"coverage_key": coverage_key},
        )
