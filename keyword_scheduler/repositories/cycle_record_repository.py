"""Append-only cycle record persistence."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from keyword_scheduler.core.db_kernel import db_read, db_write
from keyword_scheduler.models.cycle import CycleRecord
from keyword_scheduler.models.entity import Entity
from keyword_scheduler.schemas.cycle import CycleRecordSchema, CycleSummary, SelectedKeyword

logger = logging.getLogger(__name__)


def to_schema(row: CycleRecord) -> CycleRecordSchema:
    return CycleRecordSchema(
        cycle_id=row.cycle_id,
        coverage_key=row.coverage_key,
        source=row.source,
        started_at=row.started_at,
        finished_at=row.finished_at,
        selected_keywords=[SelectedKeyword.model_validate(item) for item in row.selected_keywords or []],
        deduped_out_count=row.deduped_out_count,
        budget_by_slice=dict(row.budget_by_slice or {}),
        summary=CycleSummary.model_validate(row.summary or {}),
    )


class CycleRecordRepository:
    """Cycle records are inserted once and never updated."""

    async def append(
        self,
        record: CycleRecordSchema,
        *,
        selected_entity_ids: Sequence[str],
        attempts: int = 3,
    ) -> None:
        """Insert the record and stamp ``last_selected_at`` in one transaction.

        Safe to retry: the insert is keyed by ``cycle_id`` and the stamp is
        an absolute value.
        """
        values = record.to_row_values()
        entity_ids = sorted(set(selected_entity_ids))

        async def _write(session: AsyncSession) -> None:
            await session.execute(
                insert(CycleRecord)
                .values(**values)
                .on_conflict_do_nothing(index_elements=[CycleRecord.cycle_id])
            )
            if entity_ids:
                await session.execute(
                    update(Entity)
                    .where(Entity.entity_id.in_(entity_ids))
                    .values(last_selected_at=record.finished_at)
                )

        await db_write(
            _write,
            operation_name="cycle_record_append",
            attempts=attempts,
            log_context={"cycle_id": record.cycle_id, "coverage_key": record.coverage_key},
        )

    async def latest_for_coverage(self, coverage_key: str) -> CycleRecordSchema | None:
        async def _read(session: AsyncSession) -> CycleRecordSchema | None:
            result = await session.execute(
                select(CycleRecord)
                .where(CycleRecord.coverage_key == coverage_key)
                .order_by(CycleRecord.finished_at.desc(), CycleRecord.cycle_id.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return to_schema(row) if row is not None else None

        return await db_read(
            _read,
            operation_name="cycle_record_latest",
            log_context={"coverage_key": coverage_key},
        )

    async def latest_finished_by_coverage(self) -> dict[str, datetime]:
        async def _read(session: AsyncSession) -> dict[str, datetime]:
            result = await session.execute(
                select(CycleRecord.coverage_key, func.max(CycleRecord.finished_at)).group_by(
                    CycleRecord.coverage_key
                )
            )
            return {coverage_key: finished_at for coverage_key, finished_at in result.all()}

        return await db_read(_read, operation_name="cycle_record_latest_by_coverage")
