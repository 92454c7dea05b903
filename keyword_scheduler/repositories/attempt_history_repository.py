"""Repository for per-coverage keyword attempt history."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from keyword_scheduler.core.db_kernel import db_read, db_write
from keyword_scheduler.models.keyword_attempt import KeywordAttemptHistory


class AttemptHistoryRepository:
    """Upserts keyed by (coverage_key, normalized_term)."""

    def __init__(self, *, attempts: int = 3) -> None:
        self.attempts = attempts

    async def record_attempt(
        self,
        *,
        coverage_key: str,
        normalized_term: str,
        outcome: str,
        attempted_at: datetime,
        cooldown_until: datetime,
    ) -> None:
        values = {
            "coverage_key": coverage_key,
            "normalized_term": normalized_term,
            "last_attempt_at": attempted_at,
            "last_outcome": outcome,
            "cooldown_until": cooldown_until,
        }
        if outcome == "success":
            values["last_success_at"] = attempted_at

        async def _write(session: AsyncSession) -> None:
            base = insert(KeywordAttemptHistory).values(**values)
            updates = {
                key: base.excluded[key]
                for key in values
                if key not in {"coverage_key", "normalized_term"}
            }
            updates["updated_at"] = func.now()
            await session.execute(
                base.on_conflict_do_update(
                    index_elements=[
                        KeywordAttemptHistory.coverage_key,
                        KeywordAttemptHistory.normalized_term,
                    ],
                    set_=updates,
                )
            )

        await db_write(
            _write,
            operation_name="attempt_history_record",
            attempts=self.attempts,
            log_context={"coverage_key": coverage_key, "outcome": outcome},
        )

    async def cooling_terms(self, coverage_key: str, *, now: datetime) -> set[str]:
        """Terms whose cooldown has not yet expired."""

        async def _read(session: AsyncSession) -> set[str]:
            result = await session.execute(
                select(KeywordAttemptHistory.normalized_term).where(
                    KeywordAttemptHistory.coverage_key == coverage_key,
                    KeywordAttemptHistory.cooldown_until > now,
                )
            )
            return set(result.scalars().all())

        return await db_read(
            _read,
            operation_name="attempt_history_cooling",
            log_context={"coverage_key": coverage_key},
        )

    async def last_attempts(
        self,
        coverage_key: str,
        normalized_terms: Sequence[str],
    ) -> dict[str, datetime]:
        if not normalized_terms:
            return {}
        terms = list(normalized_terms)

        async def _read(session: AsyncSession) -> dict[str, datetime]:
            result = await session.execute(
                select(
                    KeywordAttemptHistory.normalized_term,
                    KeywordAttemptHistory.last_attempt_at,
                ).where(
                    KeywordAttemptHistory.coverage_key == coverage_key,
                    KeywordAttemptHistory.normalized_term.in_(terms),
                    KeywordAttemptHistory.last_attempt_at.is_not(None),
                )
            )
            return {term: attempted_at for term, attempted_at in result.all()}

        return await db_read(
            _read,
            operation_name="attempt_history_last_attempts",
            log_context={"coverage_key": coverage_key},
        )
