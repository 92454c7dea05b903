"""Persistence for unmet-demand terms and their per-user contributions."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from keyword_scheduler.core.db_kernel import db_read, db_write
from keyword_scheduler.core.ids import generate_cuid
from keyword_scheduler.models.unmet_demand import UnmetDemandContribution, UnmetDemandTerm

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class UnmetTermRow:
    """Unmet term plus its distinct users in the hot-spike window."""

    request_id: str
    term: str
    normalized_term: str
    coverage_key: str
    reason: str
    distinct_user_count: int
    last_seen_at: datetime
    last_attempt_at: datetime | None = None
    last_outcome: str | None = None
    cooldown_until: datetime | None = None
    linked_entity_id: str | None = None
    users_last_24h: int = 0


@dataclass(slots=True, frozen=True)
class OccurrenceWrite:
    request_id: str
    distinct_user_count: int
    contribution_inserted: bool
    users_last_24h: int
    entered_window: bool = False


def _count_contributions(request_id_column):
    return (
        select(func.count())
        .select_from(UnmetDemandContribution)
        .where(UnmetDemandContribution.request_id == request_id_column)
        .scalar_subquery()
    )


class UnmetDemandRepository:
    """All count changes go through dedup-keyed inserts followed by a full recount."""

    def __init__(self, *, attempts: int = 3) -> None:
        self.attempts = attempts

    async def record_occurrence(
        self,
        *,
        term: str,
        normalized_term: str,
        reason: str,
        coverage_key: str,
        user_id: str | None,
        linked_entity_id: str | None,
        seen_at: datetime,
        spike_since: datetime,
    ) -> OccurrenceWrite:
        async def _write(session: AsyncSession) -> OccurrenceWrite:
            base = insert(UnmetDemandTerm).values(
                id=generate_cuid(),
                term=term,
                normalized_term=normalized_term,
                coverage_key=coverage_key,
                reason=reason,
                distinct_user_count=0,
                last_seen_at=seen_at,
                linked_entity_id=linked_entity_id,
            )
            upsert = base.on_conflict_do_update(
                index_elements=[
                    UnmetDemandTerm.normalized_term,
                    UnmetDemandTerm.reason,
                    UnmetDemandTerm.coverage_key,
                ],
                set_={
                    "term": base.excluded.term,
                    "last_seen_at": func.greatest(
                        UnmetDemandTerm.last_seen_at, base.excluded.last_seen_at
                    ),
                    "linked_entity_id": func.coalesce(
                        base.excluded.linked_entity_id, UnmetDemandTerm.linked_entity_id
                    ),
                    "updated_at": func.now(),
                },
            ).returning(UnmetDemandTerm.id)
            request_id = str((await session.execute(upsert)).scalar_one())

            inserted = False
            entered_window = False
            if user_id:
                previous = await session.execute(
                    select(UnmetDemandContribution.last_seen_at).where(
                        UnmetDemandContribution.request_id == request_id,
                        UnmetDemandContribution.user_id == user_id,
                    )
                )
                previous_seen = previous.scalar_one_or_none()
                contribution = insert(UnmetDemandContribution).values(
                    request_id=request_id,
                    user_id=user_id,
                    created_at=seen_at,
                    last_seen_at=seen_at,
                )
                await session.execute(
                    contribution.on_conflict_do_update(
                        index_elements=[
                            UnmetDemandContribution.request_id,
                            UnmetDemandContribution.user_id,
                        ],
                        set_={
                            "last_seen_at": func.greatest(
                                UnmetDemandContribution.last_seen_at,
                                contribution.excluded.last_seen_at,
                            )
                        },
                    )
                )
                inserted = previous_seen is None
                entered_window = previous_seen is None or previous_seen < spike_since

            recount = (
                update(UnmetDemandTerm)
                .where(UnmetDemandTerm.id == request_id)
                .values(distinct_user_count=_count_contributions(UnmetDemandTerm.id))
                .returning(UnmetDemandTerm.distinct_user_count)
            )
            distinct_users = int((await session.execute(recount)).scalar_one())

            recent = await session.execute(
                select(func.count())
                .select_from(UnmetDemandContribution)
                .where(
                    UnmetDemandContribution.request_id == request_id,
                    UnmetDemandContribution.last_seen_at >= spike_since,
                )
            )
            return OccurrenceWrite(
                request_id=request_id,
                distinct_user_count=distinct_users,
                contribution_inserted=inserted,
                entered_window=entered_window,
                users_last_24h=int(recent.scalar_one()),
            )

        return await db_write(
            _write,
            operation_name="unmet_record_occurrence",
            attempts=self.attempts,
            log_context={"coverage_key": coverage_key, "reason": reason},
        )

    async def list_rankable(
        self,
        coverage_key: str,
        *,
        seen_since: datetime,
        spike_since: datetime,
    ) -> list[UnmetTermRow]:
        recent_users = (
            select(func.count())
            .select_from(UnmetDemandContribution)
            .where(
                UnmetDemandContribution.request_id == UnmetDemandTerm.id,
                UnmetDemandContribution.last_seen_at >= spike_since,
            )
            .scalar_subquery()
        )

        async def _read(session: AsyncSession) -> list[UnmetTermRow]:
            stmt = (
                select(UnmetDemandTerm, recent_users.label("users_last_24h"))
                .where(
                    UnmetDemandTerm.coverage_key == coverage_key,
                    UnmetDemandTerm.last_seen_at >= seen_since,
                )
                .order_by(UnmetDemandTerm.normalized_term, UnmetDemandTerm.reason)
            )
            result = await session.execute(stmt)
            return [
                UnmetTermRow(
                    request_id=str(row.id),
                    term=row.term,
                    normalized_term=row.normalized_term,
                    coverage_key=row.coverage_key,
                    reason=row.reason,
                    distinct_user_count=row.distinct_user_count,
                    last_seen_at=row.last_seen_at,
                    last_attempt_at=row.last_attempt_at,
                    last_outcome=row.last_outcome,
                    cooldown_until=row.cooldown_until,
                    linked_entity_id=row.linked_entity_id,
                    users_last_24h=int(users or 0),
                )
                for row, users in result.all()
            ]

        return await db_read(
            _read,
            operation_name="unmet_list_rankable",
            log_context={"coverage_key": coverage_key},
        )

    async def record_outcome(
        self,
        *,
        normalized_term: str,
        coverage_key: str,
        outcome: str,
        attempted_at: datetime,
        cooldown_until: datetime,
    ) -> int:
        async def _write(session: AsyncSession) -> int:
            result = await session.execute(
                update(UnmetDemandTerm)
                .where(
                    UnmetDemandTerm.normalized_term == normalized_term,
                    UnmetDemandTerm.coverage_key == coverage_key,
                )
                .values(
                    last_attempt_at=attempted_at,
                    last_outcome=outcome,
                    cooldown_until=cooldown_until,
                )
            )
            return int(result.rowcount or 0)

        return await db_write(
            _write,
            operation_name="unmet_record_outcome",
            attempts=self.attempts,
            log_context={"coverage_key": coverage_key, "outcome": outcome},
        )

    async def prune_contributions(self, *, cutoff: datetime) -> tuple[int, int]:
        """Delete contributions not seen since ``cutoff`` and recount affected terms."""

        async def _write(session: AsyncSession) -> tuple[int, int]:
            deleted = await session.execute(
                delete(UnmetDemandContribution)
                .where(UnmetDemandContribution.last_seen_at < cutoff)
                .returning(UnmetDemandContribution.request_id)
            )
            request_ids = [str(request_id) for request_id in deleted.scalars().all()]
            affected = sorted(set(request_ids))
            if affected:
                await session.execute(
                    update(UnmetDemandTerm)
                    .where(UnmetDemandTerm.id.in_(affected))
                    .values(distinct_user_count=_count_contributions(UnmetDemandTerm.id))
                )
            return len(request_ids), len(affected)

        return await db_write(_write, operation_name="unmet_prune_contributions", attempts=self.attempts)

    async def max_users_by_term(
        self,
        coverage_key: str,
        normalized_terms: Sequence[str],
    ) -> dict[str, int]:
        if not normalized_terms:
            return {}
        terms = list(normalized_terms)

        async def _read(session: AsyncSession) -> dict[str, int]:
            result = await session.execute(
                select(
                    UnmetDemandTerm.normalized_term,
                    func.max(UnmetDemandTerm.distinct_user_count),
                )
                .where(
                    UnmetDemandTerm.coverage_key == coverage_key,
                    UnmetDemandTerm.normalized_term.in_(terms),
                )
                .group_by(UnmetDemandTerm.normalized_term)
            )
            return {term: int(count or 0) for term, count in result.all()}

        return await db_read(
            _read,
            operation_name="unmet_max_users_by_term",
            log_context={"coverage_key": coverage_key},
        )
