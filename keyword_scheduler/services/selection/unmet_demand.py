"""Unmet-demand tracking: distinct-user counts, ranking and cooldown backoff."""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from keyword_scheduler.core.exceptions import ValidationError
from keyword_scheduler.repositories.unmet_demand_repository import (
    UnmetDemandRepository,
    UnmetTermRow,
)
from keyword_scheduler.services.selection.entity_scorer import clamp, days_between, normalize_log
from keyword_scheduler.services.selection.normalization import is_valid_term, normalize
from keyword_scheduler.services.selection.selection_config import SelectionConfig
from keyword_scheduler.services.selection.types import (
    KEYWORD_OUTCOMES,
    UNMET_REASONS,
    KeywordCandidate,
)

logger = logging.getLogger(__name__)

HOT_SPIKE_WINDOW = timedelta(hours=24)
SEVERITY_BY_REASON = {"unresolved": 1.0, "low_result": 0.8}


@dataclass(slots=True, frozen=True)
class OccurrenceResult:
    request_id: str
    normalized_term: str
    distinct_user_count: int
    counted: bool
    hot_spike: bool


def compute_cooldown(outcome: str, safe_interval_days: float, config: SelectionConfig) -> timedelta:
    """Cooldown applied after an execution attempt with ``outcome``."""
    if outcome == "success":
        return timedelta(days=safe_interval_days)
    if outcome == "no_results":
        return timedelta(
            days=max(
                config.no_results_cooldown_floor_days,
                safe_interval_days * config.no_results_cooldown_multiplier,
            )
        )
    if outcome == "error":
        return timedelta(hours=config.error_cooldown_hours)
    if outcome == "deferred":
        return timedelta(hours=config.deferred_cooldown_hours)
    raise ValidationError(f"Unknown outcome: {outcome}", details={"outcome": outcome})


class UnmetDemandTracker:
    """Records unmet-demand occurrences and ranks eligible terms for a cycle."""

    def __init__(
        self,
        config: SelectionConfig,
        *,
        repository: UnmetDemandRepository | None = None,
    ) -> None:
        self.config = config
        self.repository = repository or UnmetDemandRepository()

    def _normalize(self, term: str) -> str:
        return normalize(term, self.config.normalization_strategy)

    async def record_occurrence(
        self,
        term: str,
        reason: str,
        coverage_key: str,
        user_identity: str | None,
        *,
        linked_entity_id: str | None = None,
        now: datetime | None = None,
    ) -> OccurrenceResult:
        """Register that a user asked for ``term`` and it went unmet.

        Repeating the call for the same user never changes the distinct
        count. Calls without a user identity refresh ``last_seen_at`` only.
        """
        if reason not in UNMET_REASONS:
            raise ValidationError(f"Unknown unmet reason: {reason}", details={"reason": reason})
        normalized_term = self._normalize(term)
        if not is_valid_term(normalized_term, self.config.max_term_length):
            raise ValidationError("Unmet term is empty or too long", details={"term": term})
        if not coverage_key:
            raise ValidationError("coverage_key is required")

        now = now or datetime.now(timezone.utc)
        write = await self.repository.record_occurrence(
            term=term.strip(),
            normalized_term=normalized_term,
            reason=reason,
            coverage_key=coverage_key,
            user_id=user_identity or None,
            linked_entity_id=linked_entity_id if reason == "low_result" else None,
            seen_at=now,
            spike_since=now - HOT_SPIKE_WINDOW,
        )
        # Flag only the user whose arrival in the window reaches the threshold,
        # so one spike enqueues one cycle.
        hot_spike = (
            write.entered_window
            and write.users_last_24h == self.config.hot_spike_threshold
        )
        if hot_spike:
            logger.info(
                "Unmet demand hot spike detected",
                extra={
                    "coverage_key": coverage_key,
                    "normalized_term": normalized_term,
                    "users_last_24h": write.users_last_24h,
                },
            )
        return OccurrenceResult(
            request_id=write.request_id,
            normalized_term=normalized_term,
            distinct_user_count=write.distinct_user_count,
            counted=write.contribution_inserted,
            hot_spike=hot_spike,
        )

    def is_eligible(self, row: UnmetTermRow, now: datetime) -> bool:
        if row.distinct_user_count < self.config.unmet_min_users:
            return False
        if row.cooldown_until is None or now >= row.cooldown_until:
            return True
        # Hot-spike override: trending terms bypass an active cooldown.
        return row.users_last_24h >= self.config.hot_spike_threshold

    def score(self, row: UnmetTermRow, now: datetime) -> float:
        cfg = self.config
        severity = SEVERITY_BY_REASON.get(row.reason, 0.8)
        days_seen = days_between(now, row.last_seen_at)
        recency = 0.7 + 0.3 * math.exp(-days_seen / cfg.unmet_half_life_days)
        penalty = 1.0
        if (
            row.last_outcome == "no_results"
            and row.last_attempt_at is not None
            and days_between(now, row.last_attempt_at) <= cfg.no_results_penalty_window_days
        ):
            penalty = cfg.no_results_penalty
        return clamp(
            severity * normalize_log(row.distinct_user_count, cfg.unmet_users_cap) * recency * penalty
        )

    def rank_rows(self, rows: Iterable[UnmetTermRow], now: datetime) -> list[KeywordCandidate]:
        candidates = [
            KeywordCandidate(
                normalized_term=row.normalized_term,
                display_term=row.term,
                slice="unmet",
                score=self.score(row, now),
                source_request_id=row.request_id,
            )
            for row in rows
            if self.is_eligible(row, now)
        ]
        return sorted(candidates, key=lambda c: (-c.score, c.tie_break_key))

    async def rank_candidates(
        self,
        coverage_key: str,
        now: datetime | None = None,
    ) -> list[KeywordCandidate]:
        now = now or datetime.now(timezone.utc)
        rows = await self.repository.list_rankable(
            coverage_key,
            seen_since=now - timedelta(days=self.config.demand_window_days),
            spike_since=now - HOT_SPIKE_WINDOW,
        )
        return self.rank_rows(rows, now)

    async def record_outcome(
        self,
        term: str,
        coverage_key: str,
        outcome: str,
        *,
        safe_interval_days: float,
        now: datetime | None = None,
    ) -> int:
        """Store the attempt result and the resulting cooldown for every reason row."""
        if outcome not in KEYWORD_OUTCOMES:
            raise ValidationError(f"Unknown outcome: {outcome}", details={"outcome": outcome})
        now = now or datetime.now(timezone.utc)
        cooldown = compute_cooldown(outcome, safe_interval_days, self.config)
        updated = await self.repository.record_outcome(
            normalized_term=self._normalize(term),
            coverage_key=coverage_key,
            outcome=outcome,
            attempted_at=now,
            cooldown_until=now + cooldown,
        )
        logger.info(
            "Unmet demand outcome recorded",
            extra={
                "coverage_key": coverage_key,
                "outcome": outcome,
                "cooldown_days": round(cooldown.total_seconds() / 86400, 3),
                "updated_rows": updated,
            },
        )
        return updated

    async def prune_contributions(
        self,
        retention_days: int | None = None,
        *,
        now: datetime | None = None,
    ) -> int:
        """Drop per-user rows past retention and recount the affected terms."""
        now = now or datetime.now(timezone.utc)
        days = (
            retention_days
            if retention_days is not None
            else self.config.contribution_retention_days
        )
        deleted, recounted = await self.repository.prune_contributions(
            cutoff=now - timedelta(days=days)
        )
        logger.info(
            "Pruned unmet demand contributions",
            extra={"deleted": deleted, "recounted_terms": recounted, "retention_days": days},
        )
        return deleted

    async def users_by_term(self, coverage_key: str, normalized_terms: list[str]) -> dict[str, int]:
        """Largest distinct-user count per normalized term across reasons."""
        return await self.repository.max_users_by_term(coverage_key, normalized_terms)
