"""Per-entity scoring for the refresh, demand and explore slices."""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from datetime import datetime

from keyword_scheduler.services.selection.normalization import normalize
from keyword_scheduler.services.selection.selection_config import SelectionConfig
from keyword_scheduler.services.selection.types import (
    DemandSignals,
    EntitySnapshot,
    KeywordCandidate,
    TrendSignals,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0

# Explore blend weights
NOVELTY_WEIGHT = 0.45
SPECIALIZATION_WEIGHT = 0.35
TREND_WEIGHT = 0.20

# Share of staleness carried by the non-saturating tail
STALENESS_TAIL_WEIGHT = 0.01


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def normalize_log(value: float, cap: float) -> float:
    """Map a non-negative count onto [0, 1] with diminishing returns up to ``cap``."""
    if value <= 0 or cap <= 0:
        return 0.0
    return clamp(math.log1p(value) / math.log1p(cap))


def days_between(now: datetime, then: datetime | None) -> float:
    if then is None:
        return math.inf
    return max(0.0, (now - then).total_seconds() / SECONDS_PER_DAY)


class EntityScorer:
    """Turns entity snapshots and demand signals into slice candidates."""

    def __init__(self, config: SelectionConfig) -> None:
        self.config = config

    def staleness(self, days_since_update: float) -> float:
        """Saturating staleness in [0, 1).

        An exponential with scale ``horizon / 3.5`` reaches ~96% at the
        horizon. A small ``days / (days + horizon)`` tail keeps the curve
        strictly increasing where the exponential alone rounds to 1.0.
        """
        if days_since_update <= 0:
            return 0.0
        if math.isinf(days_since_update):
            return 1.0
        horizon = self.config.staleness_horizon_days
        saturating = 1.0 - math.exp(-days_since_update / (horizon / 3.5))
        tail = days_since_update / (days_since_update + horizon)
        return clamp((1.0 - STALENESS_TAIL_WEIGHT) * saturating + STALENESS_TAIL_WEIGHT * tail)

    def demand_score(self, metric: DemandSignals | None) -> float:
        """Weighted blend of favorites, high-intent users and query credit."""
        if metric is None:
            return 0.0
        cfg = self.config
        score = (
            cfg.demand_weight_favorites
            * normalize_log(metric.distinct_favoriters, cfg.favorite_users_cap)
            + cfg.demand_weight_high_intent
            * normalize_log(metric.distinct_high_intent_users, cfg.high_intent_users_cap)
            + cfg.demand_weight_query * normalize_log(metric.query_credit, cfg.query_users_cap)
        )
        return clamp(score)

    def score_for_refresh(
        self,
        entity: EntitySnapshot,
        metric: DemandSignals | None,
        *,
        now: datetime,
    ) -> KeywordCandidate | None:
        days = days_between(now, entity.last_updated_at)
        if days < self.config.min_staleness_days:
            return None

        score = self.staleness(days) * (0.6 + 0.4 * self.demand_score(metric))
        if entity.quality_score < self.config.quality_floor:
            if self.config.quality_policy == "exclude":
                return None
            score *= 0.5 + 0.5 * clamp(entity.quality_score)
        return self._candidate(entity, "refresh", score)

    def score_for_demand(
        self,
        entity: EntitySnapshot,
        metric: DemandSignals | None,
    ) -> KeywordCandidate | None:
        if metric is None or not metric.has_signal:
            return None
        score = self.demand_score(metric)
        if score <= 0:
            return None
        return self._candidate(entity, "demand", score)

    def passes_explore_floor(self, metric: DemandSignals | None, unmet_users: int = 0) -> bool:
        cfg = self.config
        if unmet_users >= cfg.explore_unmet_floor:
            return True
        if metric is None:
            return False
        return (
            metric.distinct_high_intent_users >= cfg.explore_high_intent_floor
            or metric.distinct_favoriters >= cfg.explore_favorite_floor
        )

    def score_for_explore(
        self,
        entity: EntitySnapshot,
        metric: DemandSignals | None,
        trend: TrendSignals | None,
        *,
        now: datetime,
        last_attempt_at: datetime | None = None,
        unmet_users: int = 0,
    ) -> KeywordCandidate | None:
        if not self.passes_explore_floor(metric, unmet_users):
            return None

        if last_attempt_at is None:
            novelty = 1.0
        else:
            novelty = clamp(
                days_between(now, last_attempt_at) / self.config.explore_recent_attempt_days
            )

        specialization = 0.0
        momentum = 0.0
        if trend is not None:
            local = trend.local_query_users
            elsewhere = max(0, trend.global_query_users - local)
            specialization = clamp((local + 1) / (elsewhere + 1) / 3.0)
            previous = trend.previous_query_users
            momentum = clamp((trend.recent_query_users - previous) / max(1, previous))

        score = (
            NOVELTY_WEIGHT * novelty
            + SPECIALIZATION_WEIGHT * specialization
            + TREND_WEIGHT * momentum
        )
        return self._candidate(entity, "explore", score)

    def rank_refresh(
        self,
        entities: Iterable[EntitySnapshot],
        metrics: Mapping[str, DemandSignals],
        *,
        now: datetime,
    ) -> list[KeywordCandidate]:
        candidates = [
            candidate
            for entity in entities
            if (candidate := self.score_for_refresh(entity, metrics.get(entity.entity_id), now=now))
            is not None
        ]
        return _ordered(candidates)

    def rank_demand(
        self,
        entities: Iterable[EntitySnapshot],
        metrics: Mapping[str, DemandSignals],
    ) -> list[KeywordCandidate]:
        candidates = [
            candidate
            for entity in entities
            if (candidate := self.score_for_demand(entity, metrics.get(entity.entity_id)))
            is not None
        ]
        return _ordered(candidates)

    def rank_explore(
        self,
        entities: Iterable[EntitySnapshot],
        metrics: Mapping[str, DemandSignals],
        trends: Mapping[str, TrendSignals],
        *,
        now: datetime,
        last_attempts: Mapping[str, datetime] | None = None,
        unmet_users_by_term: Mapping[str, int] | None = None,
    ) -> list[KeywordCandidate]:
        last_attempts = last_attempts or {}
        unmet_users_by_term = unmet_users_by_term or {}
        candidates: list[KeywordCandidate] = []
        for entity in entities:
            term = self._normalize(entity.name)
            candidate = self.score_for_explore(
                entity,
                metrics.get(entity.entity_id),
                trends.get(entity.entity_id),
                now=now,
                last_attempt_at=last_attempts.get(term),
                unmet_users=unmet_users_by_term.get(term, 0),
            )
            if candidate is not None:
                candidates.append(candidate)
        return _ordered(candidates)

    def _normalize(self, text: str) -> str:
        return normalize(text, self.config.normalization_strategy)

    def _candidate(self, entity: EntitySnapshot, slice_name: str, score: float) -> KeywordCandidate:
        return KeywordCandidate(
            normalized_term=self._normalize(entity.name),
            display_term=entity.name.strip(),
            slice=slice_name,  # type: ignore[arg-type]
            score=clamp(score),
            source_entity_id=entity.entity_id,
        )


def _ordered(candidates: list[KeywordCandidate]) -> list[KeywordCandidate]:
    # Equal scores order by entity id so reruns are reproducible.
    return sorted(candidates, key=lambda c: (-c.score, c.tie_break_key))
