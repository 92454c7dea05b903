"""Windowed distinct-user demand aggregation over source engagement events."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime, timedelta, timezone

from keyword_scheduler.core.db_kernel import DbKernelError
from keyword_scheduler.core.exceptions import DegradedSignal
from keyword_scheduler.repositories.demand_metric_repository import DemandMetricRepository
from keyword_scheduler.repositories.engagement_repository import (
    EngagementRepository,
    EngagementRow,
)
from keyword_scheduler.services.selection.selection_config import SelectionConfig
from keyword_scheduler.services.selection.types import DemandSignals, TrendSignals

logger = logging.getLogger(__name__)

PLACE_CATEGORY = "place"


def high_intent_event_type(category: str) -> str:
    """Views signal intent for places; everything else needs an explicit selection."""
    return "view" if category == PLACE_CATEGORY else "selection"


def aggregate_demand(
    rows: Iterable[EngagementRow],
    *,
    entity_ids: Sequence[str],
    window_days: int,
    attribution: str,
    computed_at: datetime,
    search_fanout: Mapping[str, int] | None = None,
) -> dict[str, DemandSignals]:
    """Fold distinct engagement rows into one fresh metric per entity.

    ``attribution`` controls query credit: ``distinct_user`` credits each
    searching user once per entity, ``split`` credits a user ``1/N`` for a
    search that resolved to N entities (best search per user), and
    ``per_search`` counts distinct search ids.
    """
    fanout = search_fanout or {}
    favoriters: dict[str, set[str]] = defaultdict(set)
    high_intent: dict[str, set[str]] = defaultdict(set)
    query_users: dict[str, set[str]] = defaultdict(set)
    searches: dict[str, set[str]] = defaultdict(set)
    split_credit: dict[str, dict[str, float]] = defaultdict(dict)

    for row in rows:
        if not row.user_id:
            continue
        if row.event_type == "favorite":
            favoriters[row.entity_id].add(row.user_id)
        elif row.event_type == high_intent_event_type(row.category):
            high_intent[row.entity_id].add(row.user_id)
        elif row.event_type == "search":
            query_users[row.entity_id].add(row.user_id)
            if row.search_id:
                searches[row.entity_id].add(row.search_id)
            share = 1.0 / max(1, fanout.get(row.search_id or "", 1))
            per_user = split_credit[row.entity_id]
            per_user[row.user_id] = max(per_user.get(row.user_id, 0.0), share)

    metrics: dict[str, DemandSignals] = {}
    for entity_id in entity_ids:
        distinct_query = len(query_users.get(entity_id, ()))
        if attribution == "split":
            credit = sum(split_credit.get(entity_id, {}).values())
        elif attribution == "per_search":
            credit = float(len(searches.get(entity_id, ())))
        else:
            credit = float(distinct_query)
        metrics[entity_id] = DemandSignals(
            entity_id=entity_id,
            window_days=window_days,
            distinct_favoriters=len(favoriters.get(entity_id, ())),
            distinct_high_intent_users=len(high_intent.get(entity_id, ())),
            distinct_query_users=distinct_query,
            query_credit=round(credit, 6),
            computed_at=computed_at,
        )
    return metrics


class SignalAggregator:
    """Recomputes demand metrics in batches and persists them by replacement."""

    def __init__(
        self,
        config: SelectionConfig,
        *,
        events: EngagementRepository | None = None,
        metrics: DemandMetricRepository | None = None,
        batch_size: int = 500,
        read_timeout_seconds: float = 20.0,
    ) -> None:
        self.config = config
        self.events = events or EngagementRepository()
        self.metrics = metrics or DemandMetricRepository()
        self.batch_size = max(1, batch_size)
        self.read_timeout_seconds = read_timeout_seconds
        self.degraded: list[DegradedSignal] = []

    async def refresh_metrics(
        self,
        entity_ids: Sequence[str],
        window_days: int,
        *,
        coverage_key: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, DemandSignals]:
        """Fresh metrics for every requested entity.

        A batch whose reads fail or time out yields zero metrics flagged as
        degraded instead of failing the caller.
        """
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(days=window_days)
        ordered_ids = sorted(set(entity_ids))
        results: dict[str, DemandSignals] = {}
        fresh: list[DemandSignals] = []

        for start in range(0, len(ordered_ids), self.batch_size):
            batch = ordered_ids[start : start + self.batch_size]
            try:
                computed = await self._compute_batch(
                    batch,
                    window_days=window_days,
                    since=since,
                    coverage_key=coverage_key,
                    now=now,
                )
            except (DbKernelError, TimeoutError) as exc:
                self._degrade("demand_metrics", exc, coverage_key=coverage_key, batch_size=len(batch))
                for entity_id in batch:
                    results[entity_id] = DemandSignals.zero(
                        entity_id, window_days, computed_at=now, degraded=True
                    )
                continue
            results.update(computed)
            fresh.extend(computed.values())

        if fresh:
            try:
                await self.metrics.replace(fresh, window_days=window_days)
            except DbKernelError as exc:
                # Scoring still uses the fresh values; the cache is advisory.
                self._degrade("demand_metrics_write", exc, coverage_key=coverage_key)

        logger.info(
            "Demand metrics refreshed",
            extra={
                "coverage_key": coverage_key,
                "entity_count": len(ordered_ids),
                "window_days": window_days,
                "degraded_count": sum(1 for metric in results.values() if metric.degraded),
            },
        )
        return results

    async def load_trend_signals(
        self,
        entity_ids: Sequence[str],
        coverage_key: str | None,
        *,
        now: datetime,
    ) -> dict[str, TrendSignals]:
        trend_days = self.config.trend_window_days
        recent_start = now - timedelta(days=trend_days)
        previous_start = now - timedelta(days=2 * trend_days)
        window_start = now - timedelta(days=self.config.demand_window_days)
        ordered_ids = sorted(set(entity_ids))
        trends: dict[str, TrendSignals] = {}

        for start in range(0, len(ordered_ids), self.batch_size):
            batch = ordered_ids[start : start + self.batch_size]
            try:
                trends.update(
                    await asyncio.wait_for(
                        self.events.fetch_trend_signals(
                            batch,
                            coverage_key=coverage_key,
                            recent_start=recent_start,
                            previous_start=previous_start,
                            window_start=window_start,
                        ),
                        timeout=self.read_timeout_seconds,
                    )
                )
            except (DbKernelError, TimeoutError) as exc:
                self._degrade("trend_signals", exc, coverage_key=coverage_key, batch_size=len(batch))
        return trends

    async def _compute_batch(
        self,
        batch: list[str],
        *,
        window_days: int,
        since: datetime,
        coverage_key: str | None,
        now: datetime,
    ) -> dict[str, DemandSignals]:
        rows = await asyncio.wait_for(
            self.events.fetch_engagement_rows(batch, since=since, coverage_key=coverage_key),
            timeout=self.read_timeout_seconds,
        )
        fanout: dict[str, int] = {}
        if self.config.query_attribution == "split":
            search_ids = sorted({row.search_id for row in rows if row.search_id})
            fanout = await asyncio.wait_for(
                self.events.fetch_search_fanout(search_ids, since=since),
                timeout=self.read_timeout_seconds,
            )
        return aggregate_demand(
            rows,
            entity_ids=batch,
            window_days=window_days,
            attribution=self.config.query_attribution,
            computed_at=now,
            search_fanout=fanout,
        )

    def _degrade(self, source: str, exc: BaseException, **context: object) -> None:
        reason = type(exc).__name__ if not str(exc) else f"{type(exc).__name__}: {exc}"
        signal = DegradedSignal(source, reason)
        self.degraded.append(signal)
        logger.warning(
            "Signal read degraded to defaults",
            extra={**context, "source": source, "failure_class": type(exc).__name__},
        )

    def drain_degraded(self) -> list[DegradedSignal]:
        """Return and clear degraded-signal notes collected since the last drain."""
        drained = list(self.degraded)
        self.degraded.clear()
        return drained
