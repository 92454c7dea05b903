"""Cycle orchestration: coverage, signals, scoring, allocation, dispatch, recording."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, TypeVar

from keyword_scheduler.config import settings
from keyword_scheduler.core.db_kernel import DbKernelError
from keyword_scheduler.core.exceptions import (
    CoverageNotExecutable,
    CycleCancelled,
    DegradedSignal,
    ExecutionReportMismatch,
    UnresolvableLocality,
    ValidationError,
)
from keyword_scheduler.core.ids import generate_cuid
from keyword_scheduler.core.logging import bind_cycle_context
from keyword_scheduler.repositories.attempt_history_repository import AttemptHistoryRepository
from keyword_scheduler.repositories.coverage_repository import CoverageRepository
from keyword_scheduler.repositories.cycle_record_repository import CycleRecordRepository
from keyword_scheduler.repositories.demand_metric_repository import DemandMetricRepository
from keyword_scheduler.repositories.engagement_repository import EngagementRepository
from keyword_scheduler.repositories.entity_repository import EntityRepository
from keyword_scheduler.repositories.unmet_demand_repository import UnmetDemandRepository
from keyword_scheduler.schemas.cycle import CycleRecordSchema, CycleSummary, SelectedKeyword
from keyword_scheduler.services.selection.allocator import allocate
from keyword_scheduler.services.selection.coverage_resolver import CoverageResolver
from keyword_scheduler.services.selection.cycle_lease import CycleLease
from keyword_scheduler.services.selection.dispatch import KeywordDispatcher, RedisDispatchQueue
from keyword_scheduler.services.selection.entity_scorer import EntityScorer
from keyword_scheduler.services.selection.normalization import dedupe_with_report, normalize
from keyword_scheduler.services.selection.selection_config import SelectionConfig
from keyword_scheduler.services.selection.signal_aggregator import SignalAggregator
from keyword_scheduler.services.selection.types import (
    CYCLE_SOURCES,
    KEYWORD_OUTCOMES,
    CoverageAreaView,
    DedupeDrop,
    EntitySnapshot,
    KeywordCandidate,
    LocalityHint,
)
from keyword_scheduler.services.selection.unmet_demand import UnmetDemandTracker, compute_cooldown

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


class CycleState(str, Enum):
    IDLE = "idle"
    RESOLVING_COVERAGE = "resolving_coverage"
    AGGREGATING = "aggregating"
    SCORING = "scoring"
    ALLOCATING = "allocating"
    EMITTING = "emitting"
    RECORDING = "recording"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_coverage_resolver(read_timeout_seconds: float | None = None) -> CoverageResolver:
    """Coverage resolver wired from settings; share one per process to keep its cache warm."""
    return CoverageResolver(
        repository=CoverageRepository(max_execution_targets=settings.max_execution_targets),
        cache_ttl_seconds=settings.coverage_cache_ttl_seconds,
        read_timeout_seconds=(
            read_timeout_seconds
            if read_timeout_seconds is not None
            else settings.signal_read_timeout_seconds
        ),
    )


def _split_cooling(
    candidates: Sequence[KeywordCandidate],
    cooling: set[str],
) -> tuple[list[KeywordCandidate], list[DedupeDrop]]:
    kept: list[KeywordCandidate] = []
    dropped: list[DedupeDrop] = []
    for candidate in candidates:
        if candidate.normalized_term in cooling:
            dropped.append(
                DedupeDrop(
                    normalized_term=candidate.normalized_term,
                    display_term=candidate.display_term,
                    slice=candidate.slice,
                    reason="cooldown",
                    score=candidate.score,
                )
            )
            continue
        kept.append(candidate)
    return kept, dropped


class CycleScheduler:
    """Runs one keyword selection cycle for one coverage area.

    Cycles for the same coverage key are mutually exclusive through a Redis
    lease. Signal and candidate failures degrade their input to empty and are
    recorded in the cycle summary; coverage failures abort before dispatch.
    Once the list is dispatched, cancellation only skips recording.
    """

    def __init__(
        self,
        *,
        config: SelectionConfig | None = None,
        resolver: CoverageResolver | None = None,
        aggregator: SignalAggregator | None = None,
        scorer: EntityScorer | None = None,
        tracker: UnmetDemandTracker | None = None,
        entities: EntityRepository | None = None,
        events: EngagementRepository | None = None,
        attempts: AttemptHistoryRepository | None = None,
        cycles: CycleRecordRepository | None = None,
        dispatcher: KeywordDispatcher | None = None,
        lease_factory: Callable[[str], CycleLease] | None = None,
        refresh_pool_limit: int | None = None,
        recording_attempts: int | None = None,
        read_timeout_seconds: float | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config or SelectionConfig.from_settings(settings)
        self.read_timeout_seconds = (
            read_timeout_seconds
            if read_timeout_seconds is not None
            else settings.signal_read_timeout_seconds
        )
        self.recording_attempts = recording_attempts or settings.recording_attempts
        self.refresh_pool_limit = refresh_pool_limit or settings.refresh_pool_limit
        self.events = events or EngagementRepository()
        self.resolver = resolver or build_coverage_resolver(self.read_timeout_seconds)
        self.aggregator = aggregator or SignalAggregator(
            self.config,
            events=self.events,
            metrics=DemandMetricRepository(attempts=self.recording_attempts),
            batch_size=settings.signal_batch_size,
            read_timeout_seconds=self.read_timeout_seconds,
        )
        self.scorer = scorer or EntityScorer(self.config)
        self.tracker = tracker or UnmetDemandTracker(
            self.config,
            repository=UnmetDemandRepository(attempts=self.recording_attempts),
        )
        self.entities = entities or EntityRepository(batch_size=settings.signal_batch_size)
        self.attempts = attempts or AttemptHistoryRepository(attempts=self.recording_attempts)
        self.cycles = cycles or CycleRecordRepository()
        self.dispatcher = dispatcher or RedisDispatchQueue()
        self._lease_factory = lease_factory or (
            lambda coverage_key: CycleLease(
                coverage_key,
                ttl_seconds=settings.cycle_lease_ttl_seconds,
            )
        )
        self._clock = clock
        self.state = CycleState.IDLE

    async def run_cycle(
        self,
        coverage_key_or_hint: str | LocalityHint,
        source: str = "scheduled",
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> CycleRecordSchema:
        if source not in CYCLE_SOURCES:
            raise ValidationError(f"Unknown cycle source: {source}", details={"source": source})
        hint = (
            coverage_key_or_hint
            if isinstance(coverage_key_or_hint, LocalityHint)
            else LocalityHint(coverage_key=coverage_key_or_hint)
        )
        cycle_id = generate_cuid()
        started_at = self._clock()

        with bind_cycle_context(cycle_id=cycle_id, source=source):
            self.state = CycleState.RESOLVING_COVERAGE
            try:
                coverage = await self.resolver.resolve(hint)
            except UnresolvableLocality:
                self.state = CycleState.IDLE
                logger.warning("Cycle aborted: locality unresolvable", extra={"hint": hint.describe()})
                raise
            if not coverage.is_executable:
                self.state = CycleState.IDLE
                logger.info(
                    "Cycle aborted: coverage area has no execution targets",
                    extra={"coverage_key": coverage.coverage_key, "source_type": coverage.source_type},
                )
                raise CoverageNotExecutable(coverage.coverage_key)

            lease = self._lease_factory(coverage.coverage_key)
            await lease.acquire()
            try:
                with bind_cycle_context(coverage_key=coverage.coverage_key):
                    return await self._run_locked(
                        cycle_id=cycle_id,
                        coverage=coverage,
                        source=source,
                        started_at=started_at,
                        cancel_event=cancel_event,
                    )
            finally:
                self.state = CycleState.IDLE
                await lease.release()

    async def _run_locked(
        self,
        *,
        cycle_id: str,
        coverage: CoverageAreaView,
        source: str,
        started_at: datetime,
        cancel_event: asyncio.Event | None,
    ) -> CycleRecordSchema:
        cfg = self.config
        coverage_key = coverage.coverage_key
        now = started_at
        degraded: list[DegradedSignal] = []

        self._enter(CycleState.AGGREGATING, cycle_id, cancel_event)
        pool = await self._load_entity_pool(coverage_key, now=now, degraded=degraded)
        entity_ids = [entity.entity_id for entity in pool]
        metrics = await self.aggregator.refresh_metrics(
            entity_ids,
            cfg.demand_window_days,
            coverage_key=coverage_key,
            now=now,
        )
        trends = await self.aggregator.load_trend_signals(entity_ids, coverage_key, now=now)
        degraded.extend(self.aggregator.drain_degraded())

        terms = sorted({normalize(entity.name, cfg.normalization_strategy) for entity in pool})
        cooling: set[str] = await self._advisory(
            self.attempts.cooling_terms(coverage_key, now=now), "attempt_history", set(), degraded
        )
        last_attempts: dict[str, datetime] = await self._advisory(
            self.attempts.last_attempts(coverage_key, terms), "attempt_history", {}, degraded
        )
        unmet_users: dict[str, int] = await self._advisory(
            self.tracker.users_by_term(coverage_key, terms), "unmet_terms", {}, degraded
        )

        self._enter(CycleState.SCORING, cycle_id, cancel_event)

        async def _refresh() -> list[KeywordCandidate]:
            return self.scorer.rank_refresh(pool, metrics, now=now)

        async def _demand() -> list[KeywordCandidate]:
            return self.scorer.rank_demand(pool, metrics)

        async def _explore() -> list[KeywordCandidate]:
            return self.scorer.rank_explore(
                pool,
                metrics,
                trends,
                now=now,
                last_attempts=last_attempts,
                unmet_users_by_term=unmet_users,
            )

        async def _unmet() -> list[KeywordCandidate]:
            return await asyncio.wait_for(
                self.tracker.rank_candidates(coverage_key, now),
                timeout=self.read_timeout_seconds,
            )

        refresh, demand, unmet, explore = await asyncio.gather(
            self._slice_or_empty("refresh", _refresh, degraded),
            self._slice_or_empty("demand", _demand, degraded),
            self._slice_or_empty("unmet", _unmet, degraded),
            self._slice_or_empty("explore", _explore, degraded),
        )

        dropped: list[DedupeDrop] = []
        candidate_counts: dict[str, int] = {}
        pools: dict[str, list[KeywordCandidate]] = {}
        for slice_name, candidates in (
            ("refresh", refresh),
            ("demand", demand),
            ("unmet", unmet),
            ("explore", explore),
        ):
            candidate_counts[slice_name] = len(candidates)
            if slice_name != "unmet":
                candidates, cooled = _split_cooling(candidates, cooling)
                dropped.extend(cooled)
            result = dedupe_with_report(
                candidates,
                cfg.cycle_budget,
                max_term_length=cfg.max_term_length,
            )
            dropped.extend(result.dropped)
            pools[slice_name] = result.kept

        self._enter(CycleState.ALLOCATING, cycle_id, cancel_event)
        allocation = allocate(
            cfg.cycle_budget,
            pools["refresh"],
            pools["demand"],
            pools["unmet"],
            pools["explore"],
            config=cfg,
        )
        dropped.extend(allocation.dropped)

        self._enter(CycleState.EMITTING, cycle_id, cancel_event)
        dispatched = False
        if allocation.final_list:
            await self.dispatcher.dispatch(coverage, allocation.final_list, cycle_id)
            dispatched = True

        record = CycleRecordSchema(
            cycle_id=cycle_id,
            coverage_key=coverage_key,
            source=source,
            started_at=started_at,
            finished_at=self._clock(),
            selected_keywords=[
                SelectedKeyword(**candidate.to_dict()) for candidate in allocation.final_list
            ],
            deduped_out_count=sum(
                1 for drop in dropped if drop.reason in {"duplicate", "cross_slice_duplicate"}
            ),
            budget_by_slice=dict(allocation.budget_by_slice),
            summary=CycleSummary(
                sub_budgets=dict(allocation.sub_budgets),
                candidate_counts=candidate_counts,
                underfilled_by_slice=dict(allocation.underfilled_by_slice),
                dropped=[drop.to_dict() for drop in dropped],
                degraded_signals=[
                    {"source": signal.source, "reason": signal.reason} for signal in degraded
                ],
                redistributed=allocation.redistributed,
                safe_interval_days=coverage.safe_interval_days,
                execution_targets=list(coverage.execution_targets),
                dispatched=dispatched,
            ),
        )

        if cancel_event is not None and cancel_event.is_set():
            record.summary.cancelled_after_dispatch = True
            logger.info("Cycle cancelled after dispatch, skipping recording")
            return record

        self.state = CycleState.RECORDING
        record.summary.recorded = True
        await self.cycles.append(
            record,
            selected_entity_ids=[
                candidate.source_entity_id
                for candidate in allocation.final_list
                if candidate.source_entity_id
            ],
            attempts=self.recording_attempts,
        )
        logger.info(
            "Cycle finished",
            extra={
                "selected_count": len(record.selected_keywords),
                "budget_by_slice": record.budget_by_slice,
                "deduped_out_count": record.deduped_out_count,
                "degraded_count": len(degraded),
            },
        )
        return record

    async def report_outcome(
        self,
        normalized_term: str,
        coverage_key: str,
        outcome: str,
        *,
        now: datetime | None = None,
    ) -> bool:
        """Apply an execution outcome for a term from the latest cycle.

        Returns False (and logs) when the term is not part of the most recent
        cycle for the coverage key.
        """
        if outcome not in KEYWORD_OUTCOMES:
            raise ValidationError(f"Unknown outcome: {outcome}", details={"outcome": outcome})
        term = normalize(normalized_term, self.config.normalization_strategy)
        now = now or self._clock()

        latest = await self.cycles.latest_for_coverage(coverage_key)
        selected = latest.find_keyword(term) if latest is not None else None
        if latest is None or selected is None:
            mismatch = ExecutionReportMismatch(term, coverage_key)
            logger.warning(mismatch.message, extra=mismatch.details)
            return False

        safe_interval = latest.summary.safe_interval_days
        cooldown = compute_cooldown(outcome, safe_interval, self.config)
        await self.attempts.record_attempt(
            coverage_key=coverage_key,
            normalized_term=term,
            outcome=outcome,
            attempted_at=now,
            cooldown_until=now + cooldown,
        )
        if selected.slice == "unmet":
            await self.tracker.record_outcome(
                term,
                coverage_key,
                outcome,
                safe_interval_days=safe_interval,
                now=now,
            )
        logger.info(
            "Keyword outcome recorded",
            extra={
                "coverage_key": coverage_key,
                "cycle_id": latest.cycle_id,
                "slice": selected.slice,
                "outcome": outcome,
            },
        )
        return True

    def _enter(self, state: CycleState, cycle_id: str, cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            logger.info("Cycle cancelled", extra={"state": state.value})
            raise CycleCancelled(cycle_id, state.value)
        self.state = state

    async def _load_entity_pool(
        self,
        coverage_key: str,
        *,
        now: datetime,
        degraded: list[DegradedSignal],
    ) -> list[EntitySnapshot]:
        """Stalest catalog entities plus entities with recent engagement in the area."""
        stale: list[EntitySnapshot] = await self._advisory(
            self.entities.list_refresh_pool(locality_key=coverage_key, limit=self.refresh_pool_limit),
            "entity_catalog",
            [],
            degraded,
        )
        engaged_ids: list[str] = await self._advisory(
            self.events.list_engaged_entity_ids(
                coverage_key=coverage_key,
                since=now - timedelta(days=self.config.demand_window_days),
                limit=self.refresh_pool_limit,
            ),
            "engagement_events",
            [],
            degraded,
        )
        known = {entity.entity_id for entity in stale}
        missing = [entity_id for entity_id in engaged_ids if entity_id not in known]
        extra: list[EntitySnapshot] = []
        if missing:
            extra = await self._advisory(
                self.entities.get_by_ids(missing), "entity_catalog", [], degraded
            )
        return sorted([*stale, *extra], key=lambda entity: entity.entity_id)

    async def _advisory(
        self,
        awaitable: Awaitable[_T],
        source: str,
        default: _T,
        degraded: list[DegradedSignal],
    ) -> _T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.read_timeout_seconds)
        except (DbKernelError, TimeoutError) as exc:
            degraded.append(DegradedSignal(source, type(exc).__name__))
            logger.warning(
                "Advisory read degraded to default",
                extra={"source": source, "failure_class": type(exc).__name__},
            )
            return default

    async def _slice_or_empty(
        self,
        slice_name: str,
        produce: Callable[[], Awaitable[list[KeywordCandidate]]],
        degraded: list[DegradedSignal],
    ) -> list[KeywordCandidate]:
        try:
            return await produce()
        except Exception as exc:
            # A failed producer empties its own slice; the cycle continues.
            degraded.append(DegradedSignal(f"{slice_name}_candidates", type(exc).__name__))
            logger.warning(
                "Candidate producer failed, slice degraded to empty",
                extra={"slice": slice_name, "failure_class": type(exc).__name__},
                exc_info=True,
            )
            return []


def summarize_record(record: CycleRecordSchema) -> dict[str, Any]:
    """Compact view of a cycle record for CLI output."""
    return {
        "cycle_id": record.cycle_id,
        "coverage_key": record.coverage_key,
        "source": record.source,
        "selected": [keyword.normalized_term for keyword in record.selected_keywords],
        "budget_by_slice": record.budget_by_slice,
        "deduped_out_count": record.deduped_out_count,
        "degraded_signals": record.summary.degraded_signals,
        "recorded": record.summary.recorded,
    }
