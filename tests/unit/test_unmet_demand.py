"""Tests for unmet-demand counting, eligibility and cooldown backoff."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from keyword_scheduler.core.exceptions import ValidationError
from keyword_scheduler.repositories.unmet_demand_repository import OccurrenceWrite, UnmetTermRow
from keyword_scheduler.services.selection.selection_config import SelectionConfig
from keyword_scheduler.services.selection.unmet_demand import (
    UnmetDemandTracker,
    compute_cooldown,
)

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


class _FakeUnmetRepository:
    """In-memory stand-in keyed the same way as the unique constraints."""

    def __init__(self) -> None:
        self.terms: dict[tuple[str, str, str], dict] = {}
        self.contributions: dict[str, dict[str, datetime]] = {}
        self.outcomes: list[dict] = []
        self.prune_cutoff: datetime | None = None

    async def record_occurrence(
        self,
        *,
        term,
        normalized_term,
        reason,
        coverage_key,
        user_id,
        linked_entity_id,
        seen_at,
        spike_since,
    ) -> OccurrenceWrite:
        key = (normalized_term, reason, coverage_key)
        row = self.terms.setdefault(
            key,
            {"request_id": f"req-{len(self.terms) + 1}", "term": term, "linked_entity_id": None},
        )
        row["last_seen_at"] = seen_at
        row["linked_entity_id"] = linked_entity_id or row["linked_entity_id"]
        last_seen_by_user = self.contributions.setdefault(row["request_id"], {})
        previous_seen = last_seen_by_user.get(user_id) if user_id else None
        if user_id:
            last_seen_by_user[user_id] = max(previous_seen or seen_at, seen_at)
        return OccurrenceWrite(
            request_id=row["request_id"],
            distinct_user_count=len(last_seen_by_user),
            contribution_inserted=bool(user_id) and previous_seen is None,
            entered_window=bool(user_id) and (previous_seen is None or previous_seen < spike_since),
            users_last_24h=sum(1 for seen in last_seen_by_user.values() if seen >= spike_since),
        )

    async def list_rankable(self, coverage_key, *, seen_since, spike_since):
        rows = []
        for (normalized_term, reason, key), row in sorted(self.terms.items()):
            if key != coverage_key or row["last_seen_at"] < seen_since:
                continue
            last_seen_by_user = self.contributions.get(row["request_id"], {})
            rows.append(
                UnmetTermRow(
                    request_id=row["request_id"],
                    term=row["term"],
                    normalized_term=normalized_term,
                    coverage_key=key,
                    reason=reason,
                    distinct_user_count=len(last_seen_by_user),
                    last_seen_at=row["last_seen_at"],
                    last_attempt_at=row.get("last_attempt_at"),
                    last_outcome=row.get("last_outcome"),
                    cooldown_until=row.get("cooldown_until"),
                    users_last_24h=sum(1 for seen in last_seen_by_user.values() if seen >= spike_since),
                )
            )
        return rows

    async def record_outcome(self, **kwargs) -> int:
        self.outcomes.append(kwargs)
        updated = 0
        for (normalized_term, _reason, key), row in self.terms.items():
            if normalized_term == kwargs["normalized_term"] and key == kwargs["coverage_key"]:
                row["last_attempt_at"] = kwargs["attempted_at"]
                row["last_outcome"] = kwargs["outcome"]
                row["cooldown_until"] = kwargs["cooldown_until"]
                updated += 1
        return updated or 1

    async def prune_contributions(self, *, cutoff):
        self.prune_cutoff = cutoff
        return 4, 2

    async def max_users_by_term(self, coverage_key, normalized_terms):
        return {}


def _row(**overrides) -> UnmetTermRow:
    base = UnmetTermRow(
        request_id="req-1",
        term="Spicy Ramen",
        normalized_term="spicy ramen",
        coverage_key="austin_tx_us",
        reason="unresolved",
        distinct_user_count=3,
        last_seen_at=NOW - timedelta(days=1),
    )
    return replace(base, **overrides)


@pytest.mark.asyncio
async def test_repeat_occurrence_from_same_user_is_idempotent() -> None:
    repository = _FakeUnmetRepository()
    tracker = UnmetDemandTracker(SelectionConfig(), repository=repository)

    first = await tracker.record_occurrence("Spicy Ramen", "unresolved", "austin_tx_us", "u1", now=NOW)
    second = await tracker.record_occurrence("  spicy   ramen ", "unresolved", "austin_tx_us", "u1", now=NOW)
    third = await tracker.record_occurrence("spicy ramen", "unresolved", "austin_tx_us", "u2", now=NOW)

    assert first.request_id == second.request_id == third.request_id
    assert (first.distinct_user_count, first.counted) == (1, True)
    assert (second.distinct_user_count, second.counted) == (1, False)
    assert third.distinct_user_count == 2


@pytest.mark.asyncio
async def test_reasons_are_tracked_separately() -> None:
    repository = _FakeUnmetRepository()
    tracker = UnmetDemandTracker(SelectionConfig(), repository=repository)

    unresolved = await tracker.record_occurrence("pho", "unresolved", "austin_tx_us", "u1", now=NOW)
    low_result = await tracker.record_occurrence(
        "pho", "low_result", "austin_tx_us", "u1", linked_entity_id="ent-1", now=NOW
    )

    assert unresolved.request_id != low_result.request_id
    assert repository.terms[("pho", "low_result", "austin_tx_us")]["linked_entity_id"] == "ent-1"


@pytest.mark.asyncio
async def test_linked_entity_is_ignored_for_unresolved_terms() -> None:
    repository = _FakeUnmetRepository()
    tracker = UnmetDemandTracker(SelectionConfig(), repository=repository)

    await tracker.record_occurrence("pho", "unresolved", "austin_tx_us", "u1", linked_entity_id="ent-1", now=NOW)

    assert repository.terms[("pho", "unresolved", "austin_tx_us")]["linked_entity_id"] is None


@pytest.mark.asyncio
async def test_anonymous_occurrence_does_not_count() -> None:
    tracker = UnmetDemandTracker(SelectionConfig(), repository=_FakeUnmetRepository())

    result = await tracker.record_occurrence("pho", "unresolved", "austin_tx_us", None, now=NOW)

    assert result.distinct_user_count == 0
    assert result.counted is False


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("term", "reason", "coverage_key"),
    [("   ", "unresolved", "austin_tx_us"), ("pho", "typo", "austin_tx_us"), ("pho", "unresolved", "")],
)
async def test_invalid_occurrences_are_rejected(term: str, reason: str, coverage_key: str) -> None:
    tracker = UnmetDemandTracker(SelectionConfig(), repository=_FakeUnmetRepository())

    with pytest.raises(ValidationError):
        await tracker.record_occurrence(term, reason, coverage_key, "u1", now=NOW)


@pytest.mark.asyncio
async def test_hot_spike_flags_only_the_threshold_crossing() -> None:
    tracker = UnmetDemandTracker(SelectionConfig(hot_spike_threshold=3), repository=_FakeUnmetRepository())

    flags = [
        (await tracker.record_occurrence("pho", "unresolved", "austin_tx_us", user, now=NOW)).hot_spike
        for user in ("u1", "u2", "u3", "u3", "u4")
    ]

    assert flags == [False, False, True, False, False]


@pytest.mark.asyncio
async def test_returning_users_reopen_a_term_during_its_cooldown() -> None:
    repository = _FakeUnmetRepository()
    tracker = UnmetDemandTracker(SelectionConfig(hot_spike_threshold=5), repository=repository)
    users = ("u1", "u2", "u3", "u4", "u5")
    first_seen = NOW - timedelta(days=20)
    for user in users:
        await tracker.record_occurrence("pho", "unresolved", "austin_tx_us", user, now=first_seen)
    await tracker.record_outcome("pho", "austin_tx_us", "no_results", safe_interval_days=7.0, now=first_seen)

    assert await tracker.rank_candidates("austin_tx_us", NOW) == []

    results = [
        await tracker.record_occurrence("pho", "unresolved", "austin_tx_us", user, now=NOW)
        for user in users
    ]

    assert [result.hot_spike for result in results] == [False, False, False, False, True]
    assert all(result.distinct_user_count == 5 for result in results)
    assert not any(result.counted for result in results)
    ranked = await tracker.rank_candidates("austin_tx_us", NOW)
    assert [candidate.normalized_term for candidate in ranked] == ["pho"]


@pytest.mark.asyncio
async def test_repeat_inside_the_window_does_not_reflag_a_spike() -> None:
    tracker = UnmetDemandTracker(SelectionConfig(hot_spike_threshold=2), repository=_FakeUnmetRepository())

    await tracker.record_occurrence("pho", "unresolved", "austin_tx_us", "u1", now=NOW - timedelta(hours=2))
    crossing = await tracker.record_occurrence("pho", "unresolved", "austin_tx_us", "u2", now=NOW - timedelta(hours=1))
    repeat = await tracker.record_occurrence("pho", "unresolved", "austin_tx_us", "u2", now=NOW)

    assert crossing.hot_spike is True
    assert repeat.hot_spike is False


def test_cooldown_math_per_outcome() -> None:
    config = SelectionConfig()

    assert compute_cooldown("success", 10.0, config) == timedelta(days=10)
    assert compute_cooldown("no_results", 10.0, config) == timedelta(days=60)
    assert compute_cooldown("no_results", 30.0, config) == timedelta(days=90)
    assert compute_cooldown("error", 10.0, config) == timedelta(hours=24)
    assert compute_cooldown("deferred", 10.0, config) == timedelta(hours=6)
    with pytest.raises(ValidationError):
        compute_cooldown("timeout", 10.0, config)


def test_no_results_cooldown_blocks_until_it_expires() -> None:
    tracker = UnmetDemandTracker(SelectionConfig(), repository=_FakeUnmetRepository())
    attempted = NOW - timedelta(days=1)
    row = _row(
        distinct_user_count=5,
        last_attempt_at=attempted,
        last_outcome="no_results",
        cooldown_until=attempted + compute_cooldown("no_results", 7.0, tracker.config),
    )

    assert tracker.rank_rows([row], NOW) == []
    assert tracker.is_eligible(row, attempted + timedelta(days=61))


def test_hot_spike_overrides_active_cooldown() -> None:
    tracker = UnmetDemandTracker(SelectionConfig(hot_spike_threshold=5), repository=_FakeUnmetRepository())
    row = _row(cooldown_until=NOW + timedelta(days=30), distinct_user_count=9)

    assert not tracker.is_eligible(replace(row, users_last_24h=4), NOW)
    assert tracker.is_eligible(replace(row, users_last_24h=5), NOW)


def test_rows_below_min_users_are_ineligible() -> None:
    tracker = UnmetDemandTracker(SelectionConfig(unmet_min_users=2), repository=_FakeUnmetRepository())

    assert not tracker.is_eligible(_row(distinct_user_count=1), NOW)
    assert tracker.is_eligible(_row(distinct_user_count=2), NOW)


def test_recent_no_results_is_penalized_in_score() -> None:
    tracker = UnmetDemandTracker(SelectionConfig(), repository=_FakeUnmetRepository())
    fresh = _row()
    penalized = _row(last_outcome="no_results", last_attempt_at=NOW - timedelta(days=10))
    expired = _row(last_outcome="no_results", last_attempt_at=NOW - timedelta(days=90))

    assert tracker.score(penalized, NOW) == pytest.approx(tracker.score(fresh, NOW) * 0.3)
    assert tracker.score(expired, NOW) == pytest.approx(tracker.score(fresh, NOW))


def test_score_grows_with_users_and_unresolved_outranks_low_result() -> None:
    tracker = UnmetDemandTracker(SelectionConfig(), repository=_FakeUnmetRepository())

    assert tracker.score(_row(distinct_user_count=8), NOW) > tracker.score(_row(distinct_user_count=2), NOW)
    assert tracker.score(_row(reason="unresolved"), NOW) > tracker.score(_row(reason="low_result"), NOW)


def test_rank_rows_orders_by_score_then_request_id() -> None:
    tracker = UnmetDemandTracker(SelectionConfig(), repository=_FakeUnmetRepository())
    rows = [
        _row(request_id="req-b", normalized_term="laksa", term="Laksa"),
        _row(request_id="req-a", normalized_term="pho", term="Pho"),
        _row(request_id="req-c", normalized_term="ramen", term="Ramen", distinct_user_count=10),
    ]

    ranked = tracker.rank_rows(rows, NOW)

    assert [c.source_request_id for c in ranked] == ["req-c", "req-a", "req-b"]
    assert all(c.slice == "unmet" for c in ranked)


@pytest.mark.asyncio
async def test_record_outcome_sets_cooldown_from_safe_interval() -> None:
    repository = _FakeUnmetRepository()
    tracker = UnmetDemandTracker(SelectionConfig(), repository=repository)

    updated = await tracker.record_outcome("Pho", "austin_tx_us", "no_results", safe_interval_days=7.0, now=NOW)

    assert updated == 1
    outcome = repository.outcomes[0]
    assert outcome["normalized_term"] == "pho"
    assert outcome["cooldown_until"] == NOW + timedelta(days=60)


@pytest.mark.asyncio
async def test_record_outcome_rejects_unknown_outcome() -> None:
    tracker = UnmetDemandTracker(SelectionConfig(), repository=_FakeUnmetRepository())

    with pytest.raises(ValidationError):
        await tracker.record_outcome("pho", "austin_tx_us", "timeout", safe_interval_days=7.0, now=NOW)


@pytest.mark.asyncio
async def test_prune_uses_retention_window() -> None:
    repository = _FakeUnmetRepository()
    tracker = UnmetDemandTracker(SelectionConfig(contribution_retention_days=90), repository=repository)

    deleted = await tracker.prune_contributions(now=NOW)

    assert deleted == 4
    assert repository.prune_cutoff == NOW - timedelta(days=90)
