"""Tests for distinct-user demand aggregation and degraded signal handling."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from keyword_scheduler.core.db_kernel import PermanentDbError, TransientDbError
from keyword_scheduler.repositories.engagement_repository import EngagementRow
from keyword_scheduler.services.selection.selection_config import SelectionConfig
from keyword_scheduler.services.selection.signal_aggregator import (
    SignalAggregator,
    aggregate_demand,
    high_intent_event_type,
)
from keyword_scheduler.services.selection.types import TrendSignals

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


def _row(entity_id: str, event_type: str, user_id: str | None, *, category: str = "dish", search_id: str | None = None) -> EngagementRow:
    return EngagementRow(
        entity_id=entity_id,
        category=category,
        event_type=event_type,
        user_id=user_id,
        search_id=search_id,
    )


class _FakeEvents:
    def __init__(self, rows=None, *, fanout=None, fail_for=None, trends=None, hang=False) -> None:
        self.rows = rows or []
        self.fanout = fanout or {}
        self.fail_for = set(fail_for or ())
        self.trends = trends or {}
        self.hang = hang
        self.calls: list[list[str]] = []

    async def fetch_engagement_rows(self, entity_ids, *, since, coverage_key=None):
        self.calls.append(list(entity_ids))
        if self.hang:
            await asyncio.sleep(10)
        if self.fail_for & set(entity_ids):
            raise TransientDbError("connection reset")
        return [row for row in self.rows if row.entity_id in entity_ids]

    async def fetch_search_fanout(self, search_ids, *, since):
        return {search_id: self.fanout[search_id] for search_id in search_ids if search_id in self.fanout}

    async def fetch_trend_signals(self, entity_ids, *, coverage_key, recent_start, previous_start, window_start):
        if self.fail_for & set(entity_ids):
            raise TransientDbError("connection reset")
        return {entity_id: self.trends[entity_id] for entity_id in entity_ids if entity_id in self.trends}


class _FakeMetrics:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.replaced = []

    async def replace(self, metrics, *, window_days):
        if self.fail:
            raise PermanentDbError("disk full")
        self.replaced.extend(metrics)
        return len(metrics)


def test_high_intent_event_type_depends_on_category() -> None:
    assert high_intent_event_type("place") == "view"
    assert high_intent_event_type("dish") == "selection"


def test_aggregate_counts_distinct_users_only() -> None:
    rows = [
        _row("e1", "favorite", "u1"),
        _row("e1", "favorite", "u1"),
        _row("e1", "favorite", "u2"),
        _row("e1", "selection", "u3"),
        _row("e1", "selection", "u3"),
        _row("e1", "search", "u4", search_id="s1"),
        _row("e1", "search", "u4", search_id="s2"),
    ]

    metrics = aggregate_demand(
        rows, entity_ids=["e1"], window_days=30, attribution="distinct_user", computed_at=NOW
    )

    metric = metrics["e1"]
    assert metric.distinct_favoriters == 2
    assert metric.distinct_high_intent_users == 1
    assert metric.distinct_query_users == 1
    assert metric.query_credit == 1.0
    assert metric.computed_at == NOW


def test_aggregate_skips_events_without_user() -> None:
    rows = [_row("e1", "favorite", None), _row("e1", "favorite", "")]

    metrics = aggregate_demand(
        rows, entity_ids=["e1"], window_days=30, attribution="distinct_user", computed_at=NOW
    )

    assert metrics["e1"].distinct_favoriters == 0
    assert not metrics["e1"].has_signal


def test_view_counts_as_high_intent_for_places_only() -> None:
    rows = [
        _row("place-1", "view", "u1", category="place"),
        _row("dish-1", "view", "u1", category="dish"),
    ]

    metrics = aggregate_demand(
        rows,
        entity_ids=["place-1", "dish-1"],
        window_days=30,
        attribution="distinct_user",
        computed_at=NOW,
    )

    assert metrics["place-1"].distinct_high_intent_users == 1
    assert metrics["dish-1"].distinct_high_intent_users == 0


def test_entities_without_events_get_zero_metrics() -> None:
    metrics = aggregate_demand(
        [], entity_ids=["e1", "e2"], window_days=7, attribution="distinct_user", computed_at=NOW
    )

    assert set(metrics) == {"e1", "e2"}
    assert metrics["e2"].window_days == 7
    assert metrics["e2"].distinct_query_users == 0


def test_split_attribution_divides_credit_by_search_fanout() -> None:
    rows = [
        _row("e1", "search", "u1", search_id="s1"),
        _row("e2", "search", "u1", search_id="s1"),
        _row("e1", "search", "u2", search_id="s2"),
        # a narrower search by the same user keeps the better share
        _row("e1", "search", "u1", search_id="s3"),
    ]

    metrics = aggregate_demand(
        rows,
        entity_ids=["e1", "e2"],
        window_days=30,
        attribution="split",
        computed_at=NOW,
        search_fanout={"s1": 2, "s2": 4, "s3": 1},
    )

    assert metrics["e1"].query_credit == pytest.approx(1.0 + 0.25)
    assert metrics["e2"].query_credit == pytest.approx(0.5)
    assert metrics["e1"].distinct_query_users == 2


def test_per_search_attribution_counts_distinct_searches() -> None:
    rows = [
        _row("e1", "search", "u1", search_id="s1"),
        _row("e1", "search", "u1", search_id="s2"),
        _row("e1", "search", "u2", search_id="s2"),
    ]

    metrics = aggregate_demand(
        rows, entity_ids=["e1"], window_days=30, attribution="per_search", computed_at=NOW
    )

    assert metrics["e1"].query_credit == 2.0
    assert metrics["e1"].distinct_query_users == 2


@pytest.mark.asyncio
async def test_refresh_metrics_batches_and_persists() -> None:
    events = _FakeEvents([_row("e1", "favorite", "u1"), _row("e3", "favorite", "u2")])
    store = _FakeMetrics()
    aggregator = SignalAggregator(SelectionConfig(), events=events, metrics=store, batch_size=2)

    metrics = await aggregator.refresh_metrics(["e3", "e1", "e2", "e1"], 30, now=NOW)

    assert events.calls == [["e1", "e2"], ["e3"]]
    assert set(metrics) == {"e1", "e2", "e3"}
    assert metrics["e1"].distinct_favoriters == 1
    assert len(store.replaced) == 3
    assert aggregator.drain_degraded() == []


@pytest.mark.asyncio
async def test_failed_batch_degrades_to_zero_metrics() -> None:
    events = _FakeEvents([_row("e1", "favorite", "u1"), _row("e3", "favorite", "u2")], fail_for={"e3"})
    store = _FakeMetrics()
    aggregator = SignalAggregator(SelectionConfig(), events=events, metrics=store, batch_size=2)

    metrics = await aggregator.refresh_metrics(["e1", "e2", "e3"], 30, now=NOW)

    assert metrics["e1"].distinct_favoriters == 1
    assert metrics["e3"].degraded is True
    assert metrics["e3"].distinct_favoriters == 0
    assert [m.entity_id for m in store.replaced] == ["e1", "e2"]
    degraded = aggregator.drain_degraded()
    assert [signal.source for signal in degraded] == ["demand_metrics"]
    assert "TransientDbError" in degraded[0].reason
    assert aggregator.degraded == []


@pytest.mark.asyncio
async def test_slow_batch_times_out_and_degrades() -> None:
    aggregator = SignalAggregator(
        SelectionConfig(),
        events=_FakeEvents(hang=True),
        metrics=_FakeMetrics(),
        read_timeout_seconds=0.01,
    )

    metrics = await aggregator.refresh_metrics(["e1"], 30, now=NOW)

    assert metrics["e1"].degraded is True
    assert [signal.source for signal in aggregator.degraded] == ["demand_metrics"]


@pytest.mark.asyncio
async def test_metric_write_failure_keeps_fresh_values() -> None:
    aggregator = SignalAggregator(
        SelectionConfig(),
        events=_FakeEvents([_row("e1", "favorite", "u1")]),
        metrics=_FakeMetrics(fail=True),
    )

    metrics = await aggregator.refresh_metrics(["e1"], 30, now=NOW)

    assert metrics["e1"].distinct_favoriters == 1
    assert metrics["e1"].degraded is False
    assert [signal.source for signal in aggregator.degraded] == ["demand_metrics_write"]


@pytest.mark.asyncio
async def test_trend_signals_degrade_per_batch() -> None:
    trend = TrendSignals(entity_id="e1", recent_query_users=3)
    aggregator = SignalAggregator(
        SelectionConfig(),
        events=_FakeEvents(trends={"e1": trend}, fail_for={"e9"}),
        metrics=_FakeMetrics(),
        batch_size=1,
    )

    trends = await aggregator.load_trend_signals(["e1", "e9"], "austin_tx_us", now=NOW)

    assert trends == {"e1": trend}
    assert [signal.source for signal in aggregator.degraded] == ["trend_signals"]
