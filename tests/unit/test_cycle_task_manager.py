"""Unit tests for the cycle queue and worker pool."""

from __future__ import annotations

import json
from typing import Any

import pytest

from keyword_scheduler.core.exceptions import ConcurrentCycleConflict, UnresolvableLocality
from keyword_scheduler.services.cycle_task_manager import (
    CYCLE_QUEUE_KEY,
    CycleQueueFullError,
    CycleTaskJob,
    CycleTaskManager,
    CycleTaskWorker,
)
from keyword_scheduler.services.selection.unmet_demand import OccurrenceResult


class _FakeQueueClient:
    def __init__(self) -> None:
        self.items: list[str] = []

    async def llen(self, key: str) -> int:
        assert key == CYCLE_QUEUE_KEY
        return len(self.items)

    async def rpush(self, key: str, payload: str) -> int:
        self.items.append(payload)
        return len(self.items)

    async def blpop(self, key: str, *, timeout: int) -> tuple[str, str] | None:
        if not self.items:
            return None
        return key, self.items.pop(0)


def _manager(queue_size: int = 10) -> tuple[CycleTaskManager, _FakeQueueClient]:
    client = _FakeQueueClient()
    return CycleTaskManager(worker_count=2, queue_size=queue_size, client=client), client


def _occurrence(hot_spike: bool) -> OccurrenceResult:
    return OccurrenceResult(
        request_id="req-1",
        normalized_term="pho",
        distinct_user_count=5,
        counted=True,
        hot_spike=hot_spike,
    )


def test_cycle_task_job_serialize_roundtrip() -> None:
    manager, _ = _manager()
    payload = manager._serialize_job(CycleTaskJob(coverage_key="austin_tx_us", source="hot_spike", attempt=3))
    decoded = manager._deserialize_job(payload)

    assert decoded == CycleTaskJob(coverage_key="austin_tx_us", source="hot_spike", attempt=3)


@pytest.mark.parametrize(
    "payload",
    [
        "not json",
        json.dumps({"source": "scheduled"}),
        json.dumps({"coverage_key": "", "source": "scheduled"}),
        json.dumps({"coverage_key": "austin_tx_us", "source": "cron"}),
    ],
)
@pytest.mark.asyncio
async def test_malformed_payloads_are_dropped(payload: str) -> None:
    manager, client = _manager()
    client.items.append(payload)

    assert await manager.pop_next(timeout_seconds=1) is None


@pytest.mark.asyncio
async def test_enqueue_respects_capacity() -> None:
    manager, client = _manager(queue_size=2)

    await manager.enqueue("a_us")
    await manager.enqueue("b_us")
    with pytest.raises(CycleQueueFullError):
        await manager.enqueue("c_us")

    assert await manager.get_queue_size() == 2
    job = await manager.pop_next(timeout_seconds=1)
    assert job == CycleTaskJob(coverage_key="a_us", source="scheduled")


@pytest.mark.asyncio
async def test_hot_spike_enqueues_only_flagged_occurrences() -> None:
    manager, client = _manager(queue_size=1)
    await manager.enqueue("austin_tx_us")

    assert await manager.enqueue_hot_spike(_occurrence(False), "austin_tx_us") is False
    assert await manager.enqueue_hot_spike(_occurrence(True), "austin_tx_us") is True

    # spike jobs bypass the capacity cap
    assert len(client.items) == 2
    assert json.loads(client.items[1])["source"] == "hot_spike"


@pytest.mark.asyncio
async def test_requeue_increments_attempt() -> None:
    manager, client = _manager()

    await manager.requeue(CycleTaskJob(coverage_key="austin_tx_us", source="scheduled", attempt=2))

    assert json.loads(client.items[0])["attempt"] == 3


class _FakeManager:
    worker_count = 1

    def __init__(self, job: CycleTaskJob) -> None:
        self._job = job
        self.requeued: list[CycleTaskJob] = []
        self._popped = False

    async def pop_next(self, *, timeout_seconds: int = 5) -> CycleTaskJob | None:
        if self._popped:
            return None
        self._popped = True
        return self._job

    async def requeue(self, job: CycleTaskJob) -> None:
        self.requeued.append(job)


class _FlakyDequeueManager(_FakeManager):
    def __init__(self, job: CycleTaskJob) -> None:
        super().__init__(job)
        self._raised = False

    async def pop_next(self, *, timeout_seconds: int = 5) -> CycleTaskJob | None:
        if not self._raised:
            self._raised = True
            raise RuntimeError("temporary dequeue failure")
        return await super().pop_next(timeout_seconds=timeout_seconds)


@pytest.mark.asyncio
async def test_worker_requeues_when_coverage_area_is_busy(monkeypatch: Any) -> None:
    manager = _FakeManager(CycleTaskJob(coverage_key="austin_tx_us", source="scheduled"))
    worker = CycleTaskWorker(manager=manager, poll_timeout_seconds=1, requeue_delay_seconds=0.1)

    async def _fake_execute(job: CycleTaskJob) -> None:
        worker._stopping.set()
        raise ConcurrentCycleConflict(job.coverage_key)

    monkeypatch.setattr(worker, "_execute", _fake_execute)

    await worker._worker_loop(worker_index=1)

    assert [job.coverage_key for job in manager.requeued] == ["austin_tx_us"]


@pytest.mark.asyncio
async def test_worker_drops_job_after_max_conflict_requeues(monkeypatch: Any) -> None:
    manager = _FakeManager(CycleTaskJob(coverage_key="austin_tx_us", source="scheduled", attempt=3))
    worker = CycleTaskWorker(manager=manager, poll_timeout_seconds=1, max_conflict_requeues=2)

    async def _fake_execute(job: CycleTaskJob) -> None:
        worker._stopping.set()
        raise ConcurrentCycleConflict(job.coverage_key)

    monkeypatch.setattr(worker, "_execute", _fake_execute)

    await worker._worker_loop(worker_index=1)

    assert manager.requeued == []


@pytest.mark.asyncio
async def test_worker_does_not_requeue_aborted_cycles(monkeypatch: Any) -> None:
    manager = _FakeManager(CycleTaskJob(coverage_key="nowhere", source="scheduled"))
    worker = CycleTaskWorker(manager=manager, poll_timeout_seconds=1)

    async def _fake_execute(job: CycleTaskJob) -> None:
        worker._stopping.set()
        raise UnresolvableLocality("coverage_key=nowhere")

    monkeypatch.setattr(worker, "_execute", _fake_execute)

    await worker._worker_loop(worker_index=1)

    assert manager.requeued == []


@pytest.mark.asyncio
async def test_worker_recovers_from_dequeue_error(monkeypatch: Any) -> None:
    manager = _FlakyDequeueManager(CycleTaskJob(coverage_key="austin_tx_us", source="manual"))
    worker = CycleTaskWorker(manager=manager, poll_timeout_seconds=1, requeue_delay_seconds=0.1)
    executed: list[CycleTaskJob] = []

    async def _fake_execute(job: CycleTaskJob) -> None:
        executed.append(job)
        worker._stopping.set()

    monkeypatch.setattr(worker, "_execute", _fake_execute)

    await worker._worker_loop(worker_index=1)

    assert [job.source for job in executed] == ["manual"]


@pytest.mark.asyncio
async def test_worker_reuses_one_coverage_resolver_across_jobs(monkeypatch: Any) -> None:
    built: list[object] = []
    resolvers_seen: list[object] = []
    cycles: list[tuple[str, str]] = []

    def _fake_build_resolver() -> object:
        resolver = object()
        built.append(resolver)
        return resolver

    class _FakeScheduler:
        def __init__(self, *, resolver: object) -> None:
            resolvers_seen.append(resolver)

        async def run_cycle(self, coverage_key: str, source: str, *, cancel_event: Any) -> None:
            cycles.append((coverage_key, source))

    monkeypatch.setattr(
        "keyword_scheduler.services.selection.cycle_scheduler.build_coverage_resolver",
        _fake_build_resolver,
    )
    monkeypatch.setattr("keyword_scheduler.services.selection.cycle_scheduler.CycleScheduler", _FakeScheduler)
    manager, _ = _manager()
    worker = CycleTaskWorker(manager=manager)

    await worker._execute(CycleTaskJob(coverage_key="austin_tx_us", source="scheduled"))
    await worker._execute(CycleTaskJob(coverage_key="denver_co_us", source="manual"))

    assert len(built) == 1
    assert resolvers_seen == [built[0], built[0]]
    assert cycles == [("austin_tx_us", "scheduled"), ("denver_co_us", "manual")]
