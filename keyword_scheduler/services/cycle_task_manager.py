"""Redis-backed queueing for keyword selection cycles."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from keyword_scheduler.config import settings
from keyword_scheduler.core.exceptions import ConcurrentCycleConflict, CycleAbortedError
from keyword_scheduler.core.redis import RedisQueueClient, get_redis_queue_client
from keyword_scheduler.services.selection.types import CYCLE_SOURCES, CycleSource
from keyword_scheduler.services.selection.unmet_demand import OccurrenceResult

if TYPE_CHECKING:
    from keyword_scheduler.services.selection.coverage_resolver import CoverageResolver

logger = logging.getLogger(__name__)

CYCLE_QUEUE_KEY = "keyword:cycle-queue"


@dataclass(slots=True)
class CycleTaskJob:
    """Queued cycle request for one coverage area."""

    coverage_key: str
    source: CycleSource
    attempt: int = 1


class CycleQueueFullError(RuntimeError):
    """Raised when the cycle queue is full."""


class CycleTaskManager:
    """Enqueue/dequeue manager for cycle jobs."""

    def __init__(
        self,
        *,
        worker_count: int,
        queue_size: int,
        client: RedisQueueClient | None = None,
    ) -> None:
        self._worker_count = max(1, worker_count)
        self._queue_size_limit = max(1, queue_size)
        self._redis = client or get_redis_queue_client()

    @property
    def worker_count(self) -> int:
        return self._worker_count

    @property
    def queue_size_limit(self) -> int:
        return self._queue_size_limit

    async def get_queue_size(self) -> int:
        """Get current queue length from Redis."""
        return await self._redis.llen(CYCLE_QUEUE_KEY)

    async def enqueue(self, coverage_key: str, source: CycleSource = "scheduled") -> None:
        """Queue a cycle for ``coverage_key``."""
        await self._enqueue(CycleTaskJob(coverage_key=coverage_key, source=source), enforce_capacity=True)

    async def enqueue_hot_spike(self, occurrence: OccurrenceResult, coverage_key: str) -> bool:
        """Queue a ``hot_spike`` cycle when an occurrence crossed the spike threshold."""
        if not occurrence.hot_spike:
            return False
        await self._enqueue(
            CycleTaskJob(coverage_key=coverage_key, source="hot_spike"),
            enforce_capacity=False,
        )
        return True

    async def requeue(self, job: CycleTaskJob) -> None:
        """Requeue a job without hard-failing on the configured queue cap."""
        await self._enqueue(
            CycleTaskJob(coverage_key=job.coverage_key, source=job.source, attempt=job.attempt + 1),
            enforce_capacity=False,
        )

    async def _enqueue(self, job: CycleTaskJob, *, enforce_capacity: bool) -> None:
        if enforce_capacity:
            pending = await self._redis.llen(CYCLE_QUEUE_KEY)
            if pending >= self._queue_size_limit:
                raise CycleQueueFullError("Cycle task queue is full")
        queue_size = await self._redis.rpush(CYCLE_QUEUE_KEY, self._serialize_job(job))
        logger.info(
            "Cycle task queued",
            extra={
                "coverage_key": job.coverage_key,
                "source": job.source,
                "attempt": job.attempt,
                "queue_size": queue_size,
            },
        )

    async def pop_next(self, *, timeout_seconds: int = 5) -> CycleTaskJob | None:
        """Pop the next queued job."""
        timeout = max(1, int(timeout_seconds))
        popped = await self._redis.blpop(CYCLE_QUEUE_KEY, timeout=timeout)
        if not popped:
            return None
        _, payload = popped
        try:
            return self._deserialize_job(payload)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning("Dropping malformed cycle job payload", extra={"payload": payload})
            return None

    @staticmethod
    def _serialize_job(job: CycleTaskJob) -> str:
        return json.dumps(
            {"coverage_key": job.coverage_key, "source": job.source, "attempt": job.attempt},
            separators=(",", ":"),
        )

    @staticmethod
    def _deserialize_job(payload: str) -> CycleTaskJob:
        data = json.loads(payload)
        coverage_key = data["coverage_key"]
        source = data["source"]
        attempt = int(data.get("attempt", 1))
        if not isinstance(coverage_key, str) or not coverage_key:
            raise ValueError("Invalid coverage_key")
        if source not in CYCLE_SOURCES:
            raise ValueError("Invalid cycle source")
        return CycleTaskJob(coverage_key=coverage_key, source=source, attempt=max(1, attempt))


class CycleTaskWorker:
    """Async worker pool consuming cycle jobs."""

    def __init__(
        self,
        *,
        manager: CycleTaskManager,
        poll_timeout_seconds: int = 5,
        requeue_delay_seconds: float = 1.0,
        max_conflict_requeues: int = 5,
        resolver: CoverageResolver | None = None,
    ) -> None:
        self.manager = manager
        self._resolver = resolver
        self.poll_timeout_seconds = max(1, int(poll_timeout_seconds))
        self.requeue_delay_seconds = max(0.1, float(requeue_delay_seconds))
        self.max_conflict_requeues = max(0, max_conflict_requeues)
        self._workers: list[asyncio.Task[None]] = []
        self._stopping = asyncio.Event()

    async def start(self) -> None:
        """Start worker tasks if not already running."""
        if self._workers:
            return
        self._stopping.clear()
        self._workers = [
            asyncio.create_task(self._worker_loop(index + 1), name=f"cycle-worker-{index + 1}")
            for index in range(self.manager.worker_count)
        ]
        logger.info("Cycle worker pool started", extra={"worker_count": self.manager.worker_count})

    async def stop(self) -> None:
        """Stop worker tasks."""
        if not self._workers:
            return
        self._stopping.set()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Cycle worker pool stopped")

    async def _worker_loop(self, worker_index: int) -> None:
        logger.info("Cycle worker started", extra={"worker_index": worker_index})
        try:
            while not self._stopping.is_set():
                try:
                    job = await self.manager.pop_next(timeout_seconds=self.poll_timeout_seconds)
                except Exception:
                    logger.exception("Cycle dequeue failed", extra={"worker_index": worker_index})
                    await asyncio.sleep(self.requeue_delay_seconds)
                    continue
                if job is None:
                    continue
                await self._handle(job, worker_index)
        except asyncio.CancelledError:
            pass
        finally:
            logger.info("Cycle worker stopped", extra={"worker_index": worker_index})

    async def _handle(self, job: CycleTaskJob, worker_index: int) -> None:
        context = {
            "coverage_key": job.coverage_key,
            "source": job.source,
            "attempt": job.attempt,
            "worker_index": worker_index,
        }
        try:
            await self._execute(job)
        except ConcurrentCycleConflict:
            if job.attempt > self.max_conflict_requeues:
                logger.warning("Coverage area still busy, dropping cycle job", extra=context)
                return
            logger.info("Coverage area busy, requeueing cycle job", extra=context)
            await asyncio.sleep(self.requeue_delay_seconds)
            await self.manager.requeue(job)
        except CycleAbortedError as exc:
            logger.warning("Cycle aborted", extra={**context, "reason": exc.message})
        except Exception:
            logger.exception("Cycle worker job failed", extra=context)

    async def _execute(self, job: CycleTaskJob) -> None:
        # Imported lazily so queue producers do not load the scheduling stack.
        from keyword_scheduler.services.selection.cycle_scheduler import (
            CycleScheduler,
            build_coverage_resolver,
        )

        # One resolver per pool so its area cache outlives individual jobs.
        if self._resolver is None:
            self._resolver = build_coverage_resolver()
        scheduler = CycleScheduler(resolver=self._resolver)
        await scheduler.run_cycle(job.coverage_key, job.source, cancel_event=self._stopping)


_cycle_task_manager: CycleTaskManager | None = None


def get_cycle_task_manager() -> CycleTaskManager:
    """Get singleton cycle task manager."""
    global _cycle_task_manager
    if _cycle_task_manager is None:
        _cycle_task_manager = CycleTaskManager(
            worker_count=settings.cycle_worker_count,
            queue_size=settings.cycle_queue_size,
        )
    return _cycle_task_manager
