"""Enqueue scheduled cycles for every executable coverage area that is due."""

from __future__ import annotations

import argparse
import asyncio
import logging
from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta, timezone

from keyword_scheduler.config import settings
from keyword_scheduler.core.database import close_db
from keyword_scheduler.core.logging import setup_logging
from keyword_scheduler.core.redis import close_redis
from keyword_scheduler.repositories.coverage_repository import CoverageRepository
from keyword_scheduler.repositories.cycle_record_repository import CycleRecordRepository
from keyword_scheduler.services.cycle_task_manager import (
    CycleQueueFullError,
    CycleTaskManager,
    get_cycle_task_manager,
)
from keyword_scheduler.services.selection.types import CoverageAreaView

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Build CLI parser."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--interval-hours",
        type=float,
        default=float(settings.cycle_interval_hours),
        help="Minimum hours since the last finished cycle.",
    )
    parser.add_argument("--dry-run", action="store_true", help="List due areas without enqueueing.")
    return parser.parse_args(argv)


def select_due_areas(
    areas: Sequence[CoverageAreaView],
    last_finished: Mapping[str, datetime],
    *,
    now: datetime,
    interval: timedelta,
) -> list[str]:
    """Executable areas whose last cycle is older than ``interval`` (or never ran)."""
    due: list[str] = []
    for area in areas:
        if not area.is_executable:
            continue
        finished_at = last_finished.get(area.coverage_key)
        if finished_at is None or now - finished_at >= interval:
            due.append(area.coverage_key)
    return due


async def enqueue_due(
    manager: CycleTaskManager,
    coverage_keys: Sequence[str],
) -> int:
    queued = 0
    for coverage_key in coverage_keys:
        try:
            await manager.enqueue(coverage_key, "scheduled")
        except CycleQueueFullError:
            logger.warning(
                "Cycle queue full, stopping enqueue pass",
                extra={"queued": queued, "remaining": len(coverage_keys) - queued},
            )
            break
        queued += 1
    return queued


async def _run(*, interval_hours: float, dry_run: bool) -> int:
    try:
        areas = await CoverageRepository().list_active()
        last_finished = await CycleRecordRepository().latest_finished_by_coverage()
        due = select_due_areas(
            areas,
            last_finished,
            now=datetime.now(timezone.utc),
            interval=timedelta(hours=interval_hours),
        )
        if dry_run:
            for coverage_key in due:
                print(coverage_key)
            return 0
        queued = await enqueue_due(get_cycle_task_manager(), due)
        logger.info("Scheduled cycles enqueued", extra={"due": len(due), "queued": queued})
        return 0
    finally:
        await close_redis()
        await close_db()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging()
    return asyncio.run(_run(interval_hours=args.interval_hours, dry_run=args.dry_run))


if __name__ == "__main__":
    raise SystemExit(main())
