"""Record an unmet search term for a user and enqueue a hot-spike cycle when it trends."""

from __future__ import annotations

import argparse
import asyncio
import logging

from keyword_scheduler.config import settings
from keyword_scheduler.core.database import close_db
from keyword_scheduler.core.logging import setup_logging
from keyword_scheduler.core.redis import close_redis
from keyword_scheduler.services.cycle_task_manager import CycleTaskManager, get_cycle_task_manager
from keyword_scheduler.services.selection.selection_config import SelectionConfig
from keyword_scheduler.services.selection.types import UNMET_REASONS
from keyword_scheduler.services.selection.unmet_demand import OccurrenceResult, UnmetDemandTracker

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Build CLI parser."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("term", help="Raw term as the user typed it.")
    parser.add_argument("--coverage-key", required=True)
    parser.add_argument("--reason", choices=sorted(UNMET_REASONS), default="unresolved")
    parser.add_argument("--user", default=None, help="User identity; omit for anonymous requests.")
    parser.add_argument(
        "--linked-entity",
        default=None,
        help="Entity the term matched (low_result only).",
    )
    return parser.parse_args(argv)


async def record_and_enqueue(
    tracker: UnmetDemandTracker,
    manager: CycleTaskManager,
    args: argparse.Namespace,
) -> tuple[OccurrenceResult, bool]:
    occurrence = await tracker.record_occurrence(
        args.term,
        args.reason,
        args.coverage_key,
        args.user,
        linked_entity_id=args.linked_entity,
    )
    queued = await manager.enqueue_hot_spike(occurrence, args.coverage_key)
    if queued:
        logger.info(
            "Hot spike cycle enqueued",
            extra={"coverage_key": args.coverage_key, "normalized_term": occurrence.normalized_term},
        )
    return occurrence, queued


async def _run(args: argparse.Namespace) -> int:
    tracker = UnmetDemandTracker(SelectionConfig.from_settings(settings))
    try:
        occurrence, queued = await record_and_enqueue(tracker, get_cycle_task_manager(), args)
    finally:
        await close_redis()
        await close_db()
    print(
        f"{occurrence.normalized_term}: {occurrence.distinct_user_count} distinct users"
        f"{' (hot spike cycle queued)' if queued else ''}"
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging()
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
