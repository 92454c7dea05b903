"""Apply the retention policy to per-user unmet-demand contributions."""

from __future__ import annotations

import argparse
import asyncio

from keyword_scheduler.config import settings
from keyword_scheduler.core.database import close_db
from keyword_scheduler.core.logging import setup_logging
from keyword_scheduler.services.selection.selection_config import SelectionConfig
from keyword_scheduler.services.selection.unmet_demand import UnmetDemandTracker


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Build CLI parser."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--retention-days",
        type=int,
        default=settings.contribution_retention_days,
        help="Delete contributions older than this many days.",
    )
    return parser.parse_args(argv)


async def _run(retention_days: int) -> int:
    tracker = UnmetDemandTracker(SelectionConfig.from_settings(settings))
    try:
        deleted = await tracker.prune_contributions(retention_days)
    finally:
        await close_db()
    print(f"Pruned {deleted} unmet demand contributions older than {retention_days} days")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging()
    return asyncio.run(_run(args.retention_days))


if __name__ == "__main__":
    raise SystemExit(main())
