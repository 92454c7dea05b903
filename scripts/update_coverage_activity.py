"""Store observed posting activity for coverage areas and recompute their safe intervals."""

from __future__ import annotations

import argparse
import asyncio

from keyword_scheduler.core.database import close_db
from keyword_scheduler.core.logging import setup_logging
from keyword_scheduler.services.selection.coverage_resolver import CoverageRegistry


def parse_activity(value: str) -> tuple[str, float | None]:
    """Parse ``coverage_key=posts_per_day``; an empty rate clears the observation."""
    coverage_key, sep, rate = value.partition("=")
    if not sep or not coverage_key.strip():
        raise argparse.ArgumentTypeError(f"Expected coverage_key=posts_per_day, got {value!r}")
    if not rate.strip():
        return coverage_key.strip(), None
    try:
        return coverage_key.strip(), float(rate)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid posts per day: {rate!r}") from exc


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Build CLI parser."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "activity",
        nargs="+",
        type=parse_activity,
        help="One or more coverage_key=posts_per_day pairs.",
    )
    return parser.parse_args(argv)


async def apply_activity(
    registry: CoverageRegistry,
    activity: list[tuple[str, float | None]],
) -> dict[str, float]:
    intervals: dict[str, float] = {}
    for coverage_key, posts_per_day in activity:
        intervals[coverage_key] = await registry.update_activity(coverage_key, posts_per_day)
    return intervals


async def _run(activity: list[tuple[str, float | None]]) -> int:
    try:
        intervals = await apply_activity(CoverageRegistry(), activity)
    finally:
        await close_db()
    for coverage_key, interval in intervals.items():
        print(f"{coverage_key}: safe interval {interval:.1f} days")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging()
    return asyncio.run(_run(args.activity))


if __name__ == "__main__":
    raise SystemExit(main())
