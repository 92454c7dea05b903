"""Run a single manual keyword selection cycle and print its summary."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from keyword_scheduler.core.database import close_db
from keyword_scheduler.core.exceptions import CycleAbortedError
from keyword_scheduler.core.logging import setup_logging
from keyword_scheduler.core.redis import close_redis
from keyword_scheduler.services.selection.cycle_scheduler import CycleScheduler, summarize_record
from keyword_scheduler.services.selection.types import LocalityHint

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Build CLI parser."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--coverage-key", help="Known coverage key to run.")
    parser.add_argument("--lat", type=float, help="Latitude of the locality hint.")
    parser.add_argument("--lng", type=float, help="Longitude of the locality hint.")
    parser.add_argument("--locality", help="Locality (city) name.")
    parser.add_argument("--region", help="Region/state name.")
    parser.add_argument("--country", help="Country name or code.")
    return parser.parse_args(argv)


def build_hint(args: argparse.Namespace) -> LocalityHint:
    """Build a locality hint from CLI arguments."""
    return LocalityHint(
        coverage_key=args.coverage_key or None,
        latitude=args.lat,
        longitude=args.lng,
        locality=args.locality,
        region=args.region,
        country=args.country,
    )


async def _run(hint: LocalityHint) -> int:
    try:
        record = await CycleScheduler().run_cycle(hint, "manual")
    except CycleAbortedError as exc:
        print(json.dumps({"aborted": type(exc).__name__, **exc.details}, indent=2), file=sys.stderr)
        return 1
    finally:
        await close_redis()
        await close_db()
    print(json.dumps(summarize_record(record), indent=2, default=str))
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging()
    return asyncio.run(_run(build_hint(args)))


if __name__ == "__main__":
    raise SystemExit(main())
