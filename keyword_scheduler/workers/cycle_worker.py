"""Cycle queue worker process entrypoint."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from contextlib import suppress

from keyword_scheduler.core.database import close_db
from keyword_scheduler.core.logging import setup_logging
from keyword_scheduler.core.redis import close_redis
from keyword_scheduler.services.cycle_task_manager import CycleTaskWorker, get_cycle_task_manager

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--poll-timeout",
        type=int,
        default=5,
        help="Redis blocking-pop timeout (seconds).",
    )
    parser.add_argument(
        "--requeue-delay",
        type=float,
        default=1.0,
        help="Delay before requeue when the coverage area is already running a cycle.",
    )
    parser.add_argument(
        "--max-requeues",
        type=int,
        default=5,
        help="Drop a job after this many busy-lease requeues.",
    )
    return parser.parse_args(argv)


async def run_workers(*, poll_timeout: int, requeue_delay: float, max_requeues: int) -> None:
    """Start workers and block until a shutdown signal arrives."""
    setup_logging()

    manager = get_cycle_task_manager()
    worker = CycleTaskWorker(
        manager=manager,
        poll_timeout_seconds=poll_timeout,
        requeue_delay_seconds=requeue_delay,
        max_conflict_requeues=max_requeues,
    )
    await worker.start()
    logger.info("Cycle worker process started", extra={"worker_count": manager.worker_count})

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _request_stop() -> None:
        if not stop_event.is_set():
            logger.info("Shutdown signal received")
            stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, _request_stop)

    try:
        await stop_event.wait()
    finally:
        logger.info("Stopping cycle worker process")
        await worker.stop()
        await close_redis()
        await close_db()


def main(argv: list[str] | None = None) -> int:
    """Run the worker process."""
    args = parse_args(argv)
    try:
        asyncio.run(
            run_workers(
                poll_timeout=args.poll_timeout,
                requeue_delay=args.requeue_delay,
                max_requeues=args.max_requeues,
            )
        )
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
