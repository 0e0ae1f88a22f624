#!/usr/bin/env python3
"""
Standalone sync worker.

Runs the worker pool outside the API process. Several of these may run
against the same database; leases keep them from processing the same job.

Usage:
    python scripts/run_worker.py --concurrency 4
    python scripts/run_worker.py --once --batch-size 10
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path

# Allow running from a source checkout without installing
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from qbosync.services import build_sync_services  # noqa: E402
from qbosync.utils.logging import configure_logging, get_logger  # noqa: E402

logger = get_logger("run_worker")


async def run_once(batch_size: int) -> int:
    services = build_sync_services()
    try:
        await services.refresher.refresh_due_connections()
        services.queue.release_expired_leases()
        jobs = await services.worker().run_once(batch_size)
    finally:
        await services.aclose()
    logger.info("worker_single_pass_complete", processed=len(jobs))
    return len(jobs)


async def run_forever(concurrency: int, owner: str | None) -> None:
    services = build_sync_services()
    pool = services.worker_pool(concurrency=concurrency, owner=owner)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await pool.start()
    try:
        await stop.wait()
    finally:
        await pool.stop()
        await services.aclose()


def main() -> int:
    """Main entry point for the worker script."""
    parser = argparse.ArgumentParser(description="Drain the QuickBooks sync queue")
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Polling workers (default: WORKER_CONCURRENCY)",
    )
    parser.add_argument(
        "--owner",
        type=str,
        default=None,
        help="Lease owner prefix (default: host:pid:random)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        default=False,
        help="Process a single batch and exit",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=25,
        help="Jobs claimed by --once (default: 25)",
    )

    args = parser.parse_args()
    configure_logging()

    if args.once:
        asyncio.run(run_once(args.batch_size))
    else:
        logger.info("worker_starting", concurrency=args.concurrency, owner=args.owner)
        asyncio.run(run_forever(args.concurrency, args.owner))
    return 0


if __name__ == "__main__":
    sys.exit(main())
