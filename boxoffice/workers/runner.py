"""
Standalone scheduler process.

Runs the background jobs outside the API process, until SIGINT/SIGTERM.
"""
import asyncio
import signal
from typing import List, Optional

from boxoffice.config import get_settings
from boxoffice.database.connection import close_db
from boxoffice.monitoring.logging import get_logger, setup_logging
from boxoffice.services import build_container

logger = get_logger(__name__)


async def start_scheduler_worker(run_once: Optional[str] = None) -> None:
    """
    Start the scheduler and block until a shutdown signal.

    Args:
        run_once: Run this job a single time and exit instead of scheduling
    """
    settings = get_settings()
    setup_logging(settings)
    container = build_container(settings)
    scheduler = container.scheduler

    logger.info("scheduler_worker_starting", timezone=settings.tz, run_once=run_once)

    try:
        if run_once:
            job = await scheduler.run_job(run_once)
            logger.info("scheduler_worker_job_finished", job=job.name, error=job.last_error)
            return

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        scheduler.start()
        await stop_event.wait()
        logger.info("scheduler_worker_shutdown_signal_received")
    finally:
        await container.close()
        await close_db()
        logger.info("scheduler_worker_stopped")


def main(argv: Optional[List[str]] = None) -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Box office background job scheduler")
    parser.add_argument(
        "--run-once",
        metavar="JOB",
        default=None,
        help="Run a single job now and exit (e.g. pending_payment_check)",
    )
    args = parser.parse_args(argv)

    asyncio.run(start_scheduler_worker(run_once=args.run_once))


if __name__ == "__main__":
    main()
