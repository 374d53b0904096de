"""
Stale job reaper.

A worker that crashes mid-execution leaves its job RUNNING forever. The
reaper runs periodically, finds jobs that have been running longer than the
configured timeout, and re-arms them (or fails them when the attempt budget
is spent).
"""

import asyncio
import logging
import signal
from datetime import timedelta

from jobengine.config import get_settings
from jobengine.db import close_db, get_session_context, init_db
from jobengine.db.repository import JobRepository
from jobengine.observability.logging import setup_logging
from jobengine.observability.metrics import get_metrics

logger = logging.getLogger(__name__)


class Reaper:
    """
    Stale job reaper.

    Runs periodically to:
    1. Find RUNNING jobs started before now - job_timeout
    2. Return them to PENDING, or FAILED when no attempts remain
    3. Record metrics for monitoring
    """

    def __init__(
        self,
        interval_seconds: int | None = None,
        job_timeout_seconds: int | None = None,
    ):
        """
        Initialize the reaper.

        Args:
            interval_seconds: Seconds between reaper runs.
            job_timeout_seconds: Seconds a job may stay RUNNING.
        """
        settings = get_settings()
        if interval_seconds is None:
            interval_seconds = settings.reaper_interval_seconds
        if job_timeout_seconds is None:
            job_timeout_seconds = settings.worker_job_timeout_seconds
        self.interval = interval_seconds
        self.job_timeout = timedelta(seconds=job_timeout_seconds)
        self._running = False
        self._metrics = get_metrics()

    async def start(self) -> None:
        """Start the reaper loop."""
        logger.info(f"Reaper starting with interval {self.interval}s")
        self._running = True

        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            await asyncio.sleep(self.interval)

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._running = False

    async def run_once(self) -> int:
        """
        Run the reaper once (for testing or cron-style execution).

        Returns:
            Number of jobs recovered.
        """
        async with get_session_context() as session:
            repo = JobRepository(session)
            rearmed, failed = await repo.recover_stale_jobs(self.job_timeout)
            depth = await repo.get_queue_depth()

        self._metrics.update_queue_depth("all", depth)

        if rearmed or failed:
            self._metrics.record_stale_jobs(rearmed, failed)
            logger.info(
                f"Recovered {rearmed + failed} stale jobs",
                extra={"rearmed": rearmed, "failed": failed},
            )

        return rearmed + failed


async def run_async() -> None:
    """Run the reaper asynchronously."""
    setup_logging()
    await init_db()

    settings = get_settings()
    if settings.metrics_port:
        get_metrics().start_server(settings.metrics_port)

    reaper = Reaper()

    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(reaper.stop()),
        )

    try:
        await reaper.start()
    finally:
        await close_db()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
