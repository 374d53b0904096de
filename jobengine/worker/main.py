"""
Worker process for executing jobs.

The worker claims due jobs from the store, executes them through the handler
registry, and records the outcome: completed, re-armed with backoff, or
failed once the attempt budget is spent.
"""

import asyncio
import logging
import os
import signal
import time
from datetime import timedelta
from uuid import UUID

import jobengine.webhooks  # noqa: F401  registers deliver_webhook
from jobengine.backoff import BackoffPolicy
from jobengine.config import get_settings
from jobengine.constants import SPAN_CLAIM_JOBS, SPAN_EXECUTE_JOB, JobStatus, JobType
from jobengine.db import close_db, get_engine, get_session_context, init_db
from jobengine.db.models import Job
from jobengine.db.repository import JobRepository
from jobengine.observability.logging import bind_context, clear_context, setup_logging
from jobengine.observability.metrics import get_metrics
from jobengine.observability.tracing import get_tracer, instrument_sqlalchemy, setup_tracing
from jobengine.types.job import JobContext, JobResult
from jobengine.worker.handlers import execute_job, validate_required_handlers

logger = logging.getLogger(__name__)

REQUIRED_JOB_TYPES = (JobType.DELIVER_WEBHOOK,)


class Worker:
    """
    Job worker that polls for and executes jobs.

    Features:
    - Atomic claiming using FOR UPDATE SKIP LOCKED
    - Exponential backoff between retryable attempts
    - Graceful shutdown on SIGTERM/SIGINT
    """

    def __init__(
        self,
        worker_id: str | None = None,
        batch_size: int | None = None,
        poll_interval: float | None = None,
        retry_backoff: BackoffPolicy | None = None,
    ):
        """
        Initialize the worker.

        Args:
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            batch_size: Number of jobs to claim per poll.
            poll_interval: Seconds between polls when queue is empty.
            retry_backoff: Delay policy for re-armed jobs.
        """
        settings = get_settings()

        self.worker_id = (
            worker_id or settings.worker_id or f"{os.uname().nodename}-{os.getpid()}"
        )
        self.batch_size = batch_size or settings.worker_batch_size
        self.poll_interval = (
            settings.worker_poll_interval_seconds if poll_interval is None else poll_interval
        )
        self.retry_backoff = retry_backoff or BackoffPolicy(
            initial_delay=settings.job_retry_initial_delay_seconds,
            multiplier=2.0,
            max_delay=settings.job_retry_max_delay_seconds,
        )

        self._running = False
        self._current_jobs: dict[UUID, asyncio.Task] = {}
        self._metrics = get_metrics()

    async def start(self) -> None:
        """Start the worker."""
        validate_required_handlers(REQUIRED_JOB_TYPES)

        logger.info(
            "Worker starting",
            extra={"worker_id": self.worker_id, "batch_size": self.batch_size},
        )

        self._running = True

        while self._running:
            try:
                jobs_processed = await self._poll_and_execute()

                if jobs_processed == 0:
                    await asyncio.sleep(self.poll_interval)

            except Exception as e:
                logger.exception(
                    f"Error in worker loop: {e}",
                    extra={"worker_id": self.worker_id},
                )
                await asyncio.sleep(self.poll_interval)

        if self._current_jobs:
            logger.info(f"Waiting for {len(self._current_jobs)} jobs to complete")
            await asyncio.gather(*self._current_jobs.values(), return_exceptions=True)

        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._running = False

    async def _poll_and_execute(self) -> int:
        """
        Claim due jobs and execute them.

        Returns:
            Number of jobs processed.
        """
        with get_tracer().start_as_current_span(SPAN_CLAIM_JOBS):
            async with get_session_context() as session:
                jobs = await JobRepository(session).claim_due_jobs(
                    worker_id=self.worker_id,
                    batch_size=self.batch_size,
                )

        if not jobs:
            return 0

        self._metrics.record_jobs_claimed(self.worker_id, len(jobs))

        tasks = []
        for job in jobs:
            task = asyncio.create_task(self._execute_job(job))
            self._current_jobs[job.id] = task
            tasks.append(task)

        await asyncio.gather(*tasks, return_exceptions=True)

        return len(jobs)

    async def _execute_job(self, job: Job) -> None:
        """
        Execute a single claimed job and record its outcome.

        The job is already RUNNING with its attempt counted.
        """
        start_time = time.monotonic()
        job_id = job.id

        bind_context(job_id=str(job_id), tenant_id=job.tenant_id, job_type=job.type)
        try:
            context = JobContext(
                job_id=job_id,
                tenant_id=job.tenant_id,
                job_type=job.type,
                attempt=job.attempts,
                max_attempts=job.max_attempts,
                payload=dict(job.payload or {}),
                worker_id=self.worker_id,
            )

            logger.info(
                "Executing job",
                extra={"attempt": context.attempt, "max_attempts": context.max_attempts},
            )

            with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                span.set_attribute("job_id", str(job_id))
                span.set_attribute("job_type", job.type)
                span.set_attribute("attempt", context.attempt)

                result = await execute_job(context)

                span.set_attribute("success", result.success)

            await self._record_result(job, result, time.monotonic() - start_time)

        except Exception as e:
            logger.exception("Exception executing job", extra={"error": str(e)})

            try:
                async with get_session_context() as session:
                    await JobRepository(session).fail_job(
                        job_id=job_id,
                        error=f"Worker exception: {str(e)}",
                        retry_delay=self._retry_delay(job.attempts),
                        claimed_attempts=job.attempts,
                    )
            except Exception:
                logger.exception("Failed to mark job as failed")

        finally:
            self._current_jobs.pop(job_id, None)
            clear_context()

    async def _record_result(self, job: Job, result: JobResult, duration: float) -> None:
        async with get_session_context() as session:
            repo = JobRepository(session)

            if result.success:
                updated = await repo.complete_job(job.id, claimed_attempts=job.attempts)
            else:
                updated = await repo.fail_job(
                    job_id=job.id,
                    error=result.error or "Unknown error",
                    retry_delay=self._retry_delay(job.attempts),
                    retryable=result.retryable,
                    claimed_attempts=job.attempts,
                )

        if updated is None:
            logger.warning("Job was no longer held by this claim when its result arrived")
            return

        if result.success:
            logger.info("Job completed", extra={"duration": f"{duration:.2f}s"})
        else:
            logger.warning(
                "Job attempt failed",
                extra={
                    "error": result.error,
                    "attempt": job.attempts,
                    "status": updated.status.value,
                },
            )
            if updated.status == JobStatus.PENDING:
                logger.info(
                    "Job scheduled for retry",
                    extra={"scheduled_at": updated.scheduled_at.isoformat()},
                )

        self._metrics.record_job_finished(
            job_type=job.type,
            status=updated.status.value,
            duration_seconds=duration,
        )

    def _retry_delay(self, attempt: int) -> timedelta:
        return timedelta(seconds=self.retry_backoff.delay_for(attempt))


async def run_async() -> None:
    """Run the worker asynchronously."""
    setup_logging()
    setup_tracing()
    await init_db()

    settings = get_settings()
    if settings.otel_enabled:
        instrument_sqlalchemy(get_engine().sync_engine)
    if settings.metrics_port:
        get_metrics().start_server(settings.metrics_port)

    worker = Worker()

    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(worker.stop()),
        )

    try:
        await worker.start()
    finally:
        await close_db()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
