"""
Job retry operation.

Moves a failed job back to PENDING for its owning tenant. A job that belongs
to another tenant is reported exactly like a job that does not exist.
"""

import logging
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from jobengine.constants import SPAN_RETRY_JOB, JobStatus
from jobengine.db import get_session_context
from jobengine.db.models import Job
from jobengine.db.repository import JobRepository
from jobengine.exceptions import (
    InvalidJobStateError,
    JobNotFoundError,
    MaxAttemptsReachedError,
    PersistenceError,
)
from jobengine.observability.metrics import get_metrics
from jobengine.observability.tracing import get_tracer
from jobengine.queue import coerce_job_id

logger = logging.getLogger(__name__)


def check_retryable(job: Job | None, tenant_id: str) -> Job:
    """
    Classify a job for retry, raising the error a caller is allowed to see.

    Order matters: ownership is decided before anything that reveals job state.
    """
    if job is None or job.tenant_id != tenant_id:
        raise JobNotFoundError()
    if job.attempts >= job.max_attempts:
        raise MaxAttemptsReachedError(job.attempts, job.max_attempts)
    if job.status != JobStatus.FAILED:
        raise InvalidJobStateError(job.status.value, JobStatus.FAILED.value)
    return job


async def retry_job(job_id: UUID | str, tenant_id: str) -> Job:
    """
    Retry a failed job.

    Resets status to pending, clears the last error and execution timestamps,
    and makes the job due immediately. The attempt counter is left alone; the
    worker increments it when it claims the job.

    Args:
        job_id: The job to retry.
        tenant_id: The tenant making the request.

    Returns:
        The updated job.

    Raises:
        JobNotFoundError: The job does not exist or belongs to another tenant.
        MaxAttemptsReachedError: The job has no attempt budget left.
        InvalidJobStateError: The job is not in the failed state.
        PersistenceError: The store rejected the read or write.
    """
    parsed_id = coerce_job_id(job_id)
    if parsed_id is None:
        raise JobNotFoundError()

    with get_tracer().start_as_current_span(SPAN_RETRY_JOB) as span:
        span.set_attribute("job_id", str(parsed_id))

        try:
            async with get_session_context() as session:
                repo = JobRepository(session)

                check_retryable(await repo.get_job(parsed_id), tenant_id)

                updated = await repo.rearm_failed_job(parsed_id, tenant_id)
                if updated is None:
                    # The row changed between the read and the conditional write
                    session.expire_all()
                    current = await repo.get_job(parsed_id)
                    check_retryable(current, tenant_id)
                    raise InvalidJobStateError(
                        current.status.value, JobStatus.FAILED.value
                    )
        except SQLAlchemyError as e:
            logger.exception("Failed to retry job", extra={"job_id": str(parsed_id)})
            raise PersistenceError("Failed to retry job") from e

    get_metrics().record_job_retried()
    logger.info(
        "Job queued for retry",
        extra={"job_id": str(parsed_id), "attempts": updated.attempts},
    )
    return updated
