"""
Job queue API.

Durable, tenant-owned creation and lookup of jobs. Route handlers call the
module-level helpers; the JobQueue class is exported for callers that need
their own instance.
"""

import json
import logging
import re
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from jobengine.config import get_settings
from jobengine.constants import (
    JOB_TYPE_MAX_LENGTH,
    JOB_TYPE_PATTERN,
    MAX_DELAY_SECONDS,
    MAX_MAX_ATTEMPTS,
    MAX_PAYLOAD_BYTES,
    MAX_PRIORITY,
    MAX_SCHEDULE_AHEAD_DAYS,
    MIN_MAX_ATTEMPTS,
    MIN_PRIORITY,
    PRIORITY_PAYLOAD_KEY,
    SPAN_ENQUEUE_JOB,
    JobStatus,
)
from jobengine.db import get_session_context
from jobengine.db.models import Job, as_utc, utcnow
from jobengine.db.repository import JobRepository
from jobengine.exceptions import JobValidationError, PersistenceError
from jobengine.observability.metrics import get_metrics
from jobengine.observability.tracing import get_tracer
from jobengine.types.job import EnqueueJobResult

logger = logging.getLogger(__name__)

_JOB_TYPE_RE = re.compile(JOB_TYPE_PATTERN)


def coerce_job_id(job_id: UUID | str) -> UUID | None:
    """Parse a job id, returning None for anything that is not a UUID."""
    if isinstance(job_id, UUID):
        return job_id
    try:
        return UUID(str(job_id))
    except (TypeError, ValueError):
        return None


def validate_job_type(job_type: str) -> None:
    if not isinstance(job_type, str):
        raise JobValidationError("Job type must be a string")
    if not job_type.strip():
        raise JobValidationError("Job type cannot be empty")
    if len(job_type) > JOB_TYPE_MAX_LENGTH:
        raise JobValidationError(f"Job type cannot exceed {JOB_TYPE_MAX_LENGTH} characters")
    if not _JOB_TYPE_RE.match(job_type):
        raise JobValidationError(
            "Job type can only contain alphanumeric characters, underscores, and hyphens"
        )


def validate_tenant_id(tenant_id: str) -> None:
    if not isinstance(tenant_id, str) or not tenant_id.strip():
        raise JobValidationError("tenant_id is required")


def validate_payload(payload: dict[str, Any]) -> None:
    if not isinstance(payload, dict):
        raise JobValidationError("Job payload must be an object")
    try:
        serialized = json.dumps(payload)
    except (TypeError, ValueError) as e:
        raise JobValidationError(f"Job payload is not JSON serializable: {e}") from e
    if len(serialized.encode("utf-8")) > MAX_PAYLOAD_BYTES:
        raise JobValidationError("Job payload size cannot exceed 1MB")


def validate_max_attempts(max_attempts: int) -> None:
    if isinstance(max_attempts, bool) or not isinstance(max_attempts, int):
        raise JobValidationError("max_attempts must be an integer")
    if not MIN_MAX_ATTEMPTS <= max_attempts <= MAX_MAX_ATTEMPTS:
        raise JobValidationError(
            f"max_attempts must be between {MIN_MAX_ATTEMPTS} and {MAX_MAX_ATTEMPTS}"
        )


def validate_delay(delay: float) -> None:
    if isinstance(delay, bool) or not isinstance(delay, (int, float)):
        raise JobValidationError("delay must be a number of seconds")
    if not 0 <= delay <= MAX_DELAY_SECONDS:
        raise JobValidationError(
            f"delay must be between 0 and {MAX_DELAY_SECONDS} seconds (24 hours)"
        )


def validate_priority(priority: int) -> None:
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise JobValidationError("priority must be an integer")
    if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise JobValidationError(
            f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}"
        )


def validate_scheduled_at(scheduled_at: datetime) -> None:
    if not isinstance(scheduled_at, datetime):
        raise JobValidationError("Scheduled time must be a datetime")
    if as_utc(scheduled_at) > utcnow() + timedelta(days=MAX_SCHEDULE_AHEAD_DAYS):
        raise JobValidationError("Cannot schedule jobs more than 1 year in the future")


class JobQueue:
    """
    Job queue supporting delayed and scheduled jobs with retry budgets.

    Priority is not a queue lane: it is merged into the payload for the
    handler to interpret.
    """

    def __init__(self, default_max_attempts: int | None = None):
        if default_max_attempts is None:
            default_max_attempts = get_settings().default_max_attempts
        self.default_max_attempts = default_max_attempts
        self._metrics = get_metrics()

    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any] | None = None,
        *,
        tenant_id: str,
        delay: float = 0,
        max_attempts: int | None = None,
        priority: int | None = None,
    ) -> EnqueueJobResult:
        """
        Enqueue a new job.

        Args:
            job_type: The job type identifier.
            payload: Handler input document.
            tenant_id: The owning tenant.
            delay: Seconds to wait before the job becomes due.
            max_attempts: Execution budget. Defaults to the configured value.
            priority: Optional handler-interpreted priority (0-1000).

        Returns:
            The created job's id, type, status and timestamps.

        Raises:
            JobValidationError: If any input is invalid.
            PersistenceError: If the insert fails. Not idempotent.

        Example:
            result = await queue.enqueue(
                "provision_project",
                {"project_id": "proj-123", "region": "us-east-1"},
                tenant_id="proj-123",
                delay=5,
            )
        """
        payload = {} if payload is None else payload
        max_attempts = self.default_max_attempts if max_attempts is None else max_attempts

        validate_job_type(job_type)
        validate_tenant_id(tenant_id)
        validate_payload(payload)
        validate_max_attempts(max_attempts)
        validate_delay(delay)
        if priority is not None:
            validate_priority(priority)

        scheduled_at = utcnow() + timedelta(seconds=delay)
        return await self._insert(
            job_type, payload, tenant_id, max_attempts, priority, scheduled_at
        )

    async def schedule(
        self,
        job_type: str,
        at: datetime,
        payload: dict[str, Any] | None = None,
        *,
        tenant_id: str,
        max_attempts: int | None = None,
        priority: int | None = None,
    ) -> EnqueueJobResult:
        """
        Schedule a job to become due at a specific time.

        Past instants are accepted and the job is due immediately. Naive
        datetimes are interpreted as UTC.

        Raises:
            JobValidationError: If ``at`` is not a datetime or is more than a year away.
            PersistenceError: If the insert fails.
        """
        payload = {} if payload is None else payload
        max_attempts = self.default_max_attempts if max_attempts is None else max_attempts

        validate_job_type(job_type)
        validate_tenant_id(tenant_id)
        validate_payload(payload)
        validate_scheduled_at(at)
        validate_max_attempts(max_attempts)
        if priority is not None:
            validate_priority(priority)

        return await self._insert(
            job_type, payload, tenant_id, max_attempts, priority, as_utc(at)
        )

    async def get_job(
        self,
        job_id: UUID | str,
        tenant_id: str | None = None,
    ) -> Job | None:
        """
        Get a job by ID.

        With ``tenant_id`` the lookup is scoped and a foreign job is reported
        as missing. Without it the lookup is unscoped and must only be used by
        trusted internal callers such as the worker.

        Returns:
            The Job, or None if not found. Never raises for a missing row or
            a malformed id.

        Raises:
            PersistenceError: If the store cannot be read.
        """
        parsed_id = coerce_job_id(job_id)
        if parsed_id is None:
            return None

        try:
            async with get_session_context() as session:
                repo = JobRepository(session)
                if tenant_id is None:
                    return await repo.get_job(parsed_id)
                return await repo.get_job_for_tenant(parsed_id, tenant_id)
        except SQLAlchemyError as e:
            logger.exception("Failed to retrieve job", extra={"job_id": str(parsed_id)})
            raise PersistenceError("Failed to retrieve job") from e

    async def list_jobs(
        self,
        tenant_id: str,
        status: JobStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        """List a tenant's jobs, newest first, with the total count."""
        validate_tenant_id(tenant_id)
        try:
            async with get_session_context() as session:
                return await JobRepository(session).list_jobs(
                    tenant_id, status=status, limit=limit, offset=offset
                )
        except SQLAlchemyError as e:
            logger.exception("Failed to list jobs", extra={"tenant_id": tenant_id})
            raise PersistenceError("Failed to list jobs") from e

    async def _insert(
        self,
        job_type: str,
        payload: dict[str, Any],
        tenant_id: str,
        max_attempts: int,
        priority: int | None,
        scheduled_at: datetime,
    ) -> EnqueueJobResult:
        final_payload = (
            {**payload, PRIORITY_PAYLOAD_KEY: priority} if priority is not None else payload
        )

        with get_tracer().start_as_current_span(SPAN_ENQUEUE_JOB) as span:
            span.set_attribute("job_type", job_type)
            span.set_attribute("tenant_id", tenant_id)

            try:
                async with get_session_context() as session:
                    job = await JobRepository(session).create_job(
                        tenant_id=tenant_id,
                        job_type=job_type,
                        payload=final_payload,
                        max_attempts=max_attempts,
                        scheduled_at=scheduled_at,
                    )
                    result = EnqueueJobResult.model_validate(job)
            except SQLAlchemyError as e:
                logger.exception(
                    "Failed to enqueue job",
                    extra={"job_type": job_type, "tenant_id": tenant_id},
                )
                raise PersistenceError("Failed to enqueue job") from e

        self._metrics.record_job_enqueued(job_type)
        return result


_queue: JobQueue | None = None


def get_queue() -> JobQueue:
    """Get the shared JobQueue instance."""
    global _queue
    if _queue is None:
        _queue = JobQueue()
    return _queue


async def enqueue_job(
    job_type: str,
    payload: dict[str, Any] | None = None,
    *,
    tenant_id: str,
    delay: float = 0,
    max_attempts: int | None = None,
    priority: int | None = None,
) -> EnqueueJobResult:
    """Enqueue a job on the shared queue. See JobQueue.enqueue."""
    return await get_queue().enqueue(
        job_type,
        payload,
        tenant_id=tenant_id,
        delay=delay,
        max_attempts=max_attempts,
        priority=priority,
    )


async def schedule_job(
    job_type: str,
    at: datetime,
    payload: dict[str, Any] | None = None,
    *,
    tenant_id: str,
    max_attempts: int | None = None,
    priority: int | None = None,
) -> EnqueueJobResult:
    """Schedule a job on the shared queue. See JobQueue.schedule."""
    return await get_queue().schedule(
        job_type,
        at,
        payload,
        tenant_id=tenant_id,
        max_attempts=max_attempts,
        priority=priority,
    )


async def get_job(job_id: UUID | str, tenant_id: str | None = None) -> Job | None:
    """Look up a job on the shared queue. See JobQueue.get_job."""
    return await get_queue().get_job(job_id, tenant_id)
