"""
Job repository for database operations.
Implements the core data access patterns for job management.
"""

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobengine.constants import JobStatus, STALE_JOB_ERROR
from jobengine.db.models import Job, utcnow

logger = logging.getLogger(__name__)


def _running_claim(job_id: UUID, claimed_attempts: int | None):
    condition = and_(Job.id == job_id, Job.status == JobStatus.RUNNING)
    if claimed_attempts is not None:
        condition = and_(condition, Job.attempts == claimed_attempts)
    return condition


class JobRepository:
    """
    Repository for job database operations.

    Implements atomic operations for:
    - Job insertion
    - Claiming due jobs with FOR UPDATE SKIP LOCKED
    - State-guarded status transitions
    - Tenant-scoped retry re-arm
    - Stale running job recovery
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    async def create_job(
        self,
        tenant_id: str,
        job_type: str,
        payload: dict,
        max_attempts: int = 3,
        scheduled_at: datetime | None = None,
    ) -> Job:
        """
        Insert a new pending job.

        Args:
            tenant_id: The owning tenant.
            job_type: Discriminator selecting the handler.
            payload: The handler input document.
            max_attempts: Maximum execution attempts.
            scheduled_at: Earliest execution time. Defaults to now.

        Returns:
            The persisted Job.
        """
        now = utcnow()
        job = Job(
            tenant_id=tenant_id,
            type=job_type,
            payload=payload,
            status=JobStatus.PENDING,
            attempts=0,
            max_attempts=max_attempts,
            scheduled_at=scheduled_at or now,
            created_at=now,
        )
        self._session.add(job)
        await self._session.flush()

        logger.info(
            "Created new job",
            extra={"job_id": str(job.id), "tenant_id": tenant_id, "job_type": job_type},
        )
        return job

    async def get_job(self, job_id: UUID) -> Job | None:
        """
        Get a job by ID without tenant scoping.

        Args:
            job_id: The job UUID.

        Returns:
            The Job or None if not found.
        """
        stmt = select(Job).where(Job.id == job_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_job_for_tenant(self, job_id: UUID, tenant_id: str) -> Job | None:
        """
        Get a job by ID, visible only to its owning tenant.

        Args:
            job_id: The job UUID.
            tenant_id: The requesting tenant.

        Returns:
            The Job or None if it does not exist or belongs to another tenant.
        """
        stmt = select(Job).where(and_(Job.id == job_id, Job.tenant_id == tenant_id))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_jobs(
        self,
        tenant_id: str,
        status: JobStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        """
        List jobs for a tenant with optional filtering.

        Args:
            tenant_id: The tenant identifier.
            status: Optional status filter.
            limit: Maximum number of jobs to return.
            offset: Offset for pagination.

        Returns:
            Tuple of (jobs, total_count).
        """
        base_filter = Job.tenant_id == tenant_id
        if status is not None:
            base_filter = and_(base_filter, Job.status == status)

        count_stmt = select(func.count()).select_from(Job).where(base_filter)
        count_result = await self._session.execute(count_stmt)
        total = count_result.scalar() or 0

        stmt = (
            select(Job)
            .where(base_filter)
            .order_by(Job.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        jobs = result.scalars().all()

        return jobs, total

    async def claim_due_jobs(
        self,
        worker_id: str,
        batch_size: int = 1,
    ) -> Sequence[Job]:
        """
        Atomically claim due pending jobs and mark them running.

        This is the critical path for job distribution. The inner SELECT takes
        row locks with SKIP LOCKED so concurrent workers partition the due set
        instead of contending for it; the outer UPDATE re-checks the state so a
        row is only returned to the process that moved it to RUNNING.

        Args:
            worker_id: The worker identifier, for logging.
            batch_size: Maximum number of jobs to claim.

        Returns:
            List of claimed jobs, already in RUNNING with attempts incremented.
        """
        now = utcnow()

        due_ids = (
            select(Job.id)
            .where(
                and_(
                    Job.status == JobStatus.PENDING,
                    Job.scheduled_at <= now,
                    Job.attempts < Job.max_attempts,
                )
            )
            .order_by(Job.scheduled_at.asc(), Job.created_at.asc())
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        )

        stmt = (
            update(Job)
            .where(
                and_(
                    Job.id.in_(due_ids),
                    Job.status == JobStatus.PENDING,
                    Job.attempts < Job.max_attempts,
                )
            )
            .values(
                status=JobStatus.RUNNING,
                attempts=Job.attempts + 1,
                started_at=now,
            )
            .returning(Job)
        )

        result = await self._session.execute(stmt)
        jobs = list(result.scalars().all())

        if jobs:
            logger.info(
                f"Claimed {len(jobs)} jobs",
                extra={"worker_id": worker_id, "job_count": len(jobs)},
            )

        return jobs

    async def complete_job(
        self,
        job_id: UUID,
        claimed_attempts: int | None = None,
    ) -> Job | None:
        """
        Mark a running job as successfully completed.

        Args:
            job_id: The job UUID.
            claimed_attempts: Attempt count the caller claimed the job at. When
                given, a job re-armed and claimed again since is left alone.

        Returns:
            Updated Job or None if the job was not running under that claim.
        """
        now = utcnow()
        stmt = (
            update(Job)
            .where(_running_claim(job_id, claimed_attempts))
            .values(
                status=JobStatus.COMPLETED,
                completed_at=now,
                last_error=None,
            )
            .returning(Job)
        )

        result = await self._session.execute(stmt)
        job = result.scalar_one_or_none()

        if job:
            logger.info("Job completed successfully", extra={"job_id": str(job_id)})

        return job

    async def fail_job(
        self,
        job_id: UUID,
        error: str,
        retry_delay: timedelta | None = None,
        retryable: bool = True,
        claimed_attempts: int | None = None,
    ) -> Job | None:
        """
        Handle job failure. Either re-arm it for another attempt or fail it.

        Args:
            job_id: The job UUID.
            error: Error message.
            retry_delay: Delay before the re-armed job becomes due again.
            retryable: False forces the terminal FAILED state even when budget remains.
            claimed_attempts: Attempt count the caller claimed the job at.

        Returns:
            Updated Job or None if the job was not running under that claim.
        """
        job = await self.get_job(job_id)
        if (
            job is None
            or job.status != JobStatus.RUNNING
            or (claimed_attempts is not None and job.attempts != claimed_attempts)
        ):
            logger.warning(
                "Cannot fail job that is not running",
                extra={"job_id": str(job_id)},
            )
            return None

        now = utcnow()

        if retryable and job.attempts < job.max_attempts:
            values = {
                "status": JobStatus.PENDING,
                "last_error": error,
                "scheduled_at": now + (retry_delay or timedelta(0)),
                "completed_at": None,
            }
            logger.info(
                "Job re-armed for retry",
                extra={"job_id": str(job_id), "attempts": job.attempts},
            )
        else:
            values = {
                "status": JobStatus.FAILED,
                "last_error": error,
                "completed_at": now,
            }
            logger.warning(
                f"Job failed after {job.attempts} attempts",
                extra={"job_id": str(job_id), "error": error},
            )

        stmt = (
            update(Job)
            .where(_running_claim(job_id, claimed_attempts))
            .values(**values)
            .returning(Job)
        )

        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def rearm_failed_job(self, job_id: UUID, tenant_id: str) -> Job | None:
        """
        Move a failed job back to PENDING in a single tenant-scoped update.

        The WHERE clause repeats the ownership, state and budget checks so a
        concurrent change between the caller's read and this write cannot be
        overwritten.

        Args:
            job_id: The job UUID.
            tenant_id: The tenant that must own the job.

        Returns:
            Updated Job or None if no row satisfied the conditions.
        """
        stmt = (
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.tenant_id == tenant_id,
                    Job.status == JobStatus.FAILED,
                    Job.attempts < Job.max_attempts,
                )
            )
            .values(
                status=JobStatus.PENDING,
                last_error=None,
                started_at=None,
                completed_at=None,
                scheduled_at=utcnow(),
            )
            .returning(Job)
        )

        result = await self._session.execute(stmt)
        job = result.scalar_one_or_none()

        if job:
            logger.info(
                "Job re-armed by retry",
                extra={"job_id": str(job_id), "tenant_id": tenant_id},
            )

        return job

    async def recover_stale_jobs(self, timeout: timedelta) -> tuple[int, int]:
        """
        Recover RUNNING jobs whose worker stopped reporting.

        Jobs started longer than ``timeout`` ago are re-armed when budget
        remains and failed otherwise.

        Args:
            timeout: Maximum time a job may stay RUNNING.

        Returns:
            Tuple of (rearmed_count, failed_count).
        """
        now = utcnow()
        cutoff = now - timeout
        stale = and_(Job.status == JobStatus.RUNNING, Job.started_at < cutoff)

        rearm_stmt = (
            update(Job)
            .where(and_(stale, Job.attempts < Job.max_attempts))
            .values(
                status=JobStatus.PENDING,
                last_error=STALE_JOB_ERROR,
                scheduled_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        rearmed = (await self._session.execute(rearm_stmt)).rowcount

        fail_stmt = (
            update(Job)
            .where(and_(stale, Job.attempts >= Job.max_attempts))
            .values(
                status=JobStatus.FAILED,
                last_error=STALE_JOB_ERROR,
                completed_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        failed = (await self._session.execute(fail_stmt)).rowcount

        if rearmed or failed:
            logger.info(
                f"Recovered {rearmed + failed} stale jobs",
                extra={"rearmed": rearmed, "failed": failed},
            )

        return rearmed, failed

    async def get_queue_depth(self, tenant_id: str | None = None) -> int:
        """
        Get the number of pending jobs.

        Args:
            tenant_id: Optional tenant filter.

        Returns:
            Number of pending jobs.
        """
        filters = [Job.status == JobStatus.PENDING]
        if tenant_id is not None:
            filters.append(Job.tenant_id == tenant_id)

        stmt = select(func.count()).select_from(Job).where(and_(*filters))
        result = await self._session.execute(stmt)
        return result.scalar() or 0
