"""
Unit tests for the retry operation.
"""

from uuid import uuid4

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from jobengine.constants import JobStatus
from jobengine.db import get_session_context
from jobengine.db.models import Job
from jobengine.db.repository import JobRepository
from jobengine.exceptions import (
    InvalidJobStateError,
    JobNotFoundError,
    MaxAttemptsReachedError,
    PersistenceError,
)
from jobengine.retry import check_retryable, retry_job


class TestRetryJob:
    """Tests for retry_job."""

    async def test_retry_resets_failed_job(self, make_job, fetch_job):
        """A failed job with budget left goes back to pending with its history cleared."""
        job = await make_job(
            "tenant-a",
            status=JobStatus.FAILED,
            attempts=1,
            max_attempts=3,
            last_error="boom",
        )

        updated = await retry_job(job.id, "tenant-a")

        assert updated.status == JobStatus.PENDING
        assert updated.attempts == 1
        assert updated.last_error is None
        assert updated.started_at is None
        assert updated.completed_at is None

        stored = await fetch_job(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.is_due

    async def test_retry_foreign_job_is_not_found(self, make_job, fetch_job):
        """Another tenant's job looks exactly like a missing job and is left untouched."""
        job = await make_job("tenant-a", status=JobStatus.FAILED, attempts=1)

        with pytest.raises(JobNotFoundError) as foreign:
            await retry_job(job.id, "tenant-b")

        with pytest.raises(JobNotFoundError) as missing:
            await retry_job(uuid4(), "tenant-b")

        assert str(foreign.value) == str(missing.value) == "Job not found"
        assert foreign.value.to_dict() == missing.value.to_dict()

        stored = await fetch_job(job.id)
        assert stored.status == JobStatus.FAILED

    async def test_retry_malformed_id_is_not_found(self, async_engine):
        with pytest.raises(JobNotFoundError):
            await retry_job("not-a-uuid", "tenant-a")

    async def test_retry_exhausted_job(self, make_job):
        """A job that used its whole budget cannot be retried."""
        job = await make_job(
            "tenant-a", status=JobStatus.FAILED, attempts=3, max_attempts=3
        )

        with pytest.raises(MaxAttemptsReachedError) as exc_info:
            await retry_job(job.id, "tenant-a")

        assert exc_info.value.details == {"attempts": 3, "max_attempts": 3}

    async def test_retry_exhausted_foreign_job_is_not_found(self, make_job):
        """Ownership is checked before the budget."""
        job = await make_job(
            "tenant-a", status=JobStatus.FAILED, attempts=3, max_attempts=3
        )

        with pytest.raises(JobNotFoundError):
            await retry_job(job.id, "tenant-b")

    @pytest.mark.parametrize(
        "status",
        [JobStatus.PENDING, JobStatus.RUNNING, JobStatus.COMPLETED],
    )
    async def test_retry_requires_failed_state(self, make_job, fetch_job, status):
        job = await make_job("tenant-a", status=status, attempts=1)

        with pytest.raises(InvalidJobStateError):
            await retry_job(job.id, "tenant-a")

        stored = await fetch_job(job.id)
        assert stored.status == status

    def _lose_race_to(self, monkeypatch, **values):
        """Make the re-arm miss because another writer changed the row first."""

        async def rearm_after_concurrent_write(self, job_id, tenant_id):
            async with get_session_context() as other:
                await other.execute(update(Job).where(Job.id == job_id).values(**values))
            return None

        monkeypatch.setattr(
            JobRepository, "rearm_failed_job", rearm_after_concurrent_write
        )

    async def test_lost_race_to_completion(self, make_job, monkeypatch):
        """A job that left the failed state mid-retry reports its new state."""
        job = await make_job("tenant-a", status=JobStatus.FAILED, attempts=1)
        self._lose_race_to(monkeypatch, status=JobStatus.COMPLETED)

        with pytest.raises(InvalidJobStateError) as exc_info:
            await retry_job(job.id, "tenant-a")

        assert "completed" in exc_info.value.message

    async def test_lost_race_to_exhaustion(self, make_job, monkeypatch):
        job = await make_job(
            "tenant-a", status=JobStatus.FAILED, attempts=1, max_attempts=3
        )
        self._lose_race_to(monkeypatch, attempts=3)

        with pytest.raises(MaxAttemptsReachedError):
            await retry_job(job.id, "tenant-a")

    async def test_store_failure_on_read(self, make_job, monkeypatch):
        job = await make_job("tenant-a", status=JobStatus.FAILED, attempts=1)

        async def fail(self, *args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("database unavailable"))

        monkeypatch.setattr(JobRepository, "get_job", fail)

        with pytest.raises(PersistenceError, match="Failed to retry job"):
            await retry_job(job.id, "tenant-a")

    async def test_store_failure_on_write(self, make_job, fetch_job, monkeypatch):
        job = await make_job("tenant-a", status=JobStatus.FAILED, attempts=1)

        async def fail(self, *args, **kwargs):
            raise OperationalError("UPDATE", {}, Exception("database unavailable"))

        monkeypatch.setattr(JobRepository, "rearm_failed_job", fail)

        with pytest.raises(PersistenceError, match="Failed to retry job"):
            await retry_job(job.id, "tenant-a")

        assert (await fetch_job(job.id)).status == JobStatus.FAILED


class TestCheckRetryable:
    """Tests for the retry classification order."""

    async def test_missing_job(self):
        with pytest.raises(JobNotFoundError):
            check_retryable(None, "tenant-a")

    async def test_budget_checked_before_state(self, make_job):
        job = await make_job(
            "tenant-a", status=JobStatus.COMPLETED, attempts=3, max_attempts=3
        )

        with pytest.raises(MaxAttemptsReachedError):
            check_retryable(job, "tenant-a")

    async def test_retryable_job_is_returned(self, make_job):
        job = await make_job("tenant-a", status=JobStatus.FAILED, attempts=2)

        assert check_retryable(job, "tenant-a") is job
