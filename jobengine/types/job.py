"""
Job-related type definitions.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from jobengine.constants import JobStatus


class EnqueueJobResult(BaseModel):
    """
    Result of enqueue/schedule.
    Returned to callers after the job row is persisted.
    """

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    status: JobStatus
    scheduled_at: datetime
    created_at: datetime


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by job handlers after processing.

    ``retryable=False`` sends the job straight to FAILED even when the
    attempt budget is not exhausted.
    """

    success: bool
    output: dict[str, Any] | None = None
    error: str | None = None
    retryable: bool = True
    duration_ms: float | None = None


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains job metadata for the handler.
    """

    job_id: UUID
    tenant_id: str
    job_type: str
    attempt: int
    max_attempts: int
    payload: dict[str, Any]
    worker_id: str

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last retry attempt."""
        return self.attempt >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts."""
        return max(0, self.max_attempts - self.attempt)
