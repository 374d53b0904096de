"""
Exception hierarchy for the job engine.

Ownership violations and missing rows share a single error type and message so
callers cannot tell a foreign job from a nonexistent one.
"""

from typing import Any

from jobengine.constants import WebhookDeliveryErrorType


class JobEngineError(Exception):
    """Base exception for the job engine."""

    code = "JOB_ENGINE_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for API envelopes and logs."""
        return {
            "name": type(self).__name__,
            "message": self.message,
            "code": self.code,
            "details": self.details,
        }


class JobValidationError(JobEngineError, ValueError):
    """Raised when enqueue/schedule input is invalid."""

    code = "VALIDATION_ERROR"


class JobNotFoundError(JobEngineError):
    """Raised when a job does not exist or belongs to another tenant."""

    code = "NOT_FOUND"

    def __init__(self, message: str = "Job not found"):
        super().__init__(message)


class MaxAttemptsReachedError(JobEngineError):
    """Raised when a job's retry budget is exhausted."""

    code = "MAX_ATTEMPTS_REACHED"

    def __init__(self, attempts: int, max_attempts: int):
        super().__init__(
            "Maximum retry attempts reached",
            {"attempts": attempts, "max_attempts": max_attempts},
        )


class InvalidJobStateError(JobEngineError):
    """Raised when a transition is requested from a state that forbids it."""

    code = "INVALID_STATE"

    def __init__(self, status: str, expected: str):
        super().__init__(
            f"Job in status '{status}' cannot be retried",
            {"status": status, "expected": expected},
        )


class PersistenceError(JobEngineError):
    """Raised when the durable store rejects a read or write."""

    code = "PERSISTENCE_ERROR"


class DeliveryRecordError(PersistenceError):
    """Raised when a webhook delivery ran but its outcome could not be stored."""

    code = "DELIVERY_RECORD_ERROR"


class WebhookValidationError(JobEngineError, ValueError):
    """Raised when a webhook URL, header set or payload is not deliverable."""

    code = "WEBHOOK_VALIDATION_ERROR"


class DeliveryError(JobEngineError):
    """A single failed webhook delivery attempt."""

    code = "DELIVERY_ERROR"

    def __init__(
        self,
        message: str,
        error_type: WebhookDeliveryErrorType = WebhookDeliveryErrorType.UNKNOWN_ERROR,
        status_code: int | None = None,
        response_body: str | None = None,
    ):
        super().__init__(
            f"{error_type.value}: {message}",
            {"error_type": error_type.value, "status_code": status_code},
        )
        self.error_type = error_type
        self.status_code = status_code
        self.response_body = response_body
