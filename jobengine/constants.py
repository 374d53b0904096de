"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - PENDING -> RUNNING (claimed by a worker)
    - RUNNING -> COMPLETED (success)
    - RUNNING -> PENDING (retryable failure, budget remains)
    - RUNNING -> FAILED (budget exhausted or non-retryable failure)
    - FAILED -> PENDING (manual retry)
    """

    PENDING = "pending"
    RUNNING = "running"
    FAILED = "failed"
    COMPLETED = "completed"


class JobType(StrEnum):
    """Job types with a built-in handler."""

    DELIVER_WEBHOOK = "deliver_webhook"


class WebhookDeliveryStatus(StrEnum):
    """Outcome recorded on a webhook delivery row."""

    PENDING = "pending"
    DELIVERING = "delivering"
    DELIVERED = "delivered"
    FAILED = "failed"
    PERMANENTLY_FAILED = "permanently_failed"
    DISABLED = "disabled"


class WebhookDeliveryErrorType(StrEnum):
    """Categories of a single failed delivery attempt."""

    INVALID_URL = "INVALID_URL"
    URL_NOT_REACHABLE = "URL_NOT_REACHABLE"
    REQUEST_TIMEOUT = "REQUEST_TIMEOUT"
    HTTP_ERROR = "HTTP_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class HttpMethod(StrEnum):
    """HTTP methods a webhook may be configured with."""

    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"


# Queue validation limits
JOB_TYPE_MAX_LENGTH = 100
JOB_TYPE_PATTERN = r"^[a-zA-Z0-9_-]+$"
MAX_PAYLOAD_BYTES = 1024 * 1024
MIN_MAX_ATTEMPTS = 1
MAX_MAX_ATTEMPTS = 100
MAX_DELAY_SECONDS = 24 * 60 * 60
MIN_PRIORITY = 0
MAX_PRIORITY = 1000
MAX_SCHEDULE_AHEAD_DAYS = 365

# Default values
DEFAULT_MAX_ATTEMPTS = 3
PRIORITY_PAYLOAD_KEY = "priority"

# Webhook delivery limits
DEFAULT_WEBHOOK_MAX_ATTEMPTS = 5
MAX_CONSECUTIVE_FAILURES = 5
WEBHOOK_DISABLED_REASON = "Disabled after {count} consecutive delivery failures"
WEBHOOK_MAX_PAYLOAD_BYTES = 10 * 1024 * 1024
WEBHOOK_MIN_TIMEOUT_SECONDS = 1.0
WEBHOOK_MAX_TIMEOUT_SECONDS = 300.0
WEBHOOK_MAX_HEADER_BYTES = 8 * 1024
WEBHOOK_MAX_HEADERS_TOTAL_BYTES = 64 * 1024
WEBHOOK_RESPONSE_BODY_LIMIT = 2000
WEBHOOK_ALLOWED_SCHEMES = ("https",)
WEBHOOK_BLOCKED_HOSTNAMES = ("localhost", "metadata.google.internal", "instance-data")
WEBHOOK_SENSITIVE_HEADERS = (
    "authorization",
    "x-api-key",
    "x-auth-token",
    "cookie",
    "set-cookie",
    "x-csrf-token",
    "x-xsrf-token",
)

STALE_JOB_ERROR = "Job execution timed out"

# Metrics names
METRIC_QUEUE_DEPTH = "job_queue_depth"
METRIC_JOBS_ENQUEUED = "jobs_enqueued_total"
METRIC_JOBS_CLAIMED = "jobs_claimed_total"
METRIC_JOBS_FINISHED = "jobs_finished_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_JOBS_RETRIED = "jobs_retried_total"
METRIC_STALE_JOBS_RECOVERED = "stale_jobs_recovered_total"
METRIC_WEBHOOK_DELIVERIES = "webhook_deliveries_total"
METRIC_WEBHOOK_ATTEMPTS = "webhook_delivery_attempts"
METRIC_WEBHOOKS_DISABLED = "webhooks_disabled_total"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_CLAIM_JOBS = "claim_jobs"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_RETRY_JOB = "retry_job"
SPAN_DELIVER_WEBHOOK = "deliver_webhook"
