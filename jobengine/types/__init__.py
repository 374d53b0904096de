"""
Type definitions for the job engine.
Contains input/output type definitions grouped by module.
"""

from jobengine.types.job import (
    EnqueueJobResult,
    JobContext,
    JobResult,
)
from jobengine.types.webhook import (
    DeliverWebhookPayload,
    WebhookDeliveryResult,
)

__all__ = [
    # Job types
    "EnqueueJobResult",
    "JobContext",
    "JobResult",
    # Webhook types
    "DeliverWebhookPayload",
    "WebhookDeliveryResult",
]
