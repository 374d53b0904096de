"""
Webhook delivery type definitions.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from jobengine.constants import (
    DEFAULT_WEBHOOK_MAX_ATTEMPTS,
    WEBHOOK_MAX_TIMEOUT_SECONDS,
    WEBHOOK_MIN_TIMEOUT_SECONDS,
    WebhookDeliveryStatus,
)


class DeliverWebhookPayload(BaseModel):
    """Payload of a ``deliver_webhook`` job."""

    webhook_id: UUID
    webhook_url: str = Field(..., min_length=1)
    payload: dict[str, Any]
    event_type: str = Field(..., min_length=1)
    event_id: str | None = None
    tenant_id: str = Field(..., min_length=1)
    max_attempts: int = Field(default=DEFAULT_WEBHOOK_MAX_ATTEMPTS, ge=1, le=20)
    timeout_seconds: float | None = Field(
        default=None,
        ge=WEBHOOK_MIN_TIMEOUT_SECONDS,
        le=WEBHOOK_MAX_TIMEOUT_SECONDS,
    )


class WebhookDeliveryResult(BaseModel):
    """Summary of one ``deliver`` call, mirrored into the job result output."""

    webhook_id: UUID
    status: WebhookDeliveryStatus
    attempts: int = 0
    delivery_id: UUID | None = None
    http_status_code: int | None = None
    response_body: str | None = None
    error: str | None = None
    duration_ms: int = 0
    delivered_at: datetime | None = None
    webhook_disabled: bool = False

    @property
    def success(self) -> bool:
        return self.status == WebhookDeliveryStatus.DELIVERED
