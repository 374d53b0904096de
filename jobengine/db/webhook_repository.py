"""
Webhook repository for delivery bookkeeping.

Every mutation of the failure counter is a single UPDATE ... RETURNING so
concurrent deliveries to the same webhook never lose an increment.
"""

import logging
from collections.abc import Sequence
from datetime import datetime
from uuid import UUID

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobengine.constants import WEBHOOK_DISABLED_REASON, WebhookDeliveryStatus
from jobengine.db.models import Webhook, WebhookDelivery, utcnow

logger = logging.getLogger(__name__)


class WebhookRepository:
    """Repository for webhook configuration state and delivery history."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_webhook(self, webhook_id: UUID, tenant_id: str) -> Webhook | None:
        """
        Get a webhook owned by ``tenant_id``.

        Returns:
            The Webhook or None if it does not exist or belongs to another tenant.
        """
        stmt = select(Webhook).where(
            and_(Webhook.id == webhook_id, Webhook.tenant_id == tenant_id)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def record_delivery(
        self,
        webhook_id: UUID,
        tenant_id: str,
        event_type: str,
        event_id: str | None,
        status: WebhookDeliveryStatus,
        attempts: int,
        duration_ms: int,
        http_status_code: int | None = None,
        response_body: str | None = None,
        error_message: str | None = None,
        delivered_at: datetime | None = None,
    ) -> WebhookDelivery:
        """Append one delivery outcome row."""
        delivery = WebhookDelivery(
            webhook_id=webhook_id,
            tenant_id=tenant_id,
            event_type=event_type,
            event_id=event_id,
            status=status,
            attempts=attempts,
            duration_ms=duration_ms,
            http_status_code=http_status_code,
            response_body=response_body,
            error_message=error_message,
            delivered_at=delivered_at,
            created_at=utcnow(),
        )
        self._session.add(delivery)
        await self._session.flush()

        logger.info(
            "Recorded webhook delivery",
            extra={
                "webhook_id": str(webhook_id),
                "delivery_id": str(delivery.id),
                "status": status.value,
                "attempts": attempts,
            },
        )
        return delivery

    async def mark_delivery_succeeded(self, webhook_id: UUID) -> None:
        """Reset the failure counter and stamp ``last_delivery_at``."""
        now = utcnow()
        stmt = (
            update(Webhook)
            .where(Webhook.id == webhook_id)
            .values(consecutive_failures=0, last_delivery_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    async def increment_failures(self, webhook_id: UUID) -> int | None:
        """
        Atomically increment the failure counter of an enabled webhook.

        Returns:
            The new counter value, or None if the webhook is gone or already disabled.
        """
        now = utcnow()
        stmt = (
            update(Webhook)
            .where(and_(Webhook.id == webhook_id, Webhook.disabled.is_(False)))
            .values(
                consecutive_failures=Webhook.consecutive_failures + 1,
                last_failure_at=now,
                updated_at=now,
            )
            .returning(Webhook.consecutive_failures)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def disable_webhook(self, webhook_id: UUID, threshold: int) -> bool:
        """
        Disable a webhook whose counter reached ``threshold``.

        The transition is one-way here; re-enabling belongs to the
        configuration API.

        Returns:
            True if this call performed the transition.
        """
        now = utcnow()
        stmt = (
            update(Webhook)
            .where(
                and_(
                    Webhook.id == webhook_id,
                    Webhook.disabled.is_(False),
                    Webhook.consecutive_failures >= threshold,
                )
            )
            .values(
                disabled=True,
                disabled_at=now,
                disabled_reason=WEBHOOK_DISABLED_REASON.format(count=threshold),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        disabled = result.rowcount > 0

        if disabled:
            logger.warning(
                "Webhook disabled after consecutive failures",
                extra={"webhook_id": str(webhook_id), "threshold": threshold},
            )

        return disabled

    async def list_deliveries(
        self,
        webhook_id: UUID,
        tenant_id: str,
        limit: int = 50,
    ) -> Sequence[WebhookDelivery]:
        """List recent delivery outcomes for a tenant's webhook, newest first."""
        stmt = (
            select(WebhookDelivery)
            .where(
                and_(
                    WebhookDelivery.webhook_id == webhook_id,
                    WebhookDelivery.tenant_id == tenant_id,
                )
            )
            .order_by(WebhookDelivery.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()
