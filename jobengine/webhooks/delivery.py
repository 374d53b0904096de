"""
Webhook delivery.

Delivers one event to one webhook with its own bounded retry loop. The
outer job only sees the final JobResult; attempts inside a delivery are
invisible to the queue.

Per call:
1. Fast-fail without network I/O if the webhook is missing or disabled.
2. Validate the target URL, headers and body.
3. Try the HTTP call up to ``max_attempts`` times with exponential backoff.
4. Write exactly one delivery row and update the webhook's failure counter
   in the same transaction; disable the webhook at the threshold.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any
from uuid import UUID

import httpx
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from jobengine.backoff import BackoffPolicy
from jobengine.config import get_settings
from jobengine.constants import (
    DEFAULT_WEBHOOK_MAX_ATTEMPTS,
    SPAN_DELIVER_WEBHOOK,
    WEBHOOK_RESPONSE_BODY_LIMIT,
    JobType,
    WebhookDeliveryErrorType,
    WebhookDeliveryStatus,
)
from jobengine.db import get_session_context
from jobengine.db.models import utcnow
from jobengine.db.webhook_repository import WebhookRepository
from jobengine.exceptions import (
    DeliveryError,
    DeliveryRecordError,
    PersistenceError,
    WebhookValidationError,
)
from jobengine.observability.logging import sanitize_headers
from jobengine.observability.metrics import get_metrics
from jobengine.observability.tracing import get_tracer
from jobengine.types.job import JobContext, JobResult
from jobengine.types.webhook import DeliverWebhookPayload, WebhookDeliveryResult
from jobengine.webhooks.security import (
    encode_payload,
    sanitize_error_message,
    sanitize_url,
    validate_headers,
    validate_webhook_url,
)
from jobengine.worker.handlers import register_handler

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


class WebhookDeliverer:
    """
    Delivers webhook events and keeps the webhook's failure bookkeeping.

    Args:
        client: Optional shared HTTP client. A short-lived client is created
            per delivery when omitted.
        backoff: Delay policy between attempts. Defaults to settings.
        sleep: Awaitable used for backoff waits.
        disable_threshold: Consecutive failed deliveries that disable a webhook.
        timeout_seconds: Per-attempt HTTP timeout.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        backoff: BackoffPolicy | None = None,
        sleep: Sleeper = asyncio.sleep,
        disable_threshold: int | None = None,
        timeout_seconds: float | None = None,
    ):
        settings = get_settings()
        self._client = client
        self._backoff = backoff or BackoffPolicy(
            initial_delay=settings.webhook_initial_delay_seconds,
            multiplier=settings.webhook_backoff_multiplier,
            max_delay=settings.webhook_max_delay_seconds,
            jitter=settings.webhook_enable_jitter,
        )
        self._sleep = sleep
        self._disable_threshold = (
            settings.webhook_disable_threshold
            if disable_threshold is None
            else disable_threshold
        )
        self._timeout = (
            settings.webhook_timeout_seconds if timeout_seconds is None else timeout_seconds
        )
        self._user_agent = settings.webhook_user_agent
        self._metrics = get_metrics()

    def max_duration(self, max_attempts: int, timeout_seconds: float | None = None) -> float:
        """Worst-case seconds one delivery spends on HTTP attempts and backoff."""
        timeout = self._timeout if timeout_seconds is None else timeout_seconds
        return max_attempts * timeout + self._backoff.total_delay(max_attempts)

    async def deliver(
        self,
        webhook_id: UUID,
        webhook_url: str,
        payload: dict[str, Any],
        event_type: str,
        event_id: str | None,
        tenant_id: str,
        max_attempts: int = DEFAULT_WEBHOOK_MAX_ATTEMPTS,
        timeout_seconds: float | None = None,
    ) -> WebhookDeliveryResult:
        """
        Deliver one event to one webhook.

        Returns:
            The delivery summary. ``success`` is True only for a 2xx response.

        Raises:
            PersistenceError: If the webhook cannot be read.
            DeliveryRecordError: If the HTTP phase ran but its outcome could
                not be recorded.
        """
        started = time.monotonic()
        result = WebhookDeliveryResult(
            webhook_id=webhook_id,
            status=WebhookDeliveryStatus.PENDING,
        )

        with get_tracer().start_as_current_span(SPAN_DELIVER_WEBHOOK) as span:
            span.set_attribute("webhook_id", str(webhook_id))
            span.set_attribute("event_type", event_type)

            logger.info(
                "Starting webhook delivery",
                extra={
                    "webhook_id": str(webhook_id),
                    "event_type": event_type,
                    "event_id": event_id,
                    "url": sanitize_url(webhook_url),
                },
            )

            try:
                async with get_session_context() as session:
                    webhook = await WebhookRepository(session).get_webhook(
                        webhook_id, tenant_id
                    )
            except SQLAlchemyError as e:
                raise PersistenceError("Failed to load webhook") from e

            if webhook is None:
                result.status = WebhookDeliveryStatus.FAILED
                result.error = "Webhook not found"
                return result

            if webhook.disabled:
                logger.info(
                    "Skipping delivery to disabled webhook",
                    extra={"webhook_id": str(webhook_id)},
                )
                result.status = WebhookDeliveryStatus.DISABLED
                result.error = "Webhook is disabled"
                result.webhook_disabled = True
                return result

            method = webhook.http_method.value
            custom_headers = dict(webhook.headers or {})

            try:
                validate_webhook_url(webhook_url)
                validate_headers(custom_headers)
                body = encode_payload(payload)
            except WebhookValidationError as e:
                logger.warning(
                    "Webhook request rejected",
                    extra={"webhook_id": str(webhook_id), "error": e.message},
                )
                result.status = WebhookDeliveryStatus.FAILED
                result.error = e.message
                return result

            result.status = WebhookDeliveryStatus.DELIVERING
            timeout = self._timeout if timeout_seconds is None else timeout_seconds
            last_error: DeliveryError | None = None

            for attempt in range(1, max_attempts + 1):
                result.attempts = attempt
                headers = self._build_headers(
                    custom_headers, webhook_id, attempt, event_type, event_id
                )
                logger.info(
                    f"Webhook attempt {attempt}/{max_attempts}",
                    extra={"webhook_id": str(webhook_id), "headers": sanitize_headers(headers)},
                )

                try:
                    status_code, response_body = await self._send(
                        method, webhook_url, headers, body, timeout
                    )
                except DeliveryError as e:
                    last_error = e
                    result.http_status_code = e.status_code
                    result.response_body = e.response_body
                    logger.warning(
                        f"Webhook attempt {attempt} failed",
                        extra={"webhook_id": str(webhook_id), "error": e.message},
                    )
                    if attempt < max_attempts:
                        delay = self._backoff.delay_for(attempt)
                        logger.info(
                            f"Retrying webhook in {delay:.2f}s",
                            extra={"webhook_id": str(webhook_id)},
                        )
                        await self._sleep(delay)
                    continue

                result.status = WebhookDeliveryStatus.DELIVERED
                result.http_status_code = status_code
                result.response_body = response_body
                result.delivered_at = utcnow()
                break
            else:
                result.status = WebhookDeliveryStatus.PERMANENTLY_FAILED
                result.error = last_error.message if last_error else "Unknown error"

            result.duration_ms = int((time.monotonic() - started) * 1000)
            await self._record_outcome(result, tenant_id, event_type, event_id)

            span.set_attribute("attempts", result.attempts)
            span.set_attribute("status", result.status.value)

        self._metrics.record_webhook_delivery(event_type, result.status.value, result.attempts)
        if result.webhook_disabled:
            self._metrics.record_webhook_disabled()

        if result.success:
            logger.info(
                "Webhook delivered",
                extra={
                    "webhook_id": str(webhook_id),
                    "status_code": result.http_status_code,
                    "attempts": result.attempts,
                    "duration_ms": result.duration_ms,
                },
            )
        else:
            logger.error(
                f"Webhook permanently failed after {result.attempts} attempts",
                extra={
                    "webhook_id": str(webhook_id),
                    "error": result.error,
                    "webhook_disabled": result.webhook_disabled,
                },
            )

        return result

    def _build_headers(
        self,
        custom_headers: dict[str, str],
        webhook_id: UUID,
        attempt: int,
        event_type: str,
        event_id: str | None,
    ) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
            "X-Webhook-ID": str(webhook_id),
            "X-Webhook-Attempt": str(attempt),
            "X-Event-Type": event_type or "unknown",
        }
        if event_id:
            headers["X-Event-ID"] = event_id
        headers.update({k: str(v) for k, v in custom_headers.items()})
        return headers

    async def _send(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: bytes,
        timeout: float,
    ) -> tuple[int, str]:
        """Make one HTTP attempt, raising DeliveryError on anything but 2xx."""
        # httpx timeouts are per phase; the attempt as a whole is capped too
        try:
            async with asyncio.timeout(timeout):
                if self._client is not None:
                    return await self._request(
                        self._client, method, url, headers, body, timeout
                    )

                async with httpx.AsyncClient(timeout=timeout) as client:
                    return await self._request(client, method, url, headers, body, timeout)
        except TimeoutError as e:
            raise DeliveryError(
                f"Webhook delivery timed out after {timeout}s",
                WebhookDeliveryErrorType.REQUEST_TIMEOUT,
            ) from e

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        headers: dict[str, str],
        body: bytes,
        timeout: float,
    ) -> tuple[int, str]:
        try:
            response = await client.request(
                method,
                url,
                content=body,
                headers=headers,
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise DeliveryError(
                f"Webhook delivery timed out after {timeout}s",
                WebhookDeliveryErrorType.REQUEST_TIMEOUT,
            ) from e
        except httpx.ConnectError as e:
            raise DeliveryError(
                "Connection failed",
                WebhookDeliveryErrorType.URL_NOT_REACHABLE,
            ) from e
        except httpx.HTTPError as e:
            raise DeliveryError(
                sanitize_error_message(str(e)) or type(e).__name__,
                WebhookDeliveryErrorType.UNKNOWN_ERROR,
            ) from e

        response_body = response.text[:WEBHOOK_RESPONSE_BODY_LIMIT]

        if not response.is_success:
            raise DeliveryError(
                sanitize_error_message(f"HTTP {response.status_code}: {response.reason_phrase}"),
                WebhookDeliveryErrorType.HTTP_ERROR,
                status_code=response.status_code,
                response_body=response_body,
            )

        return response.status_code, response_body

    async def _record_outcome(
        self,
        result: WebhookDeliveryResult,
        tenant_id: str,
        event_type: str,
        event_id: str | None,
    ) -> None:
        """Write the delivery row and the counter change as one transaction."""
        try:
            async with get_session_context() as session:
                repo = WebhookRepository(session)

                delivery = await repo.record_delivery(
                    webhook_id=result.webhook_id,
                    tenant_id=tenant_id,
                    event_type=event_type,
                    event_id=event_id,
                    status=result.status,
                    attempts=result.attempts,
                    duration_ms=result.duration_ms,
                    http_status_code=result.http_status_code,
                    response_body=result.response_body,
                    error_message=result.error,
                    delivered_at=result.delivered_at,
                )
                result.delivery_id = delivery.id

                if result.success:
                    await repo.mark_delivery_succeeded(result.webhook_id)
                    return

                failures = await repo.increment_failures(result.webhook_id)
                if failures is not None and failures >= self._disable_threshold:
                    result.webhook_disabled = await repo.disable_webhook(
                        result.webhook_id, self._disable_threshold
                    )
        except SQLAlchemyError as e:
            logger.exception(
                "Failed to record webhook delivery",
                extra={"webhook_id": str(result.webhook_id)},
            )
            raise DeliveryRecordError("Failed to record webhook delivery") from e


_deliverer: WebhookDeliverer | None = None


def get_deliverer() -> WebhookDeliverer:
    """Get the shared WebhookDeliverer instance."""
    global _deliverer
    if _deliverer is None:
        _deliverer = WebhookDeliverer()
    return _deliverer


def set_deliverer(deliverer: WebhookDeliverer | None) -> None:
    """Replace the shared deliverer, e.g. with one bound to a pooled client."""
    global _deliverer
    _deliverer = deliverer


async def deliver_webhook(
    webhook_id: UUID,
    webhook_url: str,
    payload: dict[str, Any],
    event_type: str,
    event_id: str | None,
    tenant_id: str,
    max_attempts: int = DEFAULT_WEBHOOK_MAX_ATTEMPTS,
) -> WebhookDeliveryResult:
    """Deliver through the shared deliverer. See WebhookDeliverer.deliver."""
    return await get_deliverer().deliver(
        webhook_id=webhook_id,
        webhook_url=webhook_url,
        payload=payload,
        event_type=event_type,
        event_id=event_id,
        tenant_id=tenant_id,
        max_attempts=max_attempts,
    )


@register_handler(JobType.DELIVER_WEBHOOK)
async def handle_deliver_webhook(context: JobContext) -> JobResult:
    """
    Job handler for ``deliver_webhook`` jobs.

    Payload: webhook_id, webhook_url, payload, event_type, event_id,
    tenant_id, optional max_attempts and timeout_seconds.

    Delivery failures are not retryable at the job level: the internal loop
    already spent the attempt budget for this event.

    Deliveries whose worst-case runtime reaches the worker job timeout are
    rejected up front.
    """
    data = {"tenant_id": context.tenant_id, **context.payload}
    try:
        params = DeliverWebhookPayload.model_validate(data)
    except ValidationError as e:
        return JobResult(
            success=False,
            error=f"Invalid deliver_webhook payload: {e.error_count()} validation errors",
            retryable=False,
        )

    if params.tenant_id != context.tenant_id:
        logger.warning(
            "Webhook payload tenant does not match job tenant",
            extra={"job_id": str(context.job_id)},
        )
        return JobResult(success=False, error="Webhook not found", retryable=False)

    deliverer = get_deliverer()

    # A delivery must finish before the reaper treats its job as stale.
    job_timeout = get_settings().worker_job_timeout_seconds
    if deliverer.max_duration(params.max_attempts, params.timeout_seconds) >= job_timeout:
        return JobResult(
            success=False,
            error=(
                "Webhook delivery budget exceeds the job timeout of "
                f"{job_timeout}s; lower max_attempts or timeout_seconds"
            ),
            retryable=False,
        )

    try:
        result = await deliverer.deliver(
            webhook_id=params.webhook_id,
            webhook_url=params.webhook_url,
            payload=params.payload,
            event_type=params.event_type,
            event_id=params.event_id,
            tenant_id=params.tenant_id,
            max_attempts=params.max_attempts,
            timeout_seconds=params.timeout_seconds,
        )
    except DeliveryRecordError as e:
        # The HTTP phase already ran; another attempt would send the event again.
        return JobResult(success=False, error=e.message, retryable=False)

    return JobResult(
        success=result.success,
        error=result.error,
        output=result.model_dump(mode="json", exclude={"response_body"}),
        retryable=False,
        duration_ms=result.duration_ms,
    )
