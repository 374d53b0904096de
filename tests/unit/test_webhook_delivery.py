"""
Unit tests for webhook delivery.

HTTP is served by httpx.MockTransport and backoff sleeps are recorded
instead of awaited.
"""

import asyncio
import json
from uuid import uuid4

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from jobengine.backoff import BackoffPolicy
from jobengine.constants import JobType, WebhookDeliveryStatus
from jobengine.db import get_session_context
from jobengine.db.webhook_repository import WebhookRepository
from jobengine.exceptions import DeliveryRecordError, PersistenceError
from jobengine.types.job import JobContext
from jobengine.webhooks.delivery import (
    WebhookDeliverer,
    handle_deliver_webhook,
    set_deliverer,
)

TENANT = "tenant-a"
URL = "https://hooks.example.com/events"


class FakeEndpoint:
    """Scripted webhook receiver."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome, text=f"status {outcome}")


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_deliverer(endpoint: FakeEndpoint, sleep: RecordingSleep) -> WebhookDeliverer:
    client = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
    return WebhookDeliverer(
        client=client,
        backoff=BackoffPolicy(initial_delay=1.0, multiplier=2.0, max_delay=300.0),
        sleep=sleep,
        disable_threshold=5,
    )


async def list_deliveries(webhook_id):
    async with get_session_context() as session:
        return await WebhookRepository(session).list_deliveries(webhook_id, TENANT)


async def deliver(deliverer: WebhookDeliverer, webhook_id, **overrides):
    params = {
        "webhook_id": webhook_id,
        "webhook_url": URL,
        "payload": {"project_id": "proj-123"},
        "event_type": "project.created",
        "event_id": "evt-1",
        "tenant_id": TENANT,
        "max_attempts": 5,
    }
    params.update(overrides)
    return await deliverer.deliver(**params)


class TestWebhookDelivery:
    """Tests for WebhookDeliverer.deliver."""

    @pytest.fixture
    def sleep(self) -> RecordingSleep:
        return RecordingSleep()

    async def test_success_after_retries_writes_one_row(
        self, make_webhook, fetch_webhook, sleep
    ):
        """Two 500s then a 200 is one delivered row with three attempts."""
        webhook_id = await make_webhook(TENANT, consecutive_failures=2)
        endpoint = FakeEndpoint([500, 500, 200])

        result = await deliver(make_deliverer(endpoint, sleep), webhook_id)

        assert result.success is True
        assert result.status == WebhookDeliveryStatus.DELIVERED
        assert result.attempts == 3
        assert result.http_status_code == 200
        assert len(endpoint.requests) == 3
        assert sleep.delays == [1.0, 2.0]

        deliveries = await list_deliveries(webhook_id)
        assert len(deliveries) == 1
        assert deliveries[0].status == WebhookDeliveryStatus.DELIVERED
        assert deliveries[0].attempts == 3
        assert deliveries[0].id == result.delivery_id
        assert deliveries[0].delivered_at is not None

        webhook = await fetch_webhook(webhook_id)
        assert webhook.consecutive_failures == 0
        assert webhook.last_delivery_at is not None
        assert webhook.disabled is False

    async def test_request_shape(self, make_webhook, sleep):
        """The request carries the event headers, custom headers and JSON body."""
        webhook_id = await make_webhook(TENANT, headers={"Authorization": "Bearer abc"})
        endpoint = FakeEndpoint([503, 200])

        await deliver(make_deliverer(endpoint, sleep), webhook_id)

        first, second = endpoint.requests
        assert first.method == "POST"
        assert str(first.url) == URL
        assert first.headers["Content-Type"] == "application/json"
        assert first.headers["X-Webhook-ID"] == str(webhook_id)
        assert first.headers["X-Event-Type"] == "project.created"
        assert first.headers["X-Event-ID"] == "evt-1"
        assert first.headers["Authorization"] == "Bearer abc"
        assert first.headers["X-Webhook-Attempt"] == "1"
        assert second.headers["X-Webhook-Attempt"] == "2"
        assert json.loads(first.content) == {"project_id": "proj-123"}

    async def test_exhaustion_writes_permanently_failed_row(
        self, make_webhook, fetch_webhook, sleep
    ):
        webhook_id = await make_webhook(TENANT)
        endpoint = FakeEndpoint([500])

        result = await deliver(make_deliverer(endpoint, sleep), webhook_id)

        assert result.success is False
        assert result.status == WebhookDeliveryStatus.PERMANENTLY_FAILED
        assert result.attempts == 5
        assert result.http_status_code == 500
        assert "HTTP_ERROR" in result.error
        assert len(endpoint.requests) == 5
        assert sleep.delays == [1.0, 2.0, 4.0, 8.0]

        deliveries = await list_deliveries(webhook_id)
        assert len(deliveries) == 1
        assert deliveries[0].status == WebhookDeliveryStatus.PERMANENTLY_FAILED
        assert deliveries[0].attempts == 5
        assert deliveries[0].response_body == "status 500"

        webhook = await fetch_webhook(webhook_id)
        assert webhook.consecutive_failures == 1
        assert webhook.last_failure_at is not None
        assert webhook.disabled is False

    async def test_fifth_consecutive_failure_disables(
        self, make_webhook, fetch_webhook, sleep
    ):
        webhook_id = await make_webhook(TENANT, consecutive_failures=4)
        endpoint = FakeEndpoint([500])

        result = await deliver(make_deliverer(endpoint, sleep), webhook_id, max_attempts=2)

        assert result.webhook_disabled is True

        webhook = await fetch_webhook(webhook_id)
        assert webhook.consecutive_failures == 5
        assert webhook.disabled is True
        assert webhook.disabled_at is not None
        assert "5 consecutive" in webhook.disabled_reason

    async def test_fourth_consecutive_failure_does_not_disable(
        self, make_webhook, fetch_webhook, sleep
    ):
        webhook_id = await make_webhook(TENANT, consecutive_failures=3)
        endpoint = FakeEndpoint([500])

        result = await deliver(make_deliverer(endpoint, sleep), webhook_id, max_attempts=1)

        assert result.webhook_disabled is False
        assert sleep.delays == []

        webhook = await fetch_webhook(webhook_id)
        assert webhook.consecutive_failures == 4
        assert webhook.disabled is False

    async def test_disabled_webhook_is_not_called(
        self, make_webhook, fetch_webhook, sleep
    ):
        webhook_id = await make_webhook(TENANT, consecutive_failures=5, disabled=True)
        endpoint = FakeEndpoint([200])

        result = await deliver(make_deliverer(endpoint, sleep), webhook_id)

        assert result.success is False
        assert result.status == WebhookDeliveryStatus.DISABLED
        assert result.error == "Webhook is disabled"
        assert endpoint.requests == []
        assert await list_deliveries(webhook_id) == []

        webhook = await fetch_webhook(webhook_id)
        assert webhook.consecutive_failures == 5

    async def test_missing_and_foreign_webhooks_are_not_found(self, make_webhook, sleep):
        foreign_id = await make_webhook("tenant-b")
        endpoint = FakeEndpoint([200])
        deliverer = make_deliverer(endpoint, sleep)

        missing = await deliver(deliverer, uuid4())
        foreign = await deliver(deliverer, foreign_id)

        assert missing.error == foreign.error == "Webhook not found"
        assert endpoint.requests == []

    async def test_rejected_url_makes_no_request(self, make_webhook, fetch_webhook, sleep):
        webhook_id = await make_webhook(TENANT)
        endpoint = FakeEndpoint([200])

        result = await deliver(
            make_deliverer(endpoint, sleep),
            webhook_id,
            webhook_url="http://169.254.169.254/latest/meta-data",
        )

        assert result.success is False
        assert result.status == WebhookDeliveryStatus.FAILED
        assert "HTTPS" in result.error
        assert endpoint.requests == []
        assert await list_deliveries(webhook_id) == []
        assert (await fetch_webhook(webhook_id)).consecutive_failures == 0

    async def test_timeout_is_retried(self, make_webhook, sleep):
        webhook_id = await make_webhook(TENANT)
        endpoint = FakeEndpoint([httpx.ReadTimeout("slow"), 200])

        result = await deliver(make_deliverer(endpoint, sleep), webhook_id)

        assert result.success is True
        assert result.attempts == 2

    async def test_connection_error_reported(self, make_webhook, sleep):
        webhook_id = await make_webhook(TENANT)
        endpoint = FakeEndpoint([httpx.ConnectError("refused")])

        result = await deliver(make_deliverer(endpoint, sleep), webhook_id, max_attempts=2)

        assert result.status == WebhookDeliveryStatus.PERMANENTLY_FAILED
        assert result.error.startswith("URL_NOT_REACHABLE")
        assert result.http_status_code is None

    async def test_slow_response_is_cut_off_at_timeout(self, make_webhook, sleep):
        """An attempt that outlives its timeout fails even if httpx never fires."""
        webhook_id = await make_webhook(TENANT)

        async def stalled(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200)

        deliverer = WebhookDeliverer(
            client=httpx.AsyncClient(transport=httpx.MockTransport(stalled)),
            sleep=sleep,
            timeout_seconds=0.05,
        )

        result = await deliver(deliverer, webhook_id, max_attempts=1)

        assert result.status == WebhookDeliveryStatus.PERMANENTLY_FAILED
        assert result.error.startswith("REQUEST_TIMEOUT")

    def test_max_duration_covers_attempts_and_backoff(self):
        deliverer = WebhookDeliverer(
            backoff=BackoffPolicy(initial_delay=1.0, multiplier=2.0, max_delay=300.0),
            timeout_seconds=10,
        )

        assert deliverer.max_duration(3) == 3 * 10 + 1.0 + 2.0
        assert deliverer.max_duration(1, timeout_seconds=60) == 60

    async def test_zero_disable_threshold_is_respected(
        self, make_webhook, fetch_webhook, sleep
    ):
        """An explicit threshold is used as given, not replaced by the default."""
        webhook_id = await make_webhook(TENANT)
        endpoint = FakeEndpoint([500])
        deliverer = WebhookDeliverer(
            client=httpx.AsyncClient(transport=httpx.MockTransport(endpoint)),
            sleep=sleep,
            disable_threshold=0,
        )

        result = await deliver(deliverer, webhook_id, max_attempts=1)

        assert result.webhook_disabled is True
        assert (await fetch_webhook(webhook_id)).disabled is True

    async def test_record_failure_after_send_raises_record_error(
        self, make_webhook, sleep, monkeypatch
    ):
        webhook_id = await make_webhook(TENANT)
        endpoint = FakeEndpoint([200])

        async def broken_record(self, **kwargs):
            raise OperationalError("INSERT", {}, Exception("database unavailable"))

        monkeypatch.setattr(WebhookRepository, "record_delivery", broken_record)

        with pytest.raises(DeliveryRecordError) as exc_info:
            await deliver(make_deliverer(endpoint, sleep), webhook_id)

        assert isinstance(exc_info.value, PersistenceError)
        assert len(endpoint.requests) == 1


class TestDeliverWebhookHandler:
    """Tests for the deliver_webhook job handler."""

    @pytest.fixture(autouse=True)
    def reset_deliverer(self):
        yield
        set_deliverer(None)

    def make_context(self, payload: dict) -> JobContext:
        return JobContext(
            job_id=uuid4(),
            tenant_id=TENANT,
            job_type=JobType.DELIVER_WEBHOOK,
            attempt=1,
            max_attempts=3,
            payload=payload,
            worker_id="test-worker",
        )

    async def test_success_result(self, make_webhook):
        webhook_id = await make_webhook(TENANT)
        set_deliverer(make_deliverer(FakeEndpoint([200]), RecordingSleep()))

        result = await handle_deliver_webhook(
            self.make_context(
                {
                    "webhook_id": str(webhook_id),
                    "webhook_url": URL,
                    "payload": {"a": 1},
                    "event_type": "project.created",
                    "event_id": "evt-9",
                    "tenant_id": TENANT,
                }
            )
        )

        assert result.success is True
        assert result.output["status"] == "delivered"
        assert result.output["attempts"] == 1
        assert result.output["delivery_id"] is not None

    async def test_failure_is_not_retryable(self, make_webhook):
        webhook_id = await make_webhook(TENANT)
        set_deliverer(make_deliverer(FakeEndpoint([500]), RecordingSleep()))

        result = await handle_deliver_webhook(
            self.make_context(
                {
                    "webhook_id": str(webhook_id),
                    "webhook_url": URL,
                    "payload": {},
                    "event_type": "project.created",
                    "max_attempts": 2,
                }
            )
        )

        assert result.success is False
        assert result.retryable is False
        assert result.output["status"] == "permanently_failed"

    async def test_invalid_payload(self, async_engine):
        result = await handle_deliver_webhook(self.make_context({"webhook_id": "nope"}))

        assert result.success is False
        assert result.retryable is False
        assert "Invalid deliver_webhook payload" in result.error

    async def test_tenant_mismatch(self, make_webhook):
        webhook_id = await make_webhook("tenant-b")

        result = await handle_deliver_webhook(
            self.make_context(
                {
                    "webhook_id": str(webhook_id),
                    "webhook_url": URL,
                    "payload": {},
                    "event_type": "project.created",
                    "tenant_id": "tenant-b",
                }
            )
        )

        assert result.success is False
        assert result.error == "Webhook not found"

    async def test_budget_beyond_job_timeout_is_rejected(self, make_webhook):
        """A delivery that could outlive the stale job timeout is never started."""
        webhook_id = await make_webhook(TENANT)
        endpoint = FakeEndpoint([200])
        set_deliverer(make_deliverer(endpoint, RecordingSleep()))

        result = await handle_deliver_webhook(
            self.make_context(
                {
                    "webhook_id": str(webhook_id),
                    "webhook_url": URL,
                    "payload": {},
                    "event_type": "project.created",
                    "max_attempts": 20,
                    "timeout_seconds": 300,
                }
            )
        )

        assert result.success is False
        assert result.retryable is False
        assert "job timeout" in result.error
        assert endpoint.requests == []
        assert await list_deliveries(webhook_id) == []

    async def test_unrecorded_delivery_is_not_retryable(self, make_webhook, monkeypatch):
        """Once the event was sent, a storage failure must not resend it."""
        webhook_id = await make_webhook(TENANT)
        endpoint = FakeEndpoint([200])
        set_deliverer(make_deliverer(endpoint, RecordingSleep()))

        async def broken_record(self, **kwargs):
            raise OperationalError("INSERT", {}, Exception("database unavailable"))

        monkeypatch.setattr(WebhookRepository, "record_delivery", broken_record)

        result = await handle_deliver_webhook(
            self.make_context(
                {
                    "webhook_id": str(webhook_id),
                    "webhook_url": URL,
                    "payload": {},
                    "event_type": "project.created",
                }
            )
        )

        assert result.success is False
        assert result.retryable is False
        assert result.error == "Failed to record webhook delivery"
        assert len(endpoint.requests) == 1
