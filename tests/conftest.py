"""
Pytest configuration and shared fixtures.
"""

import os
from collections.abc import AsyncGenerator
from datetime import datetime
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine

from jobengine.config import Settings
from jobengine.constants import JobStatus
from jobengine.db import close_db, get_session_context, init_db
from jobengine.db.connection import get_test_engine
from jobengine.db.models import Base, Job, Webhook, utcnow

# Test database URL. Defaults to a throwaway SQLite file per test;
# point it at PostgreSQL to exercise SKIP LOCKED for real.
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


@pytest.fixture
def database_url(tmp_path) -> str:
    """Get the test database URL."""
    return TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path}/jobs.db"


@pytest_asyncio.fixture
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine]:
    """Create the schema on a fresh engine and bind the session factory to it."""
    engine = get_test_engine(database_url)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    await init_db(engine)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await close_db()


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        log_level="DEBUG",
        log_format="console",
        worker_poll_interval_seconds=0.1,
        reaper_interval_seconds=1,
        webhook_enable_jitter=False,
    )


@pytest.fixture
def test_tenant_id() -> str:
    """Generate a test tenant ID."""
    return f"test-tenant-{uuid4().hex[:8]}"


@pytest.fixture
def sample_job_payload() -> dict[str, Any]:
    """Create a sample job payload."""
    return {"project_id": "proj-123", "region": "us-east-1"}


@pytest.fixture
def make_webhook(async_engine):
    """Factory that persists a webhook and returns its id."""

    async def _make(
        tenant_id: str,
        url: str = "https://hooks.example.com/events",
        event_type: str = "project.created",
        consecutive_failures: int = 0,
        disabled: bool = False,
        headers: dict[str, str] | None = None,
    ):
        async with get_session_context() as session:
            webhook = Webhook(
                tenant_id=tenant_id,
                event_type=event_type,
                url=url,
                headers=headers or {},
                consecutive_failures=consecutive_failures,
                disabled=disabled,
            )
            session.add(webhook)
            await session.flush()
            return webhook.id

    return _make


@pytest.fixture
def fetch_webhook(async_engine):
    """Read a webhook's current state in a fresh session."""

    async def _fetch(webhook_id) -> Webhook:
        async with get_session_context() as session:
            return await session.get(Webhook, webhook_id)

    return _fetch


@pytest.fixture
def make_job(async_engine):
    """Factory that persists a job in an arbitrary state and returns it."""

    async def _make(
        tenant_id: str,
        job_type: str = "send_email",
        payload: dict[str, Any] | None = None,
        status: JobStatus = JobStatus.PENDING,
        attempts: int = 0,
        max_attempts: int = 3,
        last_error: str | None = None,
        scheduled_at: datetime | None = None,
        started_at: datetime | None = None,
    ) -> Job:
        async with get_session_context() as session:
            job = Job(
                tenant_id=tenant_id,
                type=job_type,
                payload=payload or {},
                status=status,
                attempts=attempts,
                max_attempts=max_attempts,
                last_error=last_error,
                scheduled_at=scheduled_at or utcnow(),
                started_at=started_at,
                completed_at=utcnow() if status == JobStatus.FAILED else None,
            )
            session.add(job)
            await session.flush()
            return job

    return _make


@pytest.fixture
def fetch_job(async_engine):
    """Read a job's current state in a fresh session."""

    async def _fetch(job_id) -> Job:
        async with get_session_context() as session:
            return await session.get(Job, job_id)

    return _fetch
