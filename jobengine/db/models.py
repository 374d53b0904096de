"""
SQLAlchemy database models.
Defines the jobs, webhooks and webhook_deliveries tables.
"""

from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from jobengine.constants import HttpMethod, JobStatus, WebhookDeliveryStatus

# JSONB on PostgreSQL, plain JSON elsewhere
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC; naive values are read as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _enum_values(enum_cls):
    return [e.value for e in enum_cls]


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Job model representing a unit of asynchronous work.

    This is the authoritative source of truth for job state.
    All job lifecycle transitions are conditional updates against this table.

    Key constraints:
    - 0 <= attempts <= max_attempts is enforced by check constraints
    - tenant_id is fixed for the lifetime of the row
    - scheduled_at gates eligibility for claiming
    """

    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )

    tenant_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    payload: Mapped[dict] = mapped_column(
        JSONDocument,
        nullable=False,
        default=dict,
    )

    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            name="job_status",
            native_enum=False,
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=JobStatus.PENDING,
    )

    # Retry tracking
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=3,
    )
    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    # Timestamps
    scheduled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        CheckConstraint("attempts >= 0", name="jobs_attempts_not_negative"),
        CheckConstraint("max_attempts > 0", name="jobs_max_attempts_positive"),
        CheckConstraint("attempts <= max_attempts", name="jobs_attempts_not_exceed_max"),
        # Worker polling
        Index("ix_jobs_status_scheduled_at", "status", "scheduled_at"),
        # Tenant scoping
        Index("ix_jobs_tenant_id", "tenant_id"),
        Index("ix_jobs_tenant_status", "tenant_id", "status"),
    )

    @property
    def is_retryable(self) -> bool:
        """Check if the job has attempt budget left."""
        return self.attempts < self.max_attempts

    @property
    def is_due(self) -> bool:
        """Check if the job's scheduled time has passed."""
        return as_utc(self.scheduled_at) <= utcnow()

    @property
    def priority(self) -> int | None:
        """Handler-interpreted priority merged into the payload at enqueue time."""
        return (self.payload or {}).get("priority")

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, tenant={self.tenant_id}, type={self.type}, "
            f"status={self.status}, attempts={self.attempts}/{self.max_attempts})"
        )


class Webhook(Base):
    """
    Tenant-configured HTTP callback target for one event type.

    Created by the configuration API. Only the delivery handler mutates the
    failure counter and the disable flag.
    """

    __tablename__ = "webhooks"

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)

    http_method: Mapped[HttpMethod] = mapped_column(
        Enum(
            HttpMethod,
            name="webhook_http_method",
            native_enum=False,
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=HttpMethod.POST,
    )
    headers: Mapped[dict] = mapped_column(JSONDocument, nullable=False, default=dict)

    disabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    disabled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    disabled_reason: Mapped[str | None] = mapped_column(Text)

    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_delivery_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_failure_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    deliveries: Mapped[list["WebhookDelivery"]] = relationship(
        back_populates="webhook",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        CheckConstraint("length(url) > 0", name="webhooks_url_not_empty"),
        CheckConstraint(
            "consecutive_failures >= 0", name="webhooks_consecutive_failures_not_negative"
        ),
        Index("ix_webhooks_tenant_event", "tenant_id", "event_type"),
    )

    def __repr__(self) -> str:
        return (
            f"Webhook(id={self.id}, tenant={self.tenant_id}, event={self.event_type}, "
            f"disabled={self.disabled}, failures={self.consecutive_failures})"
        )


class WebhookDelivery(Base):
    """
    Append-only record of one delivery outcome.

    One row summarizes a whole internal retry loop; ``attempts`` carries the
    number of HTTP calls made.
    """

    __tablename__ = "webhook_deliveries"

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    webhook_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("webhooks.id", ondelete="CASCADE"),
        nullable=False,
    )
    event_id: Mapped[str | None] = mapped_column(String(255))
    event_type: Mapped[str] = mapped_column(String(255), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[WebhookDeliveryStatus] = mapped_column(
        Enum(
            WebhookDeliveryStatus,
            name="webhook_delivery_status",
            native_enum=False,
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=False,
    )
    http_status_code: Mapped[int | None] = mapped_column(Integer)
    response_body: Mapped[str | None] = mapped_column(Text)
    error_message: Mapped[str | None] = mapped_column(Text)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    duration_ms: Mapped[int | None] = mapped_column(Integer)

    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    webhook: Mapped[Webhook] = relationship(back_populates="deliveries")

    __table_args__ = (
        CheckConstraint("attempts > 0", name="webhook_deliveries_attempts_positive"),
        Index("ix_webhook_deliveries_webhook_id", "webhook_id"),
        Index("ix_webhook_deliveries_event_id", "event_id"),
        Index("ix_webhook_deliveries_webhook_status", "webhook_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"WebhookDelivery(id={self.id}, webhook={self.webhook_id}, "
            f"status={self.status}, attempts={self.attempts})"
        )
