"""Initial schema with jobs, webhooks and webhook_deliveries tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Enums are stored as VARCHAR with CHECK constraints
    op.create_table(
        "jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column("type", sa.String(100), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("status", sa.String(9), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column(
            "scheduled_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'failed', 'completed')",
            name="job_status",
        ),
        sa.CheckConstraint("attempts >= 0", name="jobs_attempts_not_negative"),
        sa.CheckConstraint("max_attempts > 0", name="jobs_max_attempts_positive"),
        sa.CheckConstraint("attempts <= max_attempts", name="jobs_attempts_not_exceed_max"),
    )

    op.create_index("ix_jobs_status_scheduled_at", "jobs", ["status", "scheduled_at"])
    op.create_index("ix_jobs_tenant_id", "jobs", ["tenant_id"])
    op.create_index("ix_jobs_tenant_status", "jobs", ["tenant_id", "status"])

    # Create partial index for queue polling
    op.execute("""
        CREATE INDEX ix_jobs_due
        ON jobs (scheduled_at, created_at)
        WHERE status = 'pending'
    """)

    # Create partial index for stale job recovery
    op.execute("""
        CREATE INDEX ix_jobs_running_started_at
        ON jobs (started_at)
        WHERE status = 'running'
    """)

    op.create_table(
        "webhooks",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(255), nullable=False),
        sa.Column("url", sa.Text, nullable=False),
        sa.Column("http_method", sa.String(5), nullable=False, server_default="POST"),
        sa.Column("headers", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("disabled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("disabled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("disabled_reason", sa.Text, nullable=True),
        sa.Column("consecutive_failures", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_delivery_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_failure_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "http_method IN ('POST', 'PUT', 'PATCH')",
            name="webhook_http_method",
        ),
        sa.CheckConstraint("length(url) > 0", name="webhooks_url_not_empty"),
        sa.CheckConstraint(
            "consecutive_failures >= 0",
            name="webhooks_consecutive_failures_not_negative",
        ),
    )

    op.create_index("ix_webhooks_tenant_event", "webhooks", ["tenant_id", "event_type"])

    op.create_table(
        "webhook_deliveries",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("webhook_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("event_id", sa.String(255), nullable=True),
        sa.Column("event_type", sa.String(255), nullable=False),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column("status", sa.String(18), nullable=False),
        sa.Column("http_status_code", sa.Integer, nullable=True),
        sa.Column("response_body", sa.Text, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="1"),
        sa.Column("duration_ms", sa.Integer, nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["webhook_id"], ["webhooks.id"], ondelete="CASCADE"),
        sa.CheckConstraint(
            "status IN ('pending', 'delivering', 'delivered', 'failed', "
            "'permanently_failed', 'disabled')",
            name="webhook_delivery_status",
        ),
        sa.CheckConstraint("attempts > 0", name="webhook_deliveries_attempts_positive"),
    )

    op.create_index(
        "ix_webhook_deliveries_webhook_id", "webhook_deliveries", ["webhook_id"]
    )
    op.create_index(
        "ix_webhook_deliveries_event_id", "webhook_deliveries", ["event_id"]
    )
    op.create_index(
        "ix_webhook_deliveries_webhook_status",
        "webhook_deliveries",
        ["webhook_id", "status"],
    )


def downgrade() -> None:
    op.drop_index("ix_webhook_deliveries_webhook_status")
    op.drop_index("ix_webhook_deliveries_event_id")
    op.drop_index("ix_webhook_deliveries_webhook_id")
    op.drop_table("webhook_deliveries")

    op.drop_index("ix_webhooks_tenant_event")
    op.drop_table("webhooks")

    op.execute("DROP INDEX IF EXISTS ix_jobs_running_started_at")
    op.execute("DROP INDEX IF EXISTS ix_jobs_due")
    op.drop_index("ix_jobs_tenant_status")
    op.drop_index("ix_jobs_tenant_id")
    op.drop_index("ix_jobs_status_scheduled_at")
    op.drop_table("jobs")
