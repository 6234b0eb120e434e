"""Create delivery call pipeline tables

Revision ID: 001
Revises: None
Create Date: 2026-10-19

PostgreSQL only: ids default to gen_random_uuid() and JSON columns are
JSONB. Tests build the schema from the models with metadata.create_all.
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_CALL_PREDICATE = sa.text("status IN ('queued', 'initiated', 'ringing', 'answered')")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "customers",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("name", sa.String, nullable=False),
        sa.Column("phone", sa.String, unique=True, index=True, nullable=False),
        sa.Column("email", sa.String, nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "agents",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("name", sa.String, nullable=False),
        sa.Column("phone", sa.String, unique=True, index=True, nullable=False),
        sa.Column("email", sa.String, nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("push_subscription", JSONB, nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "deliveries",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("customer_id", UUID(as_uuid=True), sa.ForeignKey("customers.id"), index=True, nullable=False),
        sa.Column("agent_id", UUID(as_uuid=True), sa.ForeignKey("agents.id"), index=True, nullable=True),
        sa.Column("address", sa.Text, nullable=False),
        sa.Column("scheduled_time", sa.DateTime, index=True, nullable=False),
        sa.Column(
            "status",
            sa.Enum("scheduled", "in_progress", "completed", "failed", name="delivery_status"),
            nullable=False,
            server_default="scheduled",
        ),
        *_timestamps(),
    )

    op.create_table(
        "call_logs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("delivery_id", UUID(as_uuid=True), sa.ForeignKey("deliveries.id"), index=True, nullable=False),
        sa.Column("call_sid", sa.String, unique=True, nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "queued", "initiated", "ringing", "answered", "completed", "no-answer", "busy", "failed",
                name="call_log_status",
            ),
            nullable=False,
            server_default="queued",
        ),
        sa.Column("duration", sa.Integer, nullable=True),
        sa.Column("recording_url", sa.String, nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "uq_call_logs_active_delivery",
        "call_logs",
        ["delivery_id"],
        unique=True,
        postgresql_where=ACTIVE_CALL_PREDICATE,
        sqlite_where=ACTIVE_CALL_PREDICATE,
    )

    op.create_table(
        "recordings",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("call_log_id", UUID(as_uuid=True), sa.ForeignKey("call_logs.id"), unique=True, nullable=False),
        sa.Column("audio_url", sa.String, nullable=False),
        sa.Column("audio_durable", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("provider_recording_url", sa.String, nullable=True),
        sa.Column("duration", sa.Integer, nullable=True),
        sa.Column("transcript", sa.Text, nullable=True),
        sa.Column("transcript_source", sa.String, nullable=True),
        sa.Column("transcription_error", sa.Text, nullable=True),
        sa.Column("intent", JSONB, nullable=True),
        sa.Column("intent_source", sa.String, nullable=True),
        sa.Column("notified_at", sa.DateTime, nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "jobs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("kind", sa.String, nullable=False),
        sa.Column("payload", JSONB, nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "active", "completed", "failed", name="job_status"),
            index=True,
            nullable=False,
            server_default="pending",
        ),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("backoff_seconds", sa.Float, nullable=False, server_default="5"),
        sa.Column("stalled_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("available_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("lease_expires_at", sa.DateTime, nullable=True),
        sa.Column("worker_id", sa.String, nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime, index=True, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("finished_at", sa.DateTime, nullable=True),
    )
    op.create_index("ix_jobs_kind_status_available", "jobs", ["kind", "status", "available_at"])


def downgrade() -> None:
    op.drop_index("ix_jobs_kind_status_available", table_name="jobs")
    op.drop_table("jobs")
    op.drop_table("recordings")
    op.drop_index("uq_call_logs_active_delivery", table_name="call_logs")
    op.drop_table("call_logs")
    op.drop_table("deliveries")
    op.drop_table("agents")
    op.drop_table("customers")
    op.execute("DROP TYPE IF EXISTS job_status")
    op.execute("DROP TYPE IF EXISTS call_log_status")
    op.execute("DROP TYPE IF EXISTS delivery_status")
