"""Initial schema - leads, call attempts, appointments and the event log.

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Leads
    op.create_table(
        "leads",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("phone", sa.String(32), nullable=False),
        sa.Column("email", sa.String(255)),
        sa.Column("whatsapp", sa.String(64)),
        sa.Column("city", sa.String(100)),
        sa.Column("specialty", sa.String(100)),
        sa.Column("reason", sa.Text),
        sa.Column("preferred_language", sa.String(50)),
        sa.Column("source", sa.String(50)),
        sa.Column("preferred_channel", sa.String(20), nullable=False, server_default="voice"),
        sa.Column("timezone", sa.String(64)),
        sa.Column("status", sa.String(30), nullable=False, server_default="new"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True)),
        sa.Column("retry_kind", sa.String(30)),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("metadata", postgresql.JSONB, default={}),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "(status = 'retry_pending') = (next_retry_at IS NOT NULL)",
            name="ck_leads_next_retry_only_when_pending",
        ),
    )
    op.create_index("ix_leads_phone", "leads", ["phone"])
    op.create_index("ix_leads_whatsapp", "leads", ["whatsapp"])
    op.create_index("ix_leads_status", "leads", ["status"])
    op.create_index("ix_leads_status_next_retry", "leads", ["status", "next_retry_at"])
    op.create_index("ix_leads_created_at", "leads", ["created_at"])

    # Call attempts
    op.create_table(
        "call_attempts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "lead_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("leads.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("attempt_no", sa.Integer, nullable=False),
        sa.Column("direction", sa.String(10), nullable=False, server_default="outbound"),
        sa.Column("dispatch_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("call_handle", sa.String(128)),
        sa.Column("scheduled_at", sa.DateTime(timezone=True)),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("ended_at", sa.DateTime(timezone=True)),
        sa.Column("outcome", sa.String(255)),
        sa.Column("error_message", sa.Text),
        sa.Column("transcript", sa.Text),
        sa.Column("analysis", postgresql.JSONB),
        sa.Column("metadata", postgresql.JSONB, default={}),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("lead_id", "attempt_no", name="uq_call_attempts_lead_attempt_no"),
        sa.CheckConstraint("attempt_no >= 1", name="ck_call_attempts_attempt_no_positive"),
    )
    op.create_index("ix_call_attempts_lead_id", "call_attempts", ["lead_id"])
    op.create_index("ix_call_attempts_call_handle", "call_attempts", ["call_handle"])
    op.create_index("ix_call_attempts_in_flight", "call_attempts", ["dispatch_status", "ended_at"])

    # Appointments (written by the booking collaborator, read by the retry scheduler)
    op.create_table(
        "appointments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "lead_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("leads.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), server_default="confirmed"),
        sa.Column("notes", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_appointments_lead_start", "appointments", ["lead_id", "start_at"])

    # Lead history
    op.create_table(
        "lead_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "lead_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("leads.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("from_status", sa.String(30)),
        sa.Column("to_status", sa.String(30)),
        sa.Column("message", sa.Text),
        sa.Column("data", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_lead_events_lead_created", "lead_events", ["lead_id", "created_at"])
    op.create_index("ix_lead_events_to_status", "lead_events", ["to_status"])


def downgrade() -> None:
    op.drop_table("lead_events")
    op.drop_table("appointments")
    op.drop_table("call_attempts")
    op.drop_table("leads")
