"""
Call attempt model - one dispatched voice call against a lead.
attempt_no is 1-based and unique per lead; rows are never reused.
The external call handle is the join key for webhook correlation.
"""
import enum
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from leadcall.database import Base


class DispatchStatus(str, enum.Enum):
    PENDING = "pending"  # row allocated, gateway call not yet returned
    DISPATCHED = "dispatched"
    FAILED = "failed"


class CallAttempt(Base):
    __tablename__ = "call_attempts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("leads.id", ondelete="CASCADE"), nullable=False
    )
    attempt_no: Mapped[int] = mapped_column(Integer, nullable=False)
    direction: Mapped[str] = mapped_column(String(10), default="outbound", nullable=False)

    dispatch_status: Mapped[str] = mapped_column(
        String(20), default=DispatchStatus.PENDING.value, nullable=False
    )
    call_handle: Mapped[Optional[str]] = mapped_column(String(128))

    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Raw provider disposition, kept for diagnostics only
    outcome: Mapped[Optional[str]] = mapped_column(String(255))
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    # Stored verbatim from the analyzed event
    transcript: Mapped[Optional[str]] = mapped_column(Text)
    analysis: Mapped[Optional[dict]] = mapped_column(JSONB)

    extra_data: Mapped[Optional[dict]] = mapped_column("metadata", JSONB, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    lead: Mapped["Lead"] = relationship(back_populates="attempts")

    __table_args__ = (
        UniqueConstraint("lead_id", "attempt_no", name="uq_call_attempts_lead_attempt_no"),
        Index("ix_call_attempts_lead_id", "lead_id"),
        Index("ix_call_attempts_call_handle", "call_handle"),
        Index("ix_call_attempts_in_flight", "dispatch_status", "ended_at"),
    )

    def __repr__(self) -> str:
        return f"<CallAttempt #{self.attempt_no} dispatch={self.dispatch_status} outcome={self.outcome}>"
