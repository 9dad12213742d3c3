"""
Lead model - a person to be reached by automated voice calls.
Tracks the contact lifecycle:
new → dispatching → in_progress → retry_pending / async_outreach / identity_mismatch / qualified.
Terminal states for this service: qualified, identity_mismatch.
"""
import enum
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, DateTime, Index, CheckConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from leadcall.database import Base


class LeadStatus(str, enum.Enum):
    NEW = "new"
    DISPATCHING = "dispatching"
    IN_PROGRESS = "in_progress"
    RETRY_PENDING = "retry_pending"
    IDENTITY_MISMATCH = "identity_mismatch"
    QUALIFIED = "qualified"
    ASYNC_OUTREACH = "async_outreach"
    AWAITING_CHANNEL_CHOICE = "awaiting_channel_choice"
    DISPATCH_FAILED = "dispatch_failed"


class ContactChannel(str, enum.Enum):
    VOICE = "voice"
    ASYNC_MESSAGE = "async_message"


class RetryKind(str, enum.Enum):
    SHORT_CALLBACK = "short_callback"
    BUSINESS_HOURS = "business_hours"
    DISPATCH_BACKOFF = "dispatch_backoff"


class Lead(Base):
    __tablename__ = "leads"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )

    # Contact info
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    whatsapp: Mapped[Optional[str]] = mapped_column(String(64))

    # Classification hints passed to the voice agent
    city: Mapped[Optional[str]] = mapped_column(String(100))
    specialty: Mapped[Optional[str]] = mapped_column(String(100))
    reason: Mapped[Optional[str]] = mapped_column(Text)
    preferred_language: Mapped[Optional[str]] = mapped_column(String(50))
    source: Mapped[Optional[str]] = mapped_column(String(50))

    preferred_channel: Mapped[str] = mapped_column(
        String(20), default=ContactChannel.VOICE.value, nullable=False
    )
    timezone: Mapped[Optional[str]] = mapped_column(String(64))

    # Lifecycle - written only through leadcall.services.lead_state.transition
    status: Mapped[str] = mapped_column(
        String(30), default=LeadStatus.NEW.value, nullable=False
    )
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    retry_kind: Mapped[Optional[str]] = mapped_column(String(30))
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)

    extra_data: Mapped[Optional[dict]] = mapped_column("metadata", JSONB, default=dict)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    # Relationships
    attempts: Mapped[list["CallAttempt"]] = relationship(
        back_populates="lead", lazy="select", order_by="CallAttempt.attempt_no"
    )
    appointments: Mapped[list["Appointment"]] = relationship(
        back_populates="lead", lazy="select"
    )
    events: Mapped[list["EventLog"]] = relationship(
        back_populates="lead", lazy="select", order_by="EventLog.created_at"
    )

    __table_args__ = (
        Index("ix_leads_phone", "phone"),
        Index("ix_leads_whatsapp", "whatsapp"),
        Index("ix_leads_status", "status"),
        Index("ix_leads_status_next_retry", "status", "next_retry_at"),
        Index("ix_leads_created_at", "created_at"),
        CheckConstraint(
            "(status = 'retry_pending') = (next_retry_at IS NOT NULL)",
            name="ck_leads_next_retry_only_when_pending",
        ),
    )

    @property
    def first_name(self) -> str:
        return (self.name or "").strip().split(" ")[0] if self.name else ""

    def __repr__(self) -> str:
        masked = self.phone[:6] + "***" if self.phone else "unknown"
        return f"<Lead {masked} status={self.status}>"
