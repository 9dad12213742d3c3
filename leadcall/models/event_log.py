"""
Lead history. One row per status transition plus a few non-transition
actions (lead_submitted, channel_preference_recorded, dispatch errors).
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from leadcall.database import Base


class EventLog(Base):
    __tablename__ = "lead_events"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("leads.id", ondelete="CASCADE"), nullable=False
    )

    action: Mapped[str] = mapped_column(String(50), nullable=False)
    # Set only for status_changed rows
    from_status: Mapped[Optional[str]] = mapped_column(String(30))
    to_status: Mapped[Optional[str]] = mapped_column(String(30))
    message: Mapped[Optional[str]] = mapped_column(Text)
    data: Mapped[Optional[dict]] = mapped_column(JSONB)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    lead: Mapped["Lead"] = relationship(back_populates="events")

    __table_args__ = (
        Index("ix_lead_events_lead_created", "lead_id", "created_at"),
        Index("ix_lead_events_to_status", "to_status"),
    )

    def __repr__(self) -> str:
        if self.to_status:
            return f"<EventLog {self.from_status}->{self.to_status}>"
        return f"<EventLog {self.action}>"
