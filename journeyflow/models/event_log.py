"""
Event log model - audit trail for every journey transition and outreach attempt.
Used for debugging, consent audits, and operator review.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from journeyflow.database import Base


class EventLog(Base):
    __tablename__ = "event_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    lead_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("leads.id")
    )

    # Event details
    action: Mapped[str] = mapped_column(
        String(100), nullable=False
    )  # journey_template_sent, journey_transition, journey_user_activity, consent_recorded, etc.
    status: Mapped[str] = mapped_column(
        String(20), default="success"
    )  # success, failure, skipped, error

    # Details
    message: Mapped[Optional[str]] = mapped_column(Text)
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    # Context data
    data: Mapped[Optional[dict]] = mapped_column(JSONB)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    lead: Mapped[Optional["Lead"]] = relationship(back_populates="events")

    __table_args__ = (
        Index("ix_events_lead_id", "lead_id"),
        Index("ix_events_action", "action"),
        Index("ix_events_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<EventLog {self.action} status={self.status}>"
