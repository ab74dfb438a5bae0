"""
Lead journey model - persisted state of the proactive WhatsApp outreach journey.
One row per lead, created lazily on first evaluation. Never deleted.

next_action_at is non-null iff a delayed tick for the lead is scheduled.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from journeyflow.database import Base


class LeadJourney(Base):
    __tablename__ = "lead_journeys"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("leads.id"), nullable=False, unique=True
    )

    # JourneyState value: NEW, CONSENT_CHECK, READY, INTRO_SENT, NUDGE_1, NUDGE_2,
    # PAUSE, BOOKING, QUALIFIED, QUOTE_SENT, WON, LOST, HUMAN_HANDOFF
    state: Mapped[str] = mapped_column(String(30), default="NEW", nullable=False)

    next_action_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_action_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_user_activity_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    manual_suppressed_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    lead: Mapped["Lead"] = relationship(back_populates="journey")

    __table_args__ = (
        Index("ix_journeys_state", "state"),
        Index("ix_journeys_next_action_at", "next_action_at"),
    )

    def __repr__(self) -> str:
        return f"<LeadJourney {str(self.lead_id)[:8]} state={self.state} attempts={self.attempts}>"
