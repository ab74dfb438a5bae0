"""
Lead model - a prospective customer reached through one or more contacts.
The proactive outreach lifecycle lives on LeadJourney, not here.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from journeyflow.database import Base


class Lead(Base):
    __tablename__ = "leads"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[Optional[str]] = mapped_column(String(200))
    source: Mapped[str] = mapped_column(
        String(50), nullable=False, default="manual"
    )  # whatsapp_inbound, website, referral, manual
    status: Mapped[str] = mapped_column(String(30), default="open", nullable=False)
    locality: Mapped[Optional[str]] = mapped_column(String(120))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    # Relationships
    contacts: Mapped[list["Contact"]] = relationship(
        back_populates="lead", order_by="Contact.created_at"
    )
    journey: Mapped[Optional["LeadJourney"]] = relationship(back_populates="lead", uselist=False)
    events: Mapped[list["EventLog"]] = relationship(back_populates="lead")

    __table_args__ = (
        Index("ix_leads_status", "status"),
        Index("ix_leads_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Lead {str(self.id)[:8]} source={self.source} status={self.status}>"
