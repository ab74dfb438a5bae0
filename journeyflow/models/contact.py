"""
Contact model - a reachable person attached to a lead.
whatsapp_opt_in and dnd_flag are denormalized from the consent ledger.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from journeyflow.database import Base


class Contact(Base):
    __tablename__ = "contacts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("leads.id"), nullable=False
    )

    name: Mapped[Optional[str]] = mapped_column(String(200))
    phone: Mapped[Optional[str]] = mapped_column(String(20))  # E.164
    role: Mapped[Optional[str]] = mapped_column(String(50))  # owner, decision_maker, family
    preferred_channel: Mapped[Optional[str]] = mapped_column(String(20))  # whatsapp, call, email

    whatsapp_opt_in: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    dnd_flag: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    lead: Mapped["Lead"] = relationship(back_populates="contacts")
    consent_records: Mapped[list["ConsentRecord"]] = relationship(back_populates="contact")

    __table_args__ = (
        Index("ix_contacts_lead_id", "lead_id"),
        Index("ix_contacts_phone", "phone"),
    )

    def __repr__(self) -> str:
        masked = self.phone[:6] + "***" if self.phone else "none"
        return f"<Contact {masked} opt_in={self.whatsapp_opt_in} dnd={self.dnd_flag}>"
