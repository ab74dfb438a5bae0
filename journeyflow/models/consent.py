"""
Consent record model - append-only ledger of consent events per contact and channel.
The latest record for (contact, channel) is authoritative over the contact's legacy
whatsapp_opt_in flag. Rows are never updated or deleted.

Statuses:
- granted: explicit opt-in (inbound message, form, verbal confirmation)
- revoked: opt-out (STOP reply, operator action)
- unknown: no usable evidence either way
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from journeyflow.database import Base

CONSENT_STATUSES = ("granted", "revoked", "unknown")


class ConsentRecord(Base):
    __tablename__ = "consent_records"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    contact_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("contacts.id"), nullable=False
    )
    channel: Mapped[str] = mapped_column(String(20), nullable=False, default="whatsapp")
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    # Raw evidence of how the status was obtained
    proof: Mapped[Optional[dict]] = mapped_column(JSONB)

    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    contact: Mapped["Contact"] = relationship(back_populates="consent_records")

    __table_args__ = (
        Index("ix_consent_contact_channel", "contact_id", "channel", "recorded_at"),
    )

    def __repr__(self) -> str:
        return f"<ConsentRecord {str(self.contact_id)[:8]} {self.channel}={self.status}>"
