"""
Consent ledger - records consent events and answers consent-status lookups.

Status resolution for (contact, channel):
1. Latest ConsentRecord wins.
2. No record: 'granted' if the contact's whatsapp_opt_in flag is set (whatsapp channel),
   else 'unknown'.
3. A DND flag downgrades 'granted' to 'revoked'.

The journey treats any lookup failure as 'unknown' (fail closed).
"""
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from journeyflow.models.consent import ConsentRecord, CONSENT_STATUSES
from journeyflow.models.contact import Contact
from journeyflow.services.compliance import normalize_consent_status

logger = logging.getLogger(__name__)

WHATSAPP_CHANNEL = "whatsapp"


class ContactNotFoundError(Exception):
    """Raised when a consent operation targets a contact that does not exist."""
    pass


class ConsentLookup(ABC):
    """Capability: current consent status for a contact."""

    @abstractmethod
    async def get_consent_status(self, contact_id: str, channel: str = WHATSAPP_CHANNEL) -> str:
        """Returns 'granted', 'revoked' or 'unknown'. May raise on infrastructure failure."""
        ...


async def resolve_consent_status(
    db: AsyncSession,
    contact_id: uuid.UUID,
    channel: str = WHATSAPP_CHANNEL,
) -> tuple[str, Optional[datetime]]:
    """Returns (status, recorded_at of the deciding ledger row or None)."""
    contact = await db.get(Contact, contact_id)
    if not contact:
        raise ContactNotFoundError(f"Contact {str(contact_id)[:8]} not found")

    result = await db.execute(
        select(ConsentRecord)
        .where(
            ConsentRecord.contact_id == contact_id,
            ConsentRecord.channel == channel,
        )
        .order_by(ConsentRecord.recorded_at.desc())
        .limit(1)
    )
    latest = result.scalar_one_or_none()

    if latest:
        status = latest.status
    elif channel == WHATSAPP_CHANNEL and contact.whatsapp_opt_in:
        status = "granted"
    else:
        status = "unknown"

    if contact.dnd_flag and status == "granted":
        status = "revoked"

    return status, latest.recorded_at if latest else None


class LedgerConsentLookup(ConsentLookup):
    """Reads the consent ledger with a short-lived session per lookup."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def get_consent_status(self, contact_id: str, channel: str = WHATSAPP_CHANNEL) -> str:
        async with self.session_factory() as db:
            status, _ = await resolve_consent_status(db, uuid.UUID(str(contact_id)), channel)
        return status


async def safe_consent_status(
    lookup: ConsentLookup,
    contact_id: str,
    channel: str = WHATSAPP_CHANNEL,
) -> str:
    """Consent status with every failure mapped to 'unknown'."""
    try:
        status = await lookup.get_consent_status(contact_id, channel)
    except Exception as e:
        logger.error(
            "Consent lookup failed for contact %s: %s",
            str(contact_id)[:8], str(e),
            extra={"contact_id": str(contact_id)},
        )
        return "unknown"
    return normalize_consent_status(status)


async def record_consent(
    db: AsyncSession,
    contact_id: uuid.UUID,
    status: str,
    channel: str = WHATSAPP_CHANNEL,
    proof: Optional[dict] = None,
) -> ConsentRecord:
    """
    Append a consent event and sync the contact's denormalized flags.
    granted -> opt_in=True, dnd=False; revoked -> opt_in=False, dnd=True.
    Caller commits.
    """
    if status not in CONSENT_STATUSES:
        raise ValueError(f"Invalid consent status: {status}")

    contact = await db.get(Contact, contact_id)
    if not contact:
        raise ContactNotFoundError(f"Contact {str(contact_id)[:8]} not found")

    record = ConsentRecord(
        contact_id=contact_id,
        channel=channel,
        status=status,
        proof=proof,
    )
    db.add(record)

    if channel == WHATSAPP_CHANNEL and status in ("granted", "revoked"):
        granted = status == "granted"
        await db.execute(
            update(Contact)
            .where(Contact.id == contact_id)
            .values(whatsapp_opt_in=granted, dnd_flag=not granted)
        )

    await db.flush()
    logger.info(
        "Consent recorded: contact=%s channel=%s status=%s",
        str(contact_id)[:8], channel, status,
        extra={"contact_id": str(contact_id)},
    )
    return record
