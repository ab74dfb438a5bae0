"""
Seed a demo lead with one WhatsApp contact into the database.

Usage:
    python scripts/seed_demo_lead.py
    python scripts/seed_demo_lead.py --phone "+919812345678" --name "Asha Rao" --opt-in
"""
import argparse
import asyncio
import logging

from journeyflow.database import async_session_factory
from journeyflow.models.contact import Contact
from journeyflow.models.lead import Lead

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def seed(name: str, phone: str, opt_in: bool):
    async with async_session_factory() as db:
        lead = Lead(name=name, source="manual", locality="Bengaluru")
        db.add(lead)
        await db.flush()

        contact = Contact(
            lead_id=lead.id,
            name=name.split()[0],
            phone=phone,
            role="owner",
            preferred_channel="whatsapp",
            whatsapp_opt_in=opt_in,
        )
        db.add(contact)
        await db.commit()

    logger.info("Seeded lead=%s contact=%s", lead.id, contact.id)
    return lead, contact


async def main():
    parser = argparse.ArgumentParser(description="Seed a demo lead")
    parser.add_argument("--name", default="Asha Rao")
    parser.add_argument("--phone", default="+919812345678")
    parser.add_argument("--opt-in", action="store_true")
    args = parser.parse_args()
    await seed(args.name, args.phone, args.opt_in)


if __name__ == "__main__":
    asyncio.run(main())
