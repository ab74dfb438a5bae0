"""
Drive a lead's journey through the operator API.

Usage:
    python scripts/simulate_journey.py --lead <lead_id> --contact <contact_id>
    python scripts/simulate_journey.py --lead <lead_id> --action activity
    python scripts/simulate_journey.py --lead <lead_id> --action suppress --hours 48
"""
import argparse
import asyncio
import logging
import os

import httpx

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

BASE_URL = os.environ.get("JOURNEYFLOW_URL", "http://localhost:8000")


def _headers() -> dict:
    api_key = os.environ.get("API_KEY", "")
    return {"X-API-Key": api_key} if api_key else {}


async def grant_consent(client: httpx.AsyncClient, contact_id: str):
    resp = await client.post(
        f"{BASE_URL}/api/v1/contacts/{contact_id}/consent",
        json={"status": "granted", "channel": "whatsapp", "proof": {"source": "simulate_journey"}},
    )
    logger.info("Consent response: %s %s", resp.status_code, resp.json())
    return resp


async def post_action(client: httpx.AsyncClient, lead_id: str, action: str, body: dict | None = None):
    resp = await client.post(f"{BASE_URL}/api/v1/leads/{lead_id}/journey/{action}", json=body)
    logger.info("%s response: %s %s", action, resp.status_code, resp.json())
    return resp


async def show_journey(client: httpx.AsyncClient, lead_id: str):
    resp = await client.get(f"{BASE_URL}/api/v1/leads/{lead_id}/journey")
    logger.info("Journey: %s %s", resp.status_code, resp.json())
    return resp


async def main():
    parser = argparse.ArgumentParser(description="Simulate journey events")
    parser.add_argument("--lead", required=True)
    parser.add_argument("--contact")
    parser.add_argument("--action", default="start", choices=["start", "activity", "suppress", "resume"])
    parser.add_argument("--hours", type=float, default=24)
    args = parser.parse_args()

    async with httpx.AsyncClient(timeout=30, headers=_headers()) as client:
        if args.action == "start":
            if args.contact:
                await grant_consent(client, args.contact)
            await post_action(client, args.lead, "resume")
        elif args.action == "activity":
            await post_action(client, args.lead, "activity", {})
        elif args.action == "suppress":
            await post_action(client, args.lead, "suppress", {"hours": args.hours})
        elif args.action == "resume":
            await post_action(client, args.lead, "resume")

        await show_journey(client, args.lead)


if __name__ == "__main__":
    asyncio.run(main())
