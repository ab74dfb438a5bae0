"""
Journey service - the application seam around the journey state machine.

Every journey mutation follows the same path, under the per-lead lock:
    read (short session) -> compute (JourneyMachine / journey event) -> write (short session)
    -> sync the scheduler with the persisted next_action_at.
No session or transaction is held across the provider call inside the dispatcher.

Operations:
- evaluate_journey(lead_id, force)           one evaluation, persisted
- schedule_journey(lead_id, delay, force)    (re)schedule the lead's single tick
- run_tick(job)                              lock + evaluate + reschedule (runner entry point)
- record_user_activity(lead_id, occurred_at) inbound message collapses the journey to PAUSE
- set_manual_suppression(lead_id, until)     operator pause / resume (forced reschedule)
- record_contact_consent(contact_id, ...)    consent ledger write, re-ticks a waiting journey
"""
import logging
import uuid
from datetime import datetime, timedelta
from functools import partial
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from journeyflow.models.contact import Contact
from journeyflow.models.event_log import EventLog
from journeyflow.models.journey import LeadJourney
from journeyflow.models.lead import Lead
from journeyflow.schemas.journey import (
    ContactSummary,
    JourneyResult,
    JourneySnapshot,
    JourneyState,
    JourneyTransition,
)
from journeyflow.services.consent import record_consent, WHATSAPP_CHANNEL
from journeyflow.services.journey_machine import (
    JourneyMachine,
    on_manual_suppression,
    on_user_activity,
    select_primary_contact,
)
from journeyflow.utils.timeutils import as_utc, utcnow
from journeyflow.workers.journey_scheduler import JourneyJob, JourneyScheduler

logger = logging.getLogger(__name__)

_OUTCOME_EVENT_STATUS = {
    "sent": "success",
    "consent_required": "skipped",
    "skipped": "skipped",
    "error": "error",
}


class LeadNotFoundError(Exception):
    """Raised when a journey operation targets a lead that does not exist."""
    pass


def parse_lead_id(lead_id) -> uuid.UUID:
    try:
        return lead_id if isinstance(lead_id, uuid.UUID) else uuid.UUID(str(lead_id))
    except ValueError:
        raise LeadNotFoundError(f"Lead {lead_id} not found")


def snapshot_from_row(journey: LeadJourney) -> JourneySnapshot:
    return JourneySnapshot(
        state=JourneyState(journey.state),
        next_action_at=as_utc(journey.next_action_at),
        last_action_at=as_utc(journey.last_action_at),
        last_user_activity_at=as_utc(journey.last_user_activity_at),
        last_error=journey.last_error,
        manual_suppressed_until=as_utc(journey.manual_suppressed_until),
        attempts=journey.attempts or 0,
    )


def activity_since(snapshot: JourneySnapshot, enqueued_at: Optional[datetime]) -> bool:
    """True when the user wrote at or after the tick was enqueued."""
    enqueued_at = as_utc(enqueued_at)
    if enqueued_at is None or snapshot.last_user_activity_at is None:
        return False
    return snapshot.last_user_activity_at >= enqueued_at


def _transition_events(lead_id: uuid.UUID, transition: JourneyTransition, action: str) -> list[EventLog]:
    events = []
    if transition.template and transition.outcome:
        outcome = transition.outcome
        events.append(EventLog(
            lead_id=lead_id,
            action="journey_template_sent" if outcome.status == "sent" else "journey_template_failed",
            status=_OUTCOME_EVENT_STATUS[outcome.status],
            message=f"Template {transition.template}: {outcome.status}",
            error_message=outcome.message or outcome.reason,
            data={
                "template": transition.template,
                "outcome": outcome.status,
                "provider_message_id": outcome.provider_message_id,
                "retry_delay_seconds": int(outcome.retry_delay.total_seconds()) if outcome.retry_delay else None,
            },
        ))

    if action != "journey_transition" or transition.previous_state != transition.state:
        events.append(EventLog(
            lead_id=lead_id,
            action=action,
            status="success",
            message=f"{transition.previous_state.value if transition.previous_state else None} -> {transition.state.value}",
            error_message=transition.last_error,
            data={
                "from": transition.previous_state.value if transition.previous_state else None,
                "to": transition.state.value,
                "next_action_at": transition.next_action_at.isoformat() if transition.next_action_at else None,
                "manual_suppressed_until": (
                    transition.manual_suppressed_until.isoformat()
                    if transition.manual_suppressed_until else None
                ),
            },
        ))
    return events


class JourneyService:
    def __init__(
        self,
        machine: JourneyMachine,
        scheduler: JourneyScheduler,
        session_factory,
        lock_factory,
    ):
        self.machine = machine
        self.scheduler = scheduler
        self.session_factory = session_factory
        self.lock_factory = lock_factory

    async def _load(self, lead_id: uuid.UUID) -> tuple[JourneySnapshot, Optional[ContactSummary]]:
        """Load lead + contacts and the journey row, creating the row (NEW) on first use."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Lead).options(selectinload(Lead.contacts)).where(Lead.id == lead_id)
            )
            lead = result.scalar_one_or_none()
            if not lead:
                raise LeadNotFoundError(f"Lead {lead_id} not found")
            contact = select_primary_contact(lead.contacts)

            result = await db.execute(select(LeadJourney).where(LeadJourney.lead_id == lead_id))
            journey = result.scalar_one_or_none()
            if journey is None:
                journey = LeadJourney(lead_id=lead_id, state=JourneyState.NEW.value, attempts=0)
                db.add(journey)
                try:
                    await db.commit()
                    logger.info("Journey created", extra={"lead_id": str(lead_id)})
                except IntegrityError:
                    # Created concurrently by another process
                    await db.rollback()
                    result = await db.execute(select(LeadJourney).where(LeadJourney.lead_id == lead_id))
                    journey = result.scalar_one()

            return snapshot_from_row(journey), contact

    async def _persist(
        self,
        lead_id: uuid.UUID,
        transition: JourneyTransition,
        action: str = "journey_transition",
        now: Optional[datetime] = None,
    ) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(LeadJourney)
                .where(LeadJourney.lead_id == lead_id)
                .values(
                    state=transition.state.value,
                    next_action_at=transition.next_action_at,
                    last_action_at=transition.last_action_at,
                    last_user_activity_at=transition.last_user_activity_at,
                    last_error=transition.last_error,
                    manual_suppressed_until=transition.manual_suppressed_until,
                    attempts=LeadJourney.attempts + transition.attempts_delta,
                    updated_at=now or utcnow(),
                )
            )
            for event in _transition_events(lead_id, transition, action):
                db.add(event)
            await db.commit()

    async def _sync_schedule(
        self,
        lead_id: uuid.UUID,
        next_action_at: Optional[datetime],
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> None:
        """Keep the queue in lock-step with next_action_at."""
        if next_action_at is None:
            await self.scheduler.cancel(str(lead_id))
            return
        await self.scheduler.schedule_at(str(lead_id), next_action_at, force=force, now=now or utcnow())

    async def evaluate_journey(
        self,
        lead_id,
        force: bool = False,
        now: Optional[datetime] = None,
        enqueued_at: Optional[datetime] = None,
    ) -> JourneyResult:
        """
        Run one state machine evaluation for the lead and persist it. Caller holds the lead lock.
        A forced tick requested before the latest user message runs unforced.
        """
        lead_uuid = parse_lead_id(lead_id)
        now = as_utc(now) or utcnow()

        snapshot, contact = await self._load(lead_uuid)
        if force and activity_since(snapshot, enqueued_at):
            logger.info(
                "User wrote after forced tick was requested, evaluating without force",
                extra={"lead_id": str(lead_uuid)},
            )
            force = False
        transition = await self.machine.evaluate(snapshot, str(lead_uuid), contact, now, force=force)
        await self._persist(lead_uuid, transition, now=now)

        if transition.previous_state != transition.state:
            logger.info(
                "Journey %s -> %s (next=%s)",
                snapshot.state.value, transition.state.value,
                transition.next_action_at.isoformat() if transition.next_action_at else None,
                extra={"lead_id": str(lead_uuid), "state": transition.state.value},
            )
        return JourneyResult(state=transition.state, next_action_at=transition.next_action_at)

    async def schedule_journey(self, lead_id, delay_seconds: float = 0, force: bool = False) -> datetime:
        return await self.scheduler.schedule(str(parse_lead_id(lead_id)), delay_seconds, force=force)

    async def run_tick(self, job: JourneyJob, now: Optional[datetime] = None) -> JourneyResult:
        """Job handler: evaluate under the lead lock, then sync the queue with next_action_at."""
        lead_uuid = parse_lead_id(job.lead_id)
        async with self.lock_factory(str(lead_uuid)):
            result = await self.evaluate_journey(
                lead_uuid, force=job.force, now=now, enqueued_at=job.enqueued_at,
            )
            await self._sync_schedule(lead_uuid, result.next_action_at)
        return result

    async def record_user_activity(
        self,
        lead_id,
        occurred_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> JourneyResult:
        """Inbound user message: pause immediately and drop any pending outreach tick."""
        lead_uuid = parse_lead_id(lead_id)
        now = as_utc(now) or utcnow()
        occurred_at = as_utc(occurred_at) or now

        async with self.lock_factory(str(lead_uuid)):
            snapshot, _ = await self._load(lead_uuid)
            transition = on_user_activity(snapshot, occurred_at, now)
            await self._persist(lead_uuid, transition, action="journey_user_activity", now=now)
            await self._sync_schedule(lead_uuid, transition.next_action_at, now=now)

        logger.info(
            "User activity recorded, journey paused",
            extra={"lead_id": str(lead_uuid), "state": transition.state.value},
        )
        return JourneyResult(state=transition.state, next_action_at=transition.next_action_at)

    async def set_manual_suppression(
        self,
        lead_id,
        until: Optional[datetime],
        now: Optional[datetime] = None,
    ) -> JourneyResult:
        """Set (until in the future) or lift (None) an operator pause."""
        lead_uuid = parse_lead_id(lead_id)
        now = as_utc(now) or utcnow()

        async with self.lock_factory(str(lead_uuid)):
            snapshot, _ = await self._load(lead_uuid)
            transition = on_manual_suppression(snapshot, as_utc(until), now)
            await self._persist(lead_uuid, transition, action="journey_suppression_changed", now=now)
            await self._sync_schedule(lead_uuid, transition.next_action_at, force=True, now=now)

        logger.info(
            "Manual suppression %s",
            f"set until {transition.manual_suppressed_until.isoformat()}"
            if transition.manual_suppressed_until else "lifted",
            extra={"lead_id": str(lead_uuid), "state": transition.state.value},
        )
        return JourneyResult(state=transition.state, next_action_at=transition.next_action_at)

    async def suppress_for(self, lead_id, hours: float, now: Optional[datetime] = None) -> JourneyResult:
        now = as_utc(now) or utcnow()
        return await self.set_manual_suppression(lead_id, now + timedelta(hours=hours), now=now)

    async def record_contact_consent(
        self,
        contact_id,
        status: str,
        channel: str = WHATSAPP_CHANNEL,
        proof: Optional[dict] = None,
    ) -> dict:
        """
        Append to the consent ledger. A journey waiting in CONSENT_CHECK is
        re-evaluated right away instead of at its 24h recheck.
        """
        contact_uuid = uuid.UUID(str(contact_id))
        async with self.session_factory() as db:
            record = await record_consent(db, contact_uuid, status, channel=channel, proof=proof)
            contact = await db.get(Contact, contact_uuid)
            lead_id = contact.lead_id
            await db.commit()
            result = await db.execute(select(LeadJourney.state).where(LeadJourney.lead_id == lead_id))
            journey_state = result.scalar_one_or_none()
            event = EventLog(
                lead_id=lead_id,
                action="consent_recorded",
                status="success",
                message=f"{channel} consent {status}",
                data={"contact_id": str(contact_uuid), "channel": channel, "status": status},
            )
            db.add(event)
            await db.commit()

        rechecked = False
        if journey_state == JourneyState.CONSENT_CHECK.value:
            await self.run_tick(JourneyJob(lead_id=str(lead_id)))
            rechecked = True

        return {
            "consent_id": str(record.id),
            "lead_id": str(lead_id),
            "status": record.status,
            "recorded_at": as_utc(record.recorded_at),
            "journey_rechecked": rechecked,
        }

    async def get_journey(self, lead_id) -> Optional[LeadJourney]:
        lead_uuid = parse_lead_id(lead_id)
        async with self.session_factory() as db:
            lead = await db.get(Lead, lead_uuid)
            if not lead:
                raise LeadNotFoundError(f"Lead {lead_id} not found")
            result = await db.execute(select(LeadJourney).where(LeadJourney.lead_id == lead_uuid))
            return result.scalar_one_or_none()


def create_journey_service(settings, session_factory=None) -> JourneyService:
    """Wire the journey stack from settings (JOURNEY_BACKEND=redis|memory)."""
    from journeyflow.database import get_session_factory
    from journeyflow.services.consent import LedgerConsentLookup
    from journeyflow.services.journey_machine import JourneyTemplates
    from journeyflow.services.outreach_dispatcher import OutreachDispatcher
    from journeyflow.services.whatsapp import TwilioWhatsAppSender
    from journeyflow.utils.locks import LocalKeyedLock, lead_lock
    from journeyflow.utils.rate_limiter import (
        InMemoryRateLimitStore,
        ProactiveRateLimiter,
        RedisRateLimitStore,
    )
    from journeyflow.workers.journey_scheduler import InMemoryJourneyQueue, RedisJourneyQueue

    session_factory = session_factory or get_session_factory()

    if settings.journey_backend == "memory":
        rate_store = InMemoryRateLimitStore()
        queue = InMemoryJourneyQueue()
        lock_factory = LocalKeyedLock(wait=settings.journey_lock_wait_seconds).hold
    else:
        rate_store = RedisRateLimitStore()
        queue = RedisJourneyQueue()
        lock_factory = partial(
            lead_lock,
            ttl=settings.journey_lock_ttl_seconds,
            wait=settings.journey_lock_wait_seconds,
        )

    consent_lookup = LedgerConsentLookup(session_factory)
    dispatcher = OutreachDispatcher(
        sender=TwilioWhatsAppSender.from_settings(settings),
        consent_lookup=consent_lookup,
        rate_limiter=ProactiveRateLimiter(
            rate_store,
            daily_limit=settings.proactive_daily_limit,
            rolling_limit=settings.proactive_rolling_limit,
            rolling_window=timedelta(days=settings.proactive_rolling_days),
        ),
        language_code=settings.wa_template_language,
        timezone_str=settings.timezone,
        quiet_hours_start=settings.quiet_hours_start,
        quiet_hours_end=settings.quiet_hours_end,
    )
    machine = JourneyMachine(
        dispatcher,
        consent_lookup,
        JourneyTemplates(
            intro=settings.wa_template_intro or None,
            nudge1=settings.wa_template_nudge1 or None,
            nudge2=settings.wa_template_nudge2 or None,
        ),
    )
    return JourneyService(machine, JourneyScheduler(queue), session_factory, lock_factory)
