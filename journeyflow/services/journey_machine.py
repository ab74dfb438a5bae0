"""
Journey state machine - decides the next step of a lead's proactive WhatsApp journey.

NEW -> CONSENT_CHECK -> READY -> INTRO_SENT -> NUDGE_1 -> NUDGE_2 -> PAUSE

evaluate() is the single tick: it returns a JourneyTransition and never writes.
Pre-processing, in order:
1. Active manual suppression: PAUSE until it ends, nothing else runs.
2. Expired suppression: cleared; a paused journey resumes at CONSENT_CHECK.
3. force on a paused journey: resume at CONSENT_CHECK.
Then exactly one state handler runs. Every JourneyState has a handler.

Inbound user activity and operator suppression are events, also computed here
(on_user_activity, on_manual_suppression), so all journey mutations come from
this module and are persisted through one write path.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from pydantic import BaseModel

from journeyflow.schemas.journey import (
    AUTOMATION_STOPPED_STATES,
    ContactSummary,
    DispatchOutcome,
    JourneySnapshot,
    JourneyState,
    JourneyTransition,
)
from journeyflow.services.consent import ConsentLookup, safe_consent_status
from journeyflow.services.outreach_dispatcher import OutreachDispatcher

logger = logging.getLogger(__name__)

CONSENT_RETRY_DELAY = timedelta(hours=24)
CONSENT_RECHECK_DELAY = timedelta(hours=4)
INTRO_TO_NUDGE_DELAY = timedelta(hours=12)
FIRST_NUDGE_DELAY = timedelta(hours=24)
SECOND_NUDGE_DELAY = timedelta(hours=72)

SUPPRESSION_ERROR = "Manual suppression active"


class JourneyTemplates(BaseModel):
    intro: Optional[str] = None
    nudge1: Optional[str] = None
    nudge2: Optional[str] = None


class _OutreachStep:
    def __init__(
        self,
        template_attr: str,
        sent_state: JourneyState,
        sent_delay: timedelta,
        missing_contact_error: str,
        missing_template_error: str,
        consent_error: str,
        pause_on_user_activity: bool,
    ):
        self.template_attr = template_attr
        self.sent_state = sent_state
        self.sent_delay = sent_delay
        self.missing_contact_error = missing_contact_error
        self.missing_template_error = missing_template_error
        self.consent_error = consent_error
        self.pause_on_user_activity = pause_on_user_activity


INTRO_STEP = _OutreachStep(
    "intro", JourneyState.INTRO_SENT, INTRO_TO_NUDGE_DELAY,
    "No WhatsApp contact available for intro template",
    "Intro template not configured",
    "Consent required before sending intro",
    pause_on_user_activity=False,
)
NUDGE_1_STEP = _OutreachStep(
    "nudge1", JourneyState.NUDGE_1, FIRST_NUDGE_DELAY,
    "Missing contact for first nudge",
    "First nudge template not configured",
    "Consent required before nudge 1",
    pause_on_user_activity=True,
)
NUDGE_2_STEP = _OutreachStep(
    "nudge2", JourneyState.NUDGE_2, SECOND_NUDGE_DELAY,
    "Missing contact for second nudge",
    "Second nudge template not configured",
    "Consent required before nudge 2",
    pause_on_user_activity=True,
)


def _contact_score(contact: Any) -> int:
    score = 0
    if getattr(contact, "preferred_channel", None) == "whatsapp":
        score += 5
    if getattr(contact, "whatsapp_opt_in", False):
        score += 4
    if getattr(contact, "phone", None):
        score += 3
    if not getattr(contact, "dnd_flag", False):
        score += 1
    return score


def select_primary_contact(contacts: Iterable[Any]) -> Optional[ContactSummary]:
    """Highest scoring contact; ties keep input order."""
    ranked = sorted(contacts or [], key=lambda c: -_contact_score(c))
    if not ranked:
        return None
    primary = ranked[0]
    return ContactSummary(
        id=str(primary.id),
        name=primary.name or None,
        phone=primary.phone or None,
        whatsapp_opt_in=bool(primary.whatsapp_opt_in),
        dnd_flag=bool(primary.dnd_flag),
    )


def is_user_active(snapshot: JourneySnapshot) -> bool:
    """User wrote after our last automated send (or ever, if we never sent)."""
    if snapshot.last_user_activity_at is None:
        return False
    if snapshot.last_action_at is None:
        return True
    return snapshot.last_user_activity_at > snapshot.last_action_at


class _Evaluation:
    """Mutable working copy for one evaluate() call."""

    def __init__(self, snapshot: JourneySnapshot, lead_id: str, contact: Optional[ContactSummary], now: datetime):
        self.snapshot = snapshot
        self.lead_id = lead_id
        self.contact = contact
        self.now = now
        self.state = snapshot.state
        self.next_action_at = snapshot.next_action_at
        self.last_action_at = snapshot.last_action_at
        self.last_error = snapshot.last_error
        self.manual_suppressed_until = snapshot.manual_suppressed_until
        self.attempts_delta = 0
        self.template: Optional[str] = None
        self.outcome: Optional[DispatchOutcome] = None

    def pause(self, error: Optional[str]) -> None:
        self.state = JourneyState.PAUSE
        self.next_action_at = None
        self.last_error = error

    def to_transition(self) -> JourneyTransition:
        return JourneyTransition(
            state=self.state,
            next_action_at=self.next_action_at,
            last_action_at=self.last_action_at,
            last_user_activity_at=self.snapshot.last_user_activity_at,
            last_error=self.last_error,
            manual_suppressed_until=self.manual_suppressed_until,
            attempts_delta=self.attempts_delta,
            previous_state=self.snapshot.state,
            template=self.template,
            outcome=self.outcome,
        )


class JourneyMachine:
    def __init__(
        self,
        dispatcher: OutreachDispatcher,
        consent_lookup: ConsentLookup,
        templates: JourneyTemplates,
    ):
        self.dispatcher = dispatcher
        self.consent_lookup = consent_lookup
        self.templates = templates
        self.handlers = {
            JourneyState.NEW: self._handle_new,
            JourneyState.CONSENT_CHECK: self._handle_consent_check,
            JourneyState.READY: self._handle_ready,
            JourneyState.INTRO_SENT: self._handle_intro_sent,
            JourneyState.NUDGE_1: self._handle_nudge_1,
            JourneyState.NUDGE_2: self._handle_nudge_2,
            JourneyState.PAUSE: self._handle_stopped,
            JourneyState.BOOKING: self._handle_stopped,
            JourneyState.QUALIFIED: self._handle_stopped,
            JourneyState.QUOTE_SENT: self._handle_stopped,
            JourneyState.WON: self._handle_stopped,
            JourneyState.LOST: self._handle_stopped,
            JourneyState.HUMAN_HANDOFF: self._handle_stopped,
        }

    async def evaluate(
        self,
        snapshot: JourneySnapshot,
        lead_id: str,
        contact: Optional[ContactSummary],
        now: datetime,
        force: bool = False,
    ) -> JourneyTransition:
        """
        Compute the journey's next state. Dispatch failures become outcomes;
        only programming errors escape.
        """
        ev = _Evaluation(snapshot, lead_id, contact, now)

        if ev.manual_suppressed_until and ev.manual_suppressed_until > now:
            ev.state = JourneyState.PAUSE
            ev.next_action_at = ev.manual_suppressed_until
            ev.last_error = SUPPRESSION_ERROR
            return ev.to_transition()

        if ev.manual_suppressed_until and ev.manual_suppressed_until <= now:
            ev.manual_suppressed_until = None
            if ev.state == JourneyState.PAUSE:
                ev.state = JourneyState.CONSENT_CHECK
                ev.next_action_at = now
                ev.last_error = None

        if force and ev.state == JourneyState.PAUSE:
            ev.state = JourneyState.CONSENT_CHECK
            ev.next_action_at = now

        await self.handlers[ev.state](ev)
        return ev.to_transition()

    async def _handle_new(self, ev: _Evaluation) -> None:
        ev.state = JourneyState.CONSENT_CHECK
        ev.next_action_at = ev.now
        ev.last_error = None

    async def _handle_consent_check(self, ev: _Evaluation) -> None:
        if not ev.contact or not ev.contact.phone:
            ev.pause("No WhatsApp contact available for journey")
            return

        status = await safe_consent_status(self.consent_lookup, ev.contact.id)
        if status == "granted":
            ev.state = JourneyState.READY
            ev.next_action_at = ev.now
            ev.last_error = None
        else:
            ev.state = JourneyState.CONSENT_CHECK
            ev.next_action_at = ev.now + CONSENT_RETRY_DELAY
            ev.last_error = f"Consent status: {status}"

    async def _handle_ready(self, ev: _Evaluation) -> None:
        await self._run_outreach_step(ev, INTRO_STEP)

    async def _handle_intro_sent(self, ev: _Evaluation) -> None:
        await self._run_outreach_step(ev, NUDGE_1_STEP)

    async def _handle_nudge_1(self, ev: _Evaluation) -> None:
        await self._run_outreach_step(ev, NUDGE_2_STEP)

    async def _handle_nudge_2(self, ev: _Evaluation) -> None:
        # End of the proactive sequence whether or not the user replied
        ev.pause(None)

    async def _handle_stopped(self, ev: _Evaluation) -> None:
        ev.next_action_at = None

    async def _run_outreach_step(self, ev: _Evaluation, step: _OutreachStep) -> None:
        if step.pause_on_user_activity and is_user_active(ev.snapshot):
            ev.pause(None)
            return
        if not ev.contact or not ev.contact.phone:
            ev.pause(step.missing_contact_error)
            return
        template = getattr(self.templates, step.template_attr)
        if not template:
            ev.pause(step.missing_template_error)
            return

        outcome = await self.dispatcher.attempt_template_send(
            template, ev.lead_id, ev.contact, allow_consent_fallback=True, now=ev.now,
        )
        ev.template = template
        ev.outcome = outcome

        if outcome.status == "sent":
            ev.state = step.sent_state
            ev.last_action_at = ev.now
            ev.last_error = None
            ev.next_action_at = ev.now + step.sent_delay
            ev.attempts_delta += 1
        elif outcome.status == "consent_required":
            ev.state = JourneyState.CONSENT_CHECK
            ev.last_error = step.consent_error
            ev.next_action_at = ev.now + CONSENT_RECHECK_DELAY
        elif outcome.status == "error":
            ev.last_error = outcome.message
            ev.next_action_at = ev.now + (outcome.retry_delay or timedelta(0))
        else:
            ev.pause(outcome.reason)


def on_user_activity(snapshot: JourneySnapshot, occurred_at: datetime, now: datetime) -> JourneyTransition:
    """
    Inbound user message: the journey collapses to PAUSE.
    An active suppression keeps its wake-up time; otherwise nothing stays scheduled.
    """
    suppressed = snapshot.manual_suppressed_until
    latest_activity = occurred_at
    if snapshot.last_user_activity_at and snapshot.last_user_activity_at > occurred_at:
        latest_activity = snapshot.last_user_activity_at

    active_suppression = suppressed is not None and suppressed > now
    return JourneyTransition(
        state=JourneyState.PAUSE,
        next_action_at=suppressed if active_suppression else None,
        last_action_at=snapshot.last_action_at,
        last_user_activity_at=latest_activity,
        last_error=SUPPRESSION_ERROR if active_suppression else None,
        manual_suppressed_until=suppressed,
        previous_state=snapshot.state,
    )


def on_manual_suppression(
    snapshot: JourneySnapshot,
    until: Optional[datetime],
    now: datetime,
) -> JourneyTransition:
    """
    Operator sets (until in the future) or lifts (None or past) a suppression.
    The caller schedules a forced tick at the returned next_action_at.
    """
    base = dict(
        last_action_at=snapshot.last_action_at,
        last_user_activity_at=snapshot.last_user_activity_at,
        previous_state=snapshot.state,
    )
    if until is not None and until > now:
        return JourneyTransition(
            state=JourneyState.PAUSE,
            next_action_at=until,
            last_error=SUPPRESSION_ERROR,
            manual_suppressed_until=until,
            **base,
        )

    if snapshot.state == JourneyState.PAUSE:
        return JourneyTransition(
            state=JourneyState.CONSENT_CHECK,
            next_action_at=now,
            last_error=None,
            manual_suppressed_until=None,
            **base,
        )
    return JourneyTransition(
        state=snapshot.state,
        next_action_at=None if snapshot.state in AUTOMATION_STOPPED_STATES else now,
        last_error=snapshot.last_error,
        manual_suppressed_until=None,
        **base,
    )
