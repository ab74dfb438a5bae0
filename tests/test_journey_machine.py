"""
Journey state machine tests - every state handler, every dispatch outcome,
suppression pre-processing and the journey events.

The machine never writes; these tests only inspect the returned JourneyTransition.
"""
import pytest
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock

from journeyflow.schemas.journey import (
    AUTOMATION_STOPPED_STATES,
    ContactSummary,
    DispatchOutcome,
    JourneySnapshot,
    JourneyState,
)
from journeyflow.services.consent import ConsentLookup
from journeyflow.services.journey_machine import (
    CONSENT_RECHECK_DELAY,
    CONSENT_RETRY_DELAY,
    FIRST_NUDGE_DELAY,
    INTRO_TO_NUDGE_DELAY,
    SECOND_NUDGE_DELAY,
    SUPPRESSION_ERROR,
    JourneyMachine,
    JourneyTemplates,
    is_user_active,
    on_manual_suppression,
    on_user_activity,
    select_primary_contact,
)
from journeyflow.services.outreach_dispatcher import OutreachDispatcher

NOW = datetime(2026, 10, 16, 6, 30, tzinfo=timezone.utc)
LEAD_ID = "7f9c0d52-0000-4000-8000-000000000001"

CONTACT = ContactSummary(id="c-1", name="Asha", phone="+919812345678", whatsapp_opt_in=True)
NO_PHONE = ContactSummary(id="c-2", name="Ravi", phone=None)

TEMPLATES = JourneyTemplates(intro="intro_v1", nudge1="nudge_v1", nudge2="nudge_v2")


class _Consent(ConsentLookup):
    def __init__(self, status="granted"):
        self.status = status
        self.calls = 0

    async def get_consent_status(self, contact_id, channel="whatsapp"):
        self.calls += 1
        if isinstance(self.status, Exception):
            raise self.status
        return self.status


def _make_machine(outcome=None, status="granted", templates=TEMPLATES):
    dispatcher = AsyncMock(spec=OutreachDispatcher)
    dispatcher.attempt_template_send = AsyncMock(return_value=outcome or DispatchOutcome.sent("SM1"))
    return JourneyMachine(dispatcher, _Consent(status), templates), dispatcher


def _snapshot(state, **kwargs) -> JourneySnapshot:
    return JourneySnapshot(state=state, **kwargs)


async def _evaluate(machine, snapshot, contact=CONTACT, force=False, now=NOW):
    return await machine.evaluate(snapshot, LEAD_ID, contact, now, force=force)


# ---------------------------------------------------------------------------
# Handler table
# ---------------------------------------------------------------------------


class TestHandlerTable:
    def test_every_state_has_a_handler(self):
        machine, _ = _make_machine()
        assert set(machine.handlers) == set(JourneyState)

    def test_stopped_states(self):
        assert AUTOMATION_STOPPED_STATES == {
            JourneyState.PAUSE, JourneyState.BOOKING, JourneyState.QUALIFIED,
            JourneyState.QUOTE_SENT, JourneyState.WON, JourneyState.LOST,
            JourneyState.HUMAN_HANDOFF,
        }


# ---------------------------------------------------------------------------
# NEW / CONSENT_CHECK
# ---------------------------------------------------------------------------


class TestNewAndConsentCheck:
    @pytest.mark.asyncio
    async def test_new_moves_to_consent_check_now(self):
        machine, dispatcher = _make_machine()
        t = await _evaluate(machine, _snapshot(JourneyState.NEW, last_error="old"))
        assert t.state == JourneyState.CONSENT_CHECK
        assert t.next_action_at == NOW
        assert t.last_error is None
        assert t.previous_state == JourneyState.NEW
        dispatcher.attempt_template_send.assert_not_called()

    @pytest.mark.asyncio
    async def test_granted_moves_to_ready(self):
        machine, _ = _make_machine(status="granted")
        t = await _evaluate(machine, _snapshot(JourneyState.CONSENT_CHECK, last_error="Consent status: unknown"))
        assert t.state == JourneyState.READY
        assert t.next_action_at == NOW
        assert t.last_error is None

    @pytest.mark.parametrize("status", ["unknown", "revoked", "bogus"])
    @pytest.mark.asyncio
    async def test_not_granted_rechecks_in_24h(self, status):
        machine, _ = _make_machine(status=status)
        t = await _evaluate(machine, _snapshot(JourneyState.CONSENT_CHECK))
        expected = "revoked" if status == "revoked" else "unknown"
        assert t.state == JourneyState.CONSENT_CHECK
        assert t.next_action_at == NOW + CONSENT_RETRY_DELAY
        assert t.last_error == f"Consent status: {expected}"

    @pytest.mark.asyncio
    async def test_lookup_failure_is_unknown(self):
        machine, _ = _make_machine(status=ConnectionError("db down"))
        t = await _evaluate(machine, _snapshot(JourneyState.CONSENT_CHECK))
        assert t.state == JourneyState.CONSENT_CHECK
        assert t.last_error == "Consent status: unknown"

    @pytest.mark.parametrize("contact", [None, NO_PHONE])
    @pytest.mark.asyncio
    async def test_no_reachable_contact_pauses(self, contact):
        machine, _ = _make_machine()
        t = await _evaluate(machine, _snapshot(JourneyState.CONSENT_CHECK), contact=contact)
        assert t.state == JourneyState.PAUSE
        assert t.next_action_at is None
        assert t.last_error == "No WhatsApp contact available for journey"
        assert machine.consent_lookup.calls == 0

    @pytest.mark.asyncio
    async def test_recheck_is_idempotent(self):
        machine, _ = _make_machine(status="unknown")
        first = await _evaluate(machine, _snapshot(JourneyState.CONSENT_CHECK))
        second = await _evaluate(machine, _snapshot(JourneyState.CONSENT_CHECK, last_error=first.last_error))
        assert first.state == second.state
        assert first.next_action_at == second.next_action_at
        assert first.last_error == second.last_error


# ---------------------------------------------------------------------------
# READY -> intro
# ---------------------------------------------------------------------------


class TestReady:
    @pytest.mark.asyncio
    async def test_sent_moves_to_intro_sent(self):
        machine, dispatcher = _make_machine(DispatchOutcome.sent("SM1"))
        t = await _evaluate(machine, _snapshot(JourneyState.READY, last_error="x"))
        assert t.state == JourneyState.INTRO_SENT
        assert t.last_action_at == NOW
        assert t.next_action_at == NOW + INTRO_TO_NUDGE_DELAY
        assert t.last_error is None
        assert t.attempts_delta == 1
        assert t.template == "intro_v1"
        assert t.outcome.status == "sent"
        dispatcher.attempt_template_send.assert_awaited_once_with(
            "intro_v1", LEAD_ID, CONTACT, allow_consent_fallback=True, now=NOW,
        )

    @pytest.mark.asyncio
    async def test_consent_required_returns_to_consent_check(self):
        machine, _ = _make_machine(DispatchOutcome.consent_required())
        t = await _evaluate(machine, _snapshot(JourneyState.READY))
        assert t.state == JourneyState.CONSENT_CHECK
        assert t.last_error == "Consent required before sending intro"
        assert t.next_action_at == NOW + CONSENT_RECHECK_DELAY
        assert t.attempts_delta == 0

    @pytest.mark.asyncio
    async def test_error_stays_and_retries(self):
        outcome = DispatchOutcome.error("Blocked by quiet hours: ...", timedelta(minutes=60))
        machine, _ = _make_machine(outcome)
        t = await _evaluate(machine, _snapshot(JourneyState.READY))
        assert t.state == JourneyState.READY
        assert t.last_error == "Blocked by quiet hours: ..."
        assert t.next_action_at == NOW + timedelta(minutes=60)
        assert t.last_action_at is None
        assert t.attempts_delta == 0

    @pytest.mark.asyncio
    async def test_skipped_pauses(self):
        machine, _ = _make_machine(DispatchOutcome.skipped("Contact phone missing"))
        t = await _evaluate(machine, _snapshot(JourneyState.READY))
        assert t.state == JourneyState.PAUSE
        assert t.next_action_at is None
        assert t.last_error == "Contact phone missing"

    @pytest.mark.asyncio
    async def test_missing_template_pauses_without_send(self):
        machine, dispatcher = _make_machine(templates=JourneyTemplates(nudge1="n1", nudge2="n2"))
        t = await _evaluate(machine, _snapshot(JourneyState.READY))
        assert t.state == JourneyState.PAUSE
        assert t.last_error == "Intro template not configured"
        dispatcher.attempt_template_send.assert_not_called()

    @pytest.mark.parametrize("contact", [None, NO_PHONE])
    @pytest.mark.asyncio
    async def test_missing_contact_pauses(self, contact):
        machine, dispatcher = _make_machine()
        t = await _evaluate(machine, _snapshot(JourneyState.READY), contact=contact)
        assert t.state == JourneyState.PAUSE
        assert t.last_error == "No WhatsApp contact available for intro template"
        dispatcher.attempt_template_send.assert_not_called()

    @pytest.mark.asyncio
    async def test_intro_ignores_prior_user_activity(self):
        machine, dispatcher = _make_machine()
        snap = _snapshot(JourneyState.READY, last_user_activity_at=NOW - timedelta(hours=1))
        t = await _evaluate(machine, snap)
        assert t.state == JourneyState.INTRO_SENT
        dispatcher.attempt_template_send.assert_awaited_once()


# ---------------------------------------------------------------------------
# INTRO_SENT -> nudge 1, NUDGE_1 -> nudge 2, NUDGE_2 -> end
# ---------------------------------------------------------------------------


class TestNudges:
    @pytest.mark.asyncio
    async def test_first_nudge_sent(self):
        machine, dispatcher = _make_machine()
        snap = _snapshot(JourneyState.INTRO_SENT, last_action_at=NOW - INTRO_TO_NUDGE_DELAY, attempts=1)
        t = await _evaluate(machine, snap)
        assert t.state == JourneyState.NUDGE_1
        assert t.next_action_at == NOW + FIRST_NUDGE_DELAY
        assert t.last_action_at == NOW
        assert t.attempts_delta == 1
        assert dispatcher.attempt_template_send.call_args[0][0] == "nudge_v1"

    @pytest.mark.asyncio
    async def test_second_nudge_sent(self):
        machine, dispatcher = _make_machine()
        snap = _snapshot(JourneyState.NUDGE_1, last_action_at=NOW - FIRST_NUDGE_DELAY)
        t = await _evaluate(machine, snap)
        assert t.state == JourneyState.NUDGE_2
        assert t.next_action_at == NOW + SECOND_NUDGE_DELAY
        assert dispatcher.attempt_template_send.call_args[0][0] == "nudge_v2"

    @pytest.mark.parametrize("state", [JourneyState.INTRO_SENT, JourneyState.NUDGE_1])
    @pytest.mark.asyncio
    async def test_user_reply_pauses_before_nudge(self, state):
        machine, dispatcher = _make_machine()
        snap = _snapshot(
            state,
            last_action_at=NOW - timedelta(hours=12),
            last_user_activity_at=NOW - timedelta(hours=2),
        )
        t = await _evaluate(machine, snap)
        assert t.state == JourneyState.PAUSE
        assert t.next_action_at is None
        assert t.last_error is None
        dispatcher.attempt_template_send.assert_not_called()

    @pytest.mark.asyncio
    async def test_old_user_activity_does_not_pause(self):
        machine, _ = _make_machine()
        snap = _snapshot(
            JourneyState.INTRO_SENT,
            last_action_at=NOW - timedelta(hours=12),
            last_user_activity_at=NOW - timedelta(days=3),
        )
        t = await _evaluate(machine, snap)
        assert t.state == JourneyState.NUDGE_1

    @pytest.mark.parametrize("state,consent_error,template_error,contact_error", [
        (
            JourneyState.INTRO_SENT,
            "Consent required before nudge 1",
            "First nudge template not configured",
            "Missing contact for first nudge",
        ),
        (
            JourneyState.NUDGE_1,
            "Consent required before nudge 2",
            "Second nudge template not configured",
            "Missing contact for second nudge",
        ),
    ])
    @pytest.mark.asyncio
    async def test_nudge_failure_messages(self, state, consent_error, template_error, contact_error):
        machine, _ = _make_machine(DispatchOutcome.consent_required())
        t = await _evaluate(machine, _snapshot(state))
        assert t.state == JourneyState.CONSENT_CHECK
        assert t.last_error == consent_error
        assert t.next_action_at == NOW + CONSENT_RECHECK_DELAY

        machine, _ = _make_machine(templates=JourneyTemplates(intro="intro_v1"))
        t = await _evaluate(machine, _snapshot(state))
        assert t.state == JourneyState.PAUSE
        assert t.last_error == template_error

        machine, _ = _make_machine()
        t = await _evaluate(machine, _snapshot(state), contact=None)
        assert t.state == JourneyState.PAUSE
        assert t.last_error == contact_error

    @pytest.mark.asyncio
    async def test_nudge_error_keeps_state(self):
        machine, _ = _make_machine(DispatchOutcome.error("Daily proactive limit reached", timedelta(hours=3)))
        t = await _evaluate(machine, _snapshot(JourneyState.INTRO_SENT, last_action_at=NOW - timedelta(hours=12)))
        assert t.state == JourneyState.INTRO_SENT
        assert t.next_action_at == NOW + timedelta(hours=3)
        assert t.last_action_at == NOW - timedelta(hours=12)

    @pytest.mark.parametrize("active", [True, False])
    @pytest.mark.asyncio
    async def test_nudge_2_ends_in_pause(self, active):
        machine, dispatcher = _make_machine()
        snap = _snapshot(
            JourneyState.NUDGE_2,
            last_action_at=NOW - SECOND_NUDGE_DELAY,
            last_user_activity_at=NOW - timedelta(hours=1) if active else None,
        )
        t = await _evaluate(machine, snap)
        assert t.state == JourneyState.PAUSE
        assert t.next_action_at is None
        assert t.last_error is None
        dispatcher.attempt_template_send.assert_not_called()


# ---------------------------------------------------------------------------
# Stopped states, suppression and force
# ---------------------------------------------------------------------------


class TestStoppedStates:
    @pytest.mark.parametrize("state", sorted(AUTOMATION_STOPPED_STATES, key=lambda s: s.value))
    @pytest.mark.asyncio
    async def test_stopped_state_holds(self, state):
        machine, dispatcher = _make_machine()
        t = await _evaluate(machine, _snapshot(state, next_action_at=NOW, last_error="kept"))
        assert t.state == state
        assert t.next_action_at is None
        assert t.last_error == "kept"
        dispatcher.attempt_template_send.assert_not_called()

    @pytest.mark.parametrize("state", [
        JourneyState.BOOKING, JourneyState.QUALIFIED, JourneyState.QUOTE_SENT,
        JourneyState.WON, JourneyState.LOST, JourneyState.HUMAN_HANDOFF,
    ])
    @pytest.mark.asyncio
    async def test_force_does_not_restart_terminal_states(self, state):
        machine, _ = _make_machine()
        t = await _evaluate(machine, _snapshot(state), force=True)
        assert t.state == state
        assert t.next_action_at is None

    @pytest.mark.asyncio
    async def test_force_resumes_pause_through_consent_check(self):
        machine, _ = _make_machine(status="granted")
        t = await _evaluate(machine, _snapshot(JourneyState.PAUSE, last_error="old"), force=True)
        assert t.state == JourneyState.READY
        assert t.next_action_at == NOW
        assert t.last_error is None

    @pytest.mark.asyncio
    async def test_force_resume_without_consent(self):
        machine, _ = _make_machine(status="unknown")
        t = await _evaluate(machine, _snapshot(JourneyState.PAUSE), force=True)
        assert t.state == JourneyState.CONSENT_CHECK
        assert t.next_action_at == NOW + CONSENT_RETRY_DELAY


class TestSuppression:
    @pytest.mark.parametrize("state", [JourneyState.READY, JourneyState.INTRO_SENT, JourneyState.NEW])
    @pytest.mark.asyncio
    async def test_active_suppression_blocks_everything(self, state):
        until = NOW + timedelta(hours=6)
        machine, dispatcher = _make_machine()
        t = await _evaluate(machine, _snapshot(state, manual_suppressed_until=until), force=True)
        assert t.state == JourneyState.PAUSE
        assert t.next_action_at == until
        assert t.last_error == SUPPRESSION_ERROR
        assert t.manual_suppressed_until == until
        assert machine.consent_lookup.calls == 0
        dispatcher.attempt_template_send.assert_not_called()

    @pytest.mark.asyncio
    async def test_expired_suppression_resumes_pause(self):
        machine, _ = _make_machine(status="granted")
        snap = _snapshot(
            JourneyState.PAUSE,
            manual_suppressed_until=NOW - timedelta(minutes=1),
            last_error=SUPPRESSION_ERROR,
        )
        t = await _evaluate(machine, snap)
        assert t.manual_suppressed_until is None
        assert t.state == JourneyState.READY
        assert t.last_error is None

    @pytest.mark.asyncio
    async def test_suppression_ending_exactly_now_has_expired(self):
        machine, _ = _make_machine(status="unknown")
        t = await _evaluate(machine, _snapshot(JourneyState.PAUSE, manual_suppressed_until=NOW))
        assert t.manual_suppressed_until is None
        assert t.state == JourneyState.CONSENT_CHECK

    @pytest.mark.asyncio
    async def test_expired_suppression_on_active_state_just_clears(self):
        machine, _ = _make_machine()
        snap = _snapshot(JourneyState.READY, manual_suppressed_until=NOW - timedelta(hours=1))
        t = await _evaluate(machine, snap)
        assert t.manual_suppressed_until is None
        assert t.state == JourneyState.INTRO_SENT


# ---------------------------------------------------------------------------
# Journey events
# ---------------------------------------------------------------------------


class TestUserActivityEvent:
    def test_pauses_and_clears_next_action(self):
        snap = _snapshot(JourneyState.INTRO_SENT, next_action_at=NOW + timedelta(hours=12), last_action_at=NOW)
        t = on_user_activity(snap, NOW + timedelta(hours=1), NOW + timedelta(hours=1))
        assert t.state == JourneyState.PAUSE
        assert t.next_action_at is None
        assert t.last_user_activity_at == NOW + timedelta(hours=1)
        assert t.last_action_at == NOW
        assert t.previous_state == JourneyState.INTRO_SENT

    def test_keeps_active_suppression(self):
        until = NOW + timedelta(days=1)
        snap = _snapshot(JourneyState.PAUSE, manual_suppressed_until=until, next_action_at=until)
        t = on_user_activity(snap, NOW, NOW)
        assert t.next_action_at == until
        assert t.manual_suppressed_until == until
        assert t.last_error == SUPPRESSION_ERROR

    def test_out_of_order_activity_keeps_latest(self):
        snap = _snapshot(JourneyState.READY, last_user_activity_at=NOW)
        t = on_user_activity(snap, NOW - timedelta(hours=2), NOW)
        assert t.last_user_activity_at == NOW

    def test_terminal_state_also_pauses(self):
        t = on_user_activity(_snapshot(JourneyState.WON), NOW, NOW)
        assert t.state == JourneyState.PAUSE


class TestManualSuppressionEvent:
    def test_set_pauses_until(self):
        until = NOW + timedelta(hours=48)
        t = on_manual_suppression(_snapshot(JourneyState.NUDGE_1, last_action_at=NOW), until, NOW)
        assert t.state == JourneyState.PAUSE
        assert t.next_action_at == until
        assert t.manual_suppressed_until == until
        assert t.last_error == SUPPRESSION_ERROR
        assert t.last_action_at == NOW

    def test_lift_from_pause_rechecks_consent(self):
        snap = _snapshot(JourneyState.PAUSE, manual_suppressed_until=NOW + timedelta(hours=3))
        t = on_manual_suppression(snap, None, NOW)
        assert t.state == JourneyState.CONSENT_CHECK
        assert t.next_action_at == NOW
        assert t.manual_suppressed_until is None
        assert t.last_error is None

    def test_past_until_lifts(self):
        t = on_manual_suppression(_snapshot(JourneyState.PAUSE), NOW - timedelta(hours=1), NOW)
        assert t.state == JourneyState.CONSENT_CHECK
        assert t.manual_suppressed_until is None

    def test_lift_on_active_state_runs_now(self):
        t = on_manual_suppression(_snapshot(JourneyState.READY, last_error="e"), None, NOW)
        assert t.state == JourneyState.READY
        assert t.next_action_at == NOW
        assert t.last_error == "e"

    def test_lift_on_terminal_state_schedules_nothing(self):
        t = on_manual_suppression(_snapshot(JourneyState.WON), None, NOW)
        assert t.state == JourneyState.WON
        assert t.next_action_at is None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestIsUserActive:
    def test_no_activity(self):
        assert is_user_active(_snapshot(JourneyState.INTRO_SENT, last_action_at=NOW)) is False

    def test_activity_without_any_send(self):
        assert is_user_active(_snapshot(JourneyState.READY, last_user_activity_at=NOW)) is True

    def test_activity_after_send(self):
        snap = _snapshot(JourneyState.INTRO_SENT, last_action_at=NOW, last_user_activity_at=NOW + timedelta(seconds=1))
        assert is_user_active(snap) is True

    def test_activity_at_same_instant_is_not_newer(self):
        snap = _snapshot(JourneyState.INTRO_SENT, last_action_at=NOW, last_user_activity_at=NOW)
        assert is_user_active(snap) is False


def _contact(**kwargs):
    base = {"id": "c", "name": None, "phone": None, "preferred_channel": None,
            "whatsapp_opt_in": False, "dnd_flag": False}
    base.update(kwargs)
    return SimpleNamespace(**base)


class TestSelectPrimaryContact:
    def test_empty(self):
        assert select_primary_contact([]) is None
        assert select_primary_contact(None) is None

    def test_prefers_whatsapp_channel(self):
        contacts = [
            _contact(id="a", phone="+91111", whatsapp_opt_in=True),
            _contact(id="b", phone="+91222", preferred_channel="whatsapp"),
        ]
        assert select_primary_contact(contacts).id == "b"

    def test_opt_in_beats_phone_only(self):
        contacts = [
            _contact(id="a", phone="+91111"),
            _contact(id="b", whatsapp_opt_in=True),
        ]
        # b: 4 + 1 = 5, a: 3 + 1 = 4
        assert select_primary_contact(contacts).id == "b"

    def test_dnd_loses_tie_break_point(self):
        contacts = [
            _contact(id="a", phone="+91111", dnd_flag=True),
            _contact(id="b", phone="+91222"),
        ]
        assert select_primary_contact(contacts).id == "b"

    def test_ties_keep_input_order(self):
        contacts = [_contact(id="first", phone="+91111"), _contact(id="second", phone="+91222")]
        assert select_primary_contact(contacts).id == "first"

    def test_summary_fields(self):
        summary = select_primary_contact([_contact(id=42, name="", phone="+91111", whatsapp_opt_in=True)])
        assert summary == ContactSummary(id="42", name=None, phone="+91111", whatsapp_opt_in=True, dnd_flag=False)
