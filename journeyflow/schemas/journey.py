"""
Journey value objects shared by the state machine, dispatcher, service and runner.
Immutable: transitions produce new records, never mutate inputs.
"""
from datetime import datetime, timedelta
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class JourneyState(str, Enum):
    NEW = "NEW"
    CONSENT_CHECK = "CONSENT_CHECK"
    READY = "READY"
    INTRO_SENT = "INTRO_SENT"
    NUDGE_1 = "NUDGE_1"
    NUDGE_2 = "NUDGE_2"
    PAUSE = "PAUSE"
    BOOKING = "BOOKING"
    QUALIFIED = "QUALIFIED"
    QUOTE_SENT = "QUOTE_SENT"
    WON = "WON"
    LOST = "LOST"
    HUMAN_HANDOFF = "HUMAN_HANDOFF"


# States with no automation: nextActionAt stays null (PAUSE excepted while suppressed)
AUTOMATION_STOPPED_STATES = frozenset({
    JourneyState.PAUSE,
    JourneyState.BOOKING,
    JourneyState.QUALIFIED,
    JourneyState.QUOTE_SENT,
    JourneyState.WON,
    JourneyState.LOST,
    JourneyState.HUMAN_HANDOFF,
})


class ContactSummary(BaseModel):
    """The lead's primary contact as seen by the journey."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: Optional[str] = None
    phone: Optional[str] = None
    whatsapp_opt_in: bool = False
    dnd_flag: bool = False


class JourneySnapshot(BaseModel):
    """Persisted journey fields as loaded (all datetimes tz-aware UTC)."""
    model_config = ConfigDict(frozen=True)

    state: JourneyState = JourneyState.NEW
    next_action_at: Optional[datetime] = None
    last_action_at: Optional[datetime] = None
    last_user_activity_at: Optional[datetime] = None
    last_error: Optional[str] = None
    manual_suppressed_until: Optional[datetime] = None
    attempts: int = 0


class DispatchOutcome(BaseModel):
    """Result of one templated send attempt."""
    model_config = ConfigDict(frozen=True)

    status: Literal["sent", "consent_required", "skipped", "error"]
    reason: Optional[str] = None  # skipped
    message: Optional[str] = None  # error
    retry_delay: Optional[timedelta] = None  # error
    provider_message_id: Optional[str] = None  # sent

    @classmethod
    def sent(cls, provider_message_id: Optional[str] = None) -> "DispatchOutcome":
        return cls(status="sent", provider_message_id=provider_message_id)

    @classmethod
    def consent_required(cls) -> "DispatchOutcome":
        return cls(status="consent_required")

    @classmethod
    def skipped(cls, reason: str) -> "DispatchOutcome":
        return cls(status="skipped", reason=reason)

    @classmethod
    def error(cls, message: str, retry_delay: timedelta) -> "DispatchOutcome":
        return cls(status="error", message=message, retry_delay=retry_delay)


class JourneyTransition(BaseModel):
    """Fields to persist after an evaluation or a journey event."""
    model_config = ConfigDict(frozen=True)

    state: JourneyState
    next_action_at: Optional[datetime] = None
    last_action_at: Optional[datetime] = None
    last_user_activity_at: Optional[datetime] = None
    last_error: Optional[str] = None
    manual_suppressed_until: Optional[datetime] = None
    attempts_delta: int = Field(default=0, ge=0)

    # Audit context, not persisted on the journey row
    previous_state: Optional[JourneyState] = None
    template: Optional[str] = None
    outcome: Optional[DispatchOutcome] = None


class JourneyResult(BaseModel):
    """Public result of evaluate_journey()."""
    state: JourneyState
    next_action_at: Optional[datetime] = None
