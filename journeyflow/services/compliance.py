"""
Compliance gates for proactive WhatsApp outreach.
Every templated send MUST pass both gates before reaching the provider.

1. Consent gate - DND flag, then the consent ledger status. The legacy
   whatsapp_opt_in flag never overrides an explicit revoked/unknown status.
2. Quiet-hours gate - proactive messages only inside the local engagement
   window (default 10:00-19:00 Asia/Kolkata). Boundary: start is inside, end is outside.

Both are pure functions and never raise.
"""
import logging
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Asia/Kolkata"
ENGAGEMENT_START_HOUR = 10
ENGAGEMENT_END_HOUR = 19


class ComplianceResult:
    """Result of a compliance check."""

    def __init__(self, allowed: bool, reason: str = "", rule: str = ""):
        self.allowed = allowed
        self.reason = reason
        self.rule = rule

    def __bool__(self) -> bool:
        return self.allowed

    def __repr__(self) -> str:
        status = "ALLOWED" if self.allowed else "BLOCKED"
        return f"<ComplianceResult {status}: {self.reason}>"


def normalize_consent_status(status: Optional[str]) -> str:
    """Anything that is not an explicit grant or revocation is 'unknown'."""
    if isinstance(status, str) and status.strip().lower() in ("granted", "revoked"):
        return status.strip().lower()
    return "unknown"


def evaluate_consent(
    whatsapp_opt_in: bool,
    dnd_flag: bool,
    status: Optional[str],
) -> ComplianceResult:
    """
    Decide whether a proactive WhatsApp message may be sent.

    Rules in order: DND denies; revoked denies; unknown denies; otherwise allowed.
    """
    if dnd_flag:
        return ComplianceResult(False, "Do Not Disturb", "consent_dnd")

    normalized = normalize_consent_status(status)
    if normalized == "revoked":
        return ComplianceResult(False, "Consent revoked", "consent_revoked")
    if normalized == "unknown":
        return ComplianceResult(False, "Consent status unknown", "consent_unknown")

    return ComplianceResult(
        True, "Consent granted" if whatsapp_opt_in else "Consent granted via ledger"
    )


def _local_hour(now: datetime, timezone_str: str) -> float:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(ZoneInfo(timezone_str))
    return local.hour + local.minute / 60


def guard_quiet_hours(
    now: Optional[datetime] = None,
    timezone_str: str = DEFAULT_TIMEZONE,
    start_hour: float = ENGAGEMENT_START_HOUR,
    end_hour: float = ENGAGEMENT_END_HOUR,
) -> bool:
    """
    True iff the local wall-clock time (fractional minutes included) is in [start, end).
    Naive datetimes are treated as UTC, never as host-local time.
    """
    now = now or datetime.now(timezone.utc)
    hour = _local_hour(now, timezone_str)
    return start_hour <= hour < end_hour


def check_quiet_hours(
    now: Optional[datetime] = None,
    timezone_str: str = DEFAULT_TIMEZONE,
    start_hour: int = ENGAGEMENT_START_HOUR,
    end_hour: int = ENGAGEMENT_END_HOUR,
) -> ComplianceResult:
    """Quiet-hours gate as a ComplianceResult; the reason always mentions quiet hours."""
    if guard_quiet_hours(now, timezone_str, start_hour, end_hour):
        return ComplianceResult(True, "Inside engagement window")
    return ComplianceResult(
        False,
        f"Blocked by quiet hours: WhatsApp messaging is limited to "
        f"{start_hour:02d}:00-{end_hour:02d}:00 {timezone_str}.",
        "quiet_hours",
    )
