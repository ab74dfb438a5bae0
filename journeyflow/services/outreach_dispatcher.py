"""
Outreach dispatcher - one templated WhatsApp send attempt, classified.

Order of checks:
1. Contact has a phone            (else skipped)
2. Consent gate                   (else consent_required / skipped)
3. Quiet-hours gate               (error, retried in 60 min)
4. Proactive rate limiter         (error, retried in 3 h)
5. Provider send                  (error, retried in 3 h)

Quiet hours run before the limiter so a blocked window never burns a slot.
A slot taken by the limiter stays consumed even if the provider call then fails.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from journeyflow.schemas.journey import ContactSummary, DispatchOutcome
from journeyflow.services.compliance import (
    check_quiet_hours,
    evaluate_consent,
    DEFAULT_TIMEZONE,
    ENGAGEMENT_START_HOUR,
    ENGAGEMENT_END_HOUR,
)
from journeyflow.services.consent import ConsentLookup, safe_consent_status
from journeyflow.services.whatsapp import TemplateSender
from journeyflow.utils.logging import mask_phone
from journeyflow.utils.rate_limiter import ProactiveRateLimiter, rate_limit_key

logger = logging.getLogger(__name__)

QUIET_RETRY_DELAY = timedelta(minutes=60)
GENERIC_RETRY_DELAY = timedelta(hours=3)


class OutreachBlockedError(Exception):
    """A guard refused the send before it reached the provider."""

    def __init__(self, message: str, rule: str):
        super().__init__(message)
        self.rule = rule


def retry_delay_for(message: str) -> timedelta:
    if "quiet hours" in message.lower():
        return QUIET_RETRY_DELAY
    return GENERIC_RETRY_DELAY


def build_template_variables(contact: ContactSummary) -> list[str]:
    return [contact.name] if contact.name else []


class OutreachDispatcher:
    def __init__(
        self,
        sender: TemplateSender,
        consent_lookup: ConsentLookup,
        rate_limiter: ProactiveRateLimiter,
        language_code: str = "en",
        timezone_str: str = DEFAULT_TIMEZONE,
        quiet_hours_start: int = ENGAGEMENT_START_HOUR,
        quiet_hours_end: int = ENGAGEMENT_END_HOUR,
    ):
        self.sender = sender
        self.consent_lookup = consent_lookup
        self.rate_limiter = rate_limiter
        self.language_code = language_code
        self.timezone_str = timezone_str
        self.quiet_hours_start = quiet_hours_start
        self.quiet_hours_end = quiet_hours_end

    async def attempt_template_send(
        self,
        template_name: str,
        lead_id: str,
        contact: ContactSummary,
        allow_consent_fallback: bool = True,
        now: Optional[datetime] = None,
    ) -> DispatchOutcome:
        """Never raises: every failure becomes an outcome."""
        now = now or datetime.now(timezone.utc)
        log_extra = {"lead_id": lead_id, "contact_id": contact.id, "template": template_name}

        if not contact.phone:
            return DispatchOutcome.skipped("Contact phone missing")

        consent_status = await safe_consent_status(self.consent_lookup, contact.id)
        decision = evaluate_consent(contact.whatsapp_opt_in, contact.dnd_flag, consent_status)
        if not decision:
            logger.info(
                "Template %s blocked by consent for lead %s: %s",
                template_name, lead_id[:8], decision.reason, extra=log_extra,
            )
            if allow_consent_fallback:
                return DispatchOutcome.consent_required()
            return DispatchOutcome.skipped(decision.reason or f"Consent status {consent_status}")

        try:
            await self._enforce_guards(lead_id, contact, now)
            result = await self.sender.send_template(
                contact.phone,
                template_name,
                self.language_code,
                build_template_variables(contact),
            )
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.warning(
                "Template %s not sent to %s: %s",
                template_name, mask_phone(contact.phone), message, extra=log_extra,
            )
            return DispatchOutcome.error(message, retry_delay_for(message))

        logger.info(
            "Sent proactive template %s to %s",
            template_name, mask_phone(contact.phone), extra=log_extra,
        )
        return DispatchOutcome.sent((result or {}).get("message_id"))

    async def _enforce_guards(self, lead_id: str, contact: ContactSummary, now: datetime) -> None:
        window = check_quiet_hours(
            now, self.timezone_str, self.quiet_hours_start, self.quiet_hours_end
        )
        if not window:
            raise OutreachBlockedError(window.reason, window.rule)

        limit = await self.rate_limiter.check(rate_limit_key(contact.id, lead_id), now)
        if not limit:
            raise OutreachBlockedError(limit.reason or "Rate limit exceeded", "rate_limit")
