"""
WhatsApp template sending via Twilio.

Templates resolve through TWILIO_TEMPLATE_MAP (JSON), looked up as "<name>:<lang>"
first, then "<name>". Each entry is either a Content API template
({"contentSid": "HX..."}) or a plain body with {{1}}-style placeholders
({"body": "Hi {{1}}", "mediaUrl": "..."}). Entries may override "from" and
"messagingServiceSid". A template name that is itself a Content SID (HX + 32 hex)
is used directly.

Twilio's client is synchronous; calls run in the default thread pool.
"""
import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Optional

from journeyflow.utils.logging import mask_phone

logger = logging.getLogger(__name__)

TWILIO_CLIENT_TIMEOUT = 10

_CONTENT_SID_RE = re.compile(r"^HX[0-9A-F]{32}$", re.IGNORECASE)


class TemplateSendError(Exception):
    """Template send failed; message is surfaced as the journey's last_error."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class TemplateSender(ABC):
    """Capability: send one approved WhatsApp template."""

    @abstractmethod
    async def send_template(
        self,
        phone: str,
        template_name: str,
        language_code: str,
        variables: list[str],
    ) -> dict:
        """
        Send a template message.
        Returns: {"message_id": str, "status": str|None}. Raises on failure.
        """
        ...


async def _run_sync(func, *args, **kwargs):
    """Run a synchronous function in the thread pool to avoid blocking the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: func(*args, **kwargs))


def format_whatsapp_address(phone: str) -> str:
    trimmed = phone.strip()
    if trimmed.startswith("whatsapp:"):
        return trimmed
    if trimmed.startswith("+"):
        return f"whatsapp:{trimmed}"
    return f"whatsapp:+{trimmed}"


def build_content_variables(variables: list[str]) -> Optional[str]:
    """Twilio ContentVariables: {"1": first, "2": second, ...} as JSON, or None."""
    if not variables:
        return None
    return json.dumps({str(index + 1): value for index, value in enumerate(variables)})


def apply_template_body(body: str, variables: list[str]) -> str:
    for index, value in enumerate(variables):
        body = body.replace("{{%d}}" % (index + 1), value)
    return body


def parse_template_map(raw: str) -> dict[str, dict]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise TemplateSendError(f"Invalid TWILIO_TEMPLATE_MAP JSON: {e}", "template_config_invalid")
    if not isinstance(parsed, dict):
        raise TemplateSendError("Invalid TWILIO_TEMPLATE_MAP JSON: not an object", "template_config_invalid")
    return parsed


class TwilioWhatsAppSender(TemplateSender):
    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        whatsapp_from: str = "",
        messaging_service_sid: str = "",
        template_map: Optional[dict[str, dict]] = None,
        client=None,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.whatsapp_from = whatsapp_from
        self.messaging_service_sid = messaging_service_sid
        self.template_map = template_map or {}
        self._client = client

    @classmethod
    def from_settings(cls, settings) -> "TwilioWhatsAppSender":
        return cls(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            whatsapp_from=settings.twilio_whatsapp_from,
            messaging_service_sid=settings.twilio_messaging_service_sid,
            template_map=parse_template_map(settings.twilio_template_map),
        )

    def _get_client(self):
        """Twilio REST client with configured timeout (created once per sender)."""
        if self._client is None:
            from twilio.rest import Client as TwilioClient
            from twilio.http.http_client import TwilioHttpClient
            self._client = TwilioClient(
                self.account_sid,
                self.auth_token,
                http_client=TwilioHttpClient(timeout=TWILIO_CLIENT_TIMEOUT),
            )
        return self._client

    def resolve_template(self, template_name: str, language_code: str) -> Optional[dict]:
        config = self.template_map.get(f"{template_name}:{language_code}") or self.template_map.get(template_name)
        if config:
            return config
        if _CONTENT_SID_RE.match(template_name):
            return {"contentSid": template_name}
        return None

    def build_message_params(
        self,
        phone: str,
        template_name: str,
        language_code: str,
        variables: list[str],
    ) -> dict:
        """kwargs for client.messages.create()."""
        if not self.account_sid or not self.auth_token:
            raise TemplateSendError(
                "Twilio configuration missing: TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN are required",
                "config_missing",
            )

        config = self.resolve_template(template_name, language_code)
        sender_from = (config or {}).get("from") or self.whatsapp_from
        service_sid = (config or {}).get("messagingServiceSid") or self.messaging_service_sid
        if not sender_from and not service_sid:
            raise TemplateSendError(
                "Twilio configuration missing: supply either TWILIO_WHATSAPP_FROM "
                "or TWILIO_MESSAGING_SERVICE_SID",
                "config_missing",
            )

        params = {"to": format_whatsapp_address(phone)}
        if service_sid:
            params["messaging_service_sid"] = service_sid
        else:
            params["from_"] = format_whatsapp_address(sender_from)

        if config and config.get("contentSid"):
            params["content_sid"] = config["contentSid"]
            content_variables = build_content_variables(variables)
            if content_variables:
                params["content_variables"] = content_variables
        elif config and config.get("body"):
            params["body"] = apply_template_body(config["body"], variables)
            if config.get("mediaUrl"):
                params["media_url"] = [config["mediaUrl"]]
        else:
            raise TemplateSendError(
                f"Template {template_name} is not configured for Twilio ({language_code})",
                "template_not_configured",
            )
        return params

    async def send_template(
        self,
        phone: str,
        template_name: str,
        language_code: str,
        variables: list[str],
    ) -> dict:
        params = self.build_message_params(phone, template_name, language_code, variables)
        client = self._get_client()

        try:
            message = await _run_sync(client.messages.create, **params)
        except Exception as e:
            code = getattr(e, "code", None)
            logger.error(
                "Twilio template send failed to %s: %s (code=%s)",
                mask_phone(phone), str(e), code,
                extra={"template": template_name, "provider": "twilio"},
            )
            raise TemplateSendError(getattr(e, "msg", None) or str(e), str(code) if code else None) from e

        logger.info(
            "Template %s sent to %s: sid=%s status=%s",
            template_name, mask_phone(phone), message.sid, message.status,
            extra={"template": template_name, "provider": "twilio"},
        )
        return {"message_id": message.sid, "status": message.status}
