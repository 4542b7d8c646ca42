"""Outbound SMS gateways and inbound webhook helpers."""

import base64
import hashlib
import hmac
import logging
import uuid
from typing import Mapping, Optional, Protocol

import httpx
from pydantic import BaseModel

from vendor_pipeline.core.exceptions import InvalidWebhookSignatureError
from vendor_pipeline.core.formatting import normalize_uk_phone
from vendor_pipeline.integrations.http import collaborator_call
from vendor_pipeline.schemas.common import MessageStatus
from vendor_pipeline.schemas.webhook import InboundSMS

logger = logging.getLogger(__name__)


class SendResult(BaseModel):
    message_id: str
    status: MessageStatus


class MessagingGateway(Protocol):
    async def send(self, to: str, body: str) -> SendResult: ...


class TwilioGateway:
    """Sends SMS through the Twilio REST API."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        api_base_url: str,
        timeout: float,
        status_callback_url: Optional[str] = None,
    ) -> None:
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._url = f"{api_base_url}/Accounts/{account_sid}/Messages.json"
        self._timeout = timeout
        self._status_callback_url = status_callback_url

    async def send(self, to: str, body: str) -> SendResult:
        data = {"To": to, "From": self._from_number, "Body": body}
        if self._status_callback_url:
            data["StatusCallback"] = self._status_callback_url
        async with collaborator_call("Twilio"):
            async with httpx.AsyncClient(
                timeout=self._timeout, auth=(self._account_sid, self._auth_token)
            ) as client:
                response = await client.post(self._url, data=data)
                response.raise_for_status()
        payload = response.json()
        status = payload.get("status", MessageStatus.queued.value)
        if status not in MessageStatus.__members__:
            status = MessageStatus.queued.value
        logger.info("SMS sent to %s (sid=%s)", to, payload.get("sid"))
        return SendResult(message_id=payload["sid"], status=MessageStatus(status))


class ConsoleGateway:
    """Logs messages instead of sending them (local development)."""

    async def send(self, to: str, body: str) -> SendResult:
        message_id = f"console-{uuid.uuid4().hex}"
        logger.info("[console sms] to=%s id=%s body=%s", to, message_id, body)
        return SendResult(message_id=message_id, status=MessageStatus.sent)


# ---------------------------------------------------------------------------
# Inbound webhook
# ---------------------------------------------------------------------------


def parse_twilio_inbound(form: Mapping[str, str]) -> InboundSMS:
    """Map Twilio's form fields onto ``InboundSMS``."""
    return InboundSMS(
        provider_message_id=form.get("MessageSid") or form.get("SmsSid") or "",
        from_number=normalize_uk_phone(form.get("From", "")),
        to_number=form.get("To"),
        body=(form.get("Body") or "").strip(),
    )


def compute_twilio_signature(auth_token: str, url: str, params: Mapping[str, str]) -> str:
    """HMAC-SHA1 of the URL followed by the sorted POST params, base64."""
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(
        auth_token.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1
    ).digest()
    return base64.b64encode(digest).decode("ascii")


def validate_twilio_signature(
    auth_token: str, url: str, params: Mapping[str, str], signature: Optional[str]
) -> None:
    if not signature:
        raise InvalidWebhookSignatureError("Missing X-Twilio-Signature header")
    expected = compute_twilio_signature(auth_token, url, params)
    if not hmac.compare_digest(expected, signature):
        raise InvalidWebhookSignatureError()
