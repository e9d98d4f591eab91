"""
WhatsApp Transport Client (Twilio REST API)

Outbound messages for notification fan-out and media download for
attachments. `send` never raises: every outcome comes back as a
SendResult so the fan-out loop can log it and move on.
"""

import logging
import secrets
from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

import httpx

from folioflow.core.settings import Settings, get_settings
from folioflow.services.errors import ExternalServiceError

logger = logging.getLogger(__name__)

WHATSAPP_PREFIX = "whatsapp:"


def short_id() -> str:
    return secrets.token_hex(6)


def as_whatsapp_address(phone: str) -> str:
    phone = str(phone or "").strip()
    if not phone:
        return ""
    return phone if phone.lower().startswith(WHATSAPP_PREFIX) else f"{WHATSAPP_PREFIX}{phone}"


@dataclass
class SendResult:
    ok: bool
    correlation_id: str
    sid: Optional[str] = None
    status: Optional[str] = None
    error_code: Optional[str] = None
    error: Optional[str] = None


class MessageTransport(Protocol):
    async def send(self, to: str, body: str, correlation_id: Optional[str] = None) -> SendResult: ...


class TwilioWhatsAppClient:
    """
    Minimal Twilio Messages API client.

    Usage:
        client = TwilioWhatsAppClient()
        result = await client.send("whatsapp:+525512345678", "Folio approved")
    """

    def __init__(self, settings: Optional[Settings] = None, timeout: float = 15.0):
        self.settings = settings or get_settings()
        self.timeout = timeout

    @property
    def from_address(self) -> str:
        return as_whatsapp_address(self.settings.twilio_from_number)

    def _messages_url(self) -> str:
        base = self.settings.twilio_api_base.rstrip("/")
        return f"{base}/Accounts/{self.settings.twilio_account_sid}/Messages.json"

    async def send(self, to: str, body: str, correlation_id: Optional[str] = None) -> SendResult:
        correlation_id = correlation_id or short_id()
        prefix = f"[NOTIFY {correlation_id}]"

        if not (self.settings.twilio_account_sid and self.settings.twilio_auth_token):
            logger.warning("%s SKIP transport credentials not configured", prefix)
            return SendResult(ok=False, correlation_id=correlation_id, error="Transport credentials not configured")
        if not self.from_address:
            logger.warning("%s SKIP sender number not configured (TWILIO_WHATSAPP_NUMBER)", prefix)
            return SendResult(ok=False, correlation_id=correlation_id, error="Sender number not configured")
        if not to or not to.startswith(WHATSAPP_PREFIX):
            logger.warning("%s SKIP invalid recipient %r", prefix, to)
            return SendResult(ok=False, correlation_id=correlation_id, error="Recipient must look like whatsapp:+<number>")
        if not str(body or "").strip():
            logger.warning("%s SKIP empty body", prefix)
            return SendResult(ok=False, correlation_id=correlation_id, error="Empty body")

        logger.info("%s REQUEST to=%s bodyLen=%d", prefix, to, len(body))
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self._messages_url(),
                    data={"From": self.from_address, "To": to, "Body": body},
                    auth=(self.settings.twilio_account_sid, self.settings.twilio_auth_token),
                )
        except httpx.HTTPError as exc:
            logger.warning("%s ERROR transport %s", prefix, exc)
            return SendResult(ok=False, correlation_id=correlation_id, error=str(exc))

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code >= 400:
            code = payload.get("code") or response.status_code
            message = payload.get("message") or response.text[:200]
            logger.warning("%s ERROR code=%s message=%s", prefix, code, message)
            return SendResult(ok=False, correlation_id=correlation_id, error_code=str(code), error=message)

        sid = payload.get("sid")
        status = payload.get("status") or "unknown"
        logger.info("%s RESPONSE sid=%s status=%s", prefix, sid, status)
        return SendResult(ok=True, correlation_id=correlation_id, sid=sid, status=status)

    async def fetch_media(self, url: str) -> Tuple[bytes, Optional[str]]:
        """Download an inbound attachment; media URLs require account auth."""
        if not url:
            raise ExternalServiceError("transport", "missing media url")
        try:
            async with httpx.AsyncClient(timeout=30.0, follow_redirects=True) as client:
                response = await client.get(
                    url,
                    auth=(self.settings.twilio_account_sid, self.settings.twilio_auth_token),
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExternalServiceError("transport", f"media download failed: {exc}") from exc
        return response.content, response.headers.get("content-type")


_CLIENT: Optional[TwilioWhatsAppClient] = None


def get_transport() -> TwilioWhatsAppClient:
    global _CLIENT
    if _CLIENT is None:
        _CLIENT = TwilioWhatsAppClient()
    return _CLIENT
