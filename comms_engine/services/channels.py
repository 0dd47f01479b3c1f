"""
Channel Senders: outbound email, SMS and WhatsApp delivery.

This module is responsible for:
1. Talking to providers over HTTP (SendGrid, Twilio, WhatsApp Cloud API)
2. Enforcing a per-call timeout on every provider request
3. Writing a Communication audit row for every SMS / WhatsApp attempt

Providers are selected once at startup by ``build_channel_providers`` and
injected into the services that need them. A provider with missing
credentials raises ``NotConfiguredError`` instead of crashing the caller.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable
from uuid import UUID

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings
from ..core.errors import CommsError, NotConfiguredError, ProviderError
from ..models import Communication, CommunicationStatus, CommunicationType, utcnow


logger = logging.getLogger(__name__)

# 10 to 15 digits, optional leading "+"; spaces, dashes, dots and brackets are stripped first
PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{9,14}$")
PHONE_SEPARATORS = re.compile(r"[\s\-().]")

SMS_MAX_LENGTH = 1600
WHATSAPP_MEDIA_TYPES = ("image", "video", "audio", "document")
WHATSAPP_CAPTION_TYPES = ("image", "video", "document")


# =============================================================================
# RESULTS & HELPERS
# =============================================================================


@dataclass
class SendResult:
    """Outcome of a single SMS / WhatsApp send."""
    success: bool
    provider_message_id: str | None = None
    error: str | None = None


def normalize_phone(raw: str) -> str | None:
    """Return the phone number without separators, or None if malformed."""
    candidate = PHONE_SEPARATORS.sub("", raw or "")
    if not PHONE_PATTERN.match(candidate):
        return None
    return candidate


async def call_with_timeout(request: Awaitable[httpx.Response], timeout: float, provider: str) -> httpx.Response:
    """Await a provider request, converting timeouts and transport errors to ProviderError."""
    try:
        return await asyncio.wait_for(request, timeout=timeout)
    except asyncio.TimeoutError:
        raise ProviderError(f"{provider} request timed out after {timeout:g}s")
    except httpx.HTTPError as e:
        raise ProviderError(f"{provider} request failed: {e}")


def _provider_error(provider: str, response: httpx.Response) -> ProviderError:
    try:
        body = response.json()
    except ValueError:
        body = response.text
    detail = body
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            detail = error.get("message", body)
        elif "message" in body:
            detail = body["message"]
        elif "errors" in body:
            detail = body["errors"]
    return ProviderError(
        f"{provider} returned HTTP {response.status_code}: {detail}",
        status_code=response.status_code,
    )


# =============================================================================
# EMAIL
# =============================================================================


class EmailSender(ABC):
    """Abstract email sender."""

    configured: bool = True

    @abstractmethod
    async def deliver(
        self,
        to: str,
        subject: str,
        html: str,
        text: str | None = None,
    ) -> str | None:
        """
        Send one email.

        Returns:
            The provider message id, if the provider reports one.

        Raises:
            NotConfiguredError, ProviderError
        """
        pass

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: str | None = None,
    ) -> bool:
        """Send one email, reporting the outcome as a boolean."""
        try:
            await self.deliver(to, subject, html, text)
            return True
        except CommsError as e:
            logger.error(f"Failed to send email to {to}: {e}")
            return False


class SendGridEmailSender(EmailSender):
    """Email delivery through the SendGrid v3 Mail Send API."""

    API_URL = "https://api.sendgrid.com/v3/mail/send"

    def __init__(
        self,
        api_key: str,
        from_email: str,
        from_name: str,
        client: httpx.AsyncClient,
        timeout_seconds: float = 15.0,
    ):
        self._api_key = api_key
        self._from_email = from_email
        self._from_name = from_name
        self._client = client
        self._timeout = timeout_seconds

    async def deliver(
        self,
        to: str,
        subject: str,
        html: str,
        text: str | None = None,
    ) -> str | None:
        content = []
        if text:
            content.append({"type": "text/plain", "value": text})
        content.append({"type": "text/html", "value": html})

        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self._from_email, "name": self._from_name},
            "subject": subject,
            "content": content,
        }

        response = await call_with_timeout(
            self._client.post(
                self.API_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self._api_key}"},
            ),
            self._timeout,
            "SendGrid",
        )
        if response.status_code >= 400:
            raise _provider_error("SendGrid", response)

        message_id = response.headers.get("X-Message-Id")
        logger.info(f"[EMAIL] To: {to}, Subject: {subject}, Id: {message_id}")
        return message_id


class UnconfiguredEmailSender(EmailSender):
    """Stand-in used when no email provider credentials are present."""

    configured = False

    async def deliver(
        self,
        to: str,
        subject: str,
        html: str,
        text: str | None = None,
    ) -> str | None:
        raise NotConfiguredError("Email service not configured")


# =============================================================================
# SMS
# =============================================================================


class SMSTransport(ABC):
    """Abstract SMS provider."""

    configured: bool = True

    @abstractmethod
    async def send_sms(self, to: str, body: str) -> str:
        """Send one SMS and return the provider message id."""
        pass

    async def fetch_status(self, message_sid: str) -> dict[str, Any]:
        raise NotConfiguredError("SMS service not configured")


class TwilioSMSTransport(SMSTransport):
    """SMS delivery through the Twilio Messages REST API."""

    API_BASE = "https://api.twilio.com/2010-04-01"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        client: httpx.AsyncClient,
        timeout_seconds: float = 15.0,
    ):
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._client = client
        self._timeout = timeout_seconds

    async def send_sms(self, to: str, body: str) -> str:
        url = f"{self.API_BASE}/Accounts/{self._account_sid}/Messages.json"
        response = await call_with_timeout(
            self._client.post(
                url,
                data={"From": self._from_number, "To": to, "Body": body},
                auth=(self._account_sid, self._auth_token),
            ),
            self._timeout,
            "Twilio",
        )
        if response.status_code >= 400:
            raise _provider_error("Twilio", response)
        return response.json().get("sid", "")

    async def fetch_status(self, message_sid: str) -> dict[str, Any]:
        """Look up delivery status of a previously sent message."""
        url = f"{self.API_BASE}/Accounts/{self._account_sid}/Messages/{message_sid}.json"
        response = await call_with_timeout(
            self._client.get(url, auth=(self._account_sid, self._auth_token)),
            self._timeout,
            "Twilio",
        )
        if response.status_code >= 400:
            raise _provider_error("Twilio", response)
        data = response.json()
        return {
            "status": data.get("status"),
            "error_code": data.get("error_code"),
            "error_message": data.get("error_message"),
        }


class UnconfiguredSMSTransport(SMSTransport):
    """Stand-in used when Twilio credentials are missing."""

    configured = False

    async def send_sms(self, to: str, body: str) -> str:
        raise NotConfiguredError("SMS service not configured")


# =============================================================================
# WHATSAPP
# =============================================================================


class WhatsAppTransport(ABC):
    """Abstract WhatsApp provider; accepts Cloud API message payloads."""

    configured: bool = True

    @abstractmethod
    async def send_message(self, payload: dict[str, Any]) -> str:
        """Send one message payload and return the provider message id."""
        pass


class MetaWhatsAppTransport(WhatsAppTransport):
    """WhatsApp Business delivery through the Meta Graph API."""

    GRAPH_URL = "https://graph.facebook.com"

    def __init__(
        self,
        access_token: str,
        phone_number_id: str,
        client: httpx.AsyncClient,
        api_version: str = "v18.0",
        timeout_seconds: float = 15.0,
    ):
        self._access_token = access_token
        self._phone_number_id = phone_number_id
        self._client = client
        self._api_version = api_version
        self._timeout = timeout_seconds

    async def send_message(self, payload: dict[str, Any]) -> str:
        url = f"{self.GRAPH_URL}/{self._api_version}/{self._phone_number_id}/messages"
        response = await call_with_timeout(
            self._client.post(
                url,
                json={"messaging_product": "whatsapp", **payload},
                headers={"Authorization": f"Bearer {self._access_token}"},
            ),
            self._timeout,
            "WhatsApp",
        )
        if response.status_code >= 400:
            raise _provider_error("WhatsApp", response)
        messages = response.json().get("messages") or [{}]
        return messages[0].get("id", "")


class UnconfiguredWhatsAppTransport(WhatsAppTransport):
    """Stand-in used when WhatsApp credentials are missing."""

    configured = False

    async def send_message(self, payload: dict[str, Any]) -> str:
        raise NotConfiguredError("WhatsApp service not configured")


# =============================================================================
# PROVIDER REGISTRY
# =============================================================================


@dataclass
class ChannelProviders:
    """The provider set chosen at startup."""
    email: EmailSender
    sms: SMSTransport
    whatsapp: WhatsAppTransport
    http_client: httpx.AsyncClient | None = None

    async def close(self) -> None:
        if self.http_client is not None:
            await self.http_client.aclose()

    def status(self) -> dict[str, bool]:
        return {
            "email": self.email.configured,
            "sms": self.sms.configured,
            "whatsapp": self.whatsapp.configured,
        }


def build_channel_providers(
    settings: Settings,
    client: httpx.AsyncClient | None = None,
) -> ChannelProviders:
    """Select a provider per channel from configured credentials."""
    client = client or httpx.AsyncClient(timeout=settings.sender_timeout_seconds)
    timeout = settings.sender_timeout_seconds

    if settings.email_enabled:
        email: EmailSender = SendGridEmailSender(
            api_key=settings.sendgrid_api_key,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            client=client,
            timeout_seconds=timeout,
        )
    else:
        logger.warning("Email service not configured - SENDGRID_API_KEY missing")
        email = UnconfiguredEmailSender()

    if settings.sms_enabled:
        sms: SMSTransport = TwilioSMSTransport(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_phone_number,
            client=client,
            timeout_seconds=timeout,
        )
    else:
        logger.warning("SMS service not configured - Twilio credentials missing")
        sms = UnconfiguredSMSTransport()

    if settings.whatsapp_enabled:
        whatsapp: WhatsAppTransport = MetaWhatsAppTransport(
            access_token=settings.whatsapp_access_token,
            phone_number_id=settings.whatsapp_phone_number_id,
            client=client,
            api_version=settings.whatsapp_api_version,
            timeout_seconds=timeout,
        )
    else:
        logger.warning("WhatsApp service not configured - credentials missing")
        whatsapp = UnconfiguredWhatsAppTransport()

    return ChannelProviders(email=email, sms=sms, whatsapp=whatsapp, http_client=client)


# =============================================================================
# AUDIT
# =============================================================================


class CommunicationRecorder:
    """Writes Communication audit rows on the caller's session."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def record(
        self,
        tenant_id: UUID,
        channel: CommunicationType,
        recipient: str,
        content: str,
        result: SendResult,
        subject: str | None = None,
        sender_id: str | None = None,
    ) -> Communication:
        communication = Communication(
            tenant_id=tenant_id,
            sender_id=sender_id or "system",
            recipient=recipient,
            type=channel,
            subject=subject,
            content=content,
            status=CommunicationStatus.SENT if result.success else CommunicationStatus.FAILED,
            provider_message_id=result.provider_message_id,
            error_message=result.error,
            sent_at=utcnow(),
        )
        self._session.add(communication)
        await self._session.flush()
        return communication


# =============================================================================
# SESSION-BOUND SENDERS
# =============================================================================


class SMSSender:
    """Validates, sends and audits SMS messages."""

    def __init__(self, session: AsyncSession, transport: SMSTransport):
        self._transport = transport
        self._recorder = CommunicationRecorder(session)

    async def send(
        self,
        to: str,
        message: str,
        tenant_id: UUID,
        sender_id: str | None = None,
    ) -> SendResult:
        """Send one SMS; an audit row is written whatever the outcome."""
        phone = normalize_phone(to)
        if phone is None:
            result = SendResult(success=False, error="Invalid phone number format")
        elif not message or len(message) > SMS_MAX_LENGTH:
            result = SendResult(
                success=False,
                error=f"Message must be between 1 and {SMS_MAX_LENGTH} characters",
            )
        else:
            try:
                message_id = await self._transport.send_sms(phone, message)
                result = SendResult(success=True, provider_message_id=message_id)
            except CommsError as e:
                logger.error(f"Failed to send SMS to {phone}: {e}")
                result = SendResult(success=False, error=str(e))

        await self._recorder.record(
            tenant_id=tenant_id,
            channel=CommunicationType.SMS,
            recipient=phone or to,
            content=message,
            result=result,
            sender_id=sender_id,
        )
        return result


class WhatsAppSender:
    """Validates, sends and audits WhatsApp messages."""

    def __init__(self, session: AsyncSession, transport: WhatsAppTransport):
        self._transport = transport
        self._recorder = CommunicationRecorder(session)

    async def send_text(
        self,
        to: str,
        message: str,
        tenant_id: UUID,
        sender_id: str | None = None,
    ) -> SendResult:
        payload = {"type": "text", "text": {"body": message}}
        return await self._send(to, payload, message, tenant_id, sender_id)

    async def send_template(
        self,
        to: str,
        template_name: str,
        tenant_id: UUID,
        parameters: list[str] | None = None,
        language: str = "en",
        sender_id: str | None = None,
    ) -> SendResult:
        template: dict[str, Any] = {"name": template_name, "language": {"code": language}}
        if parameters:
            template["components"] = [
                {
                    "type": "body",
                    "parameters": [{"type": "text", "text": p} for p in parameters],
                }
            ]
        payload = {"type": "template", "template": template}
        return await self._send(to, payload, f"Template: {template_name}", tenant_id, sender_id)

    async def send_media(
        self,
        to: str,
        media_type: str,
        media_url: str,
        tenant_id: UUID,
        caption: str | None = None,
        sender_id: str | None = None,
    ) -> SendResult:
        if media_type not in WHATSAPP_MEDIA_TYPES:
            result = SendResult(success=False, error=f"Unsupported media type: {media_type}")
            await self._record(to, f"Media: {media_type} - {media_url}", result, tenant_id, sender_id)
            return result

        media: dict[str, Any] = {"link": media_url}
        if caption and media_type in WHATSAPP_CAPTION_TYPES:
            media["caption"] = caption
        payload = {"type": media_type, media_type: media}
        return await self._send(
            to, payload, f"Media: {media_type} - {caption or media_url}", tenant_id, sender_id
        )

    async def send_interactive(
        self,
        to: str,
        interactive: dict[str, Any],
        tenant_id: UUID,
        sender_id: str | None = None,
    ) -> SendResult:
        payload = {"type": "interactive", "interactive": interactive}
        content = f"Interactive: {interactive.get('type', 'button')}"
        return await self._send(to, payload, content, tenant_id, sender_id)

    async def _send(
        self,
        to: str,
        payload: dict[str, Any],
        content: str,
        tenant_id: UUID,
        sender_id: str | None,
    ) -> SendResult:
        phone = normalize_phone(to)
        if phone is None:
            result = SendResult(success=False, error="Invalid phone number format")
        else:
            try:
                message_id = await self._transport.send_message(
                    {"to": phone.lstrip("+"), **payload}
                )
                result = SendResult(success=True, provider_message_id=message_id)
            except CommsError as e:
                logger.error(f"Failed to send WhatsApp message to {phone}: {e}")
                result = SendResult(success=False, error=str(e))

        await self._record(phone or to, content, result, tenant_id, sender_id)
        return result

    async def _record(
        self,
        recipient: str,
        content: str,
        result: SendResult,
        tenant_id: UUID,
        sender_id: str | None,
    ) -> None:
        await self._recorder.record(
            tenant_id=tenant_id,
            channel=CommunicationType.WHATSAPP,
            recipient=recipient,
            content=content,
            result=result,
            sender_id=sender_id,
        )
