"""
Messaging Service: direct SMS and WhatsApp sends for staff-initiated messages.

Every send goes through ``SMSSender`` / ``WhatsAppSender`` so it is validated
and audited the same way as any other outbound message.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import CommsError
from ..models import Communication, CommunicationStatus, CommunicationType, MessageTemplate
from .channels import ChannelProviders, SendResult, SMSSender, WhatsAppSender
from .templates import TemplateEngine


logger = logging.getLogger(__name__)


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass
class BulkRecipientResult:
    to: str
    success: bool
    error: str | None = None


@dataclass
class BulkSendReport:
    """Outcome of a bulk SMS send."""
    success: int = 0
    failed: int = 0
    results: list[BulkRecipientResult] = field(default_factory=list)


@dataclass
class ChannelStats:
    """Audit-table counts for one channel."""
    total: int = 0
    sent: int = 0
    delivered: int = 0
    failed: int = 0
    pending: int = 0


# =============================================================================
# MESSAGING SERVICE
# =============================================================================


class MessagingService:
    """SMS / WhatsApp sends, templates, bulk sends and per-channel statistics."""

    def __init__(
        self,
        session: AsyncSession,
        providers: ChannelProviders,
        bulk_batch_size: int = 10,
        bulk_batch_delay_seconds: float = 1.0,
    ):
        self._session = session
        self._providers = providers
        self._sms = SMSSender(session, providers.sms)
        self._whatsapp = WhatsAppSender(session, providers.whatsapp)
        self._bulk_batch_size = bulk_batch_size
        self._bulk_batch_delay = bulk_batch_delay_seconds

    # -------------------------------------------------------------------------
    # SMS
    # -------------------------------------------------------------------------

    async def send_sms(
        self,
        tenant_id: UUID,
        to: str,
        message: str,
        sender_id: str | None = None,
    ) -> SendResult:
        return await self._sms.send(to, message, tenant_id, sender_id)

    async def send_template_sms(
        self,
        tenant_id: UUID,
        to: str,
        template_id: UUID,
        variables: dict[str, Any] | None = None,
        sender_id: str | None = None,
    ) -> SendResult:
        """Render a tenant template (text body preferred) and send it as SMS."""
        result = await self._session.execute(
            select(MessageTemplate).where(
                MessageTemplate.id == template_id,
                MessageTemplate.tenant_id == tenant_id,
                MessageTemplate.is_active.is_(True),
            )
        )
        template = result.scalar_one_or_none()
        if not template:
            return SendResult(success=False, error="SMS template not found")

        body = template.text_content or template.html_content
        message = TemplateEngine.substitute_variables(body, variables or {})
        return await self._sms.send(to, message, tenant_id, sender_id)

    async def send_bulk_sms(
        self,
        tenant_id: UUID,
        messages: list[tuple[str, str]],
        sender_id: str | None = None,
    ) -> BulkSendReport:
        """
        Send ``(to, message)`` pairs in fixed-size batches.

        Batches are separated by a short delay to stay under provider rate
        limits.
        """
        report = BulkSendReport()
        for start in range(0, len(messages), self._bulk_batch_size):
            batch = messages[start:start + self._bulk_batch_size]
            for to, text in batch:
                result = await self._sms.send(to, text, tenant_id, sender_id)
                report.results.append(BulkRecipientResult(to=to, success=result.success, error=result.error))
                if result.success:
                    report.success += 1
                else:
                    report.failed += 1

            if start + self._bulk_batch_size < len(messages) and self._bulk_batch_delay > 0:
                await asyncio.sleep(self._bulk_batch_delay)

        logger.info(f"Bulk SMS for tenant {tenant_id}: {report.success} sent, {report.failed} failed")
        return report

    async def get_sms_delivery_status(self, message_sid: str) -> dict[str, Any]:
        try:
            return await self._providers.sms.fetch_status(message_sid)
        except CommsError as e:
            logger.error(f"Failed to get SMS delivery status for {message_sid}: {e}")
            return {"status": "UNKNOWN", "error_code": None, "error_message": str(e)}

    # -------------------------------------------------------------------------
    # WhatsApp
    # -------------------------------------------------------------------------

    async def send_whatsapp_text(
        self,
        tenant_id: UUID,
        to: str,
        message: str,
        sender_id: str | None = None,
    ) -> SendResult:
        return await self._whatsapp.send_text(to, message, tenant_id, sender_id)

    async def send_whatsapp_template(
        self,
        tenant_id: UUID,
        to: str,
        template_name: str,
        parameters: list[str] | None = None,
        language: str = "en",
        sender_id: str | None = None,
    ) -> SendResult:
        return await self._whatsapp.send_template(
            to, template_name, tenant_id, parameters=parameters, language=language, sender_id=sender_id
        )

    async def send_whatsapp_media(
        self,
        tenant_id: UUID,
        to: str,
        media_type: str,
        media_url: str,
        caption: str | None = None,
        sender_id: str | None = None,
    ) -> SendResult:
        return await self._whatsapp.send_media(
            to, media_type, media_url, tenant_id, caption=caption, sender_id=sender_id
        )

    async def send_whatsapp_interactive(
        self,
        tenant_id: UUID,
        to: str,
        interactive: dict[str, Any],
        sender_id: str | None = None,
    ) -> SendResult:
        return await self._whatsapp.send_interactive(to, interactive, tenant_id, sender_id)

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    async def get_channel_stats(
        self,
        channel: CommunicationType,
        tenant_id: UUID | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> ChannelStats:
        query = (
            select(Communication.status, func.count(Communication.id))
            .where(Communication.type == channel)
            .group_by(Communication.status)
        )
        if tenant_id is not None:
            query = query.where(Communication.tenant_id == tenant_id)
        if start is not None:
            query = query.where(Communication.sent_at >= start)
        if end is not None:
            query = query.where(Communication.sent_at <= end)

        stats = ChannelStats()
        for status, count in (await self._session.execute(query)).all():
            setattr(stats, CommunicationStatus(status).value, count)
            stats.total += count
        return stats
