"""
Notification Service: in-app notifications and their side channels.

This module is responsible for:
1. Persisting notifications addressed to users
2. Pushing them to any live connection of the recipient
3. Dispatching email / SMS / WhatsApp copies according to user preferences
4. Read state, preferences and statistics

Side-channel dispatch never fails the caller: each channel runs as its own
task under a shared concurrency limit, and every outcome is logged and
written to the Communication audit table.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import CommsError, NotFoundError, ValidationError
from ..models import (
    CommunicationType,
    DeliveryFrequency,
    Notification,
    NotificationPreference,
    NotificationPriority,
    NotificationType,
    utcnow,
)
from .channels import ChannelProviders, CommunicationRecorder, SendResult, normalize_phone
from .directory import Contact, UserDirectory
from .realtime import PushChannel


logger = logging.getLogger(__name__)

SORTABLE_FIELDS = {
    "created_at": Notification.created_at,
    "priority": Notification.priority,
    "type": Notification.type,
    "read": Notification.read,
    "title": Notification.title,
}


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass
class DispatchOutcome:
    """Result of one side-channel copy of a notification."""
    channel: CommunicationType
    recipient: str
    content: str
    subject: str | None
    result: SendResult


@dataclass
class PreferenceUpdate:
    """Partial update of a user's notification preferences; None = unchanged."""
    email_enabled: bool | None = None
    sms_enabled: bool | None = None
    whatsapp_enabled: bool | None = None
    push_enabled: bool | None = None
    frequency: DeliveryFrequency | None = None
    categories: dict[str, bool] | None = None


@dataclass
class NotificationStats:
    """Aggregate counts over notifications."""
    total: int
    unread: int
    by_type: dict[str, int] = field(default_factory=dict)
    by_category: dict[str, int] = field(default_factory=dict)


def serialize_notification(notification: Notification) -> dict[str, Any]:
    """Shape pushed to live connections."""
    return {
        "id": str(notification.id),
        "title": notification.title,
        "message": notification.message,
        "type": notification.type.value,
        "category": notification.category,
        "action_type": notification.action_type,
        "priority": notification.priority.value,
        "related_entity_id": str(notification.related_entity_id) if notification.related_entity_id else None,
        "data": notification.data or {},
        "read": notification.read,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
    }


# =============================================================================
# NOTIFICATION SERVICE
# =============================================================================


class NotificationService:
    """
    Fan-out of notifications to persisted, live and side channels.

    Ownership checks (does this user own that notification?) belong to the
    caller.
    """

    def __init__(
        self,
        session: AsyncSession,
        push: PushChannel,
        providers: ChannelProviders,
        directory: UserDirectory | None = None,
        dispatch_concurrency: int = 3,
    ):
        self._session = session
        self._push = push
        self._providers = providers
        self._directory = directory or UserDirectory(session)
        self._recorder = CommunicationRecorder(session)
        self._dispatch_limit = asyncio.Semaphore(dispatch_concurrency)

    # -------------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------------

    async def send_notification(
        self,
        tenant_id: UUID,
        user_id: UUID,
        title: str,
        message: str,
        type: NotificationType = NotificationType.INFO,
        category: str = "GENERAL",
        action_type: str | None = None,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        related_entity_id: UUID | None = None,
        data: dict[str, Any] | None = None,
    ) -> UUID:
        """
        Persist a notification, push it live and dispatch side channels.

        Returns:
            The notification id.

        Raises:
            ValidationError: empty title or message
        """
        if not title or not title.strip():
            raise ValidationError("Notification title is required")
        if not message or not message.strip():
            raise ValidationError("Notification message is required")

        notification = Notification(
            tenant_id=tenant_id,
            user_id=user_id,
            title=title,
            message=message,
            type=type,
            category=category or "GENERAL",
            action_type=action_type,
            priority=priority,
            related_entity_id=related_entity_id,
            data=data or {},
            read=False,
            created_at=utcnow(),
        )
        self._session.add(notification)
        await self._session.commit()

        payload = {"event": "notification", "notification": serialize_notification(notification)}
        try:
            await self._push.broadcast_to_user(user_id, payload)
        except Exception as e:
            logger.warning(f"Live push of notification {notification.id} to user {user_id} failed: {e}")

        try:
            await self._dispatch_side_channels(tenant_id, user_id, title, message, notification.category)
        except Exception as e:
            logger.error(f"Side-channel dispatch for notification {notification.id} failed: {e}")
        return notification.id

    async def send_bulk_notification(
        self,
        tenant_id: UUID,
        user_ids: list[UUID],
        title: str,
        message: str,
        type: NotificationType = NotificationType.INFO,
        category: str = "GENERAL",
        action_type: str | None = None,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        data: dict[str, Any] | None = None,
    ) -> list[UUID]:
        """Send to each user in turn; a failure for one user is logged and skipped."""
        notification_ids: list[UUID] = []
        for user_id in user_ids:
            try:
                notification_id = await self.send_notification(
                    tenant_id,
                    user_id,
                    title,
                    message,
                    type=type,
                    category=category,
                    action_type=action_type,
                    priority=priority,
                    data=data,
                )
                notification_ids.append(notification_id)
            except ValidationError:
                raise
            except Exception as e:
                await self._session.rollback()
                logger.error(f"Failed to send notification to user {user_id}: {e}")
        return notification_ids

    async def send_tenant_notification(
        self,
        tenant_id: UUID,
        title: str,
        message: str,
        type: NotificationType = NotificationType.INFO,
        category: str = "GENERAL",
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        data: dict[str, Any] | None = None,
    ) -> list[UUID]:
        """Send to every active user of a tenant."""
        user_ids = await self._directory.active_user_ids(tenant_id)
        return await self.send_bulk_notification(
            tenant_id, user_ids, title, message,
            type=type, category=category, priority=priority, data=data,
        )

    async def send_role_notification(
        self,
        tenant_id: UUID,
        roles: list[str],
        title: str,
        message: str,
        type: NotificationType = NotificationType.INFO,
        category: str = "GENERAL",
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        data: dict[str, Any] | None = None,
    ) -> list[UUID]:
        """Send to active users of a tenant holding any of ``roles``."""
        user_ids = await self._directory.user_ids_with_roles(tenant_id, roles)
        return await self.send_bulk_notification(
            tenant_id, user_ids, title, message,
            type=type, category=category, priority=priority, data=data,
        )

    async def send_announcement(
        self,
        tenant_id: UUID,
        title: str,
        message: str,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        target_roles: list[str] | None = None,
        target_users: list[UUID] | None = None,
    ) -> list[UUID]:
        """Announcement to explicit users, else to roles, else to the whole tenant."""
        if target_users:
            user_ids = list(target_users)
        elif target_roles:
            user_ids = await self._directory.user_ids_with_roles(tenant_id, target_roles)
        else:
            user_ids = await self._directory.active_user_ids(tenant_id)

        return await self.send_bulk_notification(
            tenant_id,
            user_ids,
            title,
            message,
            type=NotificationType.SYSTEM,
            category="ANNOUNCEMENT",
            action_type="ANNOUNCEMENT",
            priority=priority,
            data={"announcement_type": "TEAM_ANNOUNCEMENT", "sent_at": utcnow().isoformat()},
        )

    # -------------------------------------------------------------------------
    # Side channels
    # -------------------------------------------------------------------------

    async def _dispatch_side_channels(
        self,
        tenant_id: UUID,
        user_id: UUID,
        title: str,
        message: str,
        category: str,
    ) -> list[DispatchOutcome]:
        preferences = await self.get_user_preferences(user_id, tenant_id)
        if preferences is None:
            return []
        if (preferences.categories or {}).get(category) is False:
            logger.debug(f"User {user_id} opted out of {category} notifications")
            return []

        contact = await self._directory.get_contact(user_id)
        jobs: list[tuple[CommunicationType, str, str, str | None, Callable[[], Awaitable[SendResult]]]] = []

        if preferences.email_enabled:
            html = f"<h2>{title}</h2><p>{message}</p>"
            jobs.append((
                CommunicationType.EMAIL,
                contact.email if contact else "",
                html,
                title,
                lambda: self._send_email(contact, title, html, message),
            ))
        if preferences.sms_enabled:
            text = f"{title}: {message}"
            jobs.append((
                CommunicationType.SMS,
                contact.phone if contact and contact.phone else "",
                text,
                None,
                lambda: self._send_sms(contact, text),
            ))
        if preferences.whatsapp_enabled:
            text = f"{title}: {message}"
            jobs.append((
                CommunicationType.WHATSAPP,
                contact.phone if contact and contact.phone else "",
                text,
                None,
                lambda: self._send_whatsapp(contact, text),
            ))

        if not jobs:
            return []

        results = await asyncio.gather(
            *(self._limited(send) for _, _, _, _, send in jobs),
            return_exceptions=True,
        )

        outcomes: list[DispatchOutcome] = []
        for (channel, recipient, content, subject, _), result in zip(jobs, results):
            if isinstance(result, BaseException):
                result = SendResult(success=False, error=str(result) or result.__class__.__name__)
            outcome = DispatchOutcome(channel, recipient, content, subject, result)
            outcomes.append(outcome)
            self._log_outcome(user_id, outcome)

        await self._record_outcomes(tenant_id, outcomes)
        return outcomes

    async def _limited(self, send: Callable[[], Awaitable[SendResult]]) -> SendResult:
        async with self._dispatch_limit:
            return await send()

    async def _send_email(self, contact: Contact | None, subject: str, html: str, text: str) -> SendResult:
        if not contact or not contact.email:
            return SendResult(success=False, error="No email address on file")
        try:
            message_id = await self._providers.email.deliver(contact.email, subject, html, text)
        except CommsError as e:
            return SendResult(success=False, error=str(e))
        return SendResult(success=True, provider_message_id=message_id)

    async def _send_sms(self, contact: Contact | None, text: str) -> SendResult:
        phone = normalize_phone(contact.phone) if contact and contact.phone else None
        if not phone:
            return SendResult(success=False, error="No valid phone number on file")
        try:
            message_id = await self._providers.sms.send_sms(phone, text)
        except CommsError as e:
            return SendResult(success=False, error=str(e))
        return SendResult(success=True, provider_message_id=message_id)

    async def _send_whatsapp(self, contact: Contact | None, text: str) -> SendResult:
        phone = normalize_phone(contact.phone) if contact and contact.phone else None
        if not phone:
            return SendResult(success=False, error="No valid phone number on file")
        try:
            message_id = await self._providers.whatsapp.send_message(
                {"to": phone.lstrip("+"), "type": "text", "text": {"body": text}}
            )
        except CommsError as e:
            return SendResult(success=False, error=str(e))
        return SendResult(success=True, provider_message_id=message_id)

    def _log_outcome(self, user_id: UUID, outcome: DispatchOutcome) -> None:
        if outcome.result.success:
            logger.info(f"[{outcome.channel.name}] Notification copy sent to user {user_id}")
        else:
            logger.warning(
                f"[{outcome.channel.name}] Notification copy to user {user_id} failed: {outcome.result.error}"
            )

    async def _record_outcomes(self, tenant_id: UUID, outcomes: list[DispatchOutcome]) -> None:
        try:
            for outcome in outcomes:
                await self._recorder.record(
                    tenant_id=tenant_id,
                    channel=outcome.channel,
                    recipient=outcome.recipient or "unknown",
                    content=outcome.content,
                    subject=outcome.subject,
                    result=outcome.result,
                )
            await self._session.commit()
        except Exception as e:
            await self._session.rollback()
            logger.error(f"Failed to record notification dispatch audit rows: {e}")

    # -------------------------------------------------------------------------
    # Reading & read state
    # -------------------------------------------------------------------------

    async def get_user_notifications(
        self,
        user_id: UUID,
        limit: int = 50,
        offset: int = 0,
        unread_only: bool = False,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> list[Notification]:
        column = SORTABLE_FIELDS.get(sort_by)
        if column is None:
            raise ValidationError(f"Cannot sort notifications by '{sort_by}'")
        if sort_order not in ("asc", "desc"):
            raise ValidationError("sort_order must be 'asc' or 'desc'")

        query = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            query = query.where(Notification.read.is_(False))
        order = column.asc() if sort_order == "asc" else column.desc()
        query = query.order_by(order, Notification.id).offset(offset).limit(limit)

        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def get_user_notification_count(self, user_id: UUID, unread_only: bool = False) -> int:
        query = select(func.count(Notification.id)).where(Notification.user_id == user_id)
        if unread_only:
            query = query.where(Notification.read.is_(False))
        return (await self._session.execute(query)).scalar_one()

    async def get_notification(self, notification_id: UUID) -> Notification:
        notification = await self._session.get(Notification, notification_id)
        if notification is None:
            raise NotFoundError(f"Notification {notification_id} not found")
        return notification

    async def mark_notification_as_read(self, notification_id: UUID) -> None:
        notification = await self.get_notification(notification_id)
        notification.read = True
        await self._session.flush()

    async def mark_all_as_read(self, user_id: UUID) -> int:
        result = await self._session.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.read.is_(False))
            .values(read=True)
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()
        return result.rowcount or 0

    async def delete_notification(self, notification_id: UUID) -> None:
        result = await self._session.execute(
            delete(Notification)
            .where(Notification.id == notification_id)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            raise NotFoundError(f"Notification {notification_id} not found")

    # -------------------------------------------------------------------------
    # Preferences
    # -------------------------------------------------------------------------

    async def get_user_preferences(
        self,
        user_id: UUID,
        tenant_id: UUID | None = None,
    ) -> NotificationPreference | None:
        """
        Look up preferences by (tenant, user), falling back to the user alone.

        The tenant is resolved through the directory when not supplied.
        """
        if tenant_id is None:
            tenant_id = await self._directory.tenant_of(user_id)

        if tenant_id is not None:
            result = await self._session.execute(
                select(NotificationPreference).where(
                    NotificationPreference.tenant_id == tenant_id,
                    NotificationPreference.user_id == user_id,
                )
            )
            preference = result.scalar_one_or_none()
            if preference is not None:
                return preference

        result = await self._session.execute(
            select(NotificationPreference)
            .where(NotificationPreference.user_id == user_id)
            .order_by(NotificationPreference.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def update_user_preferences(
        self,
        user_id: UUID,
        changes: PreferenceUpdate,
        tenant_id: UUID | None = None,
    ) -> NotificationPreference:
        """Upsert preferences keyed by (tenant, user)."""
        if tenant_id is None:
            tenant_id = await self._directory.tenant_of(user_id)

        result = await self._session.execute(
            select(NotificationPreference).where(
                NotificationPreference.tenant_id == tenant_id
                if tenant_id is not None
                else NotificationPreference.tenant_id.is_(None),
                NotificationPreference.user_id == user_id,
            )
        )
        preference = result.scalar_one_or_none()
        if preference is None:
            preference = NotificationPreference(
                tenant_id=tenant_id,
                user_id=user_id,
                email_enabled=True,
                sms_enabled=False,
                whatsapp_enabled=False,
                push_enabled=True,
                frequency=DeliveryFrequency.IMMEDIATE,
                categories={},
            )
            self._session.add(preference)

        for name in ("email_enabled", "sms_enabled", "whatsapp_enabled", "push_enabled", "frequency"):
            value = getattr(changes, name)
            if value is not None:
                setattr(preference, name, value)
        if changes.categories is not None:
            preference.categories = {**(preference.categories or {}), **changes.categories}

        await self._session.flush()
        return preference

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    async def get_notification_stats(
        self,
        tenant_id: UUID | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> NotificationStats:
        filters = []
        if tenant_id is not None:
            filters.append(Notification.tenant_id == tenant_id)
        if start is not None:
            filters.append(Notification.created_at >= start)
        if end is not None:
            filters.append(Notification.created_at <= end)

        total = (await self._session.execute(
            select(func.count(Notification.id)).where(*filters)
        )).scalar_one()
        unread = (await self._session.execute(
            select(func.count(Notification.id)).where(*filters, Notification.read.is_(False))
        )).scalar_one()

        by_type_rows = await self._session.execute(
            select(Notification.type, func.count(Notification.id)).where(*filters).group_by(Notification.type)
        )
        by_category_rows = await self._session.execute(
            select(Notification.category, func.count(Notification.id))
            .where(*filters)
            .group_by(Notification.category)
        )

        return NotificationStats(
            total=total,
            unread=unread,
            by_type={NotificationType(t).value: c for t, c in by_type_rows.all()},
            by_category={category: c for category, c in by_category_rows.all()},
        )

    def get_connected_users_count(self, tenant_id: UUID | None = None) -> int:
        return self._push.get_connected_users_count(tenant_id)
