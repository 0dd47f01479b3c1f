"""
Message Queue Service: durable email queue operations.

Every queued email is a ``QueuedMessage`` row. Enqueue commits the row
before writing the priority index entry, so the processor never sees an
index entry whose row is not yet visible.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import UUID

from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import NotFoundError, ValidationError
from ..models import MessagePriority, MessageTemplate, QueuedMessage, QueueStatus, utcnow
from .priority_index import IndexEntry, PriorityIndex
from .templates import TemplateEngine, TemplateVariable


logger = logging.getLogger(__name__)

_email_adapter = TypeAdapter(EmailStr)


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass
class QueueStats:
    """Counts of queued messages per status."""
    pending: int = 0
    processing: int = 0
    sent: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.sent + self.failed


def index_entry_for(message: QueuedMessage) -> IndexEntry:
    return IndexEntry(
        message_id=message.id,
        priority=MessagePriority(message.priority),
        scheduled_at=message.scheduled_at,
    )


def validate_email_address(address: str) -> str:
    """Return the address if it is syntactically valid, else raise ValidationError."""
    try:
        return str(_email_adapter.validate_python(address))
    except PydanticValidationError:
        raise ValidationError(f"Invalid email address: {address!r}")


# =============================================================================
# MESSAGE QUEUE SERVICE
# =============================================================================


class MessageQueueService:
    """
    Producer-side and administrative operations on the email queue.

    The processor side lives in ``queue_processor.QueueProcessor``.
    """

    def __init__(
        self,
        session: AsyncSession,
        index: PriorityIndex,
        default_max_attempts: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session = session
        self._index = index
        self._default_max_attempts = default_max_attempts
        self._clock = clock

    async def enqueue(
        self,
        tenant_id: UUID,
        recipient: str,
        subject: str,
        html_content: str,
        text_content: str | None = None,
        variables: dict[str, Any] | None = None,
        priority: MessagePriority | int = MessagePriority.NORMAL,
        scheduled_at: datetime | None = None,
    ) -> UUID:
        """
        Accept an email for delivery.

        Returns:
            The message id. Acceptance means the row is durable, not that
            the email was delivered.

        Raises:
            ValidationError: malformed recipient, empty content or bad priority
        """
        recipient = validate_email_address(recipient.strip())
        if not subject or not subject.strip():
            raise ValidationError("Subject is required")
        if not html_content or not html_content.strip():
            raise ValidationError("HTML content is required")
        try:
            priority = MessagePriority(int(priority))
        except ValueError:
            raise ValidationError(f"Invalid priority: {priority}")

        if scheduled_at is None:
            scheduled_at = self._clock()
        elif scheduled_at.tzinfo is None:
            scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
        scheduled_at = scheduled_at.astimezone(timezone.utc)

        message = QueuedMessage(
            tenant_id=tenant_id,
            recipient=recipient,
            subject=subject,
            html_content=html_content,
            text_content=text_content,
            variables=variables or {},
            priority=int(priority),
            scheduled_at=scheduled_at,
            status=QueueStatus.PENDING,
            attempts=0,
            max_attempts=self._default_max_attempts,
            created_at=self._clock(),
        )
        self._session.add(message)
        await self._session.commit()

        try:
            await self._index.add(tenant_id, index_entry_for(message))
        except Exception as e:
            # Row stays PENDING; reindex_pending restores the entry
            logger.error(f"Failed to index message {message.id} for tenant {tenant_id}: {e}")

        logger.info(
            f"Queued email {message.id} for tenant {tenant_id} "
            f"(priority={priority.name}, scheduled_at={scheduled_at.isoformat()})"
        )
        return message.id

    async def enqueue_from_template(
        self,
        tenant_id: UUID,
        template_id: UUID,
        recipient: str,
        variables: dict[str, Any] | None = None,
        priority: MessagePriority | int = MessagePriority.NORMAL,
        scheduled_at: datetime | None = None,
    ) -> UUID:
        """
        Render a tenant template and enqueue the result.

        Raises:
            NotFoundError: template missing, inactive or owned by another tenant
            ValidationError: required variable missing or of the wrong type
        """
        variables = variables or {}
        template = await self.get_template(tenant_id, template_id)

        schema = [TemplateVariable.from_dict(v) for v in (template.variables or [])]
        errors = TemplateEngine.validate_variables(variables, schema)
        if errors:
            raise ValidationError(f"Template validation failed: {', '.join(errors)}")

        subject = TemplateEngine.substitute_variables(template.subject, variables)
        html = TemplateEngine.substitute_variables(template.html_content, variables)
        text = (
            TemplateEngine.substitute_variables(template.text_content, variables)
            if template.text_content
            else None
        )

        return await self.enqueue(
            tenant_id=tenant_id,
            recipient=recipient,
            subject=subject,
            html_content=html,
            text_content=text,
            variables=variables,
            priority=priority,
            scheduled_at=scheduled_at,
        )

    async def get_template(self, tenant_id: UUID, template_id: UUID) -> MessageTemplate:
        result = await self._session.execute(
            select(MessageTemplate).where(
                MessageTemplate.id == template_id,
                MessageTemplate.tenant_id == tenant_id,
                MessageTemplate.is_active.is_(True),
            )
        )
        template = result.scalar_one_or_none()
        if not template:
            raise NotFoundError("Email template not found or inactive")
        return template

    async def get_message(self, tenant_id: UUID, message_id: UUID) -> QueuedMessage:
        result = await self._session.execute(
            select(QueuedMessage).where(
                QueuedMessage.id == message_id,
                QueuedMessage.tenant_id == tenant_id,
            )
        )
        message = result.scalar_one_or_none()
        if not message:
            raise NotFoundError(f"Queued message {message_id} not found")
        return message

    async def retry_failed(self, tenant_id: UUID | None = None) -> int:
        """
        Return FAILED messages that still have attempts left to the queue.

        The attempt counter is kept as-is.

        Returns:
            Number of messages re-queued.
        """
        query = select(QueuedMessage).where(
            QueuedMessage.status == QueueStatus.FAILED,
            QueuedMessage.attempts < QueuedMessage.max_attempts,
        )
        if tenant_id is not None:
            query = query.where(QueuedMessage.tenant_id == tenant_id)

        result = await self._session.execute(query)
        messages = result.scalars().all()
        if not messages:
            return 0

        for message in messages:
            message.status = QueueStatus.PENDING
            message.error_message = None
            message.processed_at = None
        await self._session.commit()

        for message in messages:
            await self._index.add(message.tenant_id, index_entry_for(message))

        logger.info(f"Retrying {len(messages)} failed emails")
        return len(messages)

    async def reindex_pending(self, tenant_id: UUID | None = None) -> int:
        """
        Rebuild index entries from durable state.

        PROCESSING rows left behind by an interrupted worker go back to
        PENDING first. Every PENDING row then gets an index entry.

        Returns:
            Number of entries written.
        """
        stale = update(QueuedMessage).where(QueuedMessage.status == QueueStatus.PROCESSING)
        if tenant_id is not None:
            stale = stale.where(QueuedMessage.tenant_id == tenant_id)
        recovered = await self._session.execute(
            stale.values(status=QueueStatus.PENDING).execution_options(synchronize_session=False)
        )
        await self._session.commit()
        if recovered.rowcount:
            logger.warning(f"Recovered {recovered.rowcount} messages stuck in PROCESSING")

        query = select(QueuedMessage).where(QueuedMessage.status == QueueStatus.PENDING)
        if tenant_id is not None:
            query = query.where(QueuedMessage.tenant_id == tenant_id)
        result = await self._session.execute(query.order_by(QueuedMessage.created_at.asc()))
        messages = result.scalars().all()

        for message in messages:
            await self._index.add(message.tenant_id, index_entry_for(message))

        if messages:
            logger.info(f"Re-indexed {len(messages)} pending emails")
        return len(messages)

    async def cleanup(self, older_than_days: int = 30) -> int:
        """Delete SENT and FAILED messages processed before the cutoff."""
        cutoff = self._clock() - timedelta(days=older_than_days)
        result = await self._session.execute(
            delete(QueuedMessage)
            .where(
                QueuedMessage.status.in_([QueueStatus.SENT, QueueStatus.FAILED]),
                QueuedMessage.processed_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()
        deleted = result.rowcount or 0
        logger.info(f"Cleaned up {deleted} old emails")
        return deleted

    async def get_stats(self, tenant_id: UUID | None = None) -> QueueStats:
        query = select(QueuedMessage.status, func.count(QueuedMessage.id)).group_by(QueuedMessage.status)
        if tenant_id is not None:
            query = query.where(QueuedMessage.tenant_id == tenant_id)

        result = await self._session.execute(query)
        stats = QueueStats()
        for status, count in result.all():
            setattr(stats, QueueStatus(status).name.lower(), count)
        return stats
