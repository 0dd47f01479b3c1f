"""SQLAlchemy ORM models for the communications engine.

Tables owned by this subsystem: queued messages, templates, delivery audit,
notifications, notification preferences and reminder logs. ``users`` and
``form_accesses`` belong to collaborating services and are only read here.
"""

from datetime import datetime
from enum import Enum as PyEnum, IntEnum
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDMixin, utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _enum(enum_cls: type[PyEnum], name: str) -> Enum:
    return Enum(enum_cls, name=name, values_callable=lambda x: [e.value for e in x])


# =============================================================================
# ENUMS
# =============================================================================


class MessagePriority(IntEnum):
    """Priority tiers of the email queue; higher drains first."""
    LOW = 0
    NORMAL = 1
    HIGH = 2
    URGENT = 3


class QueueStatus(str, PyEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class CommunicationType(str, PyEnum):
    EMAIL = "email"
    SMS = "sms"
    WHATSAPP = "whatsapp"


class CommunicationStatus(str, PyEnum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


class NotificationType(str, PyEnum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    SYSTEM = "system"


class NotificationPriority(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class DeliveryFrequency(str, PyEnum):
    IMMEDIATE = "immediate"
    DAILY = "daily"
    WEEKLY = "weekly"


class FormAccessStatus(str, PyEnum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"  # Terminal


# =============================================================================
# COLLABORATOR-OWNED DIRECTORY
# =============================================================================


class User(Base, UUIDMixin):
    """Tenant member; contact details are used for side-channel delivery."""

    __tablename__ = "users"

    tenant_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    role: Mapped[str] = mapped_column(String(50), nullable=False, default="member")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_users_tenant_role", "tenant_id", "role"),
    )


class FormAccess(Base, UUIDMixin):
    """An invitation to complete a form; the entity reminders are driven by."""

    __tablename__ = "form_accesses"

    tenant_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    status: Mapped[FormAccessStatus] = mapped_column(
        _enum(FormAccessStatus, "form_access_status"),
        default=FormAccessStatus.NOT_STARTED,
        nullable=False,
    )
    contact_name: Mapped[str] = mapped_column(String(255), nullable=False)
    contact_email: Mapped[str] = mapped_column(String(255), nullable=False)
    institution_name: Mapped[str] = mapped_column(String(255), nullable=False)
    form_title: Mapped[str] = mapped_column(String(255), nullable=False)
    access_token: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    submission_deadline: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_form_accesses_tenant_status", "tenant_id", "status"),
    )


# =============================================================================
# EMAIL QUEUE
# =============================================================================


class MessageTemplate(Base, UUIDMixin, TimestampMixin):
    """Tenant-owned template; ``variables`` declares ``{name, type, required}`` entries."""

    __tablename__ = "message_templates"

    tenant_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    subject: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    html_content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    text_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    variables: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class QueuedMessage(Base, UUIDMixin):
    """Durable record of an outbound email; the source of truth for the queue."""

    __tablename__ = "queued_messages"

    tenant_id: Mapped[UUID] = mapped_column(nullable=False)
    recipient: Mapped[str] = mapped_column(String(255), nullable=False)
    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    html_content: Mapped[str] = mapped_column(Text, nullable=False)
    text_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    variables: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    priority: Mapped[int] = mapped_column(
        Integer, default=int(MessagePriority.NORMAL), nullable=False
    )
    scheduled_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    status: Mapped[QueueStatus] = mapped_column(
        _enum(QueueStatus, "queue_status"),
        default=QueueStatus.PENDING,
        nullable=False,
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_queued_messages_tenant_status", "tenant_id", "status"),
        Index("idx_queued_messages_status_processed", "status", "processed_at"),
    )


class Communication(Base, UUIDMixin):
    """Delivery audit row, one per attempted outbound message."""

    __tablename__ = "communications"

    tenant_id: Mapped[UUID] = mapped_column(nullable=False)
    sender_id: Mapped[str] = mapped_column(String(64), nullable=False, default="system")
    recipient: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[CommunicationType] = mapped_column(
        _enum(CommunicationType, "communication_type"), nullable=False
    )
    subject: Mapped[str | None] = mapped_column(String(500), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[CommunicationStatus] = mapped_column(
        _enum(CommunicationStatus, "communication_status"), nullable=False
    )
    provider_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_communications_tenant_type", "tenant_id", "type", "sent_at"),
    )


# =============================================================================
# NOTIFICATIONS
# =============================================================================


class Notification(Base, UUIDMixin):
    """In-app notification addressed to a single user."""

    __tablename__ = "notifications"

    tenant_id: Mapped[UUID] = mapped_column(nullable=False)
    user_id: Mapped[UUID] = mapped_column(nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[NotificationType] = mapped_column(
        _enum(NotificationType, "notification_type"),
        default=NotificationType.INFO,
        nullable=False,
    )
    category: Mapped[str] = mapped_column(String(50), default="GENERAL", nullable=False)
    action_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    priority: Mapped[NotificationPriority] = mapped_column(
        _enum(NotificationPriority, "notification_priority"),
        default=NotificationPriority.MEDIUM,
        nullable=False,
    )
    related_entity_id: Mapped[UUID | None] = mapped_column(nullable=True)
    data: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_notifications_user_read", "user_id", "read"),
        Index("idx_notifications_tenant_created", "tenant_id", "created_at"),
    )


class NotificationPreference(Base, UUIDMixin, TimestampMixin):
    """Per-user channel switches; tenant may be unknown at creation time."""

    __tablename__ = "notification_preferences"

    tenant_id: Mapped[UUID | None] = mapped_column(nullable=True)
    user_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    email_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sms_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    whatsapp_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    push_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    frequency: Mapped[DeliveryFrequency] = mapped_column(
        _enum(DeliveryFrequency, "delivery_frequency"),
        default=DeliveryFrequency.IMMEDIATE,
        nullable=False,
    )
    categories: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "user_id", name="uq_notification_preferences_tenant_user"),
    )


# =============================================================================
# REMINDERS
# =============================================================================


class ReminderLog(Base, UUIDMixin):
    """Reminder schedule for one form access; deleted when the series ends."""

    __tablename__ = "reminder_logs"

    access_id: Mapped[UUID] = mapped_column(
        ForeignKey("form_accesses.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    reminder_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_reminder_at: Mapped[datetime | None] = mapped_column(nullable=True)
    next_reminder_at: Mapped[datetime] = mapped_column(nullable=False, index=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
