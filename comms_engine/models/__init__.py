"""SQLAlchemy ORM models for the communications engine."""

from .base import Base, TimestampMixin, UTCDateTime, UUIDMixin, utcnow
from .models import (
    # Enums
    CommunicationStatus,
    CommunicationType,
    DeliveryFrequency,
    FormAccessStatus,
    MessagePriority,
    NotificationPriority,
    NotificationType,
    QueueStatus,
    # Directory
    FormAccess,
    User,
    # Queue
    Communication,
    MessageTemplate,
    QueuedMessage,
    # Notifications
    Notification,
    NotificationPreference,
    # Reminders
    ReminderLog,
)

__all__ = [
    # Base
    "Base",
    "UUIDMixin",
    "TimestampMixin",
    "UTCDateTime",
    "utcnow",
    # Enums
    "CommunicationStatus",
    "CommunicationType",
    "DeliveryFrequency",
    "FormAccessStatus",
    "MessagePriority",
    "NotificationPriority",
    "NotificationType",
    "QueueStatus",
    # Models
    "Communication",
    "FormAccess",
    "MessageTemplate",
    "Notification",
    "NotificationPreference",
    "QueuedMessage",
    "ReminderLog",
    "User",
]
