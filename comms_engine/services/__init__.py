"""Business logic services for the Comms Engine."""

from .channels import (
    ChannelProviders,
    CommunicationRecorder,
    EmailSender,
    SendResult,
    SMSSender,
    WhatsAppSender,
    build_channel_providers,
)
from .message_queue import MessageQueueService, QueueStats
from .messaging import MessagingService
from .notification_service import NotificationService, PreferenceUpdate
from .priority_index import (
    IndexEntry,
    InMemoryPriorityIndex,
    PriorityIndex,
    RedisPriorityIndex,
    build_priority_index,
)
from .queue_processor import CycleReport, QueueProcessor
from .realtime import ConnectionDirectory, PushChannel
from .reminder_engine import ReminderConfig, ReminderEngine
from .templates import TemplateEngine, build_form_reminder_email

__all__ = [
    # Channels
    "ChannelProviders",
    "CommunicationRecorder",
    "EmailSender",
    "SendResult",
    "SMSSender",
    "WhatsAppSender",
    "build_channel_providers",
    # Email queue
    "MessageQueueService",
    "QueueStats",
    "IndexEntry",
    "PriorityIndex",
    "InMemoryPriorityIndex",
    "RedisPriorityIndex",
    "build_priority_index",
    "QueueProcessor",
    "CycleReport",
    # Notifications
    "NotificationService",
    "PreferenceUpdate",
    "ConnectionDirectory",
    "PushChannel",
    # Messaging
    "MessagingService",
    # Reminders
    "ReminderConfig",
    "ReminderEngine",
    # Templates
    "TemplateEngine",
    "build_form_reminder_email",
]
