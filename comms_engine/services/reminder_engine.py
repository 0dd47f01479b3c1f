"""
Reminder Engine: timed reminders for unfinished forms.

This module handles the reminder series attached to each form access that
has not been submitted yet.

Key responsibilities:
1. Schedule a reminder series for every open form access of a tenant
2. Fire due reminders by email and advance or retire each series
3. Cancel series, purge old ones and report statistics

A series is a ``ReminderLog`` row. With the default intervals (1, 3, 7, 14
days) and four reminders, the first fires one day after the access was
created and the log is deleted after the fourth.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings
from ..core.errors import CommsError, NotFoundError, StateConflictError
from ..models import (
    CommunicationType,
    FormAccess,
    FormAccessStatus,
    ReminderLog,
    utcnow,
)
from .channels import CommunicationRecorder, EmailSender, SendResult
from .templates import build_form_reminder_email


logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class ReminderConfig:
    """Configuration for reminder scheduling."""

    enabled: bool = True

    # Days after creation (first) and between reminders (subsequent)
    intervals: tuple[int, ...] = (1, 3, 7, 14)

    # Series length; the log is deleted once this many reminders went out
    max_reminders: int = 4

    # Scheduling passes on Saturday/Sunday create nothing
    exclude_weekends: bool = True

    # Scheduling passes outside [start, end) hours create nothing
    business_hours_only: bool = False
    business_start_hour: int = 9
    business_end_hour: int = 17

    # Timezone used for the weekday and hour checks
    timezone: str = "UTC"

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReminderConfig":
        return cls(
            intervals=tuple(settings.reminder_intervals_days),
            max_reminders=settings.reminder_max_reminders,
            exclude_weekends=settings.reminder_exclude_weekends,
            business_hours_only=settings.reminder_business_hours_only,
            timezone=settings.reminder_timezone,
        )


DEFAULT_CONFIG = ReminderConfig()

OPEN_STATUSES = (FormAccessStatus.NOT_STARTED, FormAccessStatus.IN_PROGRESS)


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass
class ScheduleResult:
    """Result of a scheduling pass."""
    scheduled: int = 0
    skipped: int = 0


@dataclass
class ReminderRunStats:
    """Result of processing due reminders."""
    total_scheduled: int = 0  # Due logs picked up
    total_sent: int = 0
    total_skipped: int = 0
    total_failed: int = 0
    by_interval: dict[int, int] = field(default_factory=dict)  # reminder number -> sent
    errors: list[str] = field(default_factory=list)


@dataclass
class ReminderStats:
    """Reminder statistics for a tenant."""
    total_reminders: int
    pending_reminders: int
    sent_today: int
    completion_rate: float


# =============================================================================
# REMINDER ENGINE
# =============================================================================


class ReminderEngine:
    """
    Engine for form reminder series.

    ``schedule_reminders`` and ``process_pending_reminders`` are run by the
    reminder cron job; the remaining operations back the admin API.
    """

    def __init__(
        self,
        session: AsyncSession,
        email_sender: EmailSender,
        config: ReminderConfig | None = None,
        frontend_url: str = "",
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session = session
        self._email_sender = email_sender
        self._config = config or DEFAULT_CONFIG
        self._frontend_url = frontend_url.rstrip("/")
        self._clock = clock
        self._recorder = CommunicationRecorder(session)

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    async def schedule_reminders(
        self,
        tenant_id: UUID,
        config: ReminderConfig | None = None,
    ) -> ScheduleResult:
        """
        Create (or refresh) reminder series for a tenant's open form accesses.

        A log that already fired at least once is left alone so the series
        keeps its own cadence, and a first reminder that is already due or
        failed keeps its time until it is sent.
        """
        config = config or self._config
        result = ScheduleResult()
        if not config.enabled:
            return result

        now = self._clock()
        accesses = (await self._session.execute(
            select(FormAccess).where(
                FormAccess.tenant_id == tenant_id,
                FormAccess.status.in_(OPEN_STATUSES),
            )
        )).scalars().all()

        for access in accesses:
            if self._should_skip(access, config, now):
                result.skipped += 1
                continue

            next_at = self._first_reminder_time(access.created_at, config, now)
            if next_at is None:
                result.skipped += 1
                continue

            await self._upsert_log(access.id, next_at, now)
            result.scheduled += 1

        await self._session.commit()
        logger.info(
            f"Reminder scheduling for tenant {tenant_id}: "
            f"{result.scheduled} scheduled, {result.skipped} skipped"
        )
        return result

    def _should_skip(self, access: FormAccess, config: ReminderConfig, now: datetime) -> bool:
        if access.status == FormAccessStatus.SUBMITTED:
            return True

        if access.submission_deadline and now > access.submission_deadline:
            return True

        local_now = now.astimezone(ZoneInfo(config.timezone))
        if config.exclude_weekends and local_now.weekday() >= 5:
            return True

        if config.business_hours_only and not (
            config.business_start_hour <= local_now.hour < config.business_end_hour
        ):
            return True

        return False

    @staticmethod
    def _first_reminder_time(
        created_at: datetime,
        config: ReminderConfig,
        now: datetime,
    ) -> datetime | None:
        """Creation time plus the smallest interval that still lies in the future."""
        for interval in sorted(config.intervals):
            candidate = created_at + timedelta(days=interval)
            if candidate > now:
                return candidate
        return None

    async def _upsert_log(self, access_id: UUID, next_at: datetime, now: datetime) -> None:
        log = (await self._session.execute(
            select(ReminderLog).where(ReminderLog.access_id == access_id)
        )).scalar_one_or_none()

        if log is None:
            self._session.add(ReminderLog(
                access_id=access_id,
                reminder_count=0,
                next_reminder_at=next_at,
                created_at=self._clock(),
            ))
        elif log.reminder_count == 0 and log.last_error is None and log.next_reminder_at > now:
            log.next_reminder_at = next_at
        await self._session.flush()

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    async def process_pending_reminders(self) -> ReminderRunStats:
        """
        Fire every due reminder across all tenants.

        A failed send is recorded on the log and retried on the next run.
        """
        now = self._clock()
        due_ids = (await self._session.execute(
            select(ReminderLog.id)
            .where(ReminderLog.next_reminder_at <= now)
            .order_by(ReminderLog.next_reminder_at.asc())
        )).scalars().all()

        stats = ReminderRunStats(total_scheduled=len(due_ids))

        for log_id in due_ids:
            try:
                await self._process_log(log_id, stats)
                await self._session.commit()
            except Exception as e:
                await self._session.rollback()
                message = f"Reminder {log_id}: {e}"
                logger.error(f"Error processing {message}")
                stats.errors.append(message)
                stats.total_failed += 1

        logger.info(
            f"Reminders processed: {stats.total_sent} sent, {stats.total_skipped} skipped, "
            f"{stats.total_failed} failed of {stats.total_scheduled} due"
        )
        return stats

    async def _process_log(self, log_id: UUID, stats: ReminderRunStats) -> None:
        log = await self._session.get(ReminderLog, log_id)
        if log is None:
            return

        access = await self._session.get(FormAccess, log.access_id)
        now = self._clock()
        if (
            access is None
            or access.status == FormAccessStatus.SUBMITTED
            or (access.submission_deadline and now > access.submission_deadline)
        ):
            await self._session.delete(log)
            stats.total_skipped += 1
            return

        result = await self._send_reminder(access)
        if not result.success:
            log.last_error = result.error
            stats.total_failed += 1
            stats.errors.append(f"Reminder {log.id}: {result.error}")
            return

        reminder_number = log.reminder_count + 1
        stats.total_sent += 1
        stats.by_interval[reminder_number] = stats.by_interval.get(reminder_number, 0) + 1
        await self._advance(log, now)

    async def _advance(self, log: ReminderLog, now: datetime) -> None:
        """Move a series past a fired reminder, deleting it when complete."""
        log.reminder_count += 1
        log.last_reminder_at = now
        log.last_error = None

        if log.reminder_count >= self._config.max_reminders:
            await self._session.delete(log)
            return

        intervals = self._config.intervals
        next_interval = intervals[min(log.reminder_count, len(intervals) - 1)]
        log.next_reminder_at = now + timedelta(days=next_interval)

    async def _send_reminder(self, access: FormAccess) -> SendResult:
        form_url = f"{self._frontend_url}/student/form/{access.access_token}"
        email = build_form_reminder_email(
            contact_name=access.contact_name,
            institution_name=access.institution_name,
            form_title=access.form_title,
            form_url=form_url,
            deadline=access.submission_deadline,
        )

        try:
            message_id = await self._email_sender.deliver(
                access.contact_email, email.subject, email.html, email.text
            )
            result = SendResult(success=True, provider_message_id=message_id)
        except CommsError as e:
            logger.warning(f"Reminder email for access {access.id} failed: {e}")
            result = SendResult(success=False, error=str(e))

        await self._recorder.record(
            tenant_id=access.tenant_id,
            channel=CommunicationType.EMAIL,
            recipient=access.contact_email,
            content=email.html,
            subject=email.subject,
            result=result,
        )
        return result

    async def fire_reminder(self, access_id: UUID) -> SendResult:
        """
        Send a reminder for one access immediately.

        Raises:
            NotFoundError: unknown access
            StateConflictError: the form was already submitted
        """
        access = await self._session.get(FormAccess, access_id)
        if access is None:
            raise NotFoundError(f"Form access {access_id} not found")
        if access.status == FormAccessStatus.SUBMITTED:
            raise StateConflictError(f"Form access {access_id} is already submitted")

        result = await self._send_reminder(access)
        if result.success:
            log = (await self._session.execute(
                select(ReminderLog).where(ReminderLog.access_id == access_id)
            )).scalar_one_or_none()
            if log is not None:
                await self._advance(log, self._clock())
        await self._session.commit()
        return result

    # -------------------------------------------------------------------------
    # Maintenance & statistics
    # -------------------------------------------------------------------------

    async def cancel_reminders(self, access_id: UUID) -> int:
        result = await self._session.execute(
            delete(ReminderLog)
            .where(ReminderLog.access_id == access_id)
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()
        return result.rowcount or 0

    async def cleanup_old_reminders(self, days_old: int = 30) -> int:
        """Delete logs older than the cutoff whose form was submitted."""
        cutoff = self._clock() - timedelta(days=days_old)
        submitted = select(FormAccess.id).where(FormAccess.status == FormAccessStatus.SUBMITTED)
        result = await self._session.execute(
            delete(ReminderLog)
            .where(
                ReminderLog.created_at < cutoff,
                ReminderLog.access_id.in_(submitted),
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()
        deleted = result.rowcount or 0
        logger.info(f"Cleaned up {deleted} old reminder logs")
        return deleted

    async def get_reminder_stats(self, tenant_id: UUID) -> ReminderStats:
        now = self._clock()
        local_now = now.astimezone(ZoneInfo(self._config.timezone))
        start_of_day = local_now.replace(hour=0, minute=0, second=0, microsecond=0)

        tenant_logs = (
            select(func.count(ReminderLog.id))
            .join(FormAccess, FormAccess.id == ReminderLog.access_id)
            .where(FormAccess.tenant_id == tenant_id)
        )
        total_reminders = (await self._session.execute(tenant_logs)).scalar_one()
        pending_reminders = (await self._session.execute(
            tenant_logs.where(ReminderLog.next_reminder_at <= now)
        )).scalar_one()
        sent_today = (await self._session.execute(
            tenant_logs.where(ReminderLog.last_reminder_at >= start_of_day)
        )).scalar_one()

        total_accesses = (await self._session.execute(
            select(func.count(FormAccess.id)).where(FormAccess.tenant_id == tenant_id)
        )).scalar_one()
        submitted = (await self._session.execute(
            select(func.count(FormAccess.id)).where(
                FormAccess.tenant_id == tenant_id,
                FormAccess.status == FormAccessStatus.SUBMITTED,
            )
        )).scalar_one()

        completion_rate = (submitted / total_accesses * 100) if total_accesses else 0.0
        return ReminderStats(
            total_reminders=total_reminders,
            pending_reminders=pending_reminders,
            sent_today=sent_today,
            completion_rate=round(completion_rate, 2),
        )
