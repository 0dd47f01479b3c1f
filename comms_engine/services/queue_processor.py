"""
Queue Processor: drains the priority index and delivers queued email.

State machine per message:

    PENDING -> PROCESSING -> SENT
                          -> PENDING  (retryable failure, attempts left)
                          -> FAILED   (attempts exhausted, or no email provider)

A cycle walks every tenant with index entries, tier by tier from URGENT
down to LOW. Each entry is handled in its own short transaction, and its
index entry is removed whatever the outcome, so a failing message is not
retried until something re-indexes it.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.errors import NotConfiguredError
from ..models import CommunicationType, MessagePriority, QueuedMessage, QueueStatus, utcnow
from .channels import CommunicationRecorder, EmailSender, SendResult
from .message_queue import MessageQueueService
from .priority_index import IndexEntry, PriorityIndex


logger = logging.getLogger(__name__)

PRIORITY_ORDER = (
    MessagePriority.URGENT,
    MessagePriority.HIGH,
    MessagePriority.NORMAL,
    MessagePriority.LOW,
)


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass
class CycleReport:
    """What one processing cycle did."""
    started_at: datetime
    skipped: bool = False  # Another cycle was already running
    attempted: int = 0
    sent: int = 0
    failed: int = 0
    deferred: int = 0  # Back to PENDING with attempts left
    not_due: int = 0
    stale_dropped: int = 0
    attempted_ids: list[UUID] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


# =============================================================================
# QUEUE PROCESSOR
# =============================================================================


class QueueProcessor:
    """
    Periodic, single-flight consumer of the email queue.

    Only one processor instance should run against a given store; there is
    no cross-process lock.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        index: PriorityIndex,
        email_sender: EmailSender,
        batch_size: int = 10,
        interval_seconds: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._index = index
        self._email_sender = email_sender
        self._batch_size = batch_size
        self._interval = interval_seconds
        self._clock = clock
        self._cycle_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()
        self._last_report: CycleReport | None = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def processing(self) -> bool:
        return self._cycle_lock.locked()

    def status(self) -> dict:
        report = self._last_report
        return {
            "running": self.running,
            "processing": self.processing,
            "interval_seconds": self._interval,
            "batch_size": self._batch_size,
            "last_cycle_at": report.started_at.isoformat() if report else None,
            "last_cycle_sent": report.sent if report else 0,
            "last_cycle_failed": report.failed if report else 0,
        }

    async def start(self) -> None:
        """Recover durable state into the index, then start the periodic loop."""
        if self.running:
            return
        await self.recover()
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="queue-processor")
        logger.info(f"Queue processor started (interval={self._interval}s, batch={self._batch_size})")

    async def stop(self) -> None:
        if not self._task:
            return
        self._stopping.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Queue processor stopped")

    async def recover(self) -> int:
        async with self._session_factory() as session:
            service = MessageQueueService(session, self._index, clock=self._clock)
            return await service.reindex_pending()

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.process_cycle()
            except Exception as e:
                logger.exception(f"Queue processing cycle crashed: {e}")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    async def process_cycle(self) -> CycleReport:
        """
        Run one pass over every tenant's index.

        A call that arrives while a cycle is in flight returns immediately
        with ``skipped=True``.
        """
        report = CycleReport(started_at=self._clock())
        if self._cycle_lock.locked():
            logger.debug("Queue cycle already in progress, skipping")
            report.skipped = True
            return report

        async with self._cycle_lock:
            tenants = await self._index.tenants()
            for tenant_id in tenants:
                for priority in PRIORITY_ORDER:
                    try:
                        await self._process_tier(tenant_id, priority, report)
                    except Exception as e:
                        message = f"Tenant {tenant_id} {priority.name} tier failed: {e}"
                        logger.error(message)
                        report.errors.append(message)

        self._last_report = report
        if report.attempted:
            logger.info(
                f"Queue cycle: {report.attempted} attempted, {report.sent} sent, "
                f"{report.deferred} deferred, {report.failed} failed"
            )
        return report

    async def _process_tier(
        self,
        tenant_id: UUID,
        priority: MessagePriority,
        report: CycleReport,
    ) -> None:
        now = self._clock()
        for entry in await self._due_entries(tenant_id, priority, now, report):
            try:
                await self._process_entry(tenant_id, entry, report)
            except Exception as e:
                message = f"Email {entry.message_id}: {e}"
                logger.error(f"Failed to process {message}")
                report.errors.append(message)

    async def _due_entries(
        self,
        tenant_id: UUID,
        priority: MessagePriority,
        now: datetime,
        report: CycleReport,
    ) -> list[IndexEntry]:
        """Up to ``batch_size`` due entries of a tier, paging past future ones."""
        due: list[IndexEntry] = []
        offset = 0
        while len(due) < self._batch_size:
            page = await self._index.fetch(tenant_id, priority, self._batch_size, offset=offset)
            for entry in page:
                if entry.scheduled_at > now:
                    report.not_due += 1
                elif len(due) < self._batch_size:
                    due.append(entry)
            if len(page) < self._batch_size:
                break
            offset += len(page)
        return due

    async def _process_entry(
        self,
        tenant_id: UUID,
        entry: IndexEntry,
        report: CycleReport,
    ) -> None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(QueuedMessage).where(
                    QueuedMessage.id == entry.message_id,
                    QueuedMessage.tenant_id == tenant_id,
                )
            )
            message = result.scalar_one_or_none()

            if not message or message.status != QueueStatus.PENDING:
                await self._index.remove(tenant_id, entry)
                report.stale_dropped += 1
                return

            message.status = QueueStatus.PROCESSING
            message.attempts += 1
            await session.commit()

            report.attempted += 1
            report.attempted_ids.append(message.id)

            try:
                await self._deliver(session, tenant_id, message, report)
            finally:
                await self._index.remove(tenant_id, entry)

    async def _deliver(
        self,
        session: AsyncSession,
        tenant_id: UUID,
        message: QueuedMessage,
        report: CycleReport,
    ) -> None:
        """Send one claimed message and write its outcome back to the store."""
        message_id = message.id
        provider_id = None
        error = None
        try:
            provider_id = await self._email_sender.deliver(
                message.recipient,
                message.subject,
                message.html_content,
                message.text_content,
            )
        except NotConfiguredError as e:
            error = str(e)
            status = QueueStatus.FAILED
        except Exception as e:
            error = str(e) or e.__class__.__name__
            if message.attempts >= message.max_attempts:
                status = QueueStatus.FAILED
            else:
                status = QueueStatus.PENDING
            logger.warning(
                f"Email {message_id} attempt {message.attempts}/{message.max_attempts} failed: {error}"
            )
        else:
            status = QueueStatus.SENT

        processed_at = None if status == QueueStatus.PENDING else self._clock()
        message.status = status
        message.error_message = error
        message.processed_at = processed_at

        try:
            if status == QueueStatus.SENT:
                await CommunicationRecorder(session).record(
                    tenant_id=tenant_id,
                    channel=CommunicationType.EMAIL,
                    recipient=message.recipient,
                    content=message.html_content,
                    subject=message.subject,
                    result=SendResult(success=True, provider_message_id=provider_id),
                )
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(f"Recording the outcome of email {message_id} failed: {e}")
            if status == QueueStatus.SENT:
                error = f"Sent, but recording the delivery failed: {e}"
            await self._write_back(message_id, status, error, processed_at)

        if status == QueueStatus.SENT:
            report.sent += 1
        elif status == QueueStatus.FAILED:
            report.failed += 1
        else:
            report.deferred += 1

    async def _write_back(
        self,
        message_id: UUID,
        status: QueueStatus,
        error: str | None,
        processed_at: datetime | None,
    ) -> None:
        """Store an outcome in a fresh transaction so the row never stays PROCESSING."""
        async with self._session_factory() as session:
            message = await session.get(QueuedMessage, message_id)
            if message is None:
                return
            message.status = status
            message.error_message = error
            message.processed_at = processed_at
            await session.commit()
