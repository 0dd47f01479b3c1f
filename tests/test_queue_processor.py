"""
Tests for the Queue Processor.

These tests verify:
1. PRIORITY: higher tiers are attempted first within a cycle
2. SCHEDULING: future messages are never attempted early
3. STATE MACHINE: SENT, deferred retry, FAILED after max attempts
4. SELF-HEALING: stale index entries are dropped
5. SINGLE-FLIGHT: overlapping cycles are skipped
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from comms_engine.models import (
    Communication,
    CommunicationStatus,
    CommunicationType,
    MessagePriority,
    QueuedMessage,
    QueueStatus,
)
from comms_engine.services.channels import CommunicationRecorder
from comms_engine.services.message_queue import MessageQueueService
from comms_engine.services.queue_processor import QueueProcessor


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def queue(session, index, clock) -> MessageQueueService:
    return MessageQueueService(session, index, default_max_attempts=3, clock=clock)


@pytest.fixture
def processor(session_factory, index, email_sender, clock) -> QueueProcessor:
    return QueueProcessor(
        session_factory,
        index,
        email_sender,
        batch_size=10,
        interval_seconds=0.01,
        clock=clock,
    )


async def _status(session, message_id) -> QueuedMessage:
    return await session.get(QueuedMessage, message_id, populate_existing=True)


# =============================================================================
# TEST: ORDERING & SCHEDULING
# =============================================================================


class TestCycleOrdering:

    async def test_urgent_is_sent_before_low(self, queue, processor, session, email_sender, tenant_id):
        low_id = await queue.enqueue(tenant_id, "low@example.com", "Low", "<p>l</p>", priority=MessagePriority.LOW)
        urgent_id = await queue.enqueue(
            tenant_id, "urgent@example.com", "Urgent", "<p>u</p>", priority=MessagePriority.URGENT
        )

        report = await processor.process_cycle()

        assert report.attempted_ids == [urgent_id, low_id]
        assert [m["to"] for m in email_sender.sent] == ["urgent@example.com", "low@example.com"]
        assert (await _status(session, urgent_id)).status == QueueStatus.SENT
        assert (await _status(session, low_id)).status == QueueStatus.SENT

    async def test_future_message_is_not_attempted(self, queue, processor, session, index, email_sender, tenant_id, clock):
        message_id = await queue.enqueue(
            tenant_id, "later@example.com", "Later", "<p>x</p>",
            scheduled_at=clock.now + timedelta(hours=1),
        )

        report = await processor.process_cycle()
        assert report.attempted == 0
        assert report.not_due == 1
        assert email_sender.sent == []
        assert (await _status(session, message_id)).status == QueueStatus.PENDING
        assert await index.size(tenant_id) == 1

        clock.advance(hours=1)
        report = await processor.process_cycle()
        assert report.sent == 1

    async def test_batch_size_limits_each_tier(self, session_factory, queue, index, email_sender, tenant_id, clock):
        processor = QueueProcessor(session_factory, index, email_sender, batch_size=2, clock=clock)
        for i in range(3):
            await queue.enqueue(tenant_id, f"user{i}@example.com", "S", "<p>x</p>")

        first = await processor.process_cycle()
        second = await processor.process_cycle()
        assert (first.sent, second.sent) == (2, 1)

    async def test_future_entries_do_not_starve_due_ones(self, queue, processor, session, email_sender, tenant_id, clock):
        for i in range(10):
            await queue.enqueue(
                tenant_id, f"later{i}@example.com", "Later", "<p>x</p>",
                scheduled_at=clock.now + timedelta(days=7),
            )
        due_id = await queue.enqueue(tenant_id, "now@example.com", "Now", "<p>x</p>")

        report = await processor.process_cycle()

        assert report.attempted_ids == [due_id]
        assert report.not_due == 10
        assert [m["to"] for m in email_sender.sent] == ["now@example.com"]
        assert (await _status(session, due_id)).status == QueueStatus.SENT

    async def test_tenants_are_processed_independently(self, queue, processor, email_sender, tenant_id, other_tenant_id):
        await queue.enqueue(tenant_id, "a@example.com", "S", "<p>x</p>")
        await queue.enqueue(other_tenant_id, "b@example.com", "S", "<p>x</p>")

        report = await processor.process_cycle()
        assert report.sent == 2
        assert sorted(m["to"] for m in email_sender.sent) == ["a@example.com", "b@example.com"]


# =============================================================================
# TEST: STATE MACHINE
# =============================================================================


class TestDeliveryOutcomes:

    async def test_success_writes_audit_row(self, queue, processor, session, tenant_id, clock):
        message_id = await queue.enqueue(tenant_id, "a@example.com", "Hello", "<p>x</p>")

        await processor.process_cycle()

        message = await _status(session, message_id)
        assert message.status == QueueStatus.SENT
        assert message.attempts == 1
        assert message.processed_at == clock.now

        audit = (await session.execute(select(Communication))).scalars().all()
        assert len(audit) == 1
        assert audit[0].type == CommunicationType.EMAIL
        assert audit[0].status == CommunicationStatus.SENT
        assert audit[0].provider_message_id == "email-1"

    async def test_retryable_failure_goes_back_to_pending(self, queue, processor, session, index, email_sender, tenant_id):
        email_sender.fail_with("SendGrid error (500): upstream")
        message_id = await queue.enqueue(tenant_id, "a@example.com", "S", "<p>x</p>")

        report = await processor.process_cycle()

        message = await _status(session, message_id)
        assert report.deferred == 1
        assert message.status == QueueStatus.PENDING
        assert message.attempts == 1
        assert "upstream" in message.error_message
        assert await index.size(tenant_id) == 0

    async def test_attempts_never_exceed_max(self, queue, processor, session, email_sender, tenant_id):
        email_sender.fail_with()
        message_id = await queue.enqueue(tenant_id, "a@example.com", "S", "<p>x</p>")

        for _ in range(5):
            await queue.reindex_pending(tenant_id)
            await processor.process_cycle()

        message = await _status(session, message_id)
        assert message.status == QueueStatus.FAILED
        assert message.attempts == message.max_attempts == 3
        assert message.processed_at is not None

    async def test_not_configured_fails_immediately(self, queue, processor, session, email_sender, tenant_id):
        email_sender.unconfigure()
        message_id = await queue.enqueue(tenant_id, "a@example.com", "S", "<p>x</p>")

        report = await processor.process_cycle()

        message = await _status(session, message_id)
        assert report.failed == 1
        assert message.status == QueueStatus.FAILED
        assert message.attempts == 1
        assert message.error_message == "Email service not configured"

    async def test_failed_audit_write_still_settles_the_row(
        self, queue, processor, session, index, email_sender, tenant_id, monkeypatch
    ):
        async def broken_record(self, **kwargs):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(CommunicationRecorder, "record", broken_record)
        message_id = await queue.enqueue(tenant_id, "a@example.com", "S", "<p>x</p>")

        report = await processor.process_cycle()

        message = await _status(session, message_id)
        assert report.sent == 1
        assert message.status == QueueStatus.SENT
        assert message.attempts == 1
        assert "database is locked" in message.error_message
        assert await index.size(tenant_id) == 0

        monkeypatch.undo()
        await queue.reindex_pending(tenant_id)
        await processor.process_cycle()
        assert len(email_sender.sent) == 1

    async def test_no_row_left_processing(self, queue, processor, session, email_sender, tenant_id):
        email_sender.fail_with()
        for i in range(3):
            await queue.enqueue(tenant_id, f"u{i}@example.com", "S", "<p>x</p>")

        await processor.process_cycle()

        statuses = (await session.execute(select(QueuedMessage.status))).scalars().all()
        assert QueueStatus.PROCESSING not in statuses


# =============================================================================
# TEST: SELF-HEALING & LIFECYCLE
# =============================================================================


class TestIndexHealing:

    async def test_stale_entry_for_sent_message_is_dropped(self, queue, processor, session, index, email_sender, tenant_id):
        message_id = await queue.enqueue(tenant_id, "a@example.com", "S", "<p>x</p>")
        message = await _status(session, message_id)
        message.status = QueueStatus.SENT
        await session.commit()

        report = await processor.process_cycle()

        assert report.stale_dropped == 1
        assert email_sender.sent == []
        assert await index.size(tenant_id) == 0

    async def test_terminal_ids_not_in_index_after_cycle(self, queue, processor, index, email_sender, tenant_id):
        await queue.enqueue(tenant_id, "a@example.com", "S", "<p>x</p>", priority=MessagePriority.HIGH)
        await queue.enqueue(tenant_id, "b@example.com", "S", "<p>x</p>")

        await processor.process_cycle()

        for priority in MessagePriority:
            assert await index.fetch(tenant_id, priority, 100) == []

    async def test_recover_rebuilds_index(self, queue, processor, index, email_sender, tenant_id):
        await queue.enqueue(tenant_id, "a@example.com", "S", "<p>x</p>")
        [entry] = await index.fetch(tenant_id, MessagePriority.NORMAL, 10)
        await index.remove(tenant_id, entry)

        assert await processor.recover() == 1
        report = await processor.process_cycle()
        assert report.sent == 1


class TestLifecycle:

    async def test_overlapping_cycle_is_skipped(self, queue, session_factory, index, tenant_id, clock):
        release = asyncio.Event()

        class SlowSender:
            async def deliver(self, to, subject, html, text=None):
                await release.wait()
                return "slow-1"

        processor = QueueProcessor(session_factory, index, SlowSender(), clock=clock)
        await queue.enqueue(tenant_id, "a@example.com", "S", "<p>x</p>")

        first = asyncio.create_task(processor.process_cycle())
        await asyncio.sleep(0.05)
        assert processor.processing

        second = await processor.process_cycle()
        assert second.skipped

        release.set()
        report = await first
        assert report.sent == 1

    async def test_start_and_stop(self, queue, processor, email_sender, tenant_id):
        await queue.enqueue(tenant_id, "a@example.com", "S", "<p>x</p>")

        await processor.start()
        assert processor.running
        for _ in range(100):
            if processor.status()["last_cycle_at"] is not None:
                break
            await asyncio.sleep(0.02)
        await processor.stop()

        assert not processor.running
        assert len(email_sender.sent) == 1
        assert processor.status()["last_cycle_at"] is not None
