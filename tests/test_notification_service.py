"""
Tests for the Notification Service.

These tests verify:
1. FAN-OUT: persisted row, live push, side channels per preferences
2. ISOLATION: a failing side channel never fails the caller
3. TARGETING: bulk, role, tenant and announcement recipients
4. READ STATE, PREFERENCES and STATS
"""

from uuid import uuid4

import pytest
from sqlalchemy import select

from comms_engine.core.errors import NotFoundError, ProviderError, ValidationError
from comms_engine.models import (
    Communication,
    CommunicationStatus,
    CommunicationType,
    DeliveryFrequency,
    Notification,
    NotificationPriority,
    NotificationType,
    User,
)
from comms_engine.services.notification_service import NotificationService, PreferenceUpdate


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def service(session, directory, providers) -> NotificationService:
    return NotificationService(session, directory, providers)


@pytest.fixture
async def team(session, tenant_id, other_tenant_id) -> dict[str, User]:
    """Two counsellors, one admin, one deactivated user and an outsider."""
    users = {
        "counsellor_a": User(tenant_id=tenant_id, name="A", email="a@example.com", role="counsellor"),
        "counsellor_b": User(tenant_id=tenant_id, name="B", email="b@example.com", role="counsellor"),
        "admin": User(tenant_id=tenant_id, name="C", email="c@example.com", role="admin"),
        "inactive": User(tenant_id=tenant_id, name="D", email="d@example.com", role="counsellor", is_active=False),
        "outsider": User(tenant_id=other_tenant_id, name="E", email="e@example.com", role="admin"),
    }
    session.add_all(users.values())
    await session.commit()
    return users


async def _communications(session) -> list[Communication]:
    return list((await session.execute(select(Communication))).scalars().all())


async def _enable_all_channels(service, user, **extra):
    await service.update_user_preferences(
        user.id,
        PreferenceUpdate(email_enabled=True, sms_enabled=True, whatsapp_enabled=True, **extra),
        tenant_id=user.tenant_id,
    )


# =============================================================================
# TEST: FAN-OUT
# =============================================================================


class TestSendNotification:

    async def test_persists_and_pushes_to_live_connection(self, service, session, directory, user, tenant_id):
        connection = directory.register_connection(tenant_id, user.id)

        notification_id = await service.send_notification(
            tenant_id, user.id, "Form submitted", "Sam submitted the enrollment form",
            type=NotificationType.SUCCESS, priority=NotificationPriority.HIGH,
        )

        notification = await session.get(Notification, notification_id)
        assert notification.read is False
        assert notification.category == "GENERAL"

        payload = connection.queue.get_nowait()
        assert payload["event"] == "notification"
        assert payload["notification"]["id"] == str(notification_id)
        assert payload["notification"]["type"] == "success"
        assert payload["notification"]["priority"] == "high"

    async def test_requires_title_and_message(self, service, user, tenant_id):
        with pytest.raises(ValidationError):
            await service.send_notification(tenant_id, user.id, "  ", "message")
        with pytest.raises(ValidationError):
            await service.send_notification(tenant_id, user.id, "title", "")

    async def test_no_preferences_means_no_side_channels(self, service, session, email_sender, user, tenant_id):
        await service.send_notification(tenant_id, user.id, "Hello", "World")

        assert email_sender.sent == []
        assert await _communications(session) == []

    async def test_enabled_channels_each_get_a_copy(
        self, service, session, email_sender, sms_transport, whatsapp_transport, user, tenant_id
    ):
        await _enable_all_channels(service, user)

        await service.send_notification(tenant_id, user.id, "Deadline", "Two days left")

        assert email_sender.sent[0]["to"] == "ada@example.com"
        assert email_sender.sent[0]["html"] == "<h2>Deadline</h2><p>Two days left</p>"
        assert sms_transport.sent == [("+14155550100", "Deadline: Two days left")]
        assert whatsapp_transport.payloads[0]["to"] == "14155550100"

        rows = await _communications(session)
        assert sorted(r.type.value for r in rows) == ["email", "sms", "whatsapp"]
        assert all(r.status == CommunicationStatus.SENT for r in rows)

    async def test_category_opt_out_suppresses_side_channels(self, service, email_sender, user, tenant_id):
        await _enable_all_channels(service, user, categories={"BILLING": False})

        await service.send_notification(tenant_id, user.id, "Invoice", "Paid", category="BILLING")
        assert email_sender.sent == []

        await service.send_notification(tenant_id, user.id, "Form", "Submitted", category="FORMS")
        assert len(email_sender.sent) == 1

    async def test_failing_channel_does_not_fail_the_call(
        self, service, session, email_sender, sms_transport, whatsapp_transport, user, tenant_id
    ):
        await _enable_all_channels(service, user)
        sms_transport.error = ProviderError("Twilio returned HTTP 500: down", status_code=500)
        whatsapp_transport.error = RuntimeError("socket closed")

        notification_id = await service.send_notification(tenant_id, user.id, "Deadline", "Soon")

        assert notification_id is not None
        assert len(email_sender.sent) == 1
        statuses = {r.type: r.status for r in await _communications(session)}
        assert statuses == {
            CommunicationType.EMAIL: CommunicationStatus.SENT,
            CommunicationType.SMS: CommunicationStatus.FAILED,
            CommunicationType.WHATSAPP: CommunicationStatus.FAILED,
        }

    async def test_missing_phone_is_a_failed_copy(self, service, session, sms_transport, user, tenant_id):
        user.phone = None
        await session.commit()
        await service.update_user_preferences(
            user.id, PreferenceUpdate(email_enabled=False, sms_enabled=True), tenant_id=tenant_id
        )

        await service.send_notification(tenant_id, user.id, "Hi", "There")

        [row] = await _communications(session)
        assert row.status == CommunicationStatus.FAILED
        assert row.error_message == "No valid phone number on file"
        assert sms_transport.sent == []


# =============================================================================
# TEST: TARGETING
# =============================================================================


class TestTargeting:

    async def test_bulk_returns_one_id_per_user(self, service, team, tenant_id):
        ids = await service.send_bulk_notification(
            tenant_id, [team["counsellor_a"].id, team["admin"].id], "Hi", "All"
        )
        assert len(ids) == 2

    async def test_role_targets_active_holders_in_tenant(self, service, session, team, tenant_id):
        await service.send_role_notification(tenant_id, ["counsellor"], "Training", "Friday")

        recipients = set((await session.execute(select(Notification.user_id))).scalars().all())
        assert recipients == {team["counsellor_a"].id, team["counsellor_b"].id}

    async def test_tenant_targets_every_active_user(self, service, team, tenant_id):
        ids = await service.send_tenant_notification(tenant_id, "Maintenance", "Tonight")
        assert len(ids) == 3

    async def test_announcement_prefers_explicit_users(self, service, session, team, tenant_id):
        ids = await service.send_announcement(
            tenant_id, "Welcome", "New term",
            target_roles=["admin"], target_users=[team["counsellor_b"].id],
        )

        [notification] = [await session.get(Notification, i) for i in ids]
        assert notification.user_id == team["counsellor_b"].id
        assert notification.type == NotificationType.SYSTEM
        assert notification.category == "ANNOUNCEMENT"
        assert notification.data["announcement_type"] == "TEAM_ANNOUNCEMENT"

    async def test_announcement_falls_back_to_roles(self, service, team, tenant_id):
        ids = await service.send_announcement(tenant_id, "Audit", "Next week", target_roles=["admin"])
        assert len(ids) == 1

    async def test_empty_role_list_targets_nobody(self, service, team, tenant_id):
        assert await service.send_role_notification(tenant_id, [], "Hi", "There") == []


# =============================================================================
# TEST: READ STATE
# =============================================================================


class TestReadState:

    async def test_mark_all_as_read_clears_unread_count(self, service, user, tenant_id):
        for i in range(3):
            await service.send_notification(tenant_id, user.id, f"N{i}", "x")

        assert await service.get_user_notification_count(user.id, unread_only=True) == 3
        assert await service.mark_all_as_read(user.id) == 3
        assert await service.get_user_notification_count(user.id, unread_only=True) == 0
        assert await service.get_user_notification_count(user.id) == 3

    async def test_mark_one_as_read(self, service, user, tenant_id):
        notification_id = await service.send_notification(tenant_id, user.id, "Hi", "There")

        await service.mark_notification_as_read(notification_id)

        assert (await service.get_notification(notification_id)).read is True
        unread = await service.get_user_notifications(user.id, unread_only=True)
        assert unread == []

    async def test_missing_notification(self, service):
        with pytest.raises(NotFoundError):
            await service.mark_notification_as_read(uuid4())
        with pytest.raises(NotFoundError):
            await service.delete_notification(uuid4())

    async def test_delete(self, service, user, tenant_id):
        notification_id = await service.send_notification(tenant_id, user.id, "Hi", "There")
        await service.delete_notification(notification_id)
        assert await service.get_user_notification_count(user.id) == 0

    async def test_listing_sorts_and_paginates(self, service, user, tenant_id):
        for title in ("Charlie", "Alpha", "Bravo"):
            await service.send_notification(tenant_id, user.id, title, "x")

        page = await service.get_user_notifications(user.id, limit=2, sort_by="title", sort_order="asc")
        assert [n.title for n in page] == ["Alpha", "Bravo"]

        rest = await service.get_user_notifications(user.id, limit=2, offset=2, sort_by="title", sort_order="asc")
        assert [n.title for n in rest] == ["Charlie"]

    @pytest.mark.parametrize("sort_by, sort_order", [("message", "asc"), ("created_at", "sideways")])
    async def test_rejects_bad_sort(self, service, user, sort_by, sort_order):
        with pytest.raises(ValidationError):
            await service.get_user_notifications(user.id, sort_by=sort_by, sort_order=sort_order)


# =============================================================================
# TEST: PREFERENCES & STATS
# =============================================================================


class TestPreferences:

    async def test_missing_preferences(self, service, user):
        assert await service.get_user_preferences(user.id) is None

    async def test_upsert_creates_with_defaults_then_merges(self, service, session, user, tenant_id):
        created = await service.update_user_preferences(
            user.id, PreferenceUpdate(sms_enabled=True, categories={"FORMS": True})
        )
        assert created.tenant_id == tenant_id
        assert created.email_enabled is True
        assert created.sms_enabled is True
        assert created.frequency == DeliveryFrequency.IMMEDIATE

        updated = await service.update_user_preferences(
            user.id,
            PreferenceUpdate(frequency=DeliveryFrequency.DAILY, categories={"BILLING": False}),
        )
        await session.commit()

        assert updated.id == created.id
        assert updated.sms_enabled is True
        assert updated.frequency == DeliveryFrequency.DAILY
        assert updated.categories == {"FORMS": True, "BILLING": False}

        fetched = await service.get_user_preferences(user.id)
        assert fetched.id == created.id


class TestStats:

    async def test_counts_by_type_and_category(self, service, team, tenant_id, other_tenant_id, directory):
        await service.send_notification(tenant_id, team["admin"].id, "A", "x", type=NotificationType.WARNING)
        await service.send_notification(tenant_id, team["admin"].id, "B", "x", category="FORMS")
        await service.send_notification(other_tenant_id, team["outsider"].id, "C", "x")
        await service.mark_all_as_read(team["admin"].id)

        stats = await service.get_notification_stats(tenant_id)

        assert (stats.total, stats.unread) == (2, 0)
        assert stats.by_type == {"warning": 1, "info": 1}
        assert stats.by_category == {"GENERAL": 1, "FORMS": 1}
        assert (await service.get_notification_stats()).total == 3

    async def test_connected_users_count(self, service, directory, tenant_id):
        directory.register_connection(tenant_id, uuid4())
        assert service.get_connected_users_count(tenant_id) == 1
