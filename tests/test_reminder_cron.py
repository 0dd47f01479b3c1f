"""Tests for the reminder cron job entry point."""

from datetime import datetime, timedelta, timezone

import pytest

from comms_engine.jobs import reminder_cron
from comms_engine.models import ReminderLog
from comms_engine.services.reminder_engine import ReminderConfig, ReminderEngine


ANY_DAY = ReminderConfig(exclude_weekends=False)


@pytest.fixture
def database_url(engine, tmp_path) -> str:
    """URL of the tables created by the ``engine`` fixture."""
    return f"sqlite+aiosqlite:///{tmp_path / 'comms.db'}"


@pytest.fixture
def alerts(monkeypatch, providers) -> list[dict]:
    """Capture alerts and swap in the fake providers."""
    sent: list[dict] = []

    async def capture(title, message, severity="error", details=None):
        sent.append({"title": title, "severity": severity, "details": details})

    monkeypatch.setattr(reminder_cron, "send_alert", capture)
    monkeypatch.setattr(reminder_cron, "build_channel_providers", lambda settings: providers)
    return sent


class TestRunReminderJob:

    async def test_dry_run_only_counts_tenants(self, database_url, alerts, make_access, other_tenant_id):
        now = datetime.now(timezone.utc)
        await make_access(created_at=now)
        await make_access(created_at=now, tenant=other_tenant_id)

        results = await reminder_cron.run_reminder_job(database_url, ANY_DAY, dry_run=True)

        assert results["tenants"] == 2
        assert results["scheduled"] == 0

    async def test_schedules_sends_due_and_reports(self, database_url, alerts, session, email_sender, make_access):
        now = datetime.now(timezone.utc)
        await make_access(created_at=now - timedelta(hours=1))
        overdue = await make_access(created_at=now - timedelta(days=2))
        # A series already under way keeps its own due time
        session.add(ReminderLog(access_id=overdue.id, reminder_count=1, next_reminder_at=now - timedelta(minutes=5)))
        await session.commit()

        results = await reminder_cron.run_reminder_job(database_url, ANY_DAY)

        assert results["tenants"] == 1
        assert results["scheduled"] == 2
        assert results["reminders_sent"] == 1
        assert results["completed_at"] is not None
        assert alerts == []
        assert [e["to"] for e in email_sender.sent] == ["sam@example.com"]

    async def test_failures_raise_a_warning_alert(self, database_url, alerts, session, email_sender, make_access):
        now = datetime.now(timezone.utc)
        access = await make_access(created_at=now - timedelta(days=2))
        session.add(ReminderLog(access_id=access.id, reminder_count=1, next_reminder_at=now - timedelta(minutes=5)))
        await session.commit()
        email_sender.fail_with("SendGrid returned HTTP 503: unavailable")

        results = await reminder_cron.run_reminder_job(database_url, ANY_DAY)

        assert results["reminders_failed"] == 1
        [alert] = alerts
        assert alert["severity"] == "warning"
        assert alert["details"]["reminders_failed"] == 1

    async def test_one_failing_tenant_does_not_stop_the_job(
        self, database_url, alerts, session, email_sender, make_access, other_tenant_id, monkeypatch
    ):
        now = datetime.now(timezone.utc)
        broken = await make_access(created_at=now - timedelta(hours=1))
        overdue = await make_access(created_at=now - timedelta(days=2), tenant=other_tenant_id)
        session.add(ReminderLog(access_id=overdue.id, reminder_count=1, next_reminder_at=now - timedelta(minutes=5)))
        await session.commit()

        schedule = ReminderEngine.schedule_reminders

        async def schedule_or_fail(self, tenant_id, config=None):
            if tenant_id == broken.tenant_id:
                raise RuntimeError("tenant settings unreadable")
            return await schedule(self, tenant_id, config)

        monkeypatch.setattr(ReminderEngine, "schedule_reminders", schedule_or_fail)

        results = await reminder_cron.run_reminder_job(database_url, ANY_DAY)

        assert results["schedule_failed"] == 1
        assert results["scheduled"] == 1
        assert results["reminders_sent"] == 1
        assert any("tenant settings unreadable" in e for e in results["errors"])
        [alert] = alerts
        assert alert["details"]["schedule_failed"] == 1
