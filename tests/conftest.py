"""Shared fixtures: a throwaway SQLite database, fake providers and a controllable clock."""

from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID, uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from comms_engine.core.errors import NotConfiguredError, ProviderError
from comms_engine.models import Base, FormAccess, FormAccessStatus, User
from comms_engine.services.channels import (
    ChannelProviders,
    EmailSender,
    SMSTransport,
    WhatsAppTransport,
)
from comms_engine.services.priority_index import InMemoryPriorityIndex
from comms_engine.services.realtime import ConnectionDirectory


# =============================================================================
# FAKES
# =============================================================================


class Clock:
    """Callable clock that tests move forward explicitly."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return now


class FakeEmailSender(EmailSender):
    """Records deliveries in order; can be told to fail."""

    def __init__(self):
        self.sent: list[dict[str, Any]] = []
        self.error: Exception | None = None

    async def deliver(self, to: str, subject: str, html: str, text: str | None = None) -> str | None:
        if self.error is not None:
            raise self.error
        self.sent.append({"to": to, "subject": subject, "html": html, "text": text})
        return f"email-{len(self.sent)}"

    def fail_with(self, message: str = "Provider rejected the message") -> None:
        self.error = ProviderError(message, status_code=500)

    def unconfigure(self) -> None:
        self.error = NotConfiguredError("Email service not configured")


class FakeSMSTransport(SMSTransport):
    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.error: Exception | None = None
        self.statuses: dict[str, dict[str, Any]] = {}

    async def send_sms(self, to: str, body: str) -> str:
        if self.error is not None:
            raise self.error
        self.sent.append((to, body))
        return f"SM{len(self.sent):04d}"

    async def fetch_status(self, message_sid: str) -> dict[str, Any]:
        if message_sid not in self.statuses:
            raise ProviderError(f"Twilio error: message {message_sid} not found", status_code=404)
        return self.statuses[message_sid]


class FakeWhatsAppTransport(WhatsAppTransport):
    def __init__(self):
        self.payloads: list[dict[str, Any]] = []
        self.error: Exception | None = None

    async def send_message(self, payload: dict[str, Any]) -> str:
        if self.error is not None:
            raise self.error
        self.payloads.append(payload)
        return f"wamid.{len(self.payloads)}"


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite so separate sessions see each other's commits."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'comms.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def session(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest.fixture
def tenant_id() -> UUID:
    return uuid4()


@pytest.fixture
def other_tenant_id() -> UUID:
    return uuid4()


@pytest.fixture
def clock() -> Clock:
    # A Wednesday morning, inside business hours
    return Clock(datetime(2024, 3, 6, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def index() -> InMemoryPriorityIndex:
    return InMemoryPriorityIndex()


@pytest.fixture
def email_sender() -> FakeEmailSender:
    return FakeEmailSender()


@pytest.fixture
def sms_transport() -> FakeSMSTransport:
    return FakeSMSTransport()


@pytest.fixture
def whatsapp_transport() -> FakeWhatsAppTransport:
    return FakeWhatsAppTransport()


@pytest.fixture
def providers(email_sender, sms_transport, whatsapp_transport) -> ChannelProviders:
    return ChannelProviders(email=email_sender, sms=sms_transport, whatsapp=whatsapp_transport)


@pytest.fixture
def directory() -> ConnectionDirectory:
    return ConnectionDirectory(queue_size=10)


@pytest.fixture
async def user(session: AsyncSession, tenant_id: UUID) -> User:
    """An active member with email and phone on file."""
    user = User(
        tenant_id=tenant_id,
        name="Ada Admin",
        email="ada@example.com",
        phone="+14155550100",
        role="admin",
    )
    session.add(user)
    await session.commit()
    return user


@pytest.fixture
def make_access(session: AsyncSession, tenant_id: UUID):
    """Factory for form accesses belonging to the default tenant."""

    async def _make(
        created_at: datetime,
        status: FormAccessStatus = FormAccessStatus.NOT_STARTED,
        deadline: datetime | None = None,
        tenant: UUID | None = None,
    ) -> FormAccess:
        access = FormAccess(
            tenant_id=tenant or tenant_id,
            status=status,
            contact_name="Sam Student",
            contact_email="sam@example.com",
            institution_name="North College",
            form_title="Enrollment Form",
            access_token=uuid4().hex,
            submission_deadline=deadline,
            created_at=created_at,
        )
        session.add(access)
        await session.commit()
        return access

    return _make
