"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from inbox_engine.config import Settings
from inbox_engine.models import DeliveryReceipt, OutboundMail, RawMessage
from inbox_engine.realtime import InMemoryBroker
from inbox_engine.services import InboxServices
from inbox_engine.store import InboxRepository

OWN_EMAIL = "me@y.com"
BASE_TIME = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeDelivery:
    """Delivery collaborator double: records mail, can fail or hang."""

    def __init__(self) -> None:
        self.sent: list[OutboundMail] = []
        self.fail_with: Exception | None = None
        self.delay: float = 0.0
        self._counter = 0

    async def deliver(self, mail: OutboundMail) -> DeliveryReceipt:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        self._counter += 1
        self.sent.append(mail)
        return DeliveryReceipt(delivered_message_id=f"<delivered-{self._counter}@mail.test>")


@pytest.fixture
def mock_settings(tmp_path) -> Settings:
    """Provide settings backed by a temporary SQLite store."""
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'inbox.sqlite3'}",
        attachment_base_url="https://files.example.test",
        delivery_timeout_seconds=0.5,
        session_queue_size=8,
        log_level="DEBUG",
        debug=True,
    )


@pytest.fixture
def repo(mock_settings: Settings):
    repository = InboxRepository.from_url(mock_settings.database_url)
    repository.initialize()
    yield repository
    repository.dispose()


@pytest.fixture
def account(repo: InboxRepository):
    return repo.link_account(OWN_EMAIL, "Me")


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest.fixture
def captured_events(broker: InMemoryBroker) -> list:
    """Every event published through `broker`, in order."""
    events: list = []

    async def _capture(event) -> None:
        events.append(event)

    broker.add_listener(_capture)
    return events


@pytest.fixture
def fake_delivery() -> FakeDelivery:
    return FakeDelivery()


@pytest.fixture
def services(mock_settings, repo, broker, fake_delivery) -> InboxServices:
    built = InboxServices.build(mock_settings, repository=repo, broker=broker, delivery=fake_delivery)
    broker.add_listener(built.registry.dispatch)
    return built


@pytest.fixture
def make_raw():
    """Factory for inbound raw message records."""

    def _make(
        *,
        from_email: str = "a@x.com",
        to_email: str = OWN_EMAIL,
        cc_email: str = "",
        subject: str = "Quarterly Update",
        body: str = "<p>Hello there</p>",
        minutes: int = 0,
        folder: str = "inbox",
        stable_id: str | None = None,
        **extra,
    ) -> RawMessage:
        return RawMessage(
            from_email=from_email,
            to_email=to_email,
            cc_email=cc_email,
            subject=subject,
            body=body,
            sent_at=BASE_TIME + timedelta(minutes=minutes),
            folder=folder,
            stable_id=stable_id,
            **extra,
        )

    return _make
