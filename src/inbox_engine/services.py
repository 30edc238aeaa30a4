"""Wiring of the engine components for one serving process."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import structlog

from inbox_engine.attachments import AttachmentResolver
from inbox_engine.auth import Authenticator, HeaderAuthenticator
from inbox_engine.config import Settings, get_settings
from inbox_engine.engine import (
    ConversationFolders,
    ConversationKeyer,
    MailDeliveryService,
    ReadStateTracker,
    SendService,
    ThreadAssembler,
    UnconfiguredDelivery,
)
from inbox_engine.realtime import ConnectionRegistry, EventBroker, EventPublisher, InMemoryBroker, RedisBroker
from inbox_engine.store import InboxRepository

logger = structlog.get_logger()


@dataclass
class InboxServices:
    settings: Settings
    repository: InboxRepository
    broker: EventBroker
    registry: ConnectionRegistry
    publisher: EventPublisher
    attachments: AttachmentResolver
    read_state: ReadStateTracker
    keyer: ConversationKeyer
    threads: ThreadAssembler
    folders: ConversationFolders
    sender: SendService
    authenticator: Authenticator

    @classmethod
    def build(
        cls,
        settings: Settings | None = None,
        *,
        repository: InboxRepository | None = None,
        broker: EventBroker | None = None,
        delivery: MailDeliveryService | None = None,
        authenticator: Authenticator | None = None,
    ) -> InboxServices:
        settings = settings or get_settings()
        repository = repository or InboxRepository.from_url(settings.database_url)
        if broker is None:
            broker = RedisBroker(settings.redis_url) if settings.redis_url else InMemoryBroker()

        publisher = EventPublisher(broker)
        attachments = AttachmentResolver(settings.attachment_base_url)
        read_state = ReadStateTracker(repository, publisher)
        keyer = ConversationKeyer(
            repository,
            attachments,
            read_state=read_state,
            publisher=publisher,
            snippet_length=settings.snippet_length,
        )

        return cls(
            settings=settings,
            repository=repository,
            broker=broker,
            registry=ConnectionRegistry(queue_size=settings.session_queue_size),
            publisher=publisher,
            attachments=attachments,
            read_state=read_state,
            keyer=keyer,
            threads=ThreadAssembler(repository, attachments, snippet_length=settings.snippet_length),
            folders=ConversationFolders(repository, read_state, publisher),
            sender=SendService(
                keyer,
                delivery or UnconfiguredDelivery(),
                timeout_seconds=settings.delivery_timeout_seconds,
            ),
            authenticator=authenticator or HeaderAuthenticator(),
        )

    async def start(self) -> None:
        await asyncio.to_thread(self.repository.initialize)
        self.broker.add_listener(self.registry.dispatch)
        await self.broker.start()
        logger.info("inbox_services_started", broker=type(self.broker).__name__)

    async def close(self) -> None:
        self.broker.remove_listener(self.registry.dispatch)
        await self.broker.close()
        await asyncio.to_thread(self.repository.dispose)
        logger.info("inbox_services_closed")
