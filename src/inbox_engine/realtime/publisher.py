"""Builds inbox events and hands them to the broker.

Publishing is best effort: a failed publish is logged and never retried, and
never fails the write that triggered it. Clients reconcile on their next fetch.
"""

from __future__ import annotations

import structlog

from inbox_engine.models import Conversation, Message, UnreadBreakdown
from inbox_engine.realtime.broker import EventBroker
from inbox_engine.realtime.events import (
    ConversationUpdatedEvent,
    InboxEvent,
    NewMessageEvent,
    ReadStateChangedEvent,
    UnreadCountChangedEvent,
)

logger = structlog.get_logger()


class EventPublisher:
    def __init__(self, broker: EventBroker) -> None:
        self._broker = broker

    async def publish(self, event: InboxEvent) -> bool:
        try:
            await self._broker.publish(event)
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "realtime_publish_failed",
                event_type=event.type,
                event_id=event.event_id,
                account_id=event.account_id,
                error=str(exc),
            )
            return False
        return True

    async def new_message(self, message: Message, counterparty_email: str) -> bool:
        return await self.publish(
            NewMessageEvent(
                account_id=message.account_id,
                message_id=message.id,
                conversation_id=message.conversation_id,
                counterparty_email=counterparty_email,
                direction=message.direction,
                from_email=message.from_email,
                to_email=message.to_email,
                subject=message.subject,
                snippet=message.snippet,
                sent_at=message.sent_at,
                attachments=message.attachments,
            )
        )

    async def conversation_updated(self, conversation: Conversation, snippet: str | None = None) -> bool:
        return await self.publish(
            ConversationUpdatedEvent(
                account_id=conversation.account_id,
                conversation_id=conversation.id,
                counterparty_email=conversation.counterparty_email,
                subject=conversation.subject,
                snippet=snippet,
                last_message_at=conversation.last_message_at,
                message_count=conversation.message_count,
                unread_count=conversation.unread_count,
            )
        )

    async def read_state_changed(
        self,
        *,
        account_id: int,
        conversation_id: int,
        counterparty_email: str,
        message_ids: list[int],
        unread_count: int,
    ) -> bool:
        return await self.publish(
            ReadStateChangedEvent(
                account_id=account_id,
                conversation_id=conversation_id,
                counterparty_email=counterparty_email,
                message_ids=message_ids,
                unread_count=unread_count,
            )
        )

    async def unread_count_changed(self, breakdown: UnreadBreakdown) -> bool:
        return await self.publish(
            UnreadCountChangedEvent(
                account_id=breakdown.account_id,
                unread_count=breakdown.total,
                inbox=breakdown.inbox,
                spam=breakdown.spam,
            )
        )
