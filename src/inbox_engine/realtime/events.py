"""Realtime event payloads.

Events are hints: receivers reconcile by re-fetching, so every event carries an
`event_id` for de-duplication and enough context to patch a local list.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from inbox_engine.models import Attachment, Direction


def _now() -> datetime:
    return datetime.now(timezone.utc)


class _InboxEventBase(BaseModel):
    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    account_id: int
    emitted_at: datetime = Field(default_factory=_now)


class NewMessageEvent(_InboxEventBase):
    type: Literal["new_message"] = "new_message"
    message_id: int
    conversation_id: int
    counterparty_email: str
    direction: Direction
    from_email: str
    to_email: str
    subject: str = ""
    snippet: str = ""
    sent_at: datetime
    attachments: list[Attachment] = Field(default_factory=list)


class ReadStateChangedEvent(_InboxEventBase):
    type: Literal["read_state_changed"] = "read_state_changed"
    conversation_id: int
    counterparty_email: str
    message_ids: list[int]
    is_read: bool = True
    unread_count: int = Field(description="Conversation unread count after the change")


class ConversationUpdatedEvent(_InboxEventBase):
    type: Literal["conversation_updated"] = "conversation_updated"
    conversation_id: int
    counterparty_email: str
    subject: str = ""
    snippet: str | None = None
    last_message_at: datetime
    message_count: int
    unread_count: int


class UnreadCountChangedEvent(_InboxEventBase):
    type: Literal["unread_count_changed"] = "unread_count_changed"
    unread_count: int
    inbox: int = 0
    spam: int = 0


InboxEvent = Annotated[
    Union[NewMessageEvent, ReadStateChangedEvent, ConversationUpdatedEvent, UnreadCountChangedEvent],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter[InboxEvent] = TypeAdapter(InboxEvent)


def parse_event(data: str | bytes | dict) -> InboxEvent:
    """Decode an event from its JSON (or already decoded) form."""

    if isinstance(data, dict):
        return _event_adapter.validate_python(data)
    return _event_adapter.validate_json(data)


def event_counterparty(event: InboxEvent) -> str | None:
    """Counterparty an event is scoped to; None for account-wide events."""

    return getattr(event, "counterparty_email", None)
