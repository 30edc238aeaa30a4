"""Realtime fan-out of inbox events to live sessions."""

from .broker import EventBroker, InMemoryBroker, RedisBroker, channel_for
from .events import (
    ConversationUpdatedEvent,
    InboxEvent,
    NewMessageEvent,
    ReadStateChangedEvent,
    UnreadCountChangedEvent,
    parse_event,
)
from .publisher import EventPublisher
from .registry import ConnectionRegistry, Session, SessionState

__all__ = [
    "ConnectionRegistry",
    "ConversationUpdatedEvent",
    "EventBroker",
    "EventPublisher",
    "InMemoryBroker",
    "InboxEvent",
    "NewMessageEvent",
    "ReadStateChangedEvent",
    "RedisBroker",
    "Session",
    "SessionState",
    "UnreadCountChangedEvent",
    "channel_for",
    "parse_event",
]
