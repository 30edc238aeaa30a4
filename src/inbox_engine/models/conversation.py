"""Account and conversation models."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from inbox_engine.models.message import Direction


class Account(BaseModel):
    """A connected mailbox identity."""

    id: int
    email: str = Field(description="Normalized mailbox address")
    display_name: str | None = None


class Conversation(BaseModel):
    """All messages between one account and one counterparty."""

    id: int
    account_id: int
    counterparty_email: str
    subject: str = ""
    last_message_at: datetime
    message_count: int = 0
    unread_count: int = 0


class ConversationSummary(BaseModel):
    """One row of a conversation list, scoped to a folder tab."""

    conversation_id: int
    counterparty_email: str
    subject: str
    unread_count: int
    message_count: int
    last_message_at: datetime
    snippet: str = ""
    last_direction: Direction | None = None


class UnreadBreakdown(BaseModel):
    """Derived unread counts for one account."""

    account_id: int
    inbox: int
    spam: int
    total: int


class IngestResult(BaseModel):
    """Outcome of ingesting a single message."""

    message_id: int
    conversation_id: int
    counterparty_email: str
    created: bool = Field(description="False when the message was already stored")


class BatchResult(BaseModel):
    """Counters for one ingestion batch."""

    processed: int = 0
    duplicates: int = 0
    failed: int = 0
    error_samples: list[str] = Field(default_factory=list)
