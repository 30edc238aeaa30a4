"""Request/response models for the inbox HTTP API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from inbox_engine.models import ComposeMode, ComposeOverrides, FolderTab, Message


class LinkAccountRequest(BaseModel):
    email: str
    display_name: str | None = None


class UnlinkAccountResponse(BaseModel):
    account_id: int
    unlinked: bool


class MessageView(Message):
    display_html: str = Field(default="", description="Body with quoted history collapsed")


class ThreadResponse(BaseModel):
    account_id: int
    counterparty_email: str
    tab: FolderTab
    participants: list[str]
    messages: list[MessageView]


class ReadResponse(BaseModel):
    changed: bool
    conversation_id: int
    message_ids: list[int]
    conversation_unread: int
    account_unread: int


class ComposeRequest(BaseModel):
    account_id: int
    mode: ComposeMode
    source_message_id: int | None = None
    counterparty: str | None = None
    overrides: ComposeOverrides | None = None


class SendResponse(BaseModel):
    message_id: int
    conversation_id: int
    counterparty_email: str
    created: bool


class IngestRequest(BaseModel):
    messages: list[dict[str, Any]] = Field(description="Raw records; each is validated on its own")


class FolderActionResponse(BaseModel):
    account_id: int
    counterparty_email: str
    action: str
    updated_count: int


class MessageActionResponse(BaseModel):
    message_id: int
    conversation_id: int
    action: str
    updated_count: int
    conversation_removed: bool = False
