"""Message and attachment models.

`RawMessage` is what the mail ingestion service hands over; `Message` is the
persisted, conversation-bound form returned by the store.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class Direction(str, Enum):
    """Which side of the conversation authored a message."""

    SENT = "sent"
    RECEIVED = "received"


class FolderTab(str, Enum):
    """View filter applied over a conversation's messages."""

    INBOX = "inbox"
    SENT = "sent"
    SPAM = "spam"
    TRASH = "trash"


class AttachmentKind(str, Enum):
    """Attachment category, computed once when the attachment is stored."""

    IMAGE = "image"
    PDF = "pdf"
    DOCUMENT = "document"
    SPREADSHEET = "spreadsheet"
    GENERIC = "generic"


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _join_addresses(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ",".join(str(v).strip() for v in value if str(v).strip())
    return str(value)


class AttachmentDescriptor(BaseModel):
    """Attachment as described by the ingestion or compose side."""

    filename: str = Field(default="file", description="Original file name")
    mime_type: str = Field(default="application/octet-stream", description="MIME type")
    size: int = Field(default=0, ge=0, description="Size in bytes")
    storage_locator: str = Field(default="", description="Where the content can be fetched")
    content_id: str | None = Field(default=None, description="Content-ID for inline parts")


class Attachment(AttachmentDescriptor):
    """Attachment owned by exactly one stored message."""

    id: int | None = Field(default=None, description="Store id")
    kind: AttachmentKind = Field(default=AttachmentKind.GENERIC, description="Attachment category")
    url: str | None = Field(default=None, description="Resolved retrievable URL")


class RawMessage(BaseModel):
    """A mail record supplied by the ingestion collaborator."""

    from_email: str = Field(default="", description="Sender address")
    to_email: str = Field(default="", description="Comma-joined recipient addresses")
    cc_email: str = Field(default="", description="Comma-joined cc addresses")
    subject: str = Field(default="", description="Subject header")
    body: str = Field(default="", description="HTML body")
    sent_at: datetime = Field(description="Date the message was sent")
    folder: str = Field(default="inbox", description="Source folder name")
    attachments: list[AttachmentDescriptor] = Field(default_factory=list)
    stable_id: str | None = Field(default=None, description="Transport Message-ID")
    direction: Direction | None = Field(
        default=None, description="Explicit direction; derived from the account when omitted"
    )
    is_read: bool | None = Field(default=None, description="Seen flag reported by the transport")
    in_reply_to: str | None = Field(default=None, description="In-Reply-To header")

    @field_validator("to_email", "cc_email", mode="before")
    @classmethod
    def _accept_lists(cls, v: object) -> str:
        return _join_addresses(v)

    @field_validator("from_email", mode="before")
    @classmethod
    def _none_to_empty(cls, v: object) -> str:
        return "" if v is None else str(v)

    @field_validator("sent_at")
    @classmethod
    def _to_utc(cls, v: datetime) -> datetime:
        return _utc(v)

    @property
    def is_spam(self) -> bool:
        return self.folder.strip().lower() in {"spam", "junk", "bulk"}

    @property
    def is_trash(self) -> bool:
        return self.folder.strip().lower() in {"trash", "deleted", "bin"}


class Message(BaseModel):
    """A stored message that belongs to one conversation."""

    id: int
    conversation_id: int
    account_id: int
    direction: Direction
    from_email: str
    to_email: str
    cc_email: str = ""
    subject: str = ""
    body: str = ""
    snippet: str = ""
    sent_at: datetime
    is_read: bool = False
    is_trash: bool = False
    is_spam: bool = False
    hide_trash: bool = False
    stable_id: str | None = None
    dedupe_key: str
    in_reply_to: str | None = None
    attachments: list[Attachment] = Field(default_factory=list)

    @field_validator("sent_at")
    @classmethod
    def _to_utc(cls, v: datetime) -> datetime:
        return _utc(v)
