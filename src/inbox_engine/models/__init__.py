"""Data models for the inbox engine.

This module contains Pydantic models for data validation and serialization.
"""

from .compose import ComposeDraft, ComposeMode, ComposeOverrides, DeliveryReceipt, OutboundMail
from .conversation import (
    Account,
    BatchResult,
    Conversation,
    ConversationSummary,
    IngestResult,
    UnreadBreakdown,
)
from .message import (
    Attachment,
    AttachmentDescriptor,
    AttachmentKind,
    Direction,
    FolderTab,
    Message,
    RawMessage,
)

__all__ = [
    "Account",
    "Attachment",
    "AttachmentDescriptor",
    "AttachmentKind",
    "BatchResult",
    "ComposeDraft",
    "ComposeMode",
    "ComposeOverrides",
    "Conversation",
    "ConversationSummary",
    "DeliveryReceipt",
    "Direction",
    "FolderTab",
    "IngestResult",
    "Message",
    "OutboundMail",
    "RawMessage",
    "UnreadBreakdown",
]
