"""Compose, delivery and draft models."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

from inbox_engine.exceptions import MissingRecipientError
from inbox_engine.models.message import AttachmentDescriptor


class ComposeMode(str, Enum):
    """The four ways a draft can be started."""

    REPLY = "reply"
    REPLY_ALL = "reply-all"
    FORWARD = "forward"
    NEW = "new"


class ComposeOverrides(BaseModel):
    """User-supplied values that win over the derived ones."""

    to: list[str] | None = None
    cc: list[str] | None = None
    subject: str | None = None
    body_html: str | None = Field(default=None, description="User-authored text above the quote")
    attachments: list[AttachmentDescriptor] | None = None


class ComposeDraft(BaseModel):
    """Resolved draft handed to the delivery collaborator."""

    mode: ComposeMode
    from_email: str
    to: list[str] = Field(default_factory=list)
    cc: list[str] = Field(default_factory=list)
    subject: str = ""
    body_html: str = ""
    quoted_body_html: str = ""
    attachments: list[AttachmentDescriptor] = Field(default_factory=list)
    in_reply_to: str | None = None

    @property
    def full_body_html(self) -> str:
        if not self.quoted_body_html:
            return self.body_html
        return f"{self.body_html}{self.quoted_body_html}"

    def validate_for_send(self) -> None:
        """Reject the draft if it cannot be delivered.

        Raises:
            MissingRecipientError: If no `to` address is set.
        """

        if not [addr for addr in self.to if addr.strip()]:
            raise MissingRecipientError(f"A {self.mode.value} draft needs at least one recipient")


class OutboundMail(BaseModel):
    """Payload accepted by the mail delivery service."""

    from_email: str
    to: list[str]
    cc: list[str] = Field(default_factory=list)
    subject: str
    body_html: str
    attachments: list[AttachmentDescriptor] = Field(default_factory=list)
    in_reply_to: str | None = None


class DeliveryReceipt(BaseModel):
    """Confirmation returned by the mail delivery service."""

    delivered_message_id: str
