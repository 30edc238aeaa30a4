"""Attachment classification and URL resolution.

The attachment kind is computed once, when a message is stored, and kept with
the row. Resolution to a retrievable URL does not depend on how the message
arrived.
"""

from __future__ import annotations

import re
from pathlib import PurePosixPath

from inbox_engine.models import Attachment, AttachmentDescriptor, AttachmentKind

_IMAGE_EXT = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".svg"}
_DOCUMENT_EXT = {".doc", ".docx", ".odt", ".rtf", ".txt"}
_SPREADSHEET_EXT = {".xls", ".xlsx", ".ods", ".csv"}

_DOCUMENT_MIME = (
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml",
    "application/vnd.oasis.opendocument.text",
    "application/rtf",
)
_SPREADSHEET_MIME = (
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml",
    "application/vnd.oasis.opendocument.spreadsheet",
    "text/csv",
)


def classify_attachment(filename: str | None, mime_type: str | None) -> AttachmentKind:
    """Map a filename / MIME type pair to an attachment kind."""

    ext = PurePosixPath((filename or "").lower()).suffix
    mime = (mime_type or "").lower()

    if mime.startswith("image/") or ext in _IMAGE_EXT:
        return AttachmentKind.IMAGE
    if mime == "application/pdf" or ext == ".pdf":
        return AttachmentKind.PDF
    if mime.startswith(_SPREADSHEET_MIME) or ext in _SPREADSHEET_EXT:
        return AttachmentKind.SPREADSHEET
    if mime.startswith(_DOCUMENT_MIME) or ext in _DOCUMENT_EXT:
        return AttachmentKind.DOCUMENT
    return AttachmentKind.GENERIC


def resolve_url(storage_locator: str | None, base_url: str, filename: str | None = None) -> str:
    """Build an absolute URL for a storage locator.

    Absolute http(s) locators are returned unchanged; relative ones are joined to
    `base_url`. A missing locator falls back to `/uploads/<filename>`.
    """

    raw = (storage_locator or "").strip()
    if not raw and filename:
        raw = f"/uploads/{filename}"
    if raw.startswith(("http://", "https://")):
        return raw
    if not raw.startswith("/"):
        raw = f"/{raw}"
    return f"{base_url.rstrip('/')}{raw}"


class AttachmentResolver:
    """Turns attachment descriptors into stored/retrievable attachments."""

    def __init__(self, base_url: str) -> None:
        self._base_url = base_url

    def prepare(self, descriptor: AttachmentDescriptor) -> Attachment:
        """Classify a descriptor before it is stored."""

        return Attachment(
            filename=descriptor.filename or "file",
            mime_type=descriptor.mime_type or "application/octet-stream",
            size=descriptor.size or 0,
            storage_locator=descriptor.storage_locator,
            content_id=descriptor.content_id,
            kind=classify_attachment(descriptor.filename, descriptor.mime_type),
        )

    def resolve(self, attachment: Attachment) -> Attachment:
        """Return a copy carrying an absolute `url`."""

        return attachment.model_copy(
            update={"url": resolve_url(attachment.storage_locator, self._base_url, attachment.filename)}
        )

    def resolve_all(self, attachments: list[Attachment]) -> list[Attachment]:
        return [self.resolve(a) for a in attachments]

    def rewrite_inline_images(self, html: str, attachments: list[Attachment]) -> str:
        """Replace `cid:` references in a body with the attachments' URLs."""

        updated = html
        for att in attachments:
            if not att.content_id:
                continue
            cid = att.content_id.strip("<>")
            url = att.url or resolve_url(att.storage_locator, self._base_url, att.filename)
            updated = re.sub(f"cid:{re.escape(cid)}", lambda _m, u=url: u, updated, flags=re.IGNORECASE)
        return updated
