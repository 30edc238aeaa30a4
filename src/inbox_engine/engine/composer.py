"""Draft derivation for reply, reply-all, forward and new messages.

Everything here is pure: callers fetch the source message and participant set
and hand them in. The quoted history is appended in full; collapsing it is left
to display (`inbox_engine.html.collapse_quoted`).
"""

from __future__ import annotations

import html
import re
from datetime import datetime

from inbox_engine.addressing import normalize_email, participant_set, reply_targets, split_addresses
from inbox_engine.html import FORWARD_MARKER
from inbox_engine.models import (
    AttachmentDescriptor,
    ComposeDraft,
    ComposeMode,
    ComposeOverrides,
    Direction,
    Message,
)

NO_SUBJECT = "(No Subject)"

_REPLY_PREFIX_RE = re.compile(r"^\s*re\s*:", re.IGNORECASE)
_FORWARD_PREFIX_RE = re.compile(r"^\s*(fwd|fw)\s*:", re.IGNORECASE)


def reply_subject(subject: str | None) -> str:
    subject = (subject or "").strip()
    if _REPLY_PREFIX_RE.match(subject):
        return subject
    return f"Re: {subject}" if subject else f"Re: {NO_SUBJECT}"


def forward_subject(subject: str | None) -> str:
    subject = (subject or "").strip()
    if not subject:
        return f"Fwd: {NO_SUBJECT}"
    if _FORWARD_PREFIX_RE.match(subject):
        return subject
    return f"Fwd: {subject}"


def _format_date(value: datetime) -> str:
    return value.strftime("%a, %d %b %Y %H:%M %Z").strip()


def quote_reply(source: Message) -> str:
    """Wrap a message body as quoted history for a reply."""

    who = html.escape(source.from_email)
    return (
        '<div class="inbox-reply-quote">'
        f"<p>On {_format_date(source.sent_at)}, "
        f'<a href="mailto:{who}">{who}</a> wrote:</p>'
        f"<blockquote>{source.body}</blockquote>"
        "</div>"
    )


def quote_forward(source: Message) -> str:
    """Forwarded-message header block (From/Date/Subject/To) plus the body."""

    lines = [
        f"<b>From:</b> {html.escape(source.from_email)}",
        f"<b>Date:</b> {_format_date(source.sent_at)}",
    ]
    if source.subject:
        lines.append(f"<b>Subject:</b> {html.escape(source.subject)}")
    lines.append(f"<b>To:</b> {html.escape(source.to_email)}")

    header = "<br>".join(lines)
    return (
        '<div class="inbox-forward">'
        f"<p>{FORWARD_MARKER}<br>{header}</p>"
        f"<div>{source.body}</div>"
        "</div>"
    )


def _carried_attachments(source: Message) -> list[AttachmentDescriptor]:
    return [
        AttachmentDescriptor(
            filename=a.filename,
            mime_type=a.mime_type,
            size=a.size,
            storage_locator=a.url or a.storage_locator,
            content_id=a.content_id,
        )
        for a in source.attachments
    ]


def compose(
    mode: ComposeMode | str,
    source: Message | None,
    own_email: str,
    *,
    participants: list[str] | None = None,
    counterparty: str | None = None,
    overrides: ComposeOverrides | None = None,
) -> ComposeDraft:
    """Derive a draft for one of the four compose modes.

    Args:
        mode: reply, reply-all, forward or new.
        source: Message being answered or forwarded. Required except for `new`.
        own_email: Address of the account composing the draft.
        participants: Conversation participant set, used by reply-all on a
            received message. Defaults to the participants of `source` alone.
        counterparty: Recipient of a `new` draft.
        overrides: User-supplied values applied last.

    Raises:
        ValueError: If a reply or forward is requested without a source message.
    """

    mode = ComposeMode(mode)
    own = normalize_email(own_email)
    overrides = overrides or ComposeOverrides()

    to: list[str] = []
    cc: list[str] = []
    subject = ""
    quoted = ""
    attachments: list[AttachmentDescriptor] = []
    in_reply_to: str | None = None

    if mode is ComposeMode.NEW:
        target = counterparty
        if target is None and source is not None:
            target = (reply_targets(source, own) or [None])[0]
        to = [normalize_email(target)] if target else []
        subject = source.subject if source is not None else ""
    else:
        if source is None:
            raise ValueError(f"Compose mode {mode.value!r} needs a source message")
        in_reply_to = source.stable_id

        if mode is ComposeMode.REPLY:
            to = reply_targets(source, own)
            subject = reply_subject(source.subject)
            quoted = quote_reply(source)

        elif mode is ComposeMode.REPLY_ALL:
            to = reply_targets(source, own)
            if source.direction is Direction.SENT:
                # Keep the original fan-out of our own message.
                cc = [a for a in split_addresses(source.cc_email) if a != own and a not in to]
            else:
                pool = participants if participants is not None else participant_set([source], own)
                cc = [a for a in (normalize_email(p) for p in pool) if a and a != own and a not in to]
            subject = reply_subject(source.subject)
            quoted = quote_reply(source)

        else:
            subject = forward_subject(source.subject)
            quoted = quote_forward(source)
            attachments = _carried_attachments(source)

    if overrides.to is not None:
        to = split_addresses(overrides.to)
    if overrides.cc is not None:
        cc = [a for a in split_addresses(overrides.cc) if a not in to]
    if overrides.subject is not None:
        subject = overrides.subject
    if overrides.attachments is not None:
        attachments = [*attachments, *overrides.attachments]

    return ComposeDraft(
        mode=mode,
        from_email=own,
        to=to,
        cc=cc,
        subject=subject,
        body_html=overrides.body_html or "",
        quoted_body_html=quoted,
        attachments=attachments,
        in_reply_to=in_reply_to,
    )
