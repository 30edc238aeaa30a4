"""Thread assembly: one ordered message list per (account, counterparty, tab)."""

from __future__ import annotations

import asyncio

import structlog

from inbox_engine.addressing import normalize_email, participant_set, reply_targets
from inbox_engine.attachments import AttachmentResolver
from inbox_engine.models import ConversationSummary, Direction, FolderTab, Message
from inbox_engine.store import InboxRepository

logger = structlog.get_logger()


def is_visible(message: Message, tab: FolderTab) -> bool:
    """Whether a message shows up in a thread opened from `tab`.

    Threads opened from spam or trash are not filtered, so the
    flagged message keeps its surrounding context.
    """

    if message.hide_trash:
        return False
    if tab is FolderTab.INBOX:
        return not message.is_trash and not message.is_spam
    if tab is FolderTab.SENT:
        return message.direction is Direction.SENT and not message.is_trash and not message.is_spam
    return True


def assemble(messages: list[Message], tab: FolderTab) -> list[Message]:
    """Drop duplicate rows, order by (sent_at, id) and apply the tab filter."""

    seen: set[str] = set()
    unique: list[Message] = []
    for m in sorted(messages, key=lambda m: (m.sent_at, m.id)):
        if m.dedupe_key in seen:
            continue
        seen.add(m.dedupe_key)
        unique.append(m)
    return [m for m in unique if is_visible(m, tab)]


def reply_all_recipients(
    message: Message,
    own_email: str,
    participants: list[str],
) -> tuple[list[str], list[str]]:
    """Split a participant set into reply-all `to` and `cc`.

    `to` is the other endpoint of `message`; `cc` is everybody else except the
    owning account.
    """

    own = normalize_email(own_email)
    to = reply_targets(message, own)
    cc = [p for p in participants if p != own and p not in to]
    return to, cc


class ThreadAssembler:
    """Reads conversations and their threads out of the store."""

    def __init__(
        self,
        repository: InboxRepository,
        attachments: AttachmentResolver | None = None,
        *,
        snippet_length: int = 120,
    ) -> None:
        self._repository = repository
        self._attachments = attachments
        self._snippet_length = snippet_length

    async def get_thread(
        self,
        account_id: int,
        counterparty_email: str,
        tab: FolderTab = FolderTab.INBOX,
    ) -> list[Message]:
        """Ordered messages exchanged with a counterparty, filtered by tab.

        An unknown counterparty yields an empty thread. Attachment URLs are
        resolved and inline `cid:` images point at them.
        """

        counterparty = normalize_email(counterparty_email)
        conv = await asyncio.to_thread(self._repository.find_conversation, account_id, counterparty)
        if conv is None:
            return []

        messages = await asyncio.to_thread(self._repository.list_conversation_messages, conv.id)
        thread = assemble(messages, tab)
        logger.debug(
            "thread_assembled",
            account_id=account_id,
            conversation_id=conv.id,
            tab=tab.value,
            total=len(messages),
            visible=len(thread),
        )
        return [self._resolve(m) for m in thread]

    async def participants(self, account_id: int, counterparty_email: str) -> list[str]:
        """All addresses seen in a conversation, minus the owning account."""

        account = await asyncio.to_thread(self._repository.get_account, account_id)
        counterparty = normalize_email(counterparty_email)
        conv = await asyncio.to_thread(self._repository.find_conversation, account_id, counterparty)
        if conv is None:
            return [counterparty]
        messages = await asyncio.to_thread(self._repository.list_conversation_messages, conv.id)
        return participant_set([m for m in messages if not m.hide_trash], account.email)

    async def list_conversations(
        self,
        account_id: int,
        tab: FolderTab = FolderTab.INBOX,
        *,
        limit: int = 50,
        unread_only: bool = False,
        search: str | None = None,
    ) -> list[ConversationSummary]:
        await asyncio.to_thread(self._repository.get_account, account_id)
        return await asyncio.to_thread(
            self._repository.list_conversation_summaries,
            account_id,
            tab,
            limit=limit,
            unread_only=unread_only,
            search=search,
            snippet_length=self._snippet_length,
        )

    def _resolve(self, message: Message) -> Message:
        if self._attachments is None or not message.attachments:
            return message
        attachments = self._attachments.resolve_all(message.attachments)
        body = self._attachments.rewrite_inline_images(message.body, attachments)
        return message.model_copy(update={"attachments": attachments, "body": body})
