"""Folder actions: trash, restore, permanent delete and spam.

Each action exists for a whole conversation and for a single message. Every
change is followed by a conversation_updated event and a fresh unread count.
"""

from __future__ import annotations

import asyncio

import structlog

from inbox_engine.addressing import normalize_email
from inbox_engine.engine.read_state import ReadStateTracker
from inbox_engine.exceptions import ConversationNotFoundError
from inbox_engine.models import Conversation
from inbox_engine.realtime.publisher import EventPublisher
from inbox_engine.store import InboxRepository

logger = structlog.get_logger()


class ConversationFolders:
    def __init__(
        self,
        repository: InboxRepository,
        read_state: ReadStateTracker,
        publisher: EventPublisher | None = None,
    ) -> None:
        self._repository = repository
        self._read_state = read_state
        self._publisher = publisher

    async def move_to_trash(self, account_id: int, counterparty_email: str) -> int:
        return await self._apply(account_id, counterparty_email, "trash", is_trash=True)

    async def restore(self, account_id: int, counterparty_email: str) -> int:
        return await self._apply(account_id, counterparty_email, "restore", is_trash=False, hide_trash=False)

    async def delete_permanently(self, account_id: int, counterparty_email: str) -> int:
        """Remove a conversation's trashed messages from every view.

        Rows are kept (flagged `hide_trash`) so a later sync of the same mail
        still de-duplicates against them.
        """

        return await self._apply(
            account_id, counterparty_email, "delete_permanently", trashed_only=True, hide_trash=True
        )

    async def mark_spam(self, account_id: int, counterparty_email: str, spam: bool = True) -> int:
        return await self._apply(account_id, counterparty_email, "spam" if spam else "not_spam", is_spam=spam)

    async def trash_message(self, message_id: int) -> int:
        return await self._apply_message(message_id, "trash", is_trash=True)

    async def restore_message(self, message_id: int) -> int:
        return await self._apply_message(message_id, "restore", is_trash=False, hide_trash=False)

    async def hide_message_from_trash(self, message_id: int) -> int:
        """Hide one trashed message from every view, keeping the row for de-duplication."""

        return await self._apply_message(message_id, "hide_trash", trashed_only=True, hide_trash=True)

    async def spam_message(self, message_id: int, spam: bool = True) -> int:
        return await self._apply_message(message_id, "spam" if spam else "not_spam", is_spam=spam)

    async def delete_message(self, message_id: int) -> Conversation | None:
        """Remove one message for good, attachments included.

        Unlike `delete_permanently` the row is gone, so a later sync of the same
        mail stores it again. Returns the updated conversation, or None when the
        message was its last one and the conversation went with it.

        Raises:
            MessageNotFoundError: If the message does not exist.
        """

        msg = await asyncio.to_thread(self._repository.get_message, message_id)
        conv = await asyncio.to_thread(self._repository.delete_message, message_id)
        logger.info(
            "message_deleted",
            message_id=message_id,
            account_id=msg.account_id,
            conversation_id=msg.conversation_id,
            conversation_removed=conv is None,
        )
        if conv is not None and self._publisher is not None:
            await self._publisher.conversation_updated(conv)
        await self._read_state.refresh(msg.account_id)
        return conv

    async def _find(self, account_id: int, counterparty_email: str) -> Conversation:
        counterparty = normalize_email(counterparty_email)
        conv = await asyncio.to_thread(self._repository.find_conversation, account_id, counterparty)
        if conv is None:
            raise ConversationNotFoundError(
                f"No conversation between account {account_id} and {counterparty}"
            )
        return conv

    async def _apply(
        self,
        account_id: int,
        counterparty_email: str,
        action: str,
        *,
        trashed_only: bool = False,
        **flags: bool,
    ) -> int:
        conv = await self._find(account_id, counterparty_email)
        updated = await asyncio.to_thread(
            self._repository.set_conversation_flags, conv.id, trashed_only=trashed_only, **flags
        )
        logger.info(
            "conversation_folder_action",
            action=action,
            account_id=account_id,
            conversation_id=conv.id,
            updated=updated,
        )
        if updated:
            if self._publisher is not None:
                await self._publisher.conversation_updated(conv)
            await self._read_state.refresh(account_id)
        return updated

    async def _apply_message(
        self,
        message_id: int,
        action: str,
        *,
        trashed_only: bool = False,
        **flags: bool,
    ) -> int:
        msg = await asyncio.to_thread(self._repository.get_message, message_id)
        updated = await asyncio.to_thread(
            self._repository.set_message_flags, message_id, trashed_only=trashed_only, **flags
        )
        logger.info(
            "message_folder_action",
            action=action,
            account_id=msg.account_id,
            message_id=message_id,
            updated=updated,
        )
        if updated:
            if self._publisher is not None:
                conv = await asyncio.to_thread(self._repository.get_conversation, msg.conversation_id)
                if conv is not None:
                    await self._publisher.conversation_updated(conv)
            await self._read_state.refresh(msg.account_id)
        return updated
