"""Read/unread state tracking.

Unread counts are derived from message rows. The conditional UPDATE in the store
decides whether a mark-read call changed anything; only a changing call
emits events. Counts are read from the store on every call.
"""

from __future__ import annotations

import asyncio

import structlog

from inbox_engine.addressing import normalize_email
from inbox_engine.exceptions import ConversationNotFoundError
from inbox_engine.models import UnreadBreakdown
from inbox_engine.realtime.publisher import EventPublisher
from inbox_engine.store import InboxRepository, ReadChange

logger = structlog.get_logger()


class ReadStateTracker:
    """Marks messages read and serves live per-account unread counts."""

    def __init__(
        self,
        repository: InboxRepository,
        publisher: EventPublisher | None = None,
    ) -> None:
        self._repository = repository
        self._publisher = publisher

    async def mark_read(self, message_id: int) -> ReadChange:
        """Mark one message read. A second call for the same message is a no-op.

        Raises:
            MessageNotFoundError: If the message does not exist.
        """

        change = await asyncio.to_thread(self._repository.mark_message_read, message_id)
        if not change.changed:
            logger.debug("mark_read_noop", message_id=message_id)
            return change

        logger.info(
            "message_marked_read",
            message_id=message_id,
            account_id=change.account_id,
            conversation_unread=change.conversation_unread,
        )
        await self._announce(change, conversation_level=False)
        return change

    async def mark_conversation_read(self, account_id: int, counterparty_email: str) -> ReadChange:
        """Mark every received message of a conversation read.

        Raises:
            ConversationNotFoundError: If the account has no conversation with the counterparty.
        """

        counterparty = normalize_email(counterparty_email)
        conv = await asyncio.to_thread(self._repository.find_conversation, account_id, counterparty)
        if conv is None:
            raise ConversationNotFoundError(
                f"No conversation between account {account_id} and {counterparty}"
            )

        change = await asyncio.to_thread(self._repository.mark_conversation_read, conv.id)
        if not change.changed:
            logger.debug("mark_conversation_read_noop", conversation_id=conv.id)
            return change

        logger.info(
            "conversation_marked_read",
            conversation_id=conv.id,
            account_id=account_id,
            messages=len(change.message_ids),
        )
        await self._announce(change, conversation_level=True)
        return change

    async def get_unread_count(self, account_id: int) -> int:
        breakdown = await self.get_unread_breakdown(account_id)
        return breakdown.total

    async def get_unread_breakdown(self, account_id: int) -> UnreadBreakdown:
        """Unread counts for an account: inbox, spam and their total.

        Raises:
            AccountNotFoundError: If the account does not exist.
        """

        await asyncio.to_thread(self._repository.get_account, account_id)
        inbox, spam = await asyncio.to_thread(self._repository.count_unread, account_id)
        return UnreadBreakdown(account_id=account_id, inbox=inbox, spam=spam, total=inbox + spam)

    async def refresh(self, account_id: int) -> UnreadBreakdown:
        """Recount and announce the new total."""

        breakdown = await self.get_unread_breakdown(account_id)
        if self._publisher is not None:
            await self._publisher.unread_count_changed(breakdown)
        return breakdown

    async def _announce(self, change: ReadChange, *, conversation_level: bool) -> None:
        if self._publisher is not None:
            await self._publisher.read_state_changed(
                account_id=change.account_id,
                conversation_id=change.conversation_id,
                counterparty_email=change.counterparty_email,
                message_ids=change.message_ids,
                unread_count=change.conversation_unread,
            )
            if conversation_level:
                conv = await asyncio.to_thread(self._repository.get_conversation, change.conversation_id)
                if conv is not None:
                    await self._publisher.conversation_updated(conv)
        await self.refresh(change.account_id)
