"""Conversation keying and message de-duplication.

A conversation is identified by (account, counterparty). The same physical email
may be reported by a polling sync and by a push path, possibly from different
processes; the store's unique keys make both paths converge on one row.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping

import structlog
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from inbox_engine.addressing import counterparty_for, join_addresses, normalize_email, split_addresses
from inbox_engine.attachments import AttachmentResolver
from inbox_engine.dedupe import build_message_dedupe_key
from inbox_engine.engine.read_state import ReadStateTracker
from inbox_engine.exceptions import InboxEngineError, MalformedIngestionError
from inbox_engine.html import make_snippet, sanitize_body
from inbox_engine.models import Account, BatchResult, Direction, IngestResult, RawMessage
from inbox_engine.realtime.publisher import EventPublisher
from inbox_engine.store import InboxRepository, NewMessageRow, StoredMessage

logger = structlog.get_logger()

SENT_FOLDERS = {"sent", "sent items", "sent mail", "sent messages"}

_MAX_ERROR_SAMPLES = 10


def derive_direction(raw: RawMessage, own_email: str) -> Direction:
    """Direction of a raw record; explicit values win over the folder and sender."""

    if raw.direction is not None:
        return raw.direction
    if raw.folder.strip().lower() in SENT_FOLDERS:
        return Direction.SENT
    if normalize_email(raw.from_email) == normalize_email(own_email):
        return Direction.SENT
    return Direction.RECEIVED


class ConversationKeyer:
    """Assigns inbound and outbound messages to conversations and stores them."""

    def __init__(
        self,
        repository: InboxRepository,
        attachments: AttachmentResolver,
        *,
        read_state: ReadStateTracker | None = None,
        publisher: EventPublisher | None = None,
        snippet_length: int = 120,
    ) -> None:
        self._repository = repository
        self._attachments = attachments
        self._read_state = read_state
        self._publisher = publisher
        self._snippet_length = snippet_length

    def prepare(self, account: Account, raw: RawMessage) -> NewMessageRow:
        """Derive everything stored for a raw record.

        Raises:
            MalformedIngestionError: If no counterparty can be derived.
        """

        direction = derive_direction(raw, account.email)
        counterparty = counterparty_for(raw.from_email, raw.to_email, account.email, direction)
        if not counterparty:
            raise MalformedIngestionError(
                f"No counterparty derivable for {direction.value} message "
                f"(from={raw.from_email!r}, to={raw.to_email!r})"
            )

        from_email = normalize_email(raw.from_email)
        if not from_email and direction is Direction.SENT:
            from_email = account.email
        subject = raw.subject.strip()
        body = sanitize_body(raw.body)

        return NewMessageRow(
            account_id=account.id,
            counterparty_email=counterparty,
            direction=direction,
            from_email=from_email,
            to_email=join_addresses(split_addresses(raw.to_email)),
            cc_email=join_addresses(split_addresses(raw.cc_email)),
            subject=subject,
            body=body,
            snippet=make_snippet(body, self._snippet_length),
            sent_at=raw.sent_at,
            is_read=raw.is_read if raw.is_read is not None else direction is Direction.SENT,
            is_trash=raw.is_trash,
            is_spam=raw.is_spam,
            stable_id=raw.stable_id.strip() if raw.stable_id else None,
            dedupe_key=build_message_dedupe_key(account.id, raw.stable_id, raw.sent_at, from_email, subject),
            in_reply_to=raw.in_reply_to,
            attachments=[self._attachments.prepare(a) for a in raw.attachments],
        )

    async def resolve_conversation(self, account_id: int, raw: RawMessage) -> int:
        """Return the id of the conversation a message belongs to.

        The message is stored as part of resolving, so the conversation is never
        created without the message that caused it. Calling this for an already
        stored message is harmless.
        """

        result = await self.ingest(account_id, raw)
        return result.conversation_id

    async def ingest(self, account_id: int, raw: RawMessage) -> IngestResult:
        """Store one message, absorbing duplicates.

        Raises:
            AccountNotFoundError: If the account does not exist.
            MalformedIngestionError: If no counterparty can be derived.
        """

        account = await asyncio.to_thread(self._repository.get_account, account_id)
        try:
            row = self.prepare(account, raw)
        except MalformedIngestionError as exc:
            logger.warning(
                "malformed_ingestion_rejected",
                account_id=account_id,
                stable_id=raw.stable_id,
                error=str(exc),
            )
            raise

        stored = await asyncio.to_thread(self._repository.store_message, row)
        if not stored.created:
            logger.debug(
                "duplicate_message_absorbed",
                account_id=account_id,
                message_id=stored.message_id,
                stable_id=row.stable_id,
            )
        else:
            logger.info(
                "message_ingested",
                account_id=account_id,
                message_id=stored.message_id,
                conversation_id=stored.conversation_id,
                direction=row.direction.value,
            )
            await self._after_store(account_id, stored, row)

        return IngestResult(
            message_id=stored.message_id,
            conversation_id=stored.conversation_id,
            counterparty_email=row.counterparty_email,
            created=stored.created,
        )

    async def ingest_batch(
        self,
        account_id: int,
        raws: Iterable[RawMessage | Mapping],
    ) -> BatchResult:
        """Ingest records in the order received; bad records are counted, not fatal.

        Raises:
            AccountNotFoundError: If the account does not exist.
        """

        await asyncio.to_thread(self._repository.get_account, account_id)

        result = BatchResult()
        for position, item in enumerate(raws):
            try:
                raw = item if isinstance(item, RawMessage) else RawMessage.model_validate(item)
                outcome = await self.ingest(account_id, raw)
            except (InboxEngineError, ValidationError, SQLAlchemyError) as exc:
                result.failed += 1
                if len(result.error_samples) < _MAX_ERROR_SAMPLES:
                    result.error_samples.append(f"#{position}: {exc}")
                logger.warning(
                    "ingest_batch_item_failed",
                    account_id=account_id,
                    position=position,
                    error=str(exc),
                )
                continue

            result.processed += 1
            if not outcome.created:
                result.duplicates += 1

        logger.info(
            "ingest_batch_complete",
            account_id=account_id,
            processed=result.processed,
            duplicates=result.duplicates,
            failed=result.failed,
        )
        return result

    async def _after_store(self, account_id: int, stored: StoredMessage, row: NewMessageRow) -> None:
        if self._publisher is None:
            return

        message = await asyncio.to_thread(self._repository.get_message, stored.message_id)
        message = message.model_copy(update={"attachments": self._attachments.resolve_all(message.attachments)})
        await self._publisher.new_message(message, row.counterparty_email)

        conv = await asyncio.to_thread(self._repository.get_conversation, stored.conversation_id)
        if conv is not None:
            await self._publisher.conversation_updated(conv, snippet=row.snippet)

        if self._read_state is not None and row.direction is Direction.RECEIVED and not row.is_read:
            await self._read_state.refresh(account_id)
