"""SQLAlchemy-backed store for accounts, conversations and messages.

Postgres is the production backend; SQLite works for development and tests.
All conversation counters are changed with single SQL statements inside the
same transaction as the message write (atomic increments and recounts), never
by reading a value in Python and writing it back. Every transaction that
recounts a conversation first takes its row lock with SELECT ... FOR UPDATE, so
under READ COMMITTED the recount sees the writes of whoever held it before.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog
from sqlalchemy import and_, case, create_engine, delete, event, func, insert, or_, select, text, update
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from inbox_engine.exceptions import AccountNotFoundError, MessageNotFoundError
from inbox_engine.models import (
    Account,
    Attachment,
    AttachmentKind,
    Conversation,
    ConversationSummary,
    Direction,
    FolderTab,
    Message,
)
from inbox_engine.store.schema import account, attachment, conversation, ensure_schema, message

logger = structlog.get_logger()


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def create_store_engine(database_url: str) -> Engine:
    """Create an engine suited to being called from worker threads."""

    if not database_url.startswith("sqlite"):
        return create_engine(database_url, pool_pre_ping=True)

    kwargs: dict = {"connect_args": {"check_same_thread": False, "timeout": 30}}
    if database_url in {"sqlite://", "sqlite:///:memory:"}:
        kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, **kwargs)

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_conn, _record) -> None:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.close()

    return engine


@dataclass(frozen=True)
class NewMessageRow:
    """Fully derived values of a message about to be stored."""

    account_id: int
    counterparty_email: str
    direction: Direction
    from_email: str
    to_email: str
    cc_email: str
    subject: str
    body: str
    snippet: str
    sent_at: datetime
    is_read: bool
    is_trash: bool
    is_spam: bool
    dedupe_key: str
    stable_id: str | None = None
    in_reply_to: str | None = None
    attachments: list[Attachment] = field(default_factory=list)


@dataclass(frozen=True)
class StoredMessage:
    """Result of a store attempt; `created` is False for a duplicate."""

    message_id: int
    conversation_id: int
    created: bool


@dataclass(frozen=True)
class ReadChange:
    """Outcome of a mark-read statement."""

    account_id: int
    conversation_id: int
    counterparty_email: str
    message_ids: list[int]
    conversation_unread: int

    @property
    def changed(self) -> bool:
        return bool(self.message_ids)


def _tab_clause(tab: FolderTab):
    """Messages that make a conversation show up in a tab's list."""

    if tab is FolderTab.SENT:
        return and_(
            message.c.direction == Direction.SENT.value,
            message.c.is_trash.is_(False),
            message.c.is_spam.is_(False),
        )
    if tab is FolderTab.SPAM:
        return and_(message.c.is_spam.is_(True), message.c.is_trash.is_(False))
    if tab is FolderTab.TRASH:
        return and_(message.c.is_trash.is_(True), message.c.hide_trash.is_(False))
    return and_(message.c.is_trash.is_(False), message.c.is_spam.is_(False))


def _unread_count_subquery(conversation_id):
    return (
        select(func.count(message.c.id))
        .where(
            message.c.conversation_id == conversation_id,
            message.c.direction == Direction.RECEIVED.value,
            message.c.is_read.is_(False),
        )
        .scalar_subquery()
    )


def _conversation_lock(conversation_id):
    """Row lock taken before a conversation's counters are recomputed."""

    return (
        select(conversation.c.id, conversation.c.account_id, conversation.c.counterparty_email)
        .where(conversation.c.id == conversation_id)
        .with_for_update()
    )


def _like_pattern(term: str) -> str:
    escaped = term.strip().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


_FOLDER_FLAGS = frozenset({"is_trash", "is_spam", "hide_trash"})


def _check_flags(flags: dict) -> None:
    unknown = set(flags) - _FOLDER_FLAGS
    if unknown:
        raise ValueError(f"Unsupported folder flags: {sorted(unknown)}")


class InboxRepository:
    """Repository for storing and querying mailbox conversations."""

    def __init__(self, engine: Engine) -> None:
        """Create a repository.

        Args:
            engine: SQLAlchemy engine bound to the store.
        """

        self._engine = engine

    @classmethod
    def from_url(cls, database_url: str) -> InboxRepository:
        return cls(create_store_engine(database_url))

    @property
    def engine(self) -> Engine:
        return self._engine

    def initialize(self) -> None:
        """Create the schema if it does not exist yet."""

        ensure_schema(self._engine)
        logger.info("inbox_store_schema_ensured", dialect=self._engine.dialect.name)

    def ping(self) -> None:
        """Verify the store is reachable."""

        with self._engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    def dispose(self) -> None:
        self._engine.dispose()

    def _insert(self, table):
        if self._engine.dialect.name == "postgresql":
            from sqlalchemy.dialects.postgresql import insert as dialect_insert
        else:
            from sqlalchemy.dialects.sqlite import insert as dialect_insert
        return dialect_insert(table)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def link_account(self, email: str, display_name: str | None = None) -> Account:
        """Create an account for a mailbox (idempotent on the address)."""

        normalized = email.strip().lower()
        with self._engine.begin() as conn:
            conn.execute(
                self._insert(account)
                .values(email=normalized, display_name=display_name)
                .on_conflict_do_nothing(index_elements=["email"])
            )
            row = conn.execute(select(account).where(account.c.email == normalized)).mappings().one()
        return Account(id=row["id"], email=row["email"], display_name=row["display_name"])

    def get_account(self, account_id: int) -> Account:
        with self._engine.connect() as conn:
            row = conn.execute(select(account).where(account.c.id == account_id)).mappings().one_or_none()
        if row is None:
            raise AccountNotFoundError(f"Account {account_id} does not exist")
        return Account(id=row["id"], email=row["email"], display_name=row["display_name"])

    def find_account_by_email(self, email: str) -> Account | None:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(account).where(account.c.email == email.strip().lower())
            ).mappings().one_or_none()
        return None if row is None else Account(id=row["id"], email=row["email"], display_name=row["display_name"])

    def list_accounts(self) -> list[Account]:
        with self._engine.connect() as conn:
            rows = conn.execute(select(account).order_by(account.c.id)).mappings().all()
        return [Account(id=r["id"], email=r["email"], display_name=r["display_name"]) for r in rows]

    def unlink_account(self, account_id: int) -> bool:
        """Delete an account together with its conversations and messages."""

        with self._engine.begin() as conn:
            res = conn.execute(delete(account).where(account.c.id == account_id))
        return (res.rowcount or 0) > 0

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def find_conversation(self, account_id: int, counterparty_email: str) -> Conversation | None:
        q = select(conversation).where(
            conversation.c.account_id == account_id,
            conversation.c.counterparty_email == counterparty_email.strip().lower(),
        )
        with self._engine.connect() as conn:
            row = conn.execute(q).mappings().one_or_none()
        return None if row is None else self._row_to_conversation(row)

    def get_conversation(self, conversation_id: int) -> Conversation | None:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(conversation).where(conversation.c.id == conversation_id)
            ).mappings().one_or_none()
        return None if row is None else self._row_to_conversation(row)

    def list_conversation_summaries(
        self,
        account_id: int,
        tab: FolderTab,
        *,
        limit: int,
        unread_only: bool = False,
        search: str | None = None,
        snippet_length: int = 120,
    ) -> list[ConversationSummary]:
        """Conversations with at least one message visible in `tab`.

        Ordered by last activity, newest first. The snippet and last direction
        come from the newest message visible in the tab.
        """

        visible = _tab_clause(tab)
        q = select(conversation).where(
            conversation.c.account_id == account_id,
            select(message.c.id)
            .where(message.c.conversation_id == conversation.c.id, visible)
            .exists(),
        )
        if unread_only:
            q = q.where(conversation.c.unread_count > 0)
        if search:
            pattern = _like_pattern(search)
            q = q.where(
                or_(
                    conversation.c.counterparty_email.ilike(pattern, escape="\\"),
                    conversation.c.subject.ilike(pattern, escape="\\"),
                )
            )
        q = q.order_by(conversation.c.last_message_at.desc(), conversation.c.id.desc()).limit(limit)

        with self._engine.connect() as conn:
            conv_rows = conn.execute(q).mappings().all()
            if not conv_rows:
                return []

            ranked = (
                select(
                    message.c.conversation_id,
                    message.c.snippet,
                    message.c.direction,
                    func.row_number()
                    .over(
                        partition_by=message.c.conversation_id,
                        order_by=(message.c.sent_at.desc(), message.c.id.desc()),
                    )
                    .label("rn"),
                )
                .where(message.c.conversation_id.in_([r["id"] for r in conv_rows]), visible)
                .subquery()
            )
            latest = {
                r["conversation_id"]: r
                for r in conn.execute(select(ranked).where(ranked.c.rn == 1)).mappings().all()
            }

        summaries: list[ConversationSummary] = []
        for r in conv_rows:
            newest = latest.get(r["id"])
            summaries.append(
                ConversationSummary(
                    conversation_id=r["id"],
                    counterparty_email=r["counterparty_email"],
                    subject=r["subject"] or "(No Subject)",
                    unread_count=int(r["unread_count"] or 0),
                    message_count=int(r["message_count"] or 0),
                    last_message_at=_utc(r["last_message_at"]),
                    snippet=(newest["snippet"] if newest else "")[:snippet_length],
                    last_direction=Direction(newest["direction"]) if newest else None,
                )
            )
        return summaries

    def set_conversation_flags(
        self,
        conversation_id: int,
        *,
        trashed_only: bool = False,
        **flags: bool,
    ) -> int:
        """Set folder flags on the messages of a conversation.

        Only `is_trash`, `is_spam` and `hide_trash` may be changed this way. With
        `trashed_only` the update is limited to messages currently in trash.
        """

        _check_flags(flags)
        if not flags:
            return 0

        q = update(message).where(message.c.conversation_id == conversation_id)
        if trashed_only:
            q = q.where(message.c.is_trash.is_(True))
        with self._engine.begin() as conn:
            res = conn.execute(q.values(**flags))
        return int(res.rowcount or 0)

    def set_message_flags(self, message_id: int, *, trashed_only: bool = False, **flags: bool) -> int:
        """Set folder flags on a single message; same rules as `set_conversation_flags`.

        Raises:
            MessageNotFoundError: If the message does not exist.
        """

        _check_flags(flags)
        q = update(message).where(message.c.id == message_id)
        if trashed_only:
            q = q.where(message.c.is_trash.is_(True))
        with self._engine.begin() as conn:
            exists = conn.execute(select(message.c.id).where(message.c.id == message_id)).scalar_one_or_none()
            if exists is None:
                raise MessageNotFoundError(f"Message {message_id} does not exist")
            if not flags:
                return 0
            res = conn.execute(q.values(**flags))
        return int(res.rowcount or 0)

    def delete_message(self, message_id: int) -> Conversation | None:
        """Permanently remove a message and its attachments.

        The conversation's counters and last activity are recomputed from the
        remaining messages. A conversation left without messages is removed and
        None is returned; otherwise the updated conversation is.

        Raises:
            MessageNotFoundError: If the message does not exist.
        """

        with self._engine.begin() as conn:
            conversation_id = conn.execute(
                select(message.c.conversation_id).where(message.c.id == message_id)
            ).scalar_one_or_none()
            if conversation_id is None:
                raise MessageNotFoundError(f"Message {message_id} does not exist")
            conn.execute(_conversation_lock(conversation_id)).one()

            res = conn.execute(delete(message).where(message.c.id == message_id))
            if (res.rowcount or 0) == 0:
                raise MessageNotFoundError(f"Message {message_id} does not exist")

            remaining = conn.execute(
                select(func.count(message.c.id), func.max(message.c.sent_at)).where(
                    message.c.conversation_id == conversation_id
                )
            ).one()
            if not remaining[0]:
                conn.execute(delete(conversation).where(conversation.c.id == conversation_id))
                logger.info("conversation_emptied", conversation_id=conversation_id, message_id=message_id)
                return None

            conn.execute(
                update(conversation)
                .where(conversation.c.id == conversation_id)
                .values(
                    message_count=int(remaining[0]),
                    last_message_at=remaining[1],
                    unread_count=_unread_count_subquery(conversation_id),
                )
            )
            row = conn.execute(
                select(conversation).where(conversation.c.id == conversation_id)
            ).mappings().one()
        return self._row_to_conversation(row)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def find_by_dedupe_key(self, account_id: int, dedupe_key: str) -> StoredMessage | None:
        q = select(message.c.id, message.c.conversation_id).where(
            message.c.account_id == account_id,
            message.c.dedupe_key == dedupe_key,
        )
        with self._engine.connect() as conn:
            row = conn.execute(q).one_or_none()
        return None if row is None else StoredMessage(row.id, row.conversation_id, False)

    def store_message(self, row: NewMessageRow) -> StoredMessage:
        """Insert a message into its conversation, creating the conversation if needed.

        Duplicates (same account and dedupe key) are absorbed: the existing row is
        returned with `created=False` and no counter changes.
        """

        existing = self.find_by_dedupe_key(row.account_id, row.dedupe_key)
        if existing is not None:
            return existing

        sent_at = _utc(row.sent_at)

        with self._engine.begin() as conn:
            conn.execute(
                self._insert(conversation)
                .values(
                    account_id=row.account_id,
                    counterparty_email=row.counterparty_email,
                    subject=row.subject or "",
                    last_message_at=sent_at,
                    message_count=0,
                    unread_count=0,
                )
                .on_conflict_do_nothing(index_elements=["account_id", "counterparty_email"])
            )
            conversation_id = conn.execute(
                select(conversation.c.id).where(
                    conversation.c.account_id == row.account_id,
                    conversation.c.counterparty_email == row.counterparty_email,
                )
            ).scalar_one()
            conn.execute(_conversation_lock(conversation_id)).one()

            res = conn.execute(
                self._insert(message)
                .values(
                    conversation_id=conversation_id,
                    account_id=row.account_id,
                    direction=row.direction.value,
                    from_email=row.from_email,
                    to_email=row.to_email,
                    cc_email=row.cc_email,
                    subject=row.subject,
                    body=row.body,
                    snippet=row.snippet,
                    sent_at=sent_at,
                    is_read=row.is_read,
                    is_trash=row.is_trash,
                    is_spam=row.is_spam,
                    hide_trash=False,
                    stable_id=row.stable_id,
                    dedupe_key=row.dedupe_key,
                    in_reply_to=row.in_reply_to,
                )
                .on_conflict_do_nothing(index_elements=["account_id", "dedupe_key"])
            )
            created = (res.rowcount or 0) == 1

            stored = conn.execute(
                select(message.c.id, message.c.conversation_id).where(
                    message.c.account_id == row.account_id,
                    message.c.dedupe_key == row.dedupe_key,
                )
            ).one()

            if not created:
                # Lost a race against another writer of the same physical email.
                return StoredMessage(stored.id, stored.conversation_id, False)

            if row.attachments:
                conn.execute(
                    insert(attachment),
                    [
                        {
                            "message_id": stored.id,
                            "filename": a.filename,
                            "mime_type": a.mime_type,
                            "size": a.size,
                            "storage_locator": a.storage_locator,
                            "content_id": a.content_id,
                            "kind": a.kind.value,
                        }
                        for a in row.attachments
                    ],
                )

            conn.execute(
                update(conversation)
                .where(conversation.c.id == conversation_id)
                .values(
                    message_count=conversation.c.message_count + 1,
                    last_message_at=case(
                        (conversation.c.last_message_at < sent_at, sent_at),
                        else_=conversation.c.last_message_at,
                    ),
                    unread_count=_unread_count_subquery(conversation_id),
                )
            )

        return StoredMessage(stored.id, stored.conversation_id, True)

    def get_message(self, message_id: int) -> Message:
        with self._engine.connect() as conn:
            row = conn.execute(select(message).where(message.c.id == message_id)).mappings().one_or_none()
            if row is None:
                raise MessageNotFoundError(f"Message {message_id} does not exist")
            attachments = self._load_attachments(conn, [message_id])
        return self._row_to_message(row, attachments.get(message_id, []))

    def list_conversation_messages(self, conversation_id: int) -> list[Message]:
        """Every message of a conversation, in every folder, oldest first."""

        q = (
            select(message)
            .where(message.c.conversation_id == conversation_id)
            .order_by(message.c.sent_at.asc(), message.c.id.asc())
        )
        with self._engine.connect() as conn:
            rows = conn.execute(q).mappings().all()
            attachments = self._load_attachments(conn, [r["id"] for r in rows])
        return [self._row_to_message(r, attachments.get(r["id"], [])) for r in rows]

    def search_messages(self, account_id: int, query: str, *, limit: int = 50) -> list[Message]:
        """Case-insensitive search over addresses and subject, newest first."""

        pattern = _like_pattern(query)
        q = (
            select(message)
            .where(
                message.c.account_id == account_id,
                message.c.hide_trash.is_(False),
                or_(
                    message.c.from_email.ilike(pattern, escape="\\"),
                    message.c.to_email.ilike(pattern, escape="\\"),
                    message.c.cc_email.ilike(pattern, escape="\\"),
                    message.c.subject.ilike(pattern, escape="\\"),
                ),
            )
            .order_by(message.c.sent_at.desc(), message.c.id.desc())
            .limit(limit)
        )
        with self._engine.connect() as conn:
            rows = conn.execute(q).mappings().all()
            attachments = self._load_attachments(conn, [r["id"] for r in rows])
        return [self._row_to_message(r, attachments.get(r["id"], [])) for r in rows]

    # ------------------------------------------------------------------
    # Read state
    # ------------------------------------------------------------------

    def mark_message_read(self, message_id: int) -> ReadChange:
        """Flip one message to read if it is not already.

        The conditional UPDATE is the only arbiter: of two concurrent callers
        exactly one sees a changed row.
        """

        with self._engine.begin() as conn:
            conversation_id = conn.execute(
                select(message.c.conversation_id).where(message.c.id == message_id)
            ).scalar_one_or_none()
            if conversation_id is None:
                raise MessageNotFoundError(f"Message {message_id} does not exist")
            ctx = conn.execute(_conversation_lock(conversation_id)).one()

            res = conn.execute(
                update(message)
                .where(message.c.id == message_id, message.c.is_read.is_(False))
                .values(is_read=True)
            )
            changed = (res.rowcount or 0) == 1

            if changed:
                self._recount_unread(conn, conversation_id)
            unread = conn.execute(
                select(conversation.c.unread_count).where(conversation.c.id == conversation_id)
            ).scalar_one()

        return ReadChange(
            account_id=ctx.account_id,
            conversation_id=conversation_id,
            counterparty_email=ctx.counterparty_email,
            message_ids=[message_id] if changed else [],
            conversation_unread=int(unread),
        )

    def mark_conversation_read(self, conversation_id: int) -> ReadChange:
        """Mark every received unread message of a conversation as read."""

        with self._engine.begin() as conn:
            conv = conn.execute(_conversation_lock(conversation_id)).one()
            res = conn.execute(
                update(message)
                .where(
                    message.c.conversation_id == conversation_id,
                    message.c.direction == Direction.RECEIVED.value,
                    message.c.is_read.is_(False),
                )
                .values(is_read=True)
                .returning(message.c.id)
            )
            changed_ids = sorted(r[0] for r in res)

            if changed_ids:
                self._recount_unread(conn, conversation_id)
            unread = conn.execute(
                select(conversation.c.unread_count).where(conversation.c.id == conversation_id)
            ).scalar_one()

        return ReadChange(
            account_id=conv.account_id,
            conversation_id=conversation_id,
            counterparty_email=conv.counterparty_email,
            message_ids=changed_ids,
            conversation_unread=int(unread),
        )

    def count_unread(self, account_id: int) -> tuple[int, int]:
        """Return (inbox_unread, spam_unread) for an account, counted live."""

        q = text(
            """
            SELECT
                COALESCE(SUM(CASE WHEN is_spam THEN 0 ELSE 1 END), 0),
                COALESCE(SUM(CASE WHEN is_spam THEN 1 ELSE 0 END), 0)
            FROM message
            WHERE account_id = :account_id
              AND direction = 'received'
              AND is_read = :is_read
              AND is_trash = :is_trash
            """
        )
        with self._engine.connect() as conn:
            inbox, spam = conn.execute(
                q, {"account_id": account_id, "is_read": False, "is_trash": False}
            ).one()
        return int(inbox or 0), int(spam or 0)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _recount_unread(self, conn, conversation_id: int) -> None:
        conn.execute(
            update(conversation)
            .where(conversation.c.id == conversation_id)
            .values(unread_count=_unread_count_subquery(conversation_id))
        )

    def _load_attachments(self, conn, message_ids: Iterable[int]) -> dict[int, list[Attachment]]:
        ids = list(message_ids)
        if not ids:
            return {}
        rows = conn.execute(
            select(attachment).where(attachment.c.message_id.in_(ids)).order_by(attachment.c.id)
        ).mappings().all()

        grouped: dict[int, list[Attachment]] = {}
        for r in rows:
            grouped.setdefault(r["message_id"], []).append(
                Attachment(
                    id=r["id"],
                    filename=r["filename"],
                    mime_type=r["mime_type"],
                    size=int(r["size"] or 0),
                    storage_locator=r["storage_locator"] or "",
                    content_id=r["content_id"],
                    kind=AttachmentKind(r["kind"]),
                )
            )
        return grouped

    def _row_to_conversation(self, row) -> Conversation:
        return Conversation(
            id=row["id"],
            account_id=row["account_id"],
            counterparty_email=row["counterparty_email"],
            subject=row["subject"] or "",
            last_message_at=_utc(row["last_message_at"]),
            message_count=int(row["message_count"] or 0),
            unread_count=int(row["unread_count"] or 0),
        )

    def _row_to_message(self, row, attachments: list[Attachment]) -> Message:
        return Message(
            id=row["id"],
            conversation_id=row["conversation_id"],
            account_id=row["account_id"],
            direction=Direction(row["direction"]),
            from_email=row["from_email"],
            to_email=row["to_email"] or "",
            cc_email=row["cc_email"] or "",
            subject=row["subject"] or "",
            body=row["body"] or "",
            snippet=row["snippet"] or "",
            sent_at=row["sent_at"],
            is_read=bool(row["is_read"]),
            is_trash=bool(row["is_trash"]),
            is_spam=bool(row["is_spam"]),
            hide_trash=bool(row["hide_trash"]),
            stable_id=row["stable_id"],
            dedupe_key=row["dedupe_key"],
            in_reply_to=row["in_reply_to"],
            attachments=attachments,
        )
