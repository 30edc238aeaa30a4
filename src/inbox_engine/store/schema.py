"""Store schema for accounts, conversations, messages and attachments.

The unique constraints carry the engine's invariants: one conversation per
(account, counterparty) and one message row per (account, dedupe key). Both are
what makes concurrent ingestion from several processes safe.
"""

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
)

metadata = MetaData()

account = Table(
    "account",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("display_name", String(255)),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)

conversation = Table(
    "conversation",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, ForeignKey("account.id", ondelete="CASCADE"), nullable=False),
    Column("counterparty_email", String(320), nullable=False),
    Column("subject", Text, nullable=False, default=""),
    Column("last_message_at", DateTime(timezone=True), nullable=False),
    Column("message_count", Integer, nullable=False, default=0),
    Column("unread_count", Integer, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    UniqueConstraint("account_id", "counterparty_email", name="uq_conversation_account_counterparty"),
    Index("idx_conversation_account_last", "account_id", "last_message_at"),
)

message = Table(
    "message",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "conversation_id",
        Integer,
        ForeignKey("conversation.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("account_id", Integer, ForeignKey("account.id", ondelete="CASCADE"), nullable=False),
    Column("direction", String(16), nullable=False),
    Column("from_email", String(320), nullable=False),
    Column("to_email", Text, nullable=False, default=""),
    Column("cc_email", Text, nullable=False, default=""),
    Column("subject", Text, nullable=False, default=""),
    Column("body", Text, nullable=False, default=""),
    Column("snippet", Text, nullable=False, default=""),
    Column("sent_at", DateTime(timezone=True), nullable=False),
    Column("is_read", Boolean, nullable=False, default=False),
    Column("is_trash", Boolean, nullable=False, default=False),
    Column("is_spam", Boolean, nullable=False, default=False),
    # Permanently removed from the trash view; the row itself is kept.
    Column("hide_trash", Boolean, nullable=False, default=False),
    Column("stable_id", String(998)),
    Column("dedupe_key", String(64), nullable=False),
    Column("in_reply_to", String(998)),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    UniqueConstraint("account_id", "dedupe_key", name="uq_message_account_dedupe"),
    Index("idx_message_conversation_sent", "conversation_id", "sent_at"),
    Index("idx_message_account_unread", "account_id", "is_read"),
)

attachment = Table(
    "attachment",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("message_id", Integer, ForeignKey("message.id", ondelete="CASCADE"), nullable=False),
    Column("filename", Text, nullable=False),
    Column("mime_type", String(255), nullable=False),
    Column("size", Integer, nullable=False, default=0),
    Column("storage_locator", Text, nullable=False, default=""),
    Column("content_id", String(998)),
    Column("kind", String(16), nullable=False),
    Index("idx_attachment_message", "message_id"),
)


def ensure_schema(engine) -> None:
    """Ensure required tables exist (idempotent).

    Args:
        engine: SQLAlchemy engine bound to the store.
    """

    metadata.create_all(engine)
