"""Relational store for accounts, conversations and messages."""

from .repository import InboxRepository, NewMessageRow, ReadChange, StoredMessage, create_store_engine
from .schema import ensure_schema, metadata

__all__ = [
    "InboxRepository",
    "NewMessageRow",
    "ReadChange",
    "StoredMessage",
    "create_store_engine",
    "ensure_schema",
    "metadata",
]
