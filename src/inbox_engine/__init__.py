"""Inbox Engine - multi-account mail conversation engine.

This package groups mail from several connected mailboxes into durable
conversations, tracks read state across folders, derives reply/forward drafts
and pushes changes live to connected UI sessions.
"""

__version__ = "0.1.0"
__author__ = "Trickl"

from inbox_engine.config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__", "__author__"]
