"""Conversation engine: keying, threads, read state, compose and send."""

from .composer import compose, forward_subject, reply_subject
from .folders import ConversationFolders
from .keying import ConversationKeyer, derive_direction
from .read_state import ReadStateTracker
from .sender import MailDeliveryService, SendService, UnconfiguredDelivery
from .threads import ThreadAssembler, assemble, is_visible, reply_all_recipients

__all__ = [
    "ConversationFolders",
    "ConversationKeyer",
    "MailDeliveryService",
    "ReadStateTracker",
    "SendService",
    "ThreadAssembler",
    "UnconfiguredDelivery",
    "assemble",
    "compose",
    "derive_direction",
    "forward_subject",
    "is_visible",
    "reply_all_recipients",
    "reply_subject",
]
