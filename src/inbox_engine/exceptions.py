"""Custom exceptions for the inbox engine."""


class InboxEngineError(Exception):
    """Base exception for all inbox engine errors."""


class ConfigurationError(InboxEngineError):
    """Exception raised for configuration related errors."""


class MalformedIngestionError(InboxEngineError):
    """Raised when an inbound record has no derivable counterparty."""


class AccountNotFoundError(InboxEngineError):
    """Raised when an account id does not exist in the store."""


class MessageNotFoundError(InboxEngineError):
    """Raised when a message id does not exist in the store."""


class ConversationNotFoundError(InboxEngineError):
    """Raised when no conversation exists for an (account, counterparty) key."""


class MissingRecipientError(InboxEngineError):
    """Raised when a draft is about to be sent without a `to` address."""


class DeliveryError(InboxEngineError):
    """Raised when the mail delivery service rejects or fails a send."""


class DeliveryTimeoutError(DeliveryError):
    """Raised when the mail delivery service does not answer in time."""


class NotPermittedError(InboxEngineError):
    """Raised when a session asks for an account it may not view."""


class SessionStateError(InboxEngineError):
    """Raised on an invalid realtime session state transition."""
