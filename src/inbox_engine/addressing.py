"""Address normalization and counterparty derivation.

Every component that needs "the other side" of a message goes through
`counterparty_for`, so reply, reply-all, thread display and keying cannot drift
apart.
"""

from __future__ import annotations

from collections.abc import Iterable
from email.utils import getaddresses

from inbox_engine.models import Direction


def normalize_email(value: str | None) -> str:
    """Lowercase and trim a single address, dropping any display name."""

    if not value:
        return ""
    parsed = [addr for _, addr in getaddresses([value]) if addr]
    addr = parsed[0] if parsed else value
    return addr.strip().lower()


def split_addresses(value: str | Iterable[str] | None) -> list[str]:
    """Split a comma-joined (or already split) address list.

    Returns normalized addresses, deduplicated, in first-seen order.
    """

    if not value:
        return []
    raw = [value] if isinstance(value, str) else list(value)

    result: list[str] = []
    for _, addr in getaddresses(raw):
        email = addr.strip().lower()
        if email and email not in result:
            result.append(email)
    return result


def join_addresses(addresses: Iterable[str]) -> str:
    return ",".join(addresses)


def counterparty_for(
    from_email: str | None,
    to_email: str | None,
    own_email: str | None,
    direction: Direction | str | None,
) -> str | None:
    """Return the external address on the other side of a message.

    Args:
        from_email: Sender field of the message.
        to_email: Recipient field (comma-joined when there are several).
        own_email: Address of the owning account.
        direction: Message direction; derived from `own_email` when None.

    Returns:
        The normalized counterparty address, or None when none can be derived.
    """

    sender = normalize_email(from_email)
    recipients = split_addresses(to_email)
    own = normalize_email(own_email)

    if direction is None:
        direction = Direction.SENT if own and sender == own else Direction.RECEIVED
    direction = Direction(direction)

    if direction is Direction.RECEIVED:
        return sender or None

    # Sent: the primary recipient defines the conversation.
    return recipients[0] if recipients else None


def reply_targets(message: object, own_email: str | None) -> list[str]:
    """Addresses a reply to `message` goes to.

    A received message is answered to its sender. Answering one of our own sent
    messages goes back to all of its original `to` recipients.
    """

    direction = Direction(getattr(message, "direction"))
    if direction is Direction.RECEIVED:
        sender = counterparty_for(
            getattr(message, "from_email", None),
            getattr(message, "to_email", None),
            own_email,
            direction,
        )
        return [sender] if sender else []

    own = normalize_email(own_email)
    return [addr for addr in split_addresses(getattr(message, "to_email", None)) if addr != own]


def participant_set(
    messages: Iterable[object],
    own_email: str | None,
) -> list[str]:
    """Union of from/to/cc across messages, minus the owning account.

    `messages` may be any objects exposing `from_email`, `to_email` and
    `cc_email` attributes.
    """

    own = normalize_email(own_email)
    seen: list[str] = []
    for m in messages:
        for field in ("from_email", "to_email", "cc_email"):
            for addr in split_addresses(getattr(m, field, None)):
                if addr != own and addr not in seen:
                    seen.append(addr)
    return seen
