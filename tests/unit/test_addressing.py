"""Unit tests for address normalization and counterparty derivation."""

from datetime import datetime, timezone

from inbox_engine.addressing import (
    counterparty_for,
    normalize_email,
    participant_set,
    reply_targets,
    split_addresses,
)
from inbox_engine.models import Direction, Message


def _message(direction: Direction, from_email: str, to_email: str, cc_email: str = "") -> Message:
    return Message(
        id=1,
        conversation_id=1,
        account_id=1,
        direction=direction,
        from_email=from_email,
        to_email=to_email,
        cc_email=cc_email,
        sent_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
        dedupe_key="k",
    )


def test_normalize_email_strips_display_name_and_case() -> None:
    assert normalize_email("  Alice Smith <Alice@X.com> ") == "alice@x.com"
    assert normalize_email("") == ""
    assert normalize_email(None) == ""


def test_split_addresses_dedupes_in_order() -> None:
    assert split_addresses("B@x.com, a@x.com,b@x.com") == ["b@x.com", "a@x.com"]
    assert split_addresses(["Bob <b@x.com>", "c@x.com"]) == ["b@x.com", "c@x.com"]
    assert split_addresses(None) == []


def test_counterparty_received_is_sender() -> None:
    assert counterparty_for("A@X.com", "me@y.com", "me@y.com", Direction.RECEIVED) == "a@x.com"


def test_counterparty_sent_is_first_recipient() -> None:
    assert counterparty_for("me@y.com", "B@x.com, c@x.com", "me@y.com", Direction.SENT) == "b@x.com"


def test_counterparty_direction_derived_from_own_address() -> None:
    assert counterparty_for("ME@y.com", "b@x.com", "me@y.com", None) == "b@x.com"
    assert counterparty_for("a@x.com", "me@y.com", "me@y.com", None) == "a@x.com"


def test_counterparty_missing_fields_yield_none() -> None:
    assert counterparty_for("", "me@y.com", "me@y.com", Direction.RECEIVED) is None
    assert counterparty_for("me@y.com", "", "me@y.com", Direction.SENT) is None


def test_reply_targets_by_direction() -> None:
    received = _message(Direction.RECEIVED, "a@x.com", "me@y.com")
    sent = _message(Direction.SENT, "me@y.com", "b@x.com, c@x.com")

    assert reply_targets(received, "me@y.com") == ["a@x.com"]
    assert reply_targets(sent, "me@y.com") == ["b@x.com", "c@x.com"]


def test_participant_set_excludes_own_account() -> None:
    messages = [
        _message(Direction.RECEIVED, "a@x.com", "me@y.com", "b@x.com, C@x.com"),
        _message(Direction.SENT, "me@y.com", "a@x.com", "d@x.com"),
    ]

    assert participant_set(messages, "ME@y.com") == ["a@x.com", "b@x.com", "c@x.com", "d@x.com"]
