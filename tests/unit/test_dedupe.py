"""Unit tests for message de-duplication keys."""

from datetime import datetime, timedelta, timezone

from inbox_engine.dedupe import build_message_dedupe_key, stable_hash


def test_stable_hash_is_case_and_whitespace_insensitive() -> None:
    assert stable_hash("message", 1, " ABC@x.com ") == stable_hash("message", 1, "abc@x.com")


def test_stable_id_key_ignores_angle_brackets_and_other_fields() -> None:
    a = build_message_dedupe_key(1, "<id-1@mail>", datetime(2025, 1, 1, tzinfo=timezone.utc), "a@x.com", "Hi")
    b = build_message_dedupe_key(1, "id-1@mail", datetime(2025, 6, 1, tzinfo=timezone.utc), "z@x.com", "Other")

    assert a == b


def test_key_is_scoped_per_account() -> None:
    assert build_message_dedupe_key(1, "id-1@mail") != build_message_dedupe_key(2, "id-1@mail")


def test_fallback_key_uses_sent_at_sender_and_subject() -> None:
    sent_at = datetime(2025, 1, 1, 12, 0, 0, 250000, tzinfo=timezone.utc)
    same_second_other_zone = (sent_at.replace(microsecond=0)).astimezone(timezone(timedelta(hours=2)))

    base = build_message_dedupe_key(1, None, sent_at, "a@x.com", "Hello")

    assert base == build_message_dedupe_key(1, "  ", same_second_other_zone, "A@X.com", "hello")
    assert base != build_message_dedupe_key(1, None, sent_at, "a@x.com", "Hello again")
    assert base != build_message_dedupe_key(1, None, sent_at + timedelta(seconds=1), "a@x.com", "Hello")
