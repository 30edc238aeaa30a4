"""Unit tests for the SQLAlchemy inbox repository."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql

from inbox_engine.exceptions import AccountNotFoundError, MessageNotFoundError
from inbox_engine.models import Attachment, AttachmentKind, Direction, FolderTab
from inbox_engine.store import InboxRepository, NewMessageRow
from inbox_engine.store import repository as repository_module
from inbox_engine.store.schema import attachment, conversation, message

T0 = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


def _row(account_id: int, key: str, *, minutes: int = 0, **overrides) -> NewMessageRow:
    values = dict(
        account_id=account_id,
        counterparty_email="a@x.com",
        direction=Direction.RECEIVED,
        from_email="a@x.com",
        to_email="me@y.com",
        cc_email="",
        subject="Quarterly Update",
        body="<p>Hi</p>",
        snippet="Hi",
        sent_at=T0 + timedelta(minutes=minutes),
        is_read=False,
        is_trash=False,
        is_spam=False,
        dedupe_key=key,
    )
    values.update(overrides)
    return NewMessageRow(**values)


def _live_unread(repo: InboxRepository, conversation_id: int) -> int:
    with repo.engine.connect() as conn:
        return conn.execute(
            select(func.count())
            .select_from(message)
            .where(
                message.c.conversation_id == conversation_id,
                message.c.direction == "received",
                message.c.is_read.is_(False),
            )
        ).scalar_one()


class TestAccounts:
    def test_link_account_is_idempotent(self, repo: InboxRepository) -> None:
        first = repo.link_account("Me@Y.com", "Me")
        second = repo.link_account("me@y.com")

        assert first.id == second.id
        assert first.email == "me@y.com"
        assert [a.email for a in repo.list_accounts()] == ["me@y.com"]

    def test_get_missing_account_raises(self, repo: InboxRepository) -> None:
        with pytest.raises(AccountNotFoundError):
            repo.get_account(999)

    def test_find_account_by_email(self, repo: InboxRepository, account) -> None:
        assert repo.find_account_by_email(" ME@y.com ").id == account.id
        assert repo.find_account_by_email("nobody@y.com") is None

    def test_unlink_cascades(self, repo: InboxRepository, account) -> None:
        stored = repo.store_message(
            _row(account.id, "k1", attachments=[Attachment(filename="a.pdf", kind=AttachmentKind.PDF)])
        )

        assert repo.unlink_account(account.id) is True

        with repo.engine.connect() as conn:
            assert conn.execute(select(func.count()).select_from(conversation)).scalar_one() == 0
            assert conn.execute(select(func.count()).select_from(message)).scalar_one() == 0
            assert conn.execute(select(func.count()).select_from(attachment)).scalar_one() == 0
        with pytest.raises(MessageNotFoundError):
            repo.get_message(stored.message_id)


class TestStoreMessage:
    def test_one_conversation_per_counterparty(self, repo: InboxRepository, account) -> None:
        a = repo.store_message(_row(account.id, "k1"))
        b = repo.store_message(_row(account.id, "k2", minutes=5))
        c = repo.store_message(_row(account.id, "k3", counterparty_email="b@x.com", from_email="b@x.com"))

        assert a.conversation_id == b.conversation_id
        assert c.conversation_id != a.conversation_id

        conv = repo.get_conversation(a.conversation_id)
        assert conv is not None
        assert conv.message_count == 2
        assert conv.unread_count == 2
        assert conv.last_message_at == T0 + timedelta(minutes=5)

    def test_duplicate_dedupe_key_is_absorbed(self, repo: InboxRepository, account) -> None:
        first = repo.store_message(_row(account.id, "same"))
        second = repo.store_message(_row(account.id, "same", minutes=1, subject="changed"))

        assert first.created is True
        assert second.created is False
        assert second.message_id == first.message_id

        conv = repo.get_conversation(first.conversation_id)
        assert conv.message_count == 1
        assert conv.unread_count == 1

    def test_last_message_at_never_moves_backwards(self, repo: InboxRepository, account) -> None:
        stored = repo.store_message(_row(account.id, "new", minutes=30))
        repo.store_message(_row(account.id, "old", minutes=-30))

        conv = repo.get_conversation(stored.conversation_id)
        assert conv.last_message_at == T0 + timedelta(minutes=30)
        assert conv.message_count == 2

    def test_sent_messages_do_not_count_as_unread(self, repo: InboxRepository, account) -> None:
        stored = repo.store_message(
            _row(account.id, "s1", direction=Direction.SENT, from_email="me@y.com", to_email="a@x.com", is_read=True)
        )
        repo.store_message(
            _row(account.id, "s2", direction=Direction.SENT, from_email="me@y.com", to_email="a@x.com", is_read=False)
        )

        conv = repo.get_conversation(stored.conversation_id)
        assert conv.unread_count == 0

    def test_attachments_round_trip(self, repo: InboxRepository, account) -> None:
        stored = repo.store_message(
            _row(
                account.id,
                "att",
                attachments=[
                    Attachment(filename="a.png", mime_type="image/png", size=10, kind=AttachmentKind.IMAGE),
                    Attachment(filename="b.pdf", mime_type="application/pdf", size=20, kind=AttachmentKind.PDF),
                ],
            )
        )

        msg = repo.get_message(stored.message_id)
        assert [a.filename for a in msg.attachments] == ["a.png", "b.pdf"]
        assert [a.kind for a in msg.attachments] == [AttachmentKind.IMAGE, AttachmentKind.PDF]
        assert msg.sent_at.tzinfo is not None


class TestReadState:
    def test_mark_message_read_changes_once(self, repo: InboxRepository, account) -> None:
        stored = repo.store_message(_row(account.id, "k1"))
        repo.store_message(_row(account.id, "k2", minutes=1))

        first = repo.mark_message_read(stored.message_id)
        second = repo.mark_message_read(stored.message_id)

        assert first.changed is True
        assert first.conversation_unread == 1
        assert second.changed is False
        assert second.conversation_unread == 1
        assert _live_unread(repo, stored.conversation_id) == 1

    def test_mark_missing_message_raises(self, repo: InboxRepository, account) -> None:
        with pytest.raises(MessageNotFoundError):
            repo.mark_message_read(12345)

    def test_unread_invariant_under_interleaving(self, repo: InboxRepository, account) -> None:
        ids = []
        for i in range(3):
            ids.append(repo.store_message(_row(account.id, f"m{i}", minutes=i)).message_id)
        conv_id = repo.get_message(ids[0]).conversation_id

        repo.mark_message_read(ids[1])
        repo.store_message(_row(account.id, "m3", minutes=10))
        repo.mark_message_read(ids[0])
        repo.store_message(_row(account.id, "m4", minutes=11, is_read=True))

        conv = repo.get_conversation(conv_id)
        assert conv.unread_count == _live_unread(repo, conv_id) == 2

    def test_concurrent_reads_of_one_conversation_keep_counter(self, repo: InboxRepository, account) -> None:
        ids = [repo.store_message(_row(account.id, f"c{i}", minutes=i)).message_id for i in range(6)]
        conv_id = repo.get_message(ids[0]).conversation_id

        with ThreadPoolExecutor(max_workers=6) as pool:
            changes = list(pool.map(repo.mark_message_read, ids))

        assert all(c.changed for c in changes)
        assert repo.get_conversation(conv_id).unread_count == _live_unread(repo, conv_id) == 0

    def test_counter_writers_lock_the_conversation_row(self, repo: InboxRepository, account, monkeypatch) -> None:
        locked: list[int] = []
        original = repository_module._conversation_lock

        def _recording(conversation_id):
            locked.append(conversation_id)
            return original(conversation_id)

        monkeypatch.setattr(repository_module, "_conversation_lock", _recording)

        stored = repo.store_message(_row(account.id, "k1"))
        repo.store_message(_row(account.id, "k2", minutes=1))
        repo.mark_message_read(stored.message_id)
        repo.mark_conversation_read(stored.conversation_id)
        repo.delete_message(stored.message_id)

        assert locked == [stored.conversation_id] * 5

    def test_conversation_lock_renders_for_update_on_postgres(self) -> None:
        sql = str(repository_module._conversation_lock(1).compile(dialect=postgresql.dialect()))

        assert sql.rstrip().endswith("FOR UPDATE")

    def test_mark_conversation_read(self, repo: InboxRepository, account) -> None:
        a = repo.store_message(_row(account.id, "k1"))
        b = repo.store_message(_row(account.id, "k2", minutes=1))

        change = repo.mark_conversation_read(a.conversation_id)
        again = repo.mark_conversation_read(a.conversation_id)

        assert change.message_ids == sorted([a.message_id, b.message_id])
        assert change.conversation_unread == 0
        assert again.changed is False

    def test_count_unread_excludes_trash_and_splits_spam(self, repo: InboxRepository, account) -> None:
        repo.store_message(_row(account.id, "inbox"))
        repo.store_message(_row(account.id, "spam", is_spam=True))
        repo.store_message(_row(account.id, "trash", is_trash=True))
        repo.store_message(_row(account.id, "read", is_read=True))

        assert repo.count_unread(account.id) == (1, 1)


class TestQueries:
    def test_thread_messages_ordered_by_sent_at_then_insertion(self, repo: InboxRepository, account) -> None:
        late = repo.store_message(_row(account.id, "late", minutes=10))
        tie_a = repo.store_message(_row(account.id, "tie-a", minutes=5))
        tie_b = repo.store_message(_row(account.id, "tie-b", minutes=5))

        ids = [m.id for m in repo.list_conversation_messages(late.conversation_id)]
        assert ids == [tie_a.message_id, tie_b.message_id, late.message_id]

    def test_conversation_summaries_by_tab(self, repo: InboxRepository, account) -> None:
        repo.store_message(_row(account.id, "a1", snippet="from a"))
        repo.store_message(
            _row(account.id, "b1", minutes=5, counterparty_email="b@x.com", from_email="b@x.com", snippet="spammy", is_spam=True)
        )
        repo.store_message(
            _row(
                account.id,
                "c1",
                minutes=10,
                counterparty_email="c@x.com",
                direction=Direction.SENT,
                from_email="me@y.com",
                to_email="c@x.com",
                snippet="outbound",
                is_read=True,
            )
        )

        inbox = repo.list_conversation_summaries(account.id, FolderTab.INBOX, limit=10)
        assert [s.counterparty_email for s in inbox] == ["c@x.com", "a@x.com"]
        assert inbox[0].last_direction is Direction.SENT
        assert inbox[1].snippet == "from a"

        spam = repo.list_conversation_summaries(account.id, FolderTab.SPAM, limit=10)
        assert [s.counterparty_email for s in spam] == ["b@x.com"]

        sent = repo.list_conversation_summaries(account.id, FolderTab.SENT, limit=10)
        assert [s.counterparty_email for s in sent] == ["c@x.com"]

        unread = repo.list_conversation_summaries(account.id, FolderTab.INBOX, limit=10, unread_only=True)
        assert [s.counterparty_email for s in unread] == ["a@x.com"]

        searched = repo.list_conversation_summaries(account.id, FolderTab.INBOX, limit=10, search="C@X")
        assert [s.counterparty_email for s in searched] == ["c@x.com"]

    def test_search_messages(self, repo: InboxRepository, account) -> None:
        repo.store_message(_row(account.id, "k1", subject="Invoice March"))
        repo.store_message(_row(account.id, "k2", minutes=1, subject="Lunch?"))

        results = repo.search_messages(account.id, "invoice")
        assert [m.subject for m in results] == ["Invoice March"]

    def test_set_conversation_flags(self, repo: InboxRepository, account) -> None:
        stored = repo.store_message(_row(account.id, "k1"))
        repo.store_message(_row(account.id, "k2", minutes=1))

        assert repo.set_conversation_flags(stored.conversation_id, is_trash=True) == 2
        assert repo.count_unread(account.id) == (0, 0)

        with pytest.raises(ValueError):
            repo.set_conversation_flags(stored.conversation_id, is_read=True)

    def test_search_treats_wildcards_literally(self, repo: InboxRepository, account) -> None:
        repo.store_message(_row(account.id, "k1", subject="100% done"))
        repo.store_message(_row(account.id, "k2", minutes=1, subject="1000 done"))
        repo.store_message(_row(account.id, "k3", minutes=2, subject="snake_case"))
        repo.store_message(_row(account.id, "k4", minutes=3, subject="snakeXcase"))

        assert [m.subject for m in repo.search_messages(account.id, "100%")] == ["100% done"]
        assert [m.subject for m in repo.search_messages(account.id, "snake_case")] == ["snake_case"]
        assert [m.subject for m in repo.search_messages(account.id, "%")] == ["100% done"]

    def test_conversation_search_treats_wildcards_literally(self, repo: InboxRepository, account) -> None:
        repo.store_message(_row(account.id, "k1", counterparty_email="a_b@x.com", from_email="a_b@x.com"))
        repo.store_message(_row(account.id, "k2", counterparty_email="axb@x.com", from_email="axb@x.com"))

        searched = repo.list_conversation_summaries(account.id, FolderTab.INBOX, limit=10, search="a_b")
        assert [s.counterparty_email for s in searched] == ["a_b@x.com"]


class TestMessageFlags:
    def test_set_message_flags_touches_one_message(self, repo: InboxRepository, account) -> None:
        stored = repo.store_message(_row(account.id, "k1"))
        repo.store_message(_row(account.id, "k2", minutes=1))

        assert repo.set_message_flags(stored.message_id, is_trash=True) == 1
        assert repo.count_unread(account.id) == (1, 0)
        assert repo.get_message(stored.message_id).is_trash is True

    def test_trashed_only_skips_live_messages(self, repo: InboxRepository, account) -> None:
        stored = repo.store_message(_row(account.id, "k1"))

        assert repo.set_message_flags(stored.message_id, trashed_only=True, hide_trash=True) == 0
        assert repo.get_message(stored.message_id).hide_trash is False

    def test_unknown_message_or_flag(self, repo: InboxRepository, account) -> None:
        stored = repo.store_message(_row(account.id, "k1"))

        with pytest.raises(MessageNotFoundError):
            repo.set_message_flags(999, is_trash=True)
        with pytest.raises(ValueError):
            repo.set_message_flags(stored.message_id, is_read=True)


class TestDeleteMessage:
    def test_counters_follow_remaining_messages(self, repo: InboxRepository, account) -> None:
        first = repo.store_message(_row(account.id, "k1"))
        repo.store_message(_row(account.id, "k2", minutes=1, is_read=True))
        last = repo.store_message(
            _row(account.id, "k3", minutes=2, attachments=[Attachment(filename="a.pdf", kind=AttachmentKind.PDF)])
        )

        conv = repo.delete_message(last.message_id)

        assert conv.id == first.conversation_id
        assert conv.message_count == 2
        assert conv.unread_count == _live_unread(repo, conv.id) == 1
        assert conv.last_message_at == T0 + timedelta(minutes=1)
        with repo.engine.connect() as conn:
            assert conn.execute(select(func.count()).select_from(attachment)).scalar_one() == 0
        with pytest.raises(MessageNotFoundError):
            repo.get_message(last.message_id)

    def test_last_message_takes_conversation_along(self, repo: InboxRepository, account) -> None:
        stored = repo.store_message(_row(account.id, "only"))

        assert repo.delete_message(stored.message_id) is None
        assert repo.get_conversation(stored.conversation_id) is None

        again = repo.store_message(_row(account.id, "only"))
        assert again.created is True

    def test_missing_message(self, repo: InboxRepository, account) -> None:
        with pytest.raises(MessageNotFoundError):
            repo.delete_message(999)
