"""Unit tests for the read/unread state tracker."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from inbox_engine.engine import ReadStateTracker
from inbox_engine.models import Direction
from inbox_engine.realtime import InMemoryBroker
from inbox_engine.services import InboxServices
from inbox_engine.store import InboxRepository, NewMessageRow
from inbox_engine.exceptions import AccountNotFoundError, ConversationNotFoundError, MessageNotFoundError


class TestMarkRead:
    @pytest.mark.asyncio
    async def test_double_mark_read_decrements_once(self, services, account, make_raw, captured_events) -> None:
        first = await services.keyer.ingest(account.id, make_raw(stable_id="1"))
        await services.keyer.ingest(account.id, make_raw(stable_id="2", minutes=1))
        captured_events.clear()

        a = await services.read_state.mark_read(first.message_id)
        b = await services.read_state.mark_read(first.message_id)

        assert a.changed is True
        assert b.changed is False
        assert services.repository.get_conversation(first.conversation_id).unread_count == 1
        read_events = [e for e in captured_events if e.type == "read_state_changed"]
        assert len(read_events) == 1
        assert read_events[0].message_ids == [first.message_id]
        assert read_events[0].unread_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_mark_read(self, services, account, make_raw, captured_events) -> None:
        first = await services.keyer.ingest(account.id, make_raw(stable_id="1"))
        captured_events.clear()

        results = await asyncio.gather(
            services.read_state.mark_read(first.message_id),
            services.read_state.mark_read(first.message_id),
        )

        assert sorted(r.changed for r in results) == [False, True]
        assert all(r.conversation_unread == 0 for r in results)
        assert services.repository.get_message(first.message_id).is_read is True
        assert [e.type for e in captured_events].count("read_state_changed") == 1

    @pytest.mark.asyncio
    async def test_mark_read_missing_message(self, services, account) -> None:
        with pytest.raises(MessageNotFoundError):
            await services.read_state.mark_read(999)

    @pytest.mark.asyncio
    async def test_mark_conversation_read(self, services, account, make_raw, captured_events) -> None:
        for i in range(3):
            await services.keyer.ingest(account.id, make_raw(stable_id=f"m{i}", minutes=i))
        captured_events.clear()

        change = await services.read_state.mark_conversation_read(account.id, "A@x.com")

        assert len(change.message_ids) == 3
        assert change.conversation_unread == 0
        assert [e.type for e in captured_events] == [
            "read_state_changed",
            "conversation_updated",
            "unread_count_changed",
        ]
        assert captured_events[-1].unread_count == 0

    @pytest.mark.asyncio
    async def test_mark_conversation_read_unknown(self, services, account) -> None:
        with pytest.raises(ConversationNotFoundError):
            await services.read_state.mark_conversation_read(account.id, "nobody@x.com")


class TestUnreadCounts:
    @pytest.mark.asyncio
    async def test_breakdown(self, services, account, make_raw) -> None:
        await services.keyer.ingest(account.id, make_raw(stable_id="1"))
        await services.keyer.ingest(account.id, make_raw(stable_id="2", folder="spam"))
        await services.keyer.ingest(account.id, make_raw(stable_id="3", folder="trash"))

        breakdown = await services.read_state.get_unread_breakdown(account.id)

        assert (breakdown.inbox, breakdown.spam, breakdown.total) == (1, 1, 2)
        assert await services.read_state.get_unread_count(account.id) == 2

    @pytest.mark.asyncio
    async def test_direct_store_write_is_visible_immediately(self, repo, account) -> None:
        tracker = ReadStateTracker(repo)
        assert await tracker.get_unread_count(account.id) == 0

        repo.store_message(
            NewMessageRow(
                account_id=account.id,
                counterparty_email="a@x.com",
                direction=Direction.RECEIVED,
                from_email="a@x.com",
                to_email="me@y.com",
                cc_email="",
                subject="s",
                body="",
                snippet="",
                sent_at=datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc),
                is_read=False,
                is_trash=False,
                is_spam=False,
                dedupe_key="direct",
            )
        )

        assert await tracker.get_unread_count(account.id) == 1

    @pytest.mark.asyncio
    async def test_count_reflects_ingest_by_another_process(self, mock_settings, account, make_raw) -> None:
        syncing = InboxServices.build(
            mock_settings, repository=InboxRepository.from_url(mock_settings.database_url), broker=InMemoryBroker()
        )
        serving = InboxServices.build(
            mock_settings, repository=InboxRepository.from_url(mock_settings.database_url), broker=InMemoryBroker()
        )
        try:
            assert await serving.read_state.get_unread_count(account.id) == 0

            stored = await syncing.keyer.ingest(account.id, make_raw(stable_id="elsewhere"))
            assert await serving.read_state.get_unread_count(account.id) == 1

            await syncing.read_state.mark_read(stored.message_id)
            assert await serving.read_state.get_unread_count(account.id) == 0
        finally:
            syncing.repository.dispose()
            serving.repository.dispose()

    @pytest.mark.asyncio
    async def test_unknown_account(self, services) -> None:
        with pytest.raises(AccountNotFoundError):
            await services.read_state.get_unread_breakdown(404)
