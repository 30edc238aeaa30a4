"""Unit tests for outbound send orchestration."""

from __future__ import annotations

import pytest

from inbox_engine.engine import compose
from inbox_engine.exceptions import DeliveryError, DeliveryTimeoutError, MissingRecipientError
from inbox_engine.models import ComposeMode, ComposeOverrides, Direction


async def _seed_thread(services, account, make_raw):
    result = await services.keyer.ingest(account.id, make_raw(stable_id="<in-1@x.com>"))
    return services.repository.get_message(result.message_id)


class TestSend:
    @pytest.mark.asyncio
    async def test_successful_send_joins_thread(self, services, account, make_raw, fake_delivery) -> None:
        source = await _seed_thread(services, account, make_raw)
        draft = compose(ComposeMode.REPLY, source, account.email, overrides=ComposeOverrides(body_html="<p>Thanks</p>"))

        result = await services.sender.send(account, draft)

        assert result.created is True
        assert result.conversation_id == source.conversation_id
        assert fake_delivery.sent[0].to == ["a@x.com"]
        assert fake_delivery.sent[0].in_reply_to == "<in-1@x.com>"

        stored = services.repository.get_message(result.message_id)
        assert stored.direction is Direction.SENT
        assert stored.is_read is True
        assert stored.stable_id == "<delivered-1@mail.test>"
        assert stored.subject == "Re: Quarterly Update"

        conv = services.repository.get_conversation(source.conversation_id)
        assert conv.message_count == 2
        assert conv.unread_count == 1

    @pytest.mark.asyncio
    async def test_later_sync_of_sent_copy_is_duplicate(self, services, account, make_raw) -> None:
        source = await _seed_thread(services, account, make_raw)
        draft = compose(ComposeMode.REPLY, source, account.email)
        sent = await services.sender.send(account, draft)

        synced = await services.keyer.ingest(
            account.id,
            make_raw(
                from_email=account.email,
                to_email="a@x.com",
                folder="Sent",
                stable_id="<delivered-1@mail.test>",
                minutes=30,
            ),
        )

        assert synced.created is False
        assert synced.message_id == sent.message_id

    @pytest.mark.asyncio
    async def test_delivery_failure_leaves_conversation_untouched(
        self, services, account, make_raw, fake_delivery
    ) -> None:
        source = await _seed_thread(services, account, make_raw)
        before = services.repository.get_conversation(source.conversation_id)
        fake_delivery.fail_with = ConnectionError("smtp refused")

        with pytest.raises(DeliveryError):
            await services.sender.send(account, compose(ComposeMode.REPLY, source, account.email))

        after = services.repository.get_conversation(source.conversation_id)
        assert after.message_count == before.message_count
        assert after.last_message_at == before.last_message_at

    @pytest.mark.asyncio
    async def test_delivery_error_is_reraised_as_is(self, services, account, make_raw, fake_delivery) -> None:
        source = await _seed_thread(services, account, make_raw)
        fake_delivery.fail_with = DeliveryError("mailbox full")

        with pytest.raises(DeliveryError, match="mailbox full"):
            await services.sender.send(account, compose(ComposeMode.REPLY, source, account.email))

    @pytest.mark.asyncio
    async def test_timeout(self, services, account, make_raw, fake_delivery) -> None:
        source = await _seed_thread(services, account, make_raw)
        fake_delivery.delay = 2.0

        with pytest.raises(DeliveryTimeoutError):
            await services.sender.send(account, compose(ComposeMode.REPLY, source, account.email))

        assert len(services.repository.list_conversation_messages(source.conversation_id)) == 1

    @pytest.mark.asyncio
    async def test_missing_recipient(self, services, account, make_raw, fake_delivery) -> None:
        source = await _seed_thread(services, account, make_raw)
        draft = compose(ComposeMode.FORWARD, source, account.email)

        with pytest.raises(MissingRecipientError):
            await services.sender.send(account, draft)

        assert fake_delivery.sent == []

    @pytest.mark.asyncio
    async def test_new_message_starts_conversation(self, services, account, captured_events) -> None:
        draft = compose(
            ComposeMode.NEW,
            None,
            account.email,
            counterparty="New.Person@x.com",
            overrides=ComposeOverrides(subject="Hello", body_html="<p>Hi!</p>"),
        )

        result = await services.sender.send(account, draft)

        assert result.counterparty_email == "new.person@x.com"
        assert [e.type for e in captured_events] == ["new_message", "conversation_updated"]
