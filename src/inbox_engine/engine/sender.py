"""Outbound send orchestration.

A sent message is only stored after the delivery service confirms it, using the
delivered message id as its stable id. A later sync of the same message from the
mailbox's sent folder therefore de-duplicates against it.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Protocol

import structlog

from inbox_engine.engine.keying import ConversationKeyer
from inbox_engine.exceptions import DeliveryError, DeliveryTimeoutError
from inbox_engine.models import (
    Account,
    ComposeDraft,
    DeliveryReceipt,
    Direction,
    IngestResult,
    OutboundMail,
    RawMessage,
)

logger = structlog.get_logger()


class MailDeliveryService(Protocol):
    """Mail send collaborator (SMTP, provider API, ...)."""

    async def deliver(self, mail: OutboundMail) -> DeliveryReceipt:
        """Send a message; raise on failure."""
        ...


class UnconfiguredDelivery:
    """Placeholder used when no delivery service is wired in."""

    async def deliver(self, mail: OutboundMail) -> DeliveryReceipt:
        raise DeliveryError("No mail delivery service is configured")


class SendService:
    def __init__(
        self,
        keyer: ConversationKeyer,
        delivery: MailDeliveryService,
        *,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._keyer = keyer
        self._delivery = delivery
        self._timeout = timeout_seconds

    async def send(self, account: Account, draft: ComposeDraft) -> IngestResult:
        """Deliver a draft and merge the sent message into its conversation.

        Raises:
            MissingRecipientError: If the draft has no `to` address.
            DeliveryTimeoutError: If the delivery service does not answer in time.
            DeliveryError: If the delivery service fails.
        """

        draft.validate_for_send()

        mail = OutboundMail(
            from_email=account.email,
            to=draft.to,
            cc=draft.cc,
            subject=draft.subject,
            body_html=draft.full_body_html,
            attachments=draft.attachments,
            in_reply_to=draft.in_reply_to,
        )

        logger.info(
            "delivery_started",
            account_id=account.id,
            mode=draft.mode.value,
            recipients=len(mail.to) + len(mail.cc),
        )
        try:
            receipt = await asyncio.wait_for(self._delivery.deliver(mail), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("delivery_timed_out", account_id=account.id, timeout=self._timeout)
            raise DeliveryTimeoutError(
                f"Mail delivery did not complete within {self._timeout:g}s"
            ) from exc
        except DeliveryError:
            logger.warning("delivery_failed", account_id=account.id)
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("delivery_failed", account_id=account.id, error=str(exc))
            raise DeliveryError(f"Mail delivery failed: {exc}") from exc

        logger.info(
            "delivery_confirmed",
            account_id=account.id,
            delivered_message_id=receipt.delivered_message_id,
        )

        sent = RawMessage(
            from_email=account.email,
            to_email=mail.to,
            cc_email=mail.cc,
            subject=mail.subject,
            body=mail.body_html,
            sent_at=datetime.now(timezone.utc),
            folder="sent",
            attachments=mail.attachments,
            stable_id=receipt.delivered_message_id,
            direction=Direction.SENT,
            is_read=True,
            in_reply_to=mail.in_reply_to,
        )
        return await self._keyer.ingest(account.id, sent)
