"""Event brokers.

The broker is the seam between publishers and the per-process connection
registry. `InMemoryBroker` only reaches sessions served by the same process;
`RedisBroker` goes through Redis pub/sub so every serving process sees every
event.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

import redis
import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError

from inbox_engine.exceptions import ConfigurationError
from inbox_engine.realtime.events import InboxEvent, parse_event

logger = structlog.get_logger()

EventListener = Callable[[InboxEvent], Awaitable[object]]

CHANNEL_PREFIX = "inbox:"


def channel_for(account_id: int) -> str:
    return f"{CHANNEL_PREFIX}{account_id}"


class EventBroker(ABC):
    """Publish/subscribe transport for inbox events."""

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def start(self) -> None:
        """Begin receiving events. No-op for brokers without a transport."""

    async def close(self) -> None:
        """Release transport resources."""

    @abstractmethod
    async def publish(self, event: InboxEvent) -> None:
        """Hand an event to the transport."""

    async def _dispatch(self, event: InboxEvent) -> None:
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception as exc:  # noqa: BLE001
                logger.exception(
                    "broker_listener_failed",
                    event_type=event.type,
                    event_id=event.event_id,
                    error=str(exc),
                )


class InMemoryBroker(EventBroker):
    """Single-process broker: publish dispatches straight to the listeners."""

    async def publish(self, event: InboxEvent) -> None:
        await self._dispatch(event)


class RedisBroker(EventBroker):
    """Broker backed by Redis pub/sub, one channel per account.

    A lost connection does not end the reader: it logs, waits `reconnect_delay`
    seconds and subscribes again. Events published while disconnected are lost.
    """

    def __init__(
        self,
        redis_url: str | None = None,
        client: aioredis.Redis | None = None,
        *,
        reconnect_delay: float = 1.0,
    ) -> None:
        super().__init__()
        if client is None and not redis_url:
            raise ConfigurationError("RedisBroker needs a redis_url or a client")
        self._client = client or aioredis.from_url(redis_url, decode_responses=True)
        self._reconnect_delay = reconnect_delay
        self._pubsub = None
        self._reader: asyncio.Task | None = None

    async def start(self) -> None:
        if self._reader is not None:
            return
        await self._subscribe()
        self._reader = asyncio.create_task(self._read_loop())
        logger.info("redis_broker_started", pattern=f"{CHANNEL_PREFIX}*")

    async def _subscribe(self) -> None:
        self._pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        await self._pubsub.psubscribe(f"{CHANNEL_PREFIX}*")

    async def _read_loop(self) -> None:
        while True:
            try:
                if self._pubsub is None:
                    await self._subscribe()
                    logger.info("redis_broker_resubscribed", pattern=f"{CHANNEL_PREFIX}*")
                async for item in self._pubsub.listen():
                    await self._handle(item)
                return
            except (redis.ConnectionError, redis.TimeoutError) as exc:
                logger.exception(
                    "redis_broker_connection_lost",
                    error=str(exc),
                    retry_in=self._reconnect_delay,
                )
                await self._drop_pubsub()
                await asyncio.sleep(self._reconnect_delay)

    async def _handle(self, item: dict) -> None:
        if item.get("type") not in {"message", "pmessage"}:
            return
        try:
            event = parse_event(item["data"])
        except ValidationError as exc:
            logger.warning("redis_broker_event_invalid", channel=item.get("channel"), error=str(exc))
            return
        await self._dispatch(event)

    async def _drop_pubsub(self) -> None:
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is None:
            return
        try:
            await pubsub.aclose()
        except redis.RedisError as exc:
            logger.warning("redis_broker_pubsub_close_failed", error=str(exc))

    async def publish(self, event: InboxEvent) -> None:
        await self._client.publish(channel_for(event.account_id), event.model_dump_json())

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        if self._pubsub is not None:
            await self._pubsub.punsubscribe()
            await self._pubsub.aclose()
            self._pubsub = None
        await self._client.aclose()
        logger.info("redis_broker_closed")
