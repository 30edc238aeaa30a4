"""Per-process registry of live sessions.

Sessions are registered on connect and deregistered on disconnect. Each one
owns a bounded queue that the transport (a WebSocket handler) drains.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import deque
from datetime import datetime
from enum import Enum

import structlog

from inbox_engine.exceptions import NotPermittedError, SessionStateError
from inbox_engine.realtime.events import InboxEvent, NewMessageEvent, event_counterparty

logger = structlog.get_logger()

_SEEN_EVENT_IDS = 1024


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    SUBSCRIBED = "subscribed"


class Session:
    """One live client connection and its current subscription scope."""

    def __init__(
        self,
        session_id: str | None = None,
        *,
        allowed_account_ids: frozenset[int] | None = None,
        queue_size: int = 256,
    ) -> None:
        self.id = session_id or uuid.uuid4().hex
        self.allowed_account_ids = allowed_account_ids
        self.state = SessionState.DISCONNECTED
        self.account_id: int | None = None
        self.counterparty: str | None = None
        self.queue: asyncio.Queue[InboxEvent] = asyncio.Queue(maxsize=queue_size)
        self.dropped = 0

        self._seen_ids: set[str] = set()
        self._seen_order: deque[str] = deque()
        # counterparty -> (sent_at, message_id) of the newest delivered new_message
        self._newest: dict[str, tuple[datetime, int]] = {}
        self._delivered_messages: set[int] = set()

    def __repr__(self) -> str:
        return (
            f"Session(id={self.id!r}, state={self.state.value}, "
            f"account_id={self.account_id}, counterparty={self.counterparty!r})"
        )

    # State machine

    def connect(self) -> None:
        if self.state is not SessionState.DISCONNECTED:
            raise SessionStateError(f"Cannot connect a session in state {self.state.value}")
        self.state = SessionState.CONNECTED

    def subscribe(self, account_id: int, counterparty: str | None = None) -> None:
        """Start receiving events for an account, optionally one thread only."""

        if self.state is not SessionState.CONNECTED:
            raise SessionStateError(f"Cannot subscribe a session in state {self.state.value}")
        if self.allowed_account_ids is not None and account_id not in self.allowed_account_ids:
            raise NotPermittedError(f"Session may not view account {account_id}")

        self.account_id = account_id
        self.counterparty = counterparty.strip().lower() if counterparty else None
        self._newest.clear()
        self._delivered_messages.clear()
        self.state = SessionState.SUBSCRIBED

    def unsubscribe(self) -> None:
        """Stop receiving events for the current scope; undelivered ones are discarded."""

        if self.state is not SessionState.SUBSCRIBED:
            raise SessionStateError(f"Cannot unsubscribe a session in state {self.state.value}")
        self.account_id = None
        self.counterparty = None
        self._drain()
        self.state = SessionState.CONNECTED

    def disconnect(self) -> None:
        if self.state is SessionState.DISCONNECTED:
            raise SessionStateError("Session is already disconnected")
        if self.state is SessionState.SUBSCRIBED:
            self.unsubscribe()
        self.state = SessionState.DISCONNECTED

    # Delivery

    def wants(self, event: InboxEvent) -> bool:
        if self.state is not SessionState.SUBSCRIBED or event.account_id != self.account_id:
            return False
        if self.counterparty is None:
            return True
        scoped_to = event_counterparty(event)
        return scoped_to is None or scoped_to == self.counterparty

    def offer(self, event: InboxEvent) -> bool:
        """Queue an event for this session.

        Returns False when the event is dropped: a repeated `event_id`, a
        `new_message` that is not newer than what this session already saw for
        the thread, or a full queue.
        """

        if event.event_id in self._seen_ids:
            return False

        if isinstance(event, NewMessageEvent) and not self._is_newer(event):
            logger.debug(
                "session_stale_message_dropped",
                session_id=self.id,
                message_id=event.message_id,
                counterparty=event.counterparty_email,
            )
            return False

        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "session_queue_full_event_dropped",
                session_id=self.id,
                event_type=event.type,
                event_id=event.event_id,
                dropped=self.dropped,
            )
            return False

        self._remember(event.event_id)
        if isinstance(event, NewMessageEvent):
            self._newest[event.counterparty_email] = (event.sent_at, event.message_id)
            self._delivered_messages.add(event.message_id)
        return True

    async def next_event(self) -> InboxEvent:
        return await self.queue.get()

    def _is_newer(self, event: NewMessageEvent) -> bool:
        if event.message_id in self._delivered_messages:
            return False
        newest = self._newest.get(event.counterparty_email)
        if newest is None:
            return True
        return (event.sent_at, event.message_id) > newest

    def _remember(self, event_id: str) -> None:
        self._seen_ids.add(event_id)
        self._seen_order.append(event_id)
        if len(self._seen_order) > _SEEN_EVENT_IDS:
            self._seen_ids.discard(self._seen_order.popleft())

    def _drain(self) -> None:
        while True:
            try:
                self.queue.get_nowait()
            except asyncio.QueueEmpty:
                return


class ConnectionRegistry:
    """Sessions served by this process, keyed by session id."""

    def __init__(self, queue_size: int = 256) -> None:
        self._queue_size = queue_size
        self._sessions: dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def register(self, allowed_account_ids: frozenset[int] | None = None) -> Session:
        session = Session(allowed_account_ids=allowed_account_ids, queue_size=self._queue_size)
        session.connect()
        self._sessions[session.id] = session
        logger.info("session_registered", session_id=session.id, sessions=len(self._sessions))
        return session

    def deregister(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        if session.state is not SessionState.DISCONNECTED:
            session.disconnect()
        logger.info("session_deregistered", session_id=session_id, sessions=len(self._sessions))

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def sessions_for(self, account_id: int) -> list[Session]:
        return [
            s
            for s in self._sessions.values()
            if s.state is SessionState.SUBSCRIBED and s.account_id == account_id
        ]

    async def dispatch(self, event: InboxEvent) -> int:
        """Offer an event to every interested session; returns how many queued it."""

        delivered = 0
        for session in list(self._sessions.values()):
            if session.wants(event) and session.offer(event):
                delivered += 1
        return delivered
