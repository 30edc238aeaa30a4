"""WebSocket endpoint for live inbox events.

Protocol (JSON text frames):
- client -> server: {"action": "subscribe", "account_id": 1, "counterparty": "a@x.com"}
  (counterparty optional), {"action": "unsubscribe"}, {"action": "ping"}
- server -> client: acks ({"type": "subscribed"}, ...), errors
  ({"type": "error", "detail": ...}) and the inbox events themselves.
"""

from __future__ import annotations

import asyncio
import contextlib
import json

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from inbox_engine.exceptions import NotPermittedError, SessionStateError
from inbox_engine.realtime import Session, SessionState
from inbox_engine.services import InboxServices

logger = structlog.get_logger()

router = APIRouter()

_POLICY_VIOLATION = 1008


async def _pump(websocket: WebSocket, session: Session) -> None:
    try:
        while True:
            event = await session.next_event()
            await websocket.send_text(event.model_dump_json())
    except WebSocketDisconnect:
        logger.debug("websocket_pump_stopped", session_id=session.id)


async def _handle(websocket: WebSocket, session: Session, data: object) -> None:
    if not isinstance(data, dict):
        await websocket.send_json({"type": "error", "detail": "Expected a JSON object"})
        return

    action = data.get("action")
    try:
        if action == "subscribe":
            account_id = data.get("account_id")
            if not isinstance(account_id, int):
                await websocket.send_json({"type": "error", "detail": "account_id must be an integer"})
                return
            counterparty = data.get("counterparty")
            if counterparty is not None and not isinstance(counterparty, str):
                await websocket.send_json({"type": "error", "detail": "counterparty must be a string"})
                return
            if session.state is SessionState.SUBSCRIBED:
                session.unsubscribe()
            session.subscribe(account_id, counterparty)
            await websocket.send_json(
                {"type": "subscribed", "account_id": session.account_id, "counterparty": session.counterparty}
            )
        elif action == "unsubscribe":
            session.unsubscribe()
            await websocket.send_json({"type": "unsubscribed"})
        elif action == "ping":
            await websocket.send_json({"type": "pong"})
        else:
            await websocket.send_json({"type": "error", "detail": f"Unknown action: {action!r}"})
    except (NotPermittedError, SessionStateError) as exc:
        logger.info("websocket_action_rejected", session_id=session.id, action=action, error=str(exc))
        await websocket.send_json({"type": "error", "detail": str(exc)})


@router.websocket("/ws/inbox")
async def inbox_socket(websocket: WebSocket) -> None:
    services: InboxServices = websocket.app.state.services
    try:
        ctx = services.authenticator.authenticate(websocket.headers, websocket.query_params)
    except NotPermittedError as exc:
        logger.info("websocket_rejected", error=str(exc))
        await websocket.close(code=_POLICY_VIOLATION)
        return

    await websocket.accept()
    session = services.registry.register(ctx.account_ids)
    pump = asyncio.create_task(_pump(websocket, session))
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "detail": "Invalid JSON"})
                continue
            await _handle(websocket, session, data)
    except WebSocketDisconnect:
        logger.info("websocket_disconnected", session_id=session.id)
    finally:
        pump.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await pump
        services.registry.deregister(session.id)
