"""FastAPI application for the inbox engine."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from inbox_engine import __version__
from inbox_engine.api.routes import router as inbox_router
from inbox_engine.api.websocket import router as websocket_router
from inbox_engine.config import Settings, get_settings
from inbox_engine.exceptions import (
    AccountNotFoundError,
    ConversationNotFoundError,
    DeliveryError,
    DeliveryTimeoutError,
    InboxEngineError,
    MalformedIngestionError,
    MessageNotFoundError,
    MissingRecipientError,
    NotPermittedError,
)
from inbox_engine.services import InboxServices

logger = structlog.get_logger()

# Most specific first; the first matching class wins.
_STATUS_BY_ERROR: list[tuple[type[InboxEngineError], int]] = [
    (NotPermittedError, 403),
    (AccountNotFoundError, 404),
    (MessageNotFoundError, 404),
    (ConversationNotFoundError, 404),
    (MissingRecipientError, 422),
    (MalformedIngestionError, 422),
    (DeliveryTimeoutError, 504),
    (DeliveryError, 502),
]


def status_for(exc: InboxEngineError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 400


async def _inbox_error_handler(request: Request, exc: InboxEngineError) -> JSONResponse:
    status = status_for(exc)
    log = logger.warning if status >= 500 else logger.info
    log("inbox_request_failed", path=request.url.path, error_type=type(exc).__name__, error=str(exc))
    return JSONResponse(status_code=status, content={"detail": str(exc), "error": type(exc).__name__})


async def _value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    logger.info("inbox_request_invalid", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=422, content={"detail": str(exc), "error": "ValueError"})


def create_app(
    settings: Settings | None = None,
    services: InboxServices | None = None,
) -> FastAPI:
    """Build the application.

    Args:
        settings: Application settings. If None, uses default settings.
        services: Pre-built engine services (tests inject a delivery fake and a
            temporary store this way).
    """

    settings = settings or (services.settings if services is not None else get_settings())
    services = services or InboxServices.build(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await services.start()
        try:
            yield
        finally:
            await services.close()

    app = FastAPI(title="Inbox Engine", version=__version__, lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(InboxEngineError, _inbox_error_handler)
    app.add_exception_handler(ValueError, _value_error_handler)

    app.include_router(inbox_router)
    app.include_router(websocket_router)

    @app.get("/health")
    async def health() -> dict:
        try:
            await asyncio.to_thread(services.repository.ping)
        except SQLAlchemyError as exc:
            logger.warning("health_store_unreachable", error=str(exc))
            return JSONResponse(status_code=503, content={"status": "degraded", "store": "unreachable"})
        return {"status": "ok", "version": __version__}

    return app
