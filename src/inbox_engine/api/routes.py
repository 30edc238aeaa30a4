"""Inbox HTTP API.

All routes are scoped by the caller's session context: an account id outside
the context answers 403 before anything is read.
"""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, Query, Request

from inbox_engine.auth import SessionContext
from inbox_engine.api.models import (
    ComposeRequest,
    FolderActionResponse,
    IngestRequest,
    LinkAccountRequest,
    MessageActionResponse,
    MessageView,
    ReadResponse,
    SendResponse,
    ThreadResponse,
    UnlinkAccountResponse,
)
from inbox_engine.engine import compose
from inbox_engine.exceptions import MessageNotFoundError, NotPermittedError
from inbox_engine.html import collapse_quoted
from inbox_engine.models import (
    Account,
    BatchResult,
    ComposeDraft,
    ComposeMode,
    ConversationSummary,
    Direction,
    FolderTab,
    Message,
    UnreadBreakdown,
)
from inbox_engine.services import InboxServices
from inbox_engine.store import ReadChange

router = APIRouter(prefix="/api/inbox", tags=["inbox"])


def get_services(request: Request) -> InboxServices:
    return request.app.state.services


def get_context(request: Request) -> SessionContext:
    services: InboxServices = request.app.state.services
    return services.authenticator.authenticate(request.headers, request.query_params)


async def _owned_message(services: InboxServices, ctx: SessionContext, message_id: int) -> Message:
    message = await asyncio.to_thread(services.repository.get_message, message_id)
    if not ctx.can_view(message.account_id):
        # Do not reveal messages of other accounts.
        raise MessageNotFoundError(f"Message {message_id} does not exist")
    return message


async def _read_response(services: InboxServices, change: ReadChange) -> ReadResponse:
    return ReadResponse(
        changed=change.changed,
        conversation_id=change.conversation_id,
        message_ids=change.message_ids,
        conversation_unread=change.conversation_unread,
        account_unread=await services.read_state.get_unread_count(change.account_id),
    )


# Accounts


@router.get("/accounts", response_model=list[Account])
async def list_accounts(
    services: InboxServices = Depends(get_services),
    ctx: SessionContext = Depends(get_context),
) -> list[Account]:
    accounts = await asyncio.to_thread(services.repository.list_accounts)
    return [a for a in accounts if ctx.can_view(a.id)]


@router.post("/accounts", response_model=Account)
async def link_account(
    body: LinkAccountRequest,
    services: InboxServices = Depends(get_services),
    ctx: SessionContext = Depends(get_context),
) -> Account:
    existing = await asyncio.to_thread(services.repository.find_account_by_email, body.email)
    if existing is not None and not ctx.can_view(existing.id):
        raise NotPermittedError(f"Account {existing.id} is outside this session")
    return await asyncio.to_thread(services.repository.link_account, body.email, body.display_name)


@router.delete("/accounts/{account_id}", response_model=UnlinkAccountResponse)
async def unlink_account(
    account_id: int,
    services: InboxServices = Depends(get_services),
    ctx: SessionContext = Depends(get_context),
) -> UnlinkAccountResponse:
    ctx.ensure(account_id)
    unlinked = await asyncio.to_thread(services.repository.unlink_account, account_id)
    return UnlinkAccountResponse(account_id=account_id, unlinked=unlinked)


# Conversations and threads


@router.get("/accounts/{account_id}/conversations", response_model=list[ConversationSummary])
async def list_conversations(
    account_id: int,
    tab: FolderTab = FolderTab.INBOX,
    limit: int | None = Query(default=None, ge=1, le=500),
    unread_only: bool = False,
    search: str | None = None,
    services: InboxServices = Depends(get_services),
    ctx: SessionContext = Depends(get_context),
) -> list[ConversationSummary]:
    ctx.ensure(account_id)
    return await services.threads.list_conversations(
        account_id,
        tab,
        limit=limit or services.settings.conversation_list_limit,
        unread_only=unread_only,
        search=search,
    )


@router.get("/accounts/{account_id}/threads/{counterparty_email}", response_model=ThreadResponse)
async def get_thread(
    account_id: int,
    counterparty_email: str,
    tab: FolderTab = FolderTab.INBOX,
    services: InboxServices = Depends(get_services),
    ctx: SessionContext = Depends(get_context),
) -> ThreadResponse:
    ctx.ensure(account_id)
    messages = await services.threads.get_thread(account_id, counterparty_email, tab)
    participants = await services.threads.participants(account_id, counterparty_email)
    return ThreadResponse(
        account_id=account_id,
        counterparty_email=counterparty_email.strip().lower(),
        tab=tab,
        participants=participants,
        messages=[MessageView(**m.model_dump(), display_html=collapse_quoted(m.body)) for m in messages],
    )


@router.get("/accounts/{account_id}/search", response_model=list[Message])
async def search_messages(
    account_id: int,
    q: str = Query(min_length=1),
    limit: int = Query(default=50, ge=1, le=500),
    services: InboxServices = Depends(get_services),
    ctx: SessionContext = Depends(get_context),
) -> list[Message]:
    ctx.ensure(account_id)
    return await asyncio.to_thread(services.repository.search_messages, account_id, q, limit=limit)


# Read state


@router.post("/messages/{message_id}/read", response_model=ReadResponse)
async def mark_message_read(
    message_id: int,
    services: InboxServices = Depends(get_services),
    ctx: SessionContext = Depends(get_context),
) -> ReadResponse:
    await _owned_message(services, ctx, message_id)
    change = await services.read_state.mark_read(message_id)
    return await _read_response(services, change)


@router.post("/accounts/{account_id}/threads/{counterparty_email}/read", response_model=ReadResponse)
async def mark_conversation_read(
    account_id: int,
    counterparty_email: str,
    services: InboxServices = Depends(get_services),
    ctx: SessionContext = Depends(get_context),
) -> ReadResponse:
    ctx.ensure(account_id)
    change = await services.read_state.mark_conversation_read(account_id, counterparty_email)
    return await _read_response(services, change)


@router.get("/accounts/{account_id}/unread", response_model=UnreadBreakdown)
async def unread_counts(
    account_id: int,
    services: InboxServices = Depends(get_services),
    ctx: SessionContext = Depends(get_context),
) -> UnreadBreakdown:
    ctx.ensure(account_id)
    return await services.read_state.get_unread_breakdown(account_id)


# Folder actions


async def _folder_action(
    services: InboxServices,
    ctx: SessionContext,
    account_id: int,
    counterparty_email: str,
    action: str,
) -> FolderActionResponse:
    ctx.ensure(account_id)
    folders = services.folders
    handlers = {
        "trash": folders.move_to_trash,
        "restore": folders.restore,
        "delete": folders.delete_permanently,
        "spam": folders.mark_spam,
        "not-spam": lambda a, c: folders.mark_spam(a, c, spam=False),
    }
    updated = await handlers[action](account_id, counterparty_email)
    return FolderActionResponse(
        account_id=account_id,
        counterparty_email=counterparty_email.strip().lower(),
        action=action,
        updated_count=updated,
    )


@router.post("/accounts/{account_id}/threads/{counterparty_email}/trash", response_model=FolderActionResponse)
async def trash_conversation(
    account_id: int,
    counterparty_email: str,
    services: InboxServices = Depends(get_services),
    ctx: SessionContext = Depends(get_context),
) -> FolderActionResponse:
    return await _folder_action(services, ctx, account_id, counterparty_email, "trash")


@router.post("/accounts/{account_id}/threads/{counterparty_email}/restore", response_model=FolderActionResponse)
async def restore_conversation(
    account_id: int,
    counterparty_email: str,
    services: InboxServices = Depends(get_services),
    ctx: SessionContext = Depends(get_context),
) -> FolderActionResponse:
    return await _folder_action(services, ctx, account_id, counterparty_email, "restore")


@router.post("/accounts/{account_id}/threads/{counterparty_email}/delete", response_model=FolderActionResponse)
async def delete_conversation(
    account_id: int,
    counterparty_email: str,
    services: InboxServices = Depends(get_services),
    ctx: SessionContext = Depends(get_context),
) -> FolderActionResponse:
    return await _folder_action(services, ctx, account_id, counterparty_email, "delete")


@router.post("/accounts/{account_id}/threads/{counterparty_email}/spam", response_model=FolderActionResponse)
async def spam_conversation(
    account_id: int,
    counterparty_email: str,
    services: InboxServices = Depends(get_services),
    ctx: SessionContext = Depends(get_context),
) -> FolderActionResponse:
    return await _folder_action(services, ctx, account_id, counterparty_email, "spam")


@router.post("/accounts/{account_id}/threads/{counterparty_email}/not-spam", response_model=FolderActionResponse)
async def unspam_conversation(
    account_id: int,
    counterparty_email: str,
    services: InboxServices = Depends(get_services),
    ctx: SessionContext = Depends(get_context),
) -> FolderActionResponse:
    return await _folder_action(services, ctx, account_id, counterparty_email, "not-spam")


async def _message_action(
    services: InboxServices,
    ctx: SessionContext,
    message_id: int,
    action: str,
) -> MessageActionResponse:
    owned = await _owned_message(services, ctx, message_id)
    folders = services.folders
    handlers = {
        "trash": folders.trash_message,
        "restore": folders.restore_message,
        "hide-trash": folders.hide_message_from_trash,
        "spam": folders.spam_message,
        "not-spam": lambda m: folders.spam_message(m, spam=False),
    }
    updated = await handlers[action](message_id)
    return MessageActionResponse(
        message_id=message_id,
        conversation_id=owned.conversation_id,
        action=action,
        updated_count=updated,
    )


@router.post("/messages/{message_id}/trash", response_model=MessageActionResponse)
async def trash_message(
    message_id: int,
    services: InboxServices = Depends(get_services),
    ctx: SessionContext = Depends(get_context),
) -> MessageActionResponse:
    return await _message_action(services, ctx, message_id, "trash")


@router.post("/messages/{message_id}/restore", response_model=MessageActionResponse)
async def restore_message(
    message_id: int,
    services: InboxServices = Depends(get_services),
    ctx: SessionContext = Depends(get_context),
) -> MessageActionResponse:
    return await _message_action(services, ctx, message_id, "restore")


@router.post("/messages/{message_id}/hide-trash", response_model=MessageActionResponse)
async def hide_message_from_trash(
    message_id: int,
    services: InboxServices = Depends(get_services),
    ctx: SessionContext = Depends(get_context),
) -> MessageActionResponse:
    return await _message_action(services, ctx, message_id, "hide-trash")


@router.post("/messages/{message_id}/spam", response_model=MessageActionResponse)
async def spam_message(
    message_id: int,
    services: InboxServices = Depends(get_services),
    ctx: SessionContext = Depends(get_context),
) -> MessageActionResponse:
    return await _message_action(services, ctx, message_id, "spam")


@router.post("/messages/{message_id}/not-spam", response_model=MessageActionResponse)
async def unspam_message(
    message_id: int,
    services: InboxServices = Depends(get_services),
    ctx: SessionContext = Depends(get_context),
) -> MessageActionResponse:
    return await _message_action(services, ctx, message_id, "not-spam")


@router.delete("/messages/{message_id}", response_model=MessageActionResponse)
async def delete_message(
    message_id: int,
    services: InboxServices = Depends(get_services),
    ctx: SessionContext = Depends(get_context),
) -> MessageActionResponse:
    owned = await _owned_message(services, ctx, message_id)
    conv = await services.folders.delete_message(message_id)
    return MessageActionResponse(
        message_id=message_id,
        conversation_id=owned.conversation_id,
        action="delete",
        updated_count=1,
        conversation_removed=conv is None,
    )


# Compose / send / ingest


async def _build_draft(services: InboxServices, ctx: SessionContext, body: ComposeRequest) -> tuple[Account, ComposeDraft]:
    ctx.ensure(body.account_id)
    account = await asyncio.to_thread(services.repository.get_account, body.account_id)

    source: Message | None = None
    participants: list[str] | None = None
    if body.source_message_id is not None:
        source = await _owned_message(services, ctx, body.source_message_id)
        if source.account_id != account.id:
            raise MessageNotFoundError(f"Message {source.id} does not belong to account {account.id}")
        source = source.model_copy(update={"attachments": services.attachments.resolve_all(source.attachments)})

        if body.mode is ComposeMode.REPLY_ALL and source.direction is Direction.RECEIVED:
            conv = await asyncio.to_thread(services.repository.get_conversation, source.conversation_id)
            if conv is not None:
                participants = await services.threads.participants(account.id, conv.counterparty_email)

    draft = compose(
        body.mode,
        source,
        account.email,
        participants=participants,
        counterparty=body.counterparty,
        overrides=body.overrides,
    )
    return account, draft


@router.post("/compose", response_model=ComposeDraft)
async def compose_draft(
    body: ComposeRequest,
    services: InboxServices = Depends(get_services),
    ctx: SessionContext = Depends(get_context),
) -> ComposeDraft:
    _, draft = await _build_draft(services, ctx, body)
    return draft


@router.post("/send", response_model=SendResponse)
async def send_message(
    body: ComposeRequest,
    services: InboxServices = Depends(get_services),
    ctx: SessionContext = Depends(get_context),
) -> SendResponse:
    account, draft = await _build_draft(services, ctx, body)
    result = await services.sender.send(account, draft)
    return SendResponse(**result.model_dump())


@router.post("/accounts/{account_id}/ingest", response_model=BatchResult)
async def ingest_messages(
    account_id: int,
    body: IngestRequest,
    services: InboxServices = Depends(get_services),
    ctx: SessionContext = Depends(get_context),
) -> BatchResult:
    ctx.ensure(account_id)
    return await services.keyer.ingest_batch(account_id, body.messages)
