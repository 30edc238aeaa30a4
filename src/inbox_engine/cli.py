"""Command-line interface for the inbox engine.

This module provides the `inbox-engine` entry point.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

import structlog

from inbox_engine import __version__
from inbox_engine.config import get_settings
from inbox_engine.exceptions import InboxEngineError
from inbox_engine.models import FolderTab
from inbox_engine.services import InboxServices
from inbox_engine.store import InboxRepository
from inbox_engine.utils import configure_logging

logger = structlog.get_logger()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="inbox-engine", description="Inbox Engine")
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy URL of the store (default: settings database_url)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP/WebSocket server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8000, help="Bind port")

    subparsers.add_parser("init-db", help="Create the store schema")

    link_parser = subparsers.add_parser("link-account", help="Link a mailbox account")
    link_parser.add_argument("email", help="Mailbox address")
    link_parser.add_argument("--display-name", default=None, help="Optional display name")

    ingest_parser = subparsers.add_parser(
        "ingest",
        help="Ingest raw messages from a JSON Lines file (one record per line)",
    )
    ingest_parser.add_argument("account_id", type=int, help="Account the messages belong to")
    ingest_parser.add_argument("path", type=Path, help="Path to the .jsonl file")

    unread_parser = subparsers.add_parser("unread", help="Show unread counts of an account")
    unread_parser.add_argument("account_id", type=int)

    thread_parser = subparsers.add_parser("thread", help="Print the thread with one counterparty")
    thread_parser.add_argument("account_id", type=int)
    thread_parser.add_argument("counterparty", help="Counterparty address")
    thread_parser.add_argument(
        "--tab",
        choices=[t.value for t in FolderTab],
        default=FolderTab.INBOX.value,
        help="Folder tab used to filter the thread",
    )

    return parser


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from inbox_engine.api import create_app

    settings = get_settings()
    if args.database_url:
        settings = settings.model_copy(update={"database_url": args.database_url})

    uvicorn.run(create_app(settings), host=args.host, port=args.port, log_level=settings.log_level.lower())
    return 0


def _cmd_init_db(args: argparse.Namespace) -> int:
    url = args.database_url or get_settings().database_url
    repo = InboxRepository.from_url(url)
    repo.initialize()
    print(f"Schema ready at {url}")
    return 0


def _cmd_link_account(args: argparse.Namespace) -> int:
    repo = InboxRepository.from_url(args.database_url or get_settings().database_url)
    repo.initialize()
    account = repo.link_account(args.email, args.display_name)
    print(f"{account.id}\t{account.email}")
    return 0


def _services(args: argparse.Namespace) -> InboxServices:
    settings = get_settings()
    if args.database_url:
        settings = settings.model_copy(update={"database_url": args.database_url})
    return InboxServices.build(settings)


async def _cmd_ingest(args: argparse.Namespace) -> int:
    services = _services(args)
    await services.start()
    try:
        records: list[dict] = []
        with args.path.open("r", encoding="utf-8") as fh:
            for line_no, line in enumerate(fh, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError as exc:
                    logger.warning("ingest_line_invalid_json", line=line_no, error=str(exc))

        result = await services.keyer.ingest_batch(args.account_id, records)
    finally:
        await services.close()

    print(f"Processed {result.processed} messages ({result.duplicates} duplicates), {result.failed} failed")
    for sample in result.error_samples:
        print(f"  {sample}")
    return 0 if result.failed == 0 else 1


async def _cmd_unread(args: argparse.Namespace) -> int:
    services = _services(args)
    await services.start()
    try:
        breakdown = await services.read_state.get_unread_breakdown(args.account_id)
    finally:
        await services.close()

    print(f"Inbox unread: {breakdown.inbox}")
    print(f"Spam unread: {breakdown.spam}")
    print(f"Total unread: {breakdown.total}")
    return 0


async def _cmd_thread(args: argparse.Namespace) -> int:
    services = _services(args)
    await services.start()
    try:
        messages = await services.threads.get_thread(args.account_id, args.counterparty, FolderTab(args.tab))
    finally:
        await services.close()

    if not messages:
        print("(no messages)")
        return 0
    for m in messages:
        state = "READ" if m.is_read else "UNREAD"
        flags = "".join(f for f, on in (("S", m.is_spam), ("T", m.is_trash)) if on)
        print(f"{m.sent_at.isoformat()}\t{m.direction.value}\t{state}\t{flags or '-'}\t{m.from_email}\t{m.subject}")
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point for the inbox engine CLI.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    if args is None:
        args = sys.argv[1:]

    settings = get_settings()
    configure_logging(settings.log_level)

    logger.info("inbox_engine_started", version=__version__, debug=settings.debug)

    parser = _build_parser()
    parsed = parser.parse_args(args)

    try:
        if parsed.command == "serve":
            return _cmd_serve(parsed)
        if parsed.command == "init-db":
            return _cmd_init_db(parsed)
        if parsed.command == "link-account":
            return _cmd_link_account(parsed)
        if parsed.command == "ingest":
            return asyncio.run(_cmd_ingest(parsed))
        if parsed.command == "unread":
            return asyncio.run(_cmd_unread(parsed))
        if parsed.command == "thread":
            return asyncio.run(_cmd_thread(parsed))
    except InboxEngineError as exc:
        logger.error("command_failed", command=parsed.command, error=str(exc))
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    logger.error("unknown_command", command=parsed.command)
    return 2


if __name__ == "__main__":
    sys.exit(main())
