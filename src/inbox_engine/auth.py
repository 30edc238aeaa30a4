"""Session context supplied by the authentication collaborator.

The engine does not authenticate users itself; it only needs to know which
accounts a request or socket may view.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Protocol

from inbox_engine.exceptions import NotPermittedError

ACCOUNT_IDS_HEADER = "x-inbox-account-ids"
ACCOUNT_IDS_QUERY = "account_ids"


@dataclass(frozen=True)
class SessionContext:
    account_ids: frozenset[int]

    def can_view(self, account_id: int) -> bool:
        return account_id in self.account_ids

    def ensure(self, account_id: int) -> None:
        if not self.can_view(account_id):
            raise NotPermittedError(f"Not permitted to view account {account_id}")


class Authenticator(Protocol):
    def authenticate(self, headers: Mapping[str, str], query: Mapping[str, str]) -> SessionContext:
        """Resolve the accounts a caller may view; raise NotPermittedError if none."""
        ...


def _parse_ids(raw: str) -> frozenset[int]:
    ids: set[int] = set()
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        if not part.isdigit():
            raise NotPermittedError(f"Invalid account id in session context: {part!r}")
        ids.add(int(part))
    return frozenset(ids)


class HeaderAuthenticator:
    """Reads permitted account ids set by an upstream gateway.

    HTTP callers send `X-Inbox-Account-Ids: 1,2`. Browsers cannot set headers on
    a WebSocket handshake, so sockets may pass `?account_ids=1,2` instead.
    """

    def authenticate(self, headers: Mapping[str, str], query: Mapping[str, str]) -> SessionContext:
        raw = headers.get(ACCOUNT_IDS_HEADER) or query.get(ACCOUNT_IDS_QUERY) or ""
        ids = _parse_ids(raw)
        if not ids:
            raise NotPermittedError("No account context supplied")
        return SessionContext(account_ids=ids)
