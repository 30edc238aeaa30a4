from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Any


def _normalize_part(part: Any) -> str:
    if part is None:
        return ""
    if isinstance(part, datetime):
        if part.tzinfo is None:
            part = part.replace(tzinfo=timezone.utc)
        # Second precision: transports disagree on sub-second parts of the same Date header.
        return part.astimezone(timezone.utc).replace(microsecond=0).isoformat()
    return str(part).strip().lower()


def stable_hash(*parts: Any) -> str:
    payload = "||".join(_normalize_part(part) for part in parts)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def build_message_dedupe_key(
    account_id: int,
    stable_id: str | None,
    sent_at: datetime | None = None,
    from_email: str | None = None,
    subject: str | None = None,
) -> str:
    if stable_id and stable_id.strip():
        return stable_hash("message", account_id, stable_id.strip().strip("<>"))
    return stable_hash("message", account_id, sent_at, from_email, subject)
