from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Tuple


def encode_time_id_cursor(created_at: datetime, identifier: str) -> str:
    """Encode a cursor combining a timestamp and identifier for keyset paging."""

    ts = created_at if created_at.tzinfo else created_at.replace(tzinfo=timezone.utc)
    return f"{ts.isoformat()}|{identifier}"


def decode_time_id_cursor(cursor: str) -> Tuple[datetime, str]:
    """Decode a time/id cursor into a naive UTC timestamp and identifier."""

    parts = cursor.split("|", 1)
    if len(parts) != 2:
        raise ValueError("invalid thread cursor")
    ts = datetime.fromisoformat(parts[0])
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts, parts[1]


def encode_position_cursor(position: int) -> str:
    """Encode a message-position cursor."""

    return str(position)


def decode_position_cursor(cursor: Optional[str]) -> Optional[int]:
    """Decode a message-position cursor; ``None`` means start of the listing."""

    if cursor is None or cursor == "":
        return None
    try:
        return int(cursor)
    except ValueError as exc:
        raise ValueError("invalid message cursor") from exc
