from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Generic, List, Optional, TypeVar

T = TypeVar("T")

THREAD_ACTIVE = "active"
THREAD_ARCHIVED = "archived"

MESSAGE_ROLES = ("user", "assistant", "system", "tool")

MESSAGE_PENDING = "pending"
MESSAGE_SUCCESS = "success"
MESSAGE_FAILED = "failed"


@dataclass
class Thread:
    id: str
    user_id: str
    created_at: datetime
    title: Optional[str] = None
    status: str = THREAD_ACTIVE
    summary: Optional[str] = None
    meta: Dict | None = None


@dataclass
class Message:
    id: str
    thread_id: str
    user_id: str
    role: str
    position: int
    content: str
    created_at: datetime
    content_parts: Optional[List[dict]] = None
    streaming: bool = False
    status: str = MESSAGE_SUCCESS
    model_id: Optional[str] = None
    finalized_at: Optional[datetime] = None
    usage: Dict | None = None
    error: Optional[str] = None


@dataclass
class StreamDelta:
    stream_id: str
    thread_id: str
    seq: int
    text: str
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Job:
    id: str
    kind: str
    payload: dict
    status: str = "queued"
    attempts: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    error: Optional[str] = None


@dataclass
class Page(Generic[T]):
    """One page of a keyset-paginated listing."""

    page: List[T]
    is_done: bool
    continue_cursor: Optional[str] = None
