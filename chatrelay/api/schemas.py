from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from chatrelay.service.chat import MAX_PROMPT_CHARS

MAX_ID_LENGTH = 128


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi-override characters, then NFKC-normalize."""

    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))

    @field_validator("request_id", mode="before")
    @classmethod
    def _default_request_id(cls, value: Optional[str]) -> str:
        return value or str(uuid4())


class CreateThreadRequest(BaseModel):
    model_id: Optional[str] = Field(default=None, max_length=MAX_ID_LENGTH)
    anonymous_user_id: Optional[str] = Field(default=None, max_length=MAX_ID_LENGTH)


class ThreadResponse(BaseModel):
    id: str
    created_at: datetime
    title: Optional[str]
    status: str
    model_id: Optional[str] = None


class SendMessageRequest(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=MAX_PROMPT_CHARS)
    model_id: Optional[str] = Field(default=None, max_length=MAX_ID_LENGTH)
    anonymous_user_id: Optional[str] = Field(default=None, max_length=MAX_ID_LENGTH)

    @field_validator("prompt")
    @classmethod
    def _normalize_prompt(cls, value: str) -> str:
        normalized = _normalize_unicode(value)
        if not normalized.strip():
            raise ValueError("prompt must not be blank")
        return normalized


class SendMessageResponse(BaseModel):
    thread_id: str
    message_id: str
    job_id: str
    model_id: str


class MessageResponse(BaseModel):
    id: str
    thread_id: str
    role: str
    position: int
    content: str
    content_parts: Optional[List[dict]] = None
    streaming: bool
    status: str
    model_id: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime
    finalized_at: Optional[datetime] = None


class StreamStatus(BaseModel):
    stream_id: str
    position: int
    status: str


class StreamDeltaResponse(BaseModel):
    stream_id: str
    seq: int
    text: str


class StreamSyncResponse(BaseModel):
    kind: str
    streams: List[StreamStatus] = Field(default_factory=list)
    deltas: List[StreamDeltaResponse] = Field(default_factory=list)


class ThreadMessagesResponse(BaseModel):
    page: List[MessageResponse]
    is_done: bool
    continue_cursor: Optional[str] = None
    streams: Optional[StreamSyncResponse] = None


class ThreadListResponse(BaseModel):
    page: List[ThreadResponse]
    is_done: bool
    continue_cursor: Optional[str] = None


class ModelResponse(BaseModel):
    id: str
    display_name: str
    short_name: str
    provider: str
    tier: str
    features: List[str] = Field(default_factory=list)
    max_tokens: Optional[int] = None
    available: bool = True
    is_default: bool = False


class ModelListResponse(BaseModel):
    items: List[ModelResponse]
    default_model_id: str


class HealthResponse(BaseModel):
    status: str
    store: str
    redis: bool
    workers: Dict[str, bool] = Field(default_factory=dict)
