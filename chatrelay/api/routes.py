from __future__ import annotations

from typing import Dict, List, Optional

from fastapi import APIRouter, Header, Path, Query

from chatrelay.api.schemas import (
    CreateThreadRequest,
    Envelope,
    MessageResponse,
    ModelListResponse,
    ModelResponse,
    SendMessageRequest,
    SendMessageResponse,
    StreamDeltaResponse,
    StreamStatus,
    StreamSyncResponse,
    ThreadListResponse,
    ThreadMessagesResponse,
    ThreadResponse,
)
from chatrelay.logging import get_correlation_id, get_logger
from chatrelay.service.chat import StreamArgs, StreamSync, ThreadMessages
from chatrelay.service.errors import AuthenticationError, ValidationError
from chatrelay.service.identity import Subject
from chatrelay.service.runtime import get_runtime
from chatrelay.storage.models import Message, Thread

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("unsupported authorization scheme")
    return token.strip()


def _resolve_subject(
    authorization: Optional[str], anonymous_user_id: Optional[str]
) -> Subject:
    runtime = get_runtime()
    return runtime.identity.resolve(
        bearer_token=_bearer_token(authorization), anonymous_id=anonymous_user_id
    )


def _ok(data) -> Envelope:
    return Envelope(status="ok", data=data, request_id=get_correlation_id())


def _thread_response(thread: Thread) -> ThreadResponse:
    return ThreadResponse(
        id=thread.id,
        created_at=thread.created_at,
        title=thread.title,
        status=thread.status,
        model_id=(thread.meta or {}).get("model_id"),
    )


def _message_response(msg: Message) -> MessageResponse:
    return MessageResponse(
        id=msg.id,
        thread_id=msg.thread_id,
        role=msg.role,
        position=msg.position,
        content=msg.content,
        content_parts=msg.content_parts,
        streaming=msg.streaming,
        status=msg.status,
        model_id=msg.model_id,
        error=msg.error,
        created_at=msg.created_at,
        finalized_at=msg.finalized_at,
    )


def _stream_response(sync: Optional[StreamSync]) -> Optional[StreamSyncResponse]:
    if sync is None:
        return None
    return StreamSyncResponse(
        kind=sync.kind,
        streams=[
            StreamStatus(stream_id=m.id, position=m.position, status=m.status)
            for m in sync.streams
        ],
        deltas=[
            StreamDeltaResponse(stream_id=d.stream_id, seq=d.seq, text=d.text)
            for d in sync.deltas
        ],
    )


def _parse_stream_cursors(values: List[str]) -> Dict[str, int]:
    """Parse ``stream_id:seq`` pairs from repeated query parameters."""

    cursors: Dict[str, int] = {}
    for raw in values:
        stream_id, sep, seq = raw.rpartition(":")
        if not sep or not stream_id:
            raise ValidationError("stream_cursor must be stream_id:seq", detail={"value": raw})
        try:
            cursors[stream_id] = max(0, int(seq))
        except ValueError as exc:
            raise ValidationError(
                "stream_cursor must be stream_id:seq", detail={"value": raw}
            ) from exc
    return cursors


@router.post("/threads", response_model=Envelope, status_code=201, tags=["threads"])
async def create_thread(
    body: CreateThreadRequest,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    subject = _resolve_subject(authorization, body.anonymous_user_id)
    thread = await runtime.chat.create_thread(subject, model_id=body.model_id)
    return _ok(_thread_response(thread))


@router.post(
    "/threads/{thread_id}/messages",
    response_model=Envelope,
    status_code=202,
    tags=["threads"],
)
async def send_message(
    body: SendMessageRequest,
    thread_id: str = Path(..., min_length=1, max_length=128),
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    subject = _resolve_subject(authorization, body.anonymous_user_id)
    receipt = await runtime.chat.send_message(
        thread_id, body.prompt, subject, model_id=body.model_id
    )
    return _ok(
        SendMessageResponse(
            thread_id=receipt.thread_id,
            message_id=receipt.prompt_message_id,
            job_id=receipt.job_id,
            model_id=receipt.model_id,
        )
    )


@router.get("/threads/{thread_id}/messages", response_model=Envelope, tags=["threads"])
async def list_thread_messages(
    thread_id: str = Path(..., min_length=1, max_length=128),
    num_items: Optional[int] = Query(None, ge=1),
    cursor: Optional[str] = Query(None, max_length=256),
    stream_kind: Optional[str] = Query(None, pattern="^(list|deltas)$"),
    stream_cursor: Optional[List[str]] = Query(None),
    anonymous_user_id: Optional[str] = Query(None, max_length=128),
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    subject = _resolve_subject(authorization, anonymous_user_id)
    stream_args = None
    if stream_kind:
        stream_args = StreamArgs(kind=stream_kind, cursors=_parse_stream_cursors(stream_cursor or []))
    result: ThreadMessages = await runtime.chat.list_thread_messages(
        thread_id,
        subject,
        num_items=num_items,
        cursor=cursor,
        stream_args=stream_args,
    )
    return _ok(
        ThreadMessagesResponse(
            page=[_message_response(m) for m in result.page],
            is_done=result.is_done,
            continue_cursor=result.continue_cursor,
            streams=_stream_response(result.streams),
        )
    )


@router.get("/threads", response_model=Envelope, tags=["threads"])
async def list_user_threads(
    num_items: Optional[int] = Query(None, ge=1),
    cursor: Optional[str] = Query(None, max_length=256),
    query: Optional[str] = Query(None, max_length=256),
    limit: Optional[int] = Query(None, ge=1),
    anonymous_user_id: Optional[str] = Query(None, max_length=128),
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    subject = _resolve_subject(authorization, anonymous_user_id)
    page = await runtime.chat.list_user_threads(
        subject, query=query, num_items=num_items, cursor=cursor, limit=limit
    )
    return _ok(
        ThreadListResponse(
            page=[_thread_response(t) for t in page.page],
            is_done=page.is_done,
            continue_cursor=page.continue_cursor,
        )
    )


@router.get("/models", response_model=Envelope, tags=["models"])
async def list_models(
    anonymous_user_id: Optional[str] = Query(None, max_length=128),
    authorization: Optional[str] = Header(None),
):
    """List the model catalogue; ``available`` reflects the caller's tier.

    Callers without any identity see the catalogue as an anonymous subject would.
    """

    runtime = get_runtime()
    is_anonymous = True
    if authorization or anonymous_user_id:
        is_anonymous = _resolve_subject(authorization, anonymous_user_id).is_anonymous
    registry = runtime.models
    items = [
        ModelResponse(
            **descriptor.to_dict(),
            available=registry.validate(descriptor.id, is_anonymous) == descriptor.id,
            is_default=descriptor.id == registry.default_model_id,
        )
        for descriptor in registry.list_models()
    ]
    return _ok(ModelListResponse(items=items, default_model_id=registry.default_model_id))
