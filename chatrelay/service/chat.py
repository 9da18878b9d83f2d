from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional

from chatrelay.logging import get_logger, redact_subject, sanitize_error_message
from chatrelay.service.errors import (
    ForbiddenError,
    GenerationError,
    NotFoundError,
    ValidationError,
)
from chatrelay.service.identity import Subject
from chatrelay.service.jobs import JOB_STREAM_RESPONSE
from chatrelay.service.llm import LLMService
from chatrelay.service.model_registry import ModelRegistry
from chatrelay.service.rate_limiter import SEARCH_BUCKET, RateLimiter, bucket_for
from chatrelay.storage.cursors import encode_position_cursor
from chatrelay.storage.models import Job, Message, Page, StreamDelta, Thread, THREAD_ARCHIVED

if TYPE_CHECKING:
    from chatrelay.storage.memory import MemoryStore
    from chatrelay.storage.postgres import PostgresStore

logger = get_logger(__name__)

# Message counts at which the thread title is (re)generated.
TITLE_MILESTONES = (2, 6, 14, 30, 62, 126, 254)
TITLE_CONTEXT_MESSAGES = 10
GENERATION_CONTEXT_MESSAGES = 100
MAX_PROMPT_CHARS = 32_000
DEFAULT_SEARCH_LIMIT = 10

STREAM_KIND_LIST = "list"
STREAM_KIND_DELTAS = "deltas"


@dataclass
class SendReceipt:
    thread_id: str
    prompt_message_id: str
    job_id: str
    model_id: str


@dataclass
class StreamArgs:
    """Client stream position: ``list`` asks which streams are live,
    ``deltas`` asks for deltas at or after each stream's cursor."""

    kind: str = STREAM_KIND_LIST
    cursors: Dict[str, int] = field(default_factory=dict)


@dataclass
class StreamSync:
    kind: str
    streams: List[Message] = field(default_factory=list)
    deltas: List[StreamDelta] = field(default_factory=list)


@dataclass
class ThreadMessages:
    page: List[Message]
    is_done: bool
    continue_cursor: Optional[str]
    streams: Optional[StreamSync] = None


class ChatOrchestrator:
    """Turns prompts into persisted, asynchronously streamed replies.

    ``send_message`` persists the prompt and enqueues a ``stream_response``
    job; ``stream_response`` runs later on the job worker, streaming deltas
    into the store and finalizing the assistant message.
    """

    def __init__(
        self,
        store: "PostgresStore | MemoryStore",
        limiter: RateLimiter,
        registry: ModelRegistry,
        llm: LLMService,
        *,
        default_page_size: int = 20,
        max_page_size: int = 100,
    ) -> None:
        self.store = store
        self.limiter = limiter
        self.registry = registry
        self.llm = llm
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    def _page_size(self, num_items: Optional[int]) -> int:
        if num_items is None:
            return self.default_page_size
        if num_items < 1:
            raise ValidationError("num_items must be positive", detail={"num_items": num_items})
        return min(num_items, self.max_page_size)

    async def create_thread(
        self,
        subject: Subject,
        *,
        model_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Thread:
        await self.limiter.enforce(
            bucket_for("create_thread", subject.is_anonymous), subject.id
        )
        resolved = self.registry.validate(model_id, subject.is_anonymous)
        thread = self.store.create_thread(subject.id, title, meta={"model_id": resolved})
        logger.info(
            "thread_created",
            thread_id=thread.id,
            subject=redact_subject(subject.id),
            model_id=resolved,
        )
        return thread

    async def send_message(
        self,
        thread_id: str,
        prompt: str,
        subject: Subject,
        *,
        model_id: Optional[str] = None,
    ) -> SendReceipt:
        if not prompt or not prompt.strip():
            raise ValidationError("prompt must not be empty")
        if len(prompt) > MAX_PROMPT_CHARS:
            raise ValidationError(
                "prompt too long", detail={"max_chars": MAX_PROMPT_CHARS}
            )

        # The send token is not refunded when the AI-request bucket denies.
        await self.limiter.enforce(
            bucket_for("send_message", subject.is_anonymous), subject.id
        )
        await self.limiter.enforce(
            bucket_for("ai_request", subject.is_anonymous), subject.id
        )
        resolved = self.registry.validate(model_id, subject.is_anonymous)

        thread = self.store.get_thread(thread_id)
        if thread is None:
            raise NotFoundError("thread not found", detail={"thread_id": thread_id})
        recent = self.store.list_messages(
            thread_id,
            order="desc",
            num_items=TITLE_CONTEXT_MESSAGES,
            exclude_tool_messages=True,
        )
        owner = recent.page[-1].user_id if recent.page else thread.user_id
        if owner != subject.id or thread.user_id != subject.id:
            logger.warning(
                "thread_access_denied",
                thread_id=thread_id,
                subject=redact_subject(subject.id),
            )
            raise ForbiddenError("not allowed to post to this thread")
        if thread.status == THREAD_ARCHIVED:
            raise ValidationError("thread is archived", detail={"thread_id": thread_id})

        prompt_msg = self.store.append_message(
            thread_id, user_id=subject.id, role="user", content=prompt
        )
        job = self.store.enqueue_job(
            JOB_STREAM_RESPONSE,
            {
                "thread_id": thread_id,
                "prompt_message_id": prompt_msg.id,
                "model_id": resolved,
                "user_id": subject.id,
                "is_anonymous": subject.is_anonymous,
                "prompt": prompt,
            },
        )
        logger.info(
            "message_scheduled",
            thread_id=thread_id,
            message_id=prompt_msg.id,
            position=prompt_msg.position,
            job_id=job.id,
            model_id=resolved,
        )
        return SendReceipt(
            thread_id=thread_id,
            prompt_message_id=prompt_msg.id,
            job_id=job.id,
            model_id=resolved,
        )

    async def handle_job(self, job: Job) -> None:
        await self.stream_response(**job.payload)

    async def stream_response(
        self,
        *,
        thread_id: str,
        prompt_message_id: str,
        model_id: str,
        user_id: str,
        is_anonymous: bool,
        prompt: str,
    ) -> Message:
        """Generate and persist the assistant reply for one prompt message."""

        if is_anonymous:
            model_id = self.registry.default_model_id
        prompt_msg = self.store.get_message(prompt_message_id)
        if prompt_msg is None or prompt_msg.thread_id != thread_id:
            raise GenerationError(
                "prompt message not found",
                detail={"thread_id": thread_id, "message_id": prompt_message_id},
            )
        context = self.store.list_messages(
            thread_id,
            order="desc",
            cursor=encode_position_cursor(prompt_msg.position + 1),
            num_items=GENERATION_CONTEXT_MESSAGES,
            exclude_tool_messages=True,
        ).page
        context.reverse()
        descriptor = self.registry.get_by_id(model_id)

        assistant = self.store.append_message(
            thread_id,
            user_id=user_id,
            role="assistant",
            content="",
            streaming=True,
            model_id=model_id,
        )

        async def persist_delta(text: str) -> None:
            self.store.add_stream_delta(assistant.id, thread_id, text)

        try:
            result = await self.llm.stream_text(
                model_id,
                context,
                on_delta=persist_delta,
                max_tokens=descriptor.max_tokens,
            )
            final = self.store.finalize_message(assistant.id, result.text, usage=result.usage)
        except Exception as exc:
            logger.error(
                "generation_failed",
                thread_id=thread_id,
                message_id=assistant.id,
                model_id=model_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            self.store.fail_message(assistant.id, sanitize_error_message(str(exc)))
            raise GenerationError(
                "generation failed",
                detail={"thread_id": thread_id, "message_id": assistant.id},
            ) from exc

        logger.info(
            "generation_complete",
            thread_id=thread_id,
            message_id=final.id,
            position=final.position,
            deltas=result.deltas,
            model_id=model_id,
        )
        await self._maybe_generate_title(thread_id, model_id, prompt)
        return final

    async def _maybe_generate_title(
        self, thread_id: str, model_id: str, prompt: str
    ) -> Optional[str]:
        count = self.store.count_messages(thread_id)
        if count not in TITLE_MILESTONES:
            return None
        try:
            recent = self.store.list_messages(
                thread_id,
                order="desc",
                num_items=TITLE_CONTEXT_MESSAGES,
                exclude_tool_messages=True,
            ).page
            recent.reverse()
            title = await self.llm.generate_title(model_id, recent, prompt)
            if not title:
                logger.info("title_generation_empty", thread_id=thread_id)
                return None
            self.store.update_thread(thread_id, title=title)
        except Exception as exc:
            logger.warning(
                "title_generation_failed",
                thread_id=thread_id,
                message_count=count,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None
        logger.info("thread_titled", thread_id=thread_id, message_count=count)
        return title

    async def list_thread_messages(
        self,
        thread_id: str,
        subject: Subject,
        *,
        num_items: Optional[int] = None,
        cursor: Optional[str] = None,
        stream_args: Optional[StreamArgs] = None,
    ) -> ThreadMessages:
        thread = self.store.get_thread(thread_id)
        if thread is None:
            raise NotFoundError("thread not found", detail={"thread_id": thread_id})
        if thread.user_id != subject.id:
            logger.warning(
                "thread_access_denied",
                thread_id=thread_id,
                subject=redact_subject(subject.id),
            )
            raise ForbiddenError("not allowed to read this thread")
        try:
            page = self.store.list_messages(
                thread_id,
                order="desc",
                cursor=cursor,
                num_items=self._page_size(num_items),
                exclude_tool_messages=True,
            )
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if page.page and page.page[0].user_id != subject.id:
            logger.warning(
                "thread_access_denied",
                thread_id=thread_id,
                subject=redact_subject(subject.id),
            )
            raise ForbiddenError("not allowed to read this thread")

        streams: Optional[StreamSync] = None
        if stream_args is not None:
            if stream_args.kind == STREAM_KIND_LIST:
                streams = StreamSync(
                    kind=STREAM_KIND_LIST,
                    streams=self.store.list_active_streams(thread_id),
                )
            elif stream_args.kind == STREAM_KIND_DELTAS:
                streams = StreamSync(
                    kind=STREAM_KIND_DELTAS,
                    deltas=self.store.list_stream_deltas(thread_id, stream_args.cursors),
                )
            else:
                raise ValidationError(
                    "unknown stream kind", detail={"kind": stream_args.kind}
                )
        return ThreadMessages(
            page=page.page,
            is_done=page.is_done,
            continue_cursor=page.continue_cursor,
            streams=streams,
        )

    async def list_user_threads(
        self,
        subject: Subject,
        *,
        query: Optional[str] = None,
        num_items: Optional[int] = None,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Page[Thread]:
        if query and query.strip():
            await self.limiter.enforce(SEARCH_BUCKET, subject.id)
            size = self._page_size(limit or DEFAULT_SEARCH_LIMIT)
            threads = self.store.search_threads(subject.id, query.strip(), limit=size)
            return Page(page=threads, is_done=True, continue_cursor=None)
        try:
            return self.store.list_threads_by_user(
                subject.id,
                order="desc",
                cursor=cursor,
                num_items=self._page_size(num_items),
                include_archived=False,
            )
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc


__all__ = [
    "ChatOrchestrator",
    "SendReceipt",
    "StreamArgs",
    "StreamSync",
    "ThreadMessages",
    "TITLE_MILESTONES",
]
