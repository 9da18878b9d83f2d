from __future__ import annotations

import threading
import uuid
from collections import deque
from datetime import datetime
from typing import Deque, Dict, Iterable, List, Optional

from chatrelay.logging import get_logger
from chatrelay.storage.cursors import (
    decode_position_cursor,
    decode_time_id_cursor,
    encode_position_cursor,
    encode_time_id_cursor,
)
from chatrelay.storage.errors import ConstraintViolation, ThreadNotFound
from chatrelay.storage.models import (
    MESSAGE_FAILED,
    MESSAGE_ROLES,
    MESSAGE_SUCCESS,
    THREAD_ACTIVE,
    THREAD_ARCHIVED,
    Job,
    Message,
    Page,
    StreamDelta,
    Thread,
)


class MemoryStore:
    """In-memory thread/message store for tests and single-process development.

    All mutations run under one re-entrant lock, which is also the single
    serialization point for message position assignment.
    """

    def __init__(self, *, max_finished_jobs: int = 1000) -> None:
        self.logger = get_logger(__name__)
        self.threads: Dict[str, Thread] = {}
        self.messages: Dict[str, List[Message]] = {}
        self._messages_by_id: Dict[str, Message] = {}
        self._next_position: Dict[str, int] = {}
        self.stream_deltas: Dict[str, List[StreamDelta]] = {}
        self.jobs: Dict[str, Job] = {}
        self._queued: Deque[str] = deque()
        # finished jobs are kept for inspection, oldest evicted first
        self._finished: Deque[str] = deque()
        self.max_finished_jobs = max_finished_jobs
        self._data_lock = threading.RLock()

    # threads
    def create_thread(
        self,
        user_id: str,
        title: Optional[str] = None,
        *,
        meta: Optional[Dict] = None,
        created_at: Optional[datetime] = None,
    ) -> Thread:
        with self._data_lock:
            thread = Thread(
                id=str(uuid.uuid4()),
                user_id=user_id,
                created_at=created_at or datetime.utcnow(),
                title=title,
                meta=meta,
            )
            self.threads[thread.id] = thread
            self.messages[thread.id] = []
            self._next_position[thread.id] = 0
            return thread

    def get_thread(
        self, thread_id: str, *, user_id: Optional[str] = None
    ) -> Optional[Thread]:
        thread = self.threads.get(thread_id)
        if not thread:
            return None
        if user_id and thread.user_id != user_id:
            return None
        return thread

    def update_thread(
        self,
        thread_id: str,
        *,
        title: Optional[str] = None,
        status: Optional[str] = None,
        summary: Optional[str] = None,
    ) -> Thread:
        with self._data_lock:
            thread = self.threads.get(thread_id)
            if not thread:
                raise ThreadNotFound(thread_id)
            if title is not None:
                thread.title = title
            if status is not None:
                if status not in {THREAD_ACTIVE, THREAD_ARCHIVED}:
                    raise ValueError(f"invalid thread status: {status}")
                thread.status = status
            if summary is not None:
                thread.summary = summary
            return thread

    def list_threads_by_user(
        self,
        user_id: str,
        *,
        order: str = "desc",
        cursor: Optional[str] = None,
        num_items: int = 20,
        include_archived: bool = True,
    ) -> Page[Thread]:
        with self._data_lock:
            threads = [
                t
                for t in self.threads.values()
                if t.user_id == user_id
                and (include_archived or t.status != THREAD_ARCHIVED)
            ]
        descending = order == "desc"
        threads.sort(key=lambda t: (t.created_at, t.id), reverse=descending)
        if cursor:
            after = decode_time_id_cursor(cursor)
            if descending:
                threads = [t for t in threads if (t.created_at, t.id) < after]
            else:
                threads = [t for t in threads if (t.created_at, t.id) > after]
        page = threads[:num_items]
        is_done = len(threads) <= num_items
        next_cursor = (
            encode_time_id_cursor(page[-1].created_at, page[-1].id) if page else cursor
        )
        return Page(page=page, is_done=is_done, continue_cursor=next_cursor)

    def search_threads(self, user_id: str, query: str, limit: int = 10) -> List[Thread]:
        terms = [term for term in query.lower().split() if term]
        if not terms:
            return []
        with self._data_lock:
            matches = [
                t
                for t in self.threads.values()
                if t.user_id == user_id
                and t.status != THREAD_ARCHIVED
                and t.title
                and all(term in t.title.lower() for term in terms)
            ]
        matches.sort(key=lambda t: (t.created_at, t.id), reverse=True)
        return matches[:limit]

    def list_users_with_threads(
        self, *, cursor: Optional[str] = None, num_items: int = 100
    ) -> Page[str]:
        with self._data_lock:
            user_ids = sorted({t.user_id for t in self.threads.values()})
        if cursor:
            user_ids = [u for u in user_ids if u > cursor]
        page = user_ids[:num_items]
        return Page(
            page=page,
            is_done=len(user_ids) <= num_items,
            continue_cursor=page[-1] if page else cursor,
        )

    # messages
    def append_message(
        self,
        thread_id: str,
        *,
        user_id: str,
        role: str,
        content: str,
        content_parts: Optional[List[dict]] = None,
        streaming: bool = False,
        model_id: Optional[str] = None,
    ) -> Message:
        if role not in MESSAGE_ROLES:
            raise ValueError(f"invalid message role: {role}")
        with self._data_lock:
            if thread_id not in self.threads:
                raise ThreadNotFound(thread_id)
            position = self._next_position.get(thread_id, 0)
            msg = Message(
                id=str(uuid.uuid4()),
                thread_id=thread_id,
                user_id=user_id,
                role=role,
                position=position,
                content=content,
                content_parts=content_parts,
                streaming=streaming,
                status="pending" if streaming else MESSAGE_SUCCESS,
                model_id=model_id,
                created_at=datetime.utcnow(),
            )
            if not streaming:
                msg.finalized_at = msg.created_at
            self._next_position[thread_id] = position + 1
            self.messages.setdefault(thread_id, []).append(msg)
            self._messages_by_id[msg.id] = msg
            return msg

    def get_message(self, message_id: str) -> Optional[Message]:
        return self._messages_by_id.get(message_id)

    def finalize_message(
        self, message_id: str, content: str, *, usage: Optional[Dict] = None
    ) -> Message:
        with self._data_lock:
            msg = self._messages_by_id.get(message_id)
            if not msg:
                raise ConstraintViolation("message not found", {"message_id": message_id})
            if msg.finalized_at is not None:
                raise ConstraintViolation(
                    "message already finalized", {"message_id": message_id}
                )
            msg.content = content
            msg.usage = usage
            msg.streaming = False
            msg.status = MESSAGE_SUCCESS
            msg.finalized_at = datetime.utcnow()
            self.stream_deltas.pop(message_id, None)
            return msg

    def fail_message(self, message_id: str, error: str) -> Optional[Message]:
        with self._data_lock:
            msg = self._messages_by_id.get(message_id)
            if not msg or msg.finalized_at is not None:
                return msg
            msg.streaming = False
            msg.status = MESSAGE_FAILED
            msg.error = error
            return msg

    def list_messages(
        self,
        thread_id: str,
        *,
        order: str = "desc",
        cursor: Optional[str] = None,
        num_items: Optional[int] = None,
        exclude_tool_messages: bool = False,
    ) -> Page[Message]:
        with self._data_lock:
            msgs = list(self.messages.get(thread_id, []))
        if exclude_tool_messages:
            msgs = [m for m in msgs if m.role != "tool"]
        descending = order == "desc"
        if descending:
            msgs.reverse()
        after = decode_position_cursor(cursor)
        if after is not None:
            if descending:
                msgs = [m for m in msgs if m.position < after]
            else:
                msgs = [m for m in msgs if m.position > after]
        if num_items is None:
            return Page(page=msgs, is_done=True, continue_cursor=cursor)
        page = msgs[:num_items]
        next_cursor = encode_position_cursor(page[-1].position) if page else cursor
        return Page(page=page, is_done=len(msgs) <= num_items, continue_cursor=next_cursor)

    def count_messages(self, thread_id: str, *, exclude_tool_messages: bool = True) -> int:
        with self._data_lock:
            msgs = self.messages.get(thread_id, [])
            if exclude_tool_messages:
                return sum(1 for m in msgs if m.role != "tool")
            return len(msgs)

    def delete_messages(self, message_ids: Iterable[str]) -> int:
        deleted = 0
        with self._data_lock:
            for message_id in list(message_ids):
                msg = self._messages_by_id.pop(message_id, None)
                if not msg:
                    continue
                thread_msgs = self.messages.get(msg.thread_id, [])
                self.messages[msg.thread_id] = [m for m in thread_msgs if m.id != message_id]
                self.stream_deltas.pop(message_id, None)
                deleted += 1
        return deleted

    # stream deltas
    def add_stream_delta(self, stream_id: str, thread_id: str, text: str) -> StreamDelta:
        with self._data_lock:
            msg = self._messages_by_id.get(stream_id)
            if not msg or not msg.streaming:
                raise ConstraintViolation(
                    "stream is not active", {"stream_id": stream_id}
                )
            deltas = self.stream_deltas.setdefault(stream_id, [])
            delta = StreamDelta(
                stream_id=stream_id, thread_id=thread_id, seq=len(deltas), text=text
            )
            deltas.append(delta)
            return delta

    def list_stream_deltas(
        self, thread_id: str, cursors: Dict[str, int]
    ) -> List[StreamDelta]:
        result: List[StreamDelta] = []
        with self._data_lock:
            for stream_id, start in cursors.items():
                for delta in self.stream_deltas.get(stream_id, []):
                    if delta.thread_id == thread_id and delta.seq >= start:
                        result.append(delta)
        return result

    def list_active_streams(self, thread_id: str) -> List[Message]:
        with self._data_lock:
            return [m for m in self.messages.get(thread_id, []) if m.streaming]

    # jobs
    def enqueue_job(self, kind: str, payload: dict) -> Job:
        with self._data_lock:
            job = Job(id=str(uuid.uuid4()), kind=kind, payload=dict(payload))
            self.jobs[job.id] = job
            self._queued.append(job.id)
            return job

    def claim_jobs(self, limit: int = 5) -> List[Job]:
        claimed: List[Job] = []
        with self._data_lock:
            while self._queued and len(claimed) < limit:
                job = self.jobs.get(self._queued.popleft())
                if job is None or job.status != "queued":
                    continue
                job.status = "running"
                job.attempts += 1
                job.updated_at = datetime.utcnow()
                claimed.append(job)
        return claimed

    def complete_job(self, job_id: str) -> None:
        self._set_job_status(job_id, "completed")

    def fail_job(self, job_id: str, error: str) -> None:
        self._set_job_status(job_id, "failed", error=error)

    def _set_job_status(self, job_id: str, status: str, *, error: Optional[str] = None) -> None:
        with self._data_lock:
            job = self.jobs.get(job_id)
            if not job:
                return
            job.status = status
            job.error = error
            job.updated_at = datetime.utcnow()
            if status in {"completed", "failed"}:
                self._finished.append(job_id)
                while len(self._finished) > self.max_finished_jobs:
                    self.jobs.pop(self._finished.popleft(), None)

    def get_job(self, job_id: str) -> Optional[Job]:
        return self.jobs.get(job_id)

    def list_jobs(self, *, status: Optional[str] = None) -> List[Job]:
        with self._data_lock:
            jobs = list(self.jobs.values())
        if status:
            jobs = [j for j in jobs if j.status == status]
        return jobs
