from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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
    MESSAGE_PENDING,
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


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS chat_thread (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        title TEXT,
        status TEXT NOT NULL DEFAULT 'active',
        summary TEXT,
        meta JSONB,
        next_position INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS chat_thread_user_idx ON chat_thread (user_id, created_at, id)",
    """
    CREATE TABLE IF NOT EXISTS chat_message (
        id TEXT PRIMARY KEY,
        thread_id TEXT NOT NULL REFERENCES chat_thread(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL,
        role TEXT NOT NULL,
        position INTEGER NOT NULL,
        content TEXT NOT NULL,
        content_parts JSONB,
        streaming BOOLEAN NOT NULL DEFAULT FALSE,
        status TEXT NOT NULL,
        model_id TEXT,
        usage JSONB,
        error TEXT,
        created_at TIMESTAMP NOT NULL,
        finalized_at TIMESTAMP,
        UNIQUE (thread_id, position)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_stream_delta (
        stream_id TEXT NOT NULL REFERENCES chat_message(id) ON DELETE CASCADE,
        thread_id TEXT NOT NULL,
        seq INTEGER NOT NULL,
        text TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL,
        PRIMARY KEY (stream_id, seq)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_job (
        id TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        payload JSONB NOT NULL,
        status TEXT NOT NULL DEFAULT 'queued',
        attempts INTEGER NOT NULL DEFAULT 0,
        error TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS chat_job_status_idx ON chat_job (status, created_at)",
)


def _load_json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return None
    return value


def _dump_json(value: Any) -> Optional[str]:
    return json.dumps(value) if value is not None else None


class PostgresStore:
    """Postgres-backed thread, message, stream and job store.

    Message positions come from a per-thread counter row that is locked with
    ``SELECT ... FOR UPDATE`` inside the inserting transaction, so concurrent
    appends to the same thread are serialized by the database.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _thread_from_row(row: dict) -> Thread:
        return Thread(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            title=row.get("title"),
            status=row.get("status") or THREAD_ACTIVE,
            summary=row.get("summary"),
            meta=_load_json(row.get("meta")),
        )

    @staticmethod
    def _message_from_row(row: dict) -> Message:
        return Message(
            id=str(row["id"]),
            thread_id=str(row["thread_id"]),
            user_id=str(row["user_id"]),
            role=row["role"],
            position=row["position"],
            content=row["content"],
            created_at=row["created_at"],
            content_parts=_load_json(row.get("content_parts")),
            streaming=bool(row.get("streaming")),
            status=row.get("status") or MESSAGE_SUCCESS,
            model_id=row.get("model_id"),
            finalized_at=row.get("finalized_at"),
            usage=_load_json(row.get("usage")),
            error=row.get("error"),
        )

    @staticmethod
    def _job_from_row(row: dict) -> Job:
        return Job(
            id=str(row["id"]),
            kind=row["kind"],
            payload=_load_json(row["payload"]) or {},
            status=row["status"],
            attempts=row["attempts"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            error=row.get("error"),
        )

    # threads
    def create_thread(
        self,
        user_id: str,
        title: Optional[str] = None,
        *,
        meta: Optional[Dict] = None,
        created_at: Optional[datetime] = None,
    ) -> Thread:
        thread_id = str(uuid.uuid4())
        now = created_at or datetime.utcnow()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO chat_thread (id, user_id, title, meta, created_at) VALUES (%s, %s, %s, %s, %s)",
                (thread_id, user_id, title, _dump_json(meta), now),
            )
        return Thread(id=thread_id, user_id=user_id, created_at=now, title=title, meta=meta)

    def get_thread(
        self, thread_id: str, *, user_id: Optional[str] = None
    ) -> Optional[Thread]:
        query = "SELECT * FROM chat_thread WHERE id = %s"
        params: tuple[Any, ...] = (thread_id,)
        if user_id:
            query += " AND user_id = %s"
            params = (thread_id, user_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._thread_from_row(row) if row else None

    def update_thread(
        self,
        thread_id: str,
        *,
        title: Optional[str] = None,
        status: Optional[str] = None,
        summary: Optional[str] = None,
    ) -> Thread:
        if status is not None and status not in {THREAD_ACTIVE, THREAD_ARCHIVED}:
            raise ValueError(f"invalid thread status: {status}")
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE chat_thread
                SET title = COALESCE(%s, title),
                    status = COALESCE(%s, status),
                    summary = COALESCE(%s, summary)
                WHERE id = %s
                RETURNING *
                """,
                (title, status, summary, thread_id),
            ).fetchone()
        if not row:
            raise ThreadNotFound(thread_id)
        return self._thread_from_row(row)

    def list_threads_by_user(
        self,
        user_id: str,
        *,
        order: str = "desc",
        cursor: Optional[str] = None,
        num_items: int = 20,
        include_archived: bool = True,
    ) -> Page[Thread]:
        descending = order == "desc"
        query = "SELECT * FROM chat_thread WHERE user_id = %s"
        params: list[Any] = [user_id]
        if not include_archived:
            query += " AND status <> %s"
            params.append(THREAD_ARCHIVED)
        if cursor:
            ts, last_id = decode_time_id_cursor(cursor)
            query += " AND (created_at, id) < (%s, %s)" if descending else " AND (created_at, id) > (%s, %s)"
            params.extend([ts, last_id])
        direction = "DESC" if descending else "ASC"
        query += f" ORDER BY created_at {direction}, id {direction} LIMIT %s"
        params.append(num_items + 1)
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        threads = [self._thread_from_row(row) for row in rows[:num_items]]
        next_cursor = (
            encode_time_id_cursor(threads[-1].created_at, threads[-1].id) if threads else cursor
        )
        return Page(page=threads, is_done=len(rows) <= num_items, continue_cursor=next_cursor)

    def search_threads(self, user_id: str, query: str, limit: int = 10) -> List[Thread]:
        terms = [term for term in query.lower().split() if term]
        if not terms:
            return []
        sql = "SELECT * FROM chat_thread WHERE user_id = %s AND status <> %s AND title IS NOT NULL"
        params: list[Any] = [user_id, THREAD_ARCHIVED]
        for term in terms:
            sql += " AND lower(title) LIKE %s"
            escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            params.append(f"%{escaped}%")
        sql += " ORDER BY created_at DESC, id DESC LIMIT %s"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [self._thread_from_row(row) for row in rows]

    def list_users_with_threads(
        self, *, cursor: Optional[str] = None, num_items: int = 100
    ) -> Page[str]:
        query = "SELECT DISTINCT user_id FROM chat_thread"
        params: list[Any] = []
        if cursor:
            query += " WHERE user_id > %s"
            params.append(cursor)
        query += " ORDER BY user_id LIMIT %s"
        params.append(num_items + 1)
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        user_ids = [str(row["user_id"]) for row in rows[:num_items]]
        return Page(
            page=user_ids,
            is_done=len(rows) <= num_items,
            continue_cursor=user_ids[-1] if user_ids else cursor,
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
        msg_id = str(uuid.uuid4())
        now = datetime.utcnow()
        status = MESSAGE_PENDING if streaming else MESSAGE_SUCCESS
        finalized_at = None if streaming else now
        try:
            with self._connect() as conn:
                with conn.transaction():
                    row = conn.execute(
                        "SELECT next_position FROM chat_thread WHERE id = %s FOR UPDATE",
                        (thread_id,),
                    ).fetchone()
                    if not row:
                        raise ThreadNotFound(thread_id)
                    position = row["next_position"]
                    conn.execute(
                        """
                        INSERT INTO chat_message (
                            id, thread_id, user_id, role, position, content, content_parts,
                            streaming, status, model_id, created_at, finalized_at
                        ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            msg_id,
                            thread_id,
                            user_id,
                            role,
                            position,
                            content,
                            _dump_json(content_parts),
                            streaming,
                            status,
                            model_id,
                            now,
                            finalized_at,
                        ),
                    )
                    conn.execute(
                        "UPDATE chat_thread SET next_position = %s WHERE id = %s",
                        (position + 1, thread_id),
                    )
        except errors.ForeignKeyViolation as exc:
            raise ThreadNotFound(thread_id) from exc
        return Message(
            id=msg_id,
            thread_id=thread_id,
            user_id=user_id,
            role=role,
            position=position,
            content=content,
            created_at=now,
            content_parts=content_parts,
            streaming=streaming,
            status=status,
            model_id=model_id,
            finalized_at=finalized_at,
        )

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM chat_message WHERE id = %s", (message_id,)
            ).fetchone()
        return self._message_from_row(row) if row else None

    def finalize_message(
        self, message_id: str, content: str, *, usage: Optional[Dict] = None
    ) -> Message:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    """
                    UPDATE chat_message
                    SET content = %s, usage = %s, streaming = FALSE, status = %s,
                        finalized_at = %s
                    WHERE id = %s AND finalized_at IS NULL
                    RETURNING *
                    """,
                    (content, _dump_json(usage), MESSAGE_SUCCESS, datetime.utcnow(), message_id),
                ).fetchone()
                if not row:
                    raise ConstraintViolation(
                        "message missing or already finalized", {"message_id": message_id}
                    )
                conn.execute(
                    "DELETE FROM chat_stream_delta WHERE stream_id = %s", (message_id,)
                )
        return self._message_from_row(row)

    def fail_message(self, message_id: str, error: str) -> Optional[Message]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE chat_message
                SET streaming = FALSE, status = %s, error = %s
                WHERE id = %s AND finalized_at IS NULL
                RETURNING *
                """,
                (MESSAGE_FAILED, error, message_id),
            ).fetchone()
        if row:
            return self._message_from_row(row)
        return self.get_message(message_id)

    def list_messages(
        self,
        thread_id: str,
        *,
        order: str = "desc",
        cursor: Optional[str] = None,
        num_items: Optional[int] = None,
        exclude_tool_messages: bool = False,
    ) -> Page[Message]:
        descending = order == "desc"
        query = "SELECT * FROM chat_message WHERE thread_id = %s"
        params: list[Any] = [thread_id]
        if exclude_tool_messages:
            query += " AND role <> 'tool'"
        after = decode_position_cursor(cursor)
        if after is not None:
            query += " AND position < %s" if descending else " AND position > %s"
            params.append(after)
        query += " ORDER BY position DESC" if descending else " ORDER BY position ASC"
        if num_items is not None:
            query += " LIMIT %s"
            params.append(num_items + 1)
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        if num_items is None:
            return Page(
                page=[self._message_from_row(r) for r in rows],
                is_done=True,
                continue_cursor=cursor,
            )
        messages = [self._message_from_row(r) for r in rows[:num_items]]
        next_cursor = encode_position_cursor(messages[-1].position) if messages else cursor
        return Page(page=messages, is_done=len(rows) <= num_items, continue_cursor=next_cursor)

    def count_messages(self, thread_id: str, *, exclude_tool_messages: bool = True) -> int:
        query = "SELECT COUNT(*) AS c FROM chat_message WHERE thread_id = %s"
        if exclude_tool_messages:
            query += " AND role <> 'tool'"
        with self._connect() as conn:
            row = conn.execute(query, (thread_id,)).fetchone()
        return int(row["c"]) if row else 0

    def delete_messages(self, message_ids: Iterable[str]) -> int:
        ids = list(message_ids)
        if not ids:
            return 0
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM chat_message WHERE id = ANY(%s)", (ids,))
            return cur.rowcount or 0

    # stream deltas
    def add_stream_delta(self, stream_id: str, thread_id: str, text: str) -> StreamDelta:
        now = datetime.utcnow()
        with self._connect() as conn:
            with conn.transaction():
                msg = conn.execute(
                    "SELECT streaming FROM chat_message WHERE id = %s FOR UPDATE",
                    (stream_id,),
                ).fetchone()
                if not msg or not msg["streaming"]:
                    raise ConstraintViolation("stream is not active", {"stream_id": stream_id})
                row = conn.execute(
                    "SELECT COALESCE(MAX(seq) + 1, 0) AS next_seq FROM chat_stream_delta WHERE stream_id = %s",
                    (stream_id,),
                ).fetchone()
                seq = row["next_seq"] if row else 0
                conn.execute(
                    "INSERT INTO chat_stream_delta (stream_id, thread_id, seq, text, created_at) VALUES (%s, %s, %s, %s, %s)",
                    (stream_id, thread_id, seq, text, now),
                )
        return StreamDelta(stream_id=stream_id, thread_id=thread_id, seq=seq, text=text, created_at=now)

    def list_stream_deltas(
        self, thread_id: str, cursors: Dict[str, int]
    ) -> List[StreamDelta]:
        result: List[StreamDelta] = []
        if not cursors:
            return result
        with self._connect() as conn:
            for stream_id, start in cursors.items():
                rows = conn.execute(
                    """
                    SELECT * FROM chat_stream_delta
                    WHERE stream_id = %s AND thread_id = %s AND seq >= %s
                    ORDER BY seq ASC
                    """,
                    (stream_id, thread_id, start),
                ).fetchall()
                result.extend(
                    StreamDelta(
                        stream_id=str(r["stream_id"]),
                        thread_id=str(r["thread_id"]),
                        seq=r["seq"],
                        text=r["text"],
                        created_at=r["created_at"],
                    )
                    for r in rows
                )
        return result

    def list_active_streams(self, thread_id: str) -> List[Message]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM chat_message WHERE thread_id = %s AND streaming ORDER BY position ASC",
                (thread_id,),
            ).fetchall()
        return [self._message_from_row(r) for r in rows]

    # jobs
    def enqueue_job(self, kind: str, payload: dict) -> Job:
        job_id = str(uuid.uuid4())
        now = datetime.utcnow()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO chat_job (id, kind, payload, created_at, updated_at) VALUES (%s, %s, %s, %s, %s)",
                (job_id, kind, json.dumps(payload), now, now),
            )
        return Job(id=job_id, kind=kind, payload=dict(payload), created_at=now, updated_at=now)

    def claim_jobs(self, limit: int = 5) -> List[Job]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE chat_job
                SET status = 'running', attempts = attempts + 1, updated_at = %s
                WHERE id IN (
                    SELECT id FROM chat_job
                    WHERE status = 'queued'
                    ORDER BY created_at ASC
                    LIMIT %s
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                (datetime.utcnow(), limit),
            ).fetchall()
        jobs = [self._job_from_row(r) for r in rows]
        jobs.sort(key=lambda j: j.created_at)
        return jobs

    def complete_job(self, job_id: str) -> None:
        self._set_job_status(job_id, "completed")

    def fail_job(self, job_id: str, error: str) -> None:
        self._set_job_status(job_id, "failed", error=error)

    def _set_job_status(self, job_id: str, status: str, *, error: Optional[str] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE chat_job SET status = %s, error = %s, updated_at = %s WHERE id = %s",
                (status, error, datetime.utcnow(), job_id),
            )

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM chat_job WHERE id = %s", (job_id,)).fetchone()
        return self._job_from_row(row) if row else None

    def list_jobs(self, *, status: Optional[str] = None) -> List[Job]:
        query = "SELECT * FROM chat_job"
        params: tuple[Any, ...] = ()
        if status:
            query += " WHERE status = %s"
            params = (status,)
        query += " ORDER BY created_at ASC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._job_from_row(r) for r in rows]
