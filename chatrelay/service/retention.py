"""Retention sweep for anonymous conversations.

Anonymous threads older than the retention window lose all of their messages
and are marked ``archived``; the thread row itself is kept. The sweep runs
daily from :class:`RetentionScheduler` or once from ``scripts/run_cleanup.py``.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional

from chatrelay.logging import get_logger, redact_subject
from chatrelay.storage.models import THREAD_ARCHIVED, Thread

if TYPE_CHECKING:
    from chatrelay.storage.memory import MemoryStore
    from chatrelay.storage.postgres import PostgresStore

logger = get_logger(__name__)

SUBJECT_PAGE_SIZE = 100
THREAD_PAGE_SIZE = 50
MESSAGE_BATCH_SIZE = 100


@dataclass
class SweepOutcome:
    success: bool
    cleanup_date: str
    processed_subjects: int = 0
    anonymous_subjects: int = 0
    archived_threads: int = 0
    deleted_messages: int = 0
    failed_threads: int = 0
    dry_run: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class RetentionSweeper:
    def __init__(
        self,
        store: "PostgresStore | MemoryStore",
        *,
        retention_days: int = 7,
        anonymous_prefix: str = "anon_",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.retention = timedelta(days=retention_days)
        self.anonymous_prefix = anonymous_prefix
        self._clock = clock or datetime.utcnow

    def run(self, *, dry_run: bool = False) -> SweepOutcome:
        """Sweep every anonymous subject once.

        Per-thread failures are logged and skipped. Any other failure ends the
        sweep and is reported as ``success=False`` rather than raised.
        """

        now = self._clock()
        cutoff = now - self.retention
        outcome = SweepOutcome(success=True, cleanup_date=now.isoformat(), dry_run=dry_run)
        logger.info("retention_sweep_started", cutoff=cutoff.isoformat(), dry_run=dry_run)
        try:
            cursor: Optional[str] = None
            while True:
                subjects = self.store.list_users_with_threads(
                    cursor=cursor, num_items=SUBJECT_PAGE_SIZE
                )
                for subject_id in subjects.page:
                    outcome.processed_subjects += 1
                    if not subject_id.startswith(self.anonymous_prefix):
                        continue
                    outcome.anonymous_subjects += 1
                    self._sweep_subject(subject_id, cutoff, outcome, dry_run)
                if subjects.is_done:
                    break
                cursor = subjects.continue_cursor
        except Exception as exc:
            logger.exception("retention_sweep_failed", error=str(exc))
            outcome.success = False
            outcome.error = str(exc)
            return outcome

        logger.info(
            "retention_sweep_complete",
            processed_subjects=outcome.processed_subjects,
            anonymous_subjects=outcome.anonymous_subjects,
            archived_threads=outcome.archived_threads,
            deleted_messages=outcome.deleted_messages,
            failed_threads=outcome.failed_threads,
            dry_run=dry_run,
        )
        return outcome

    def _sweep_subject(
        self, subject_id: str, cutoff: datetime, outcome: SweepOutcome, dry_run: bool
    ) -> None:
        cursor: Optional[str] = None
        while True:
            threads = self.store.list_threads_by_user(
                subject_id, order="asc", cursor=cursor, num_items=THREAD_PAGE_SIZE
            )
            for thread in threads.page:
                if thread.created_at >= cutoff or thread.status == THREAD_ARCHIVED:
                    continue
                try:
                    deleted = self._purge_thread(thread, dry_run)
                except Exception as exc:
                    outcome.failed_threads += 1
                    logger.warning(
                        "retention_thread_failed",
                        thread_id=thread.id,
                        subject=redact_subject(subject_id),
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                    continue
                outcome.deleted_messages += deleted
                outcome.archived_threads += 1
            if threads.is_done:
                break
            cursor = threads.continue_cursor

    def _purge_thread(self, thread: Thread, dry_run: bool) -> int:
        if dry_run:
            return self.store.count_messages(thread.id, exclude_tool_messages=False)
        deleted = 0
        cursor: Optional[str] = None
        while True:
            batch = self.store.list_messages(
                thread.id, order="asc", cursor=cursor, num_items=MESSAGE_BATCH_SIZE
            )
            if batch.page:
                deleted += self.store.delete_messages([m.id for m in batch.page])
            if batch.is_done:
                break
            cursor = batch.continue_cursor
        self.store.update_thread(thread.id, status=THREAD_ARCHIVED)
        logger.info("retention_thread_archived", thread_id=thread.id, deleted_messages=deleted)
        return deleted


class RetentionScheduler:
    """Runs the sweep once a day at a fixed UTC wall-clock time."""

    def __init__(
        self,
        sweeper: RetentionSweeper,
        *,
        hour_utc: int = 2,
        minute_utc: int = 0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.sweeper = sweeper
        self.hour_utc = hour_utc
        self.minute_utc = minute_utc
        self._clock = clock or datetime.utcnow
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.last_outcome: Optional[SweepOutcome] = None

    @property
    def running(self) -> bool:
        return self._running

    def next_run_at(self, now: Optional[datetime] = None) -> datetime:
        now = now or self._clock()
        target = now.replace(hour=self.hour_utc, minute=self.minute_utc, second=0, microsecond=0)
        if target <= now:
            target += timedelta(days=1)
        return target

    async def start(self) -> None:
        if self._running:
            logger.warning("retention_scheduler_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("retention_scheduler_started", next_run_at=self.next_run_at().isoformat())

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("retention_scheduler_stopped")

    async def run_once(self, *, dry_run: bool = False) -> SweepOutcome:
        outcome = await asyncio.to_thread(self.sweeper.run, dry_run=dry_run)
        self.last_outcome = outcome
        return outcome

    async def _run_loop(self) -> None:
        while self._running:
            delay = (self.next_run_at() - self._clock()).total_seconds()
            await asyncio.sleep(max(0.0, delay))
            if not self._running:
                break
            await self.run_once()


__all__ = ["RetentionSweeper", "RetentionScheduler", "SweepOutcome"]
