"""Background worker draining persisted jobs.

Requests enqueue a job row and return immediately; this worker claims queued
jobs from the store and dispatches them by kind. Because the job record is
durable, a job enqueued by one process can be executed by another.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, Optional

from chatrelay.logging import get_logger
from chatrelay.storage.models import Job

if TYPE_CHECKING:
    from chatrelay.storage.memory import MemoryStore
    from chatrelay.storage.postgres import PostgresStore

logger = get_logger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 0.5
DEFAULT_BATCH_SIZE = 5
MAX_BACKOFF_SECONDS = 60

JOB_STREAM_RESPONSE = "stream_response"

JobHandler = Callable[[Job], Awaitable[None]]


class JobWorker:
    """Polls the store for queued jobs and runs their registered handlers.

    A handler that raises marks its job ``failed`` with the error; generation
    is never retried automatically.
    """

    def __init__(
        self,
        store: "PostgresStore | MemoryStore",
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self.store = store
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.handlers: Dict[str, JobHandler] = {}
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def register(self, kind: str, handler: JobHandler) -> None:
        self.handlers[kind] = handler

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("job_worker_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("job_worker_started", poll_interval=self.poll_interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("job_worker_stopped")

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                processed = await self.run_pending()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "job_worker_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS,
                        self.poll_interval * (2 ** (consecutive_errors - 3)),
                    )
                    logger.warning(
                        "job_worker_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue
                processed = 0
            if not processed:
                await asyncio.sleep(self.poll_interval)

    async def run_pending(self) -> int:
        """Claim and run one batch of queued jobs; returns how many ran."""

        jobs = self.store.claim_jobs(limit=self.batch_size)
        for job in jobs:
            await self._process_job(job)
        return len(jobs)

    async def drain(self, *, max_batches: int = 100) -> int:
        """Run batches until the queue is empty."""

        total = 0
        for _ in range(max_batches):
            ran = await self.run_pending()
            if not ran:
                break
            total += ran
        return total

    async def _process_job(self, job: Job) -> None:
        handler = self.handlers.get(job.kind)
        if handler is None:
            logger.error("job_handler_missing", job_id=job.id, kind=job.kind)
            self.store.fail_job(job.id, f"no handler for job kind {job.kind}")
            return
        logger.info("job_starting", job_id=job.id, kind=job.kind, attempts=job.attempts)
        try:
            await handler(job)
        except Exception as exc:
            logger.error(
                "job_failed",
                job_id=job.id,
                kind=job.kind,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            self.store.fail_job(job.id, str(exc))
            return
        self.store.complete_job(job.id)
        logger.info("job_completed", job_id=job.id, kind=job.kind)


__all__ = ["JobWorker", "JobHandler", "JOB_STREAM_RESPONSE"]
