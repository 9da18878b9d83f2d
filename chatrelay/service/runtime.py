from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from chatrelay.config import get_settings, reset_settings_cache
from chatrelay.logging import get_logger
from chatrelay.service.chat import ChatOrchestrator
from chatrelay.service.identity import IdentityResolver
from chatrelay.service.jobs import JOB_STREAM_RESPONSE, JobWorker
from chatrelay.service.llm import LLMService
from chatrelay.service.model_backend import ModelBackend, OpenRouterBackend, StubBackend
from chatrelay.service.model_registry import ModelRegistry
from chatrelay.service.rate_limiter import RateLimiter
from chatrelay.service.retention import RetentionScheduler, RetentionSweeper
from chatrelay.storage.memory import MemoryStore
from chatrelay.storage.postgres import PostgresStore
from chatrelay.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, *, backend: Optional[ModelBackend] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Union[RedisCache, SyncRedisCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode keeps per-test event loops independent
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate-limit state; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for the in-process fallback."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else None,
                mode="test" if self.settings.test_mode else "dev_fallback",
            )

        self.identity = IdentityResolver(self.settings)
        self.rate_limiter = RateLimiter(self.cache)
        self.models = ModelRegistry(default_model_id=self.settings.default_model_id)

        if backend is None:
            if self.settings.openrouter_api_key and not self.settings.test_mode:
                backend = OpenRouterBackend(
                    self.settings.openrouter_api_key,
                    base_url=self.settings.openrouter_base_url,
                )
            else:
                backend = StubBackend()
        self.backend = backend
        self.llm = LLMService(
            backend,
            instructions=self.settings.agent_instructions,
            chunking=self.settings.stream_chunking,
            title_model_id=self.settings.title_model_id,
        )
        self.chat = ChatOrchestrator(
            self.store,
            self.rate_limiter,
            self.models,
            self.llm,
            default_page_size=self.settings.default_page_size,
            max_page_size=self.settings.max_page_size,
        )

        self.job_worker = JobWorker(
            self.store, poll_interval=self.settings.job_poll_interval_seconds
        )
        self.job_worker.register(JOB_STREAM_RESPONSE, self.chat.handle_job)

        self.sweeper = RetentionSweeper(
            self.store,
            retention_days=self.settings.retention_days,
            anonymous_prefix=self.settings.anonymous_id_prefix,
        )
        self.retention_scheduler = RetentionScheduler(
            self.sweeper,
            hour_utc=self.settings.sweep_hour_utc,
            minute_utc=self.settings.sweep_minute_utc,
        )

        logger.info(
            "runtime_initialized",
            agent_name=self.settings.agent_name,
            model_backend=getattr(backend, "name", type(backend).__name__),
            default_model_id=self.models.default_model_id,
            stream_chunking=self.settings.stream_chunking.value,
            redis_enabled=self.cache is not None,
        )

    async def aclose(self) -> None:
        await self.job_worker.stop()
        await self.retention_scheduler.stop()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, backend: Optional[ModelBackend] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            if isinstance(runtime.cache, SyncRedisCache):
                asyncio.run(runtime.cache.close())
            else:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(backend=backend)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
