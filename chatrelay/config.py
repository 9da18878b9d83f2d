from __future__ import annotations

import os
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatrelay.logging import get_logger

logger = get_logger(__name__)


class StreamChunking(str, Enum):
    """Granularity at which streamed model output is persisted as deltas."""

    LINE = "line"
    WORD = "word"
    NONE = "none"


DEFAULT_AGENT_INSTRUCTIONS = (
    "You are a helpful assistant. Be concise and friendly in your responses."
)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the chat relay service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/chatrelay", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors: stub model backend, no Redis requirement.",
    )

    # LLM provider
    openrouter_api_key: str | None = env_field(None, "OPENROUTER_API_KEY")
    openrouter_base_url: str = env_field(
        "https://openrouter.ai/api/v1", "OPENROUTER_BASE_URL"
    )
    default_model_id: str = env_field(
        "openai/gpt-4.1-nano",
        "DEFAULT_MODEL_ID",
        description="Fallback model; must be a free-tier catalogue entry",
    )
    title_model_id: str | None = env_field(None, "TITLE_MODEL_ID")
    agent_name: str = env_field("chat-agent", "AGENT_NAME")
    agent_instructions: str = env_field(
        DEFAULT_AGENT_INSTRUCTIONS, "AGENT_INSTRUCTIONS"
    )
    stream_chunking: StreamChunking = env_field(
        StreamChunking.LINE, "STREAM_CHUNKING"
    )

    # Identity
    session_jwt_secret: str | None = env_field(None, "SESSION_JWT_SECRET")
    session_jwt_issuer: str | None = env_field(None, "SESSION_JWT_ISSUER")
    session_jwt_audience: str | None = env_field(None, "SESSION_JWT_AUDIENCE")
    anonymous_id_prefix: str = env_field("anon_", "ANONYMOUS_ID_PREFIX")

    # Retention sweep
    retention_days: int = env_field(7, "RETENTION_DAYS")
    sweep_enabled: bool = env_field(True, "SWEEP_ENABLED")
    sweep_hour_utc: int = env_field(2, "SWEEP_HOUR_UTC")
    sweep_minute_utc: int = env_field(0, "SWEEP_MINUTE_UTC")

    # Background generation jobs
    job_worker_enabled: bool = env_field(True, "JOB_WORKER_ENABLED")
    job_poll_interval_seconds: float = env_field(0.5, "JOB_POLL_INTERVAL_SECONDS")

    # Pagination
    default_page_size: int = env_field(20, "DEFAULT_PAGE_SIZE")
    max_page_size: int = env_field(100, "MAX_PAGE_SIZE")

    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("stream_chunking")
    @classmethod
    def _validate_chunking(cls, value: StreamChunking) -> StreamChunking:
        return StreamChunking(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("sweep_hour_utc")
    @classmethod
    def _validate_hour(cls, value: int) -> int:
        if not 0 <= value <= 23:
            raise ValueError("sweep_hour_utc must be between 0 and 23")
        return value

    @field_validator("sweep_minute_utc")
    @classmethod
    def _validate_minute(cls, value: int) -> int:
        if not 0 <= value <= 59:
            raise ValueError("sweep_minute_utc must be between 0 and 59")
        return value

    @field_validator("retention_days")
    @classmethod
    def _validate_retention(cls, value: int) -> int:
        if value < 1:
            logger.warning(
                "retention_days_invalid",
                retention_days=value,
                message="retention window must be at least one day; using 7",
            )
            return 7
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
