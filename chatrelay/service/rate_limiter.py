from __future__ import annotations

import asyncio
import hashlib
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Tuple, Union

from chatrelay.logging import get_logger, redact_subject
from chatrelay.service.errors import RateLimitedError
from chatrelay.storage.redis_cache import RedisCache, SyncRedisCache, _normalize_rate_key

logger = get_logger(__name__)

TOKEN_BUCKET = "token bucket"
FIXED_WINDOW = "fixed window"

SECOND_MS = 1000
MINUTE_MS = 60 * SECOND_MS
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS
LOCAL_PRUNE_INTERVAL_MS = MINUTE_MS


@dataclass(frozen=True)
class BucketConfig:
    """Static configuration of one named bucket.

    For token buckets ``rate`` tokens refill linearly over ``period_ms`` up to
    ``capacity``. For fixed windows ``rate`` calls are admitted per
    epoch-aligned window of ``period_ms``; ``capacity`` defaults to ``rate``.
    """

    name: str
    kind: str
    rate: int
    period_ms: int
    capacity: Optional[int] = None
    shards: Optional[int] = None

    def __post_init__(self) -> None:
        if self.kind not in {TOKEN_BUCKET, FIXED_WINDOW}:
            raise ValueError(f"unknown bucket kind: {self.kind}")
        if self.rate <= 0 or self.period_ms <= 0:
            raise ValueError("bucket rate and period must be positive")
        if self.shards is not None and self.shards < 1:
            raise ValueError("bucket shards must be >= 1")

    @property
    def limit(self) -> int:
        return self.capacity if self.capacity is not None else self.rate

    @property
    def shard_count(self) -> int:
        return self.shards or 1


RATE_LIMITS: Dict[str, BucketConfig] = {
    cfg.name: cfg
    for cfg in (
        BucketConfig("sendMessage", TOKEN_BUCKET, rate=30, period_ms=MINUTE_MS, capacity=5),
        BucketConfig("aiRequests", TOKEN_BUCKET, rate=60, period_ms=MINUTE_MS, capacity=10),
        BucketConfig("createThread", FIXED_WINDOW, rate=10, period_ms=HOUR_MS),
        BucketConfig("heavyOperations", FIXED_WINDOW, rate=100, period_ms=MINUTE_MS, shards=3),
        BucketConfig("anonymousMessages", FIXED_WINDOW, rate=5, period_ms=DAY_MS),
        BucketConfig("anonymousThreads", FIXED_WINDOW, rate=2, period_ms=DAY_MS),
        BucketConfig("anonymousAiRequests", FIXED_WINDOW, rate=5, period_ms=DAY_MS),
    )
}

# family -> (authenticated bucket, anonymous bucket)
BUCKET_FAMILIES: Dict[str, Tuple[str, str]] = {
    "create_thread": ("createThread", "anonymousThreads"),
    "send_message": ("sendMessage", "anonymousMessages"),
    "ai_request": ("aiRequests", "anonymousAiRequests"),
}

SEARCH_BUCKET = "heavyOperations"


def bucket_for(family: str, is_anonymous: bool) -> str:
    try:
        authenticated, anonymous = BUCKET_FAMILIES[family]
    except KeyError as exc:
        raise ValueError(f"unknown rate-limit family: {family}") from exc
    return anonymous if is_anonymous else authenticated


@dataclass
class RateLimitResult:
    allowed: bool
    retry_after_ms: int = 0


def split_evenly(total: int, parts: int) -> List[int]:
    """Split ``total`` into ``parts`` integers summing to ``total``.

    Remainders go to the lowest-numbered parts.
    """

    base, extra = divmod(total, parts)
    return [base + (1 if i < extra else 0) for i in range(parts)]


def _shard_start(subject: str, shards: int) -> int:
    digest = hashlib.sha256(subject.encode()).hexdigest()
    return int(digest[:8], 16) % shards


def format_retry_after(retry_after_ms: int) -> str:
    """Render a wait time for a user-facing rate-limit message."""

    seconds = max(1, math.ceil(retry_after_ms / 1000))
    if seconds < 60:
        unit = "second" if seconds == 1 else "seconds"
        return f"Please wait {seconds} {unit} before trying again."
    minutes = math.ceil(seconds / 60)
    if minutes < 60:
        unit = "minute" if minutes == 1 else "minutes"
        return f"Please wait {minutes} {unit} before trying again."
    hours = math.ceil(minutes / 60)
    unit = "hour" if hours == 1 else "hours"
    return f"Please wait {hours} {unit} before trying again."


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


CacheType = Union[RedisCache, SyncRedisCache]


class RateLimiter:
    """Multi-bucket quota engine keyed by subject.

    State lives in Redis when a cache is configured (atomic Lua scripts), or
    in an in-process table guarded by an ``asyncio.Lock`` otherwise. A denied
    or non-consuming call never writes state.
    """

    def __init__(
        self,
        cache: Optional[CacheType] = None,
        *,
        buckets: Optional[Mapping[str, BucketConfig]] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.cache = cache
        self.buckets: Dict[str, BucketConfig] = dict(buckets or RATE_LIMITS)
        self._clock = clock or _wall_clock_ms
        # key -> (tokens, last_ms) for token buckets; (window_index, used) for windows
        self._local_buckets: Dict[str, Tuple[float, int]] = {}
        self._local_windows: Dict[str, Tuple[int, int]] = {}
        # key -> epoch ms after which the entry is equivalent to no state
        self._local_expiry: Dict[str, int] = {}
        self._next_prune_ms = 0
        self._local_lock = asyncio.Lock()

    def _config(self, name: str) -> BucketConfig:
        config = self.buckets.get(name)
        if not config:
            raise ValueError(f"unknown rate-limit bucket: {name}")
        return config

    async def limit(self, name: str, key: str, *, count: int = 1) -> RateLimitResult:
        """Consume ``count`` units from bucket ``name`` for subject ``key``."""

        result = await self._run(name, key, count=count, apply=True)
        if not result.allowed:
            logger.info(
                "rate_limit_denied",
                bucket=name,
                subject=redact_subject(key),
                retry_after_ms=result.retry_after_ms,
            )
        return result

    async def check(self, name: str, key: str, *, count: int = 1) -> RateLimitResult:
        """Report whether ``count`` units are available without consuming them."""

        return await self._run(name, key, count=count, apply=False)

    async def reset(self, name: str, key: str) -> None:
        config = self._config(name)
        base = _normalize_rate_key(config.name, key)
        if self.cache:
            await self.cache.delete_rate_keys(f"{base}*")
            return
        async with self._local_lock:
            for table in (self._local_buckets, self._local_windows, self._local_expiry):
                for state_key in [k for k in table if k.startswith(base)]:
                    del table[state_key]

    async def enforce(self, name: str, key: str, *, count: int = 1) -> RateLimitResult:
        """Consume from a bucket, raising :class:`RateLimitedError` on denial."""

        result = await self.limit(name, key, count=count)
        if not result.allowed:
            raise RateLimitedError(
                f"Rate limit exceeded. {format_retry_after(result.retry_after_ms)}",
                retry_after_ms=result.retry_after_ms,
                bucket=name,
            )
        return result

    async def _run(self, name: str, key: str, *, count: int, apply: bool) -> RateLimitResult:
        config = self._config(name)
        if count < 1:
            raise ValueError("rate-limit count must be >= 1")
        if count > config.limit:
            raise ValueError(
                f"count {count} exceeds capacity {config.limit} of bucket {name}"
            )
        now = self._clock()
        shards = config.shard_count
        if shards == 1:
            allowed, wait = await self._attempt(
                config, key, None, config.limit, config.rate, count, now, apply
            )
            return RateLimitResult(allowed=allowed, retry_after_ms=wait)

        capacities = split_evenly(config.limit, shards)
        rates = split_evenly(config.rate, shards)
        start = _shard_start(key, shards)
        waits: List[int] = []
        for offset in range(shards):
            shard = (start + offset) % shards
            if capacities[shard] < count or rates[shard] == 0:
                continue
            allowed, wait = await self._attempt(
                config, key, shard, capacities[shard], rates[shard], count, now, apply
            )
            if allowed:
                return RateLimitResult(allowed=True)
            waits.append(wait)
        return RateLimitResult(allowed=False, retry_after_ms=min(waits) if waits else config.period_ms)

    async def _attempt(
        self,
        config: BucketConfig,
        key: str,
        shard: Optional[int],
        capacity: int,
        rate: int,
        count: int,
        now: int,
        apply: bool,
    ) -> Tuple[bool, int]:
        state_key = _normalize_rate_key(config.name, key, shard)
        if config.kind == TOKEN_BUCKET:
            if self.cache:
                allowed, _, wait = await self.cache.token_bucket(
                    state_key,
                    now_ms=now,
                    refill_per_ms=rate / config.period_ms,
                    capacity=capacity,
                    cost=count,
                    apply=apply,
                )
                return allowed, wait
            return await self._local_token_bucket(
                state_key, now, rate, config.period_ms, capacity, count, apply
            )

        window_index = now // config.period_ms
        window_end = (window_index + 1) * config.period_ms
        if self.cache:
            allowed, _ = await self.cache.fixed_window(
                f"{state_key}:w{window_index}",
                limit=capacity,
                ttl_ms=window_end - now,
                cost=count,
                apply=apply,
            )
        else:
            allowed = await self._local_fixed_window(
                state_key, window_index, window_end, now, capacity, count, apply
            )
        return allowed, 0 if allowed else window_end - now

    async def _local_token_bucket(
        self,
        state_key: str,
        now: int,
        rate: int,
        period_ms: int,
        capacity: int,
        count: int,
        apply: bool,
    ) -> Tuple[bool, int]:
        async with self._local_lock:
            tokens, last = self._local_buckets.get(state_key, (float(capacity), now))
            elapsed = max(0, now - last)
            tokens = min(float(capacity), tokens + elapsed * rate / period_ms)
            if tokens < count:
                return False, math.ceil((count - tokens) * period_ms / rate)
            if apply:
                remaining = tokens - count
                self._local_buckets[state_key] = (remaining, now)
                # a refilled bucket is indistinguishable from a missing one
                self._local_expiry[state_key] = now + math.ceil(
                    (capacity - remaining) * period_ms / rate
                )
                self._prune_local(now)
            return True, 0

    async def _local_fixed_window(
        self,
        state_key: str,
        window_index: int,
        window_end: int,
        now: int,
        limit: int,
        count: int,
        apply: bool,
    ) -> bool:
        async with self._local_lock:
            index, used = self._local_windows.get(state_key, (window_index, 0))
            if index != window_index:
                used = 0
            if used + count > limit:
                return False
            if apply:
                self._local_windows[state_key] = (window_index, used + count)
                self._local_expiry[state_key] = window_end
                self._prune_local(now)
            return True

    def _prune_local(self, now: int) -> None:
        """Drop expired local entries; runs at most once per prune interval."""

        if now < self._next_prune_ms:
            return
        self._next_prune_ms = now + LOCAL_PRUNE_INTERVAL_MS
        expired = [k for k, expires in self._local_expiry.items() if expires <= now]
        for state_key in expired:
            del self._local_expiry[state_key]
            self._local_buckets.pop(state_key, None)
            self._local_windows.pop(state_key, None)
        if expired:
            logger.debug("rate_limit_state_pruned", entries=len(expired))


__all__ = [
    "BucketConfig",
    "RATE_LIMITS",
    "BUCKET_FAMILIES",
    "SEARCH_BUCKET",
    "RateLimitResult",
    "RateLimiter",
    "bucket_for",
    "format_retry_after",
    "split_evenly",
]
