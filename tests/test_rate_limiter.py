"""Rate limiter behaviour on the in-process table, driven by a fake clock."""

from unittest.mock import AsyncMock

import pytest

from chatrelay.service.errors import RateLimitedError
from chatrelay.service.rate_limiter import (
    DAY_MS,
    FIXED_WINDOW,
    HOUR_MS,
    MINUTE_MS,
    RATE_LIMITS,
    TOKEN_BUCKET,
    BucketConfig,
    RateLimiter,
    bucket_for,
    format_retry_after,
    split_evenly,
)
from chatrelay.storage.redis_cache import _normalize_rate_key


def _limiter(clock, *configs):
    buckets = {cfg.name: cfg for cfg in configs} if configs else None
    return RateLimiter(buckets=buckets, clock=clock)


@pytest.mark.parametrize(
    "config",
    [
        RATE_LIMITS["sendMessage"],
        RATE_LIMITS["aiRequests"],
        BucketConfig("odd", TOKEN_BUCKET, rate=7, period_ms=1000, capacity=3),
    ],
    ids=lambda cfg: cfg.name,
)
async def test_token_bucket_drains_then_refills(clock, config):
    limiter = _limiter(clock, config)

    for _ in range(config.limit):
        assert (await limiter.limit(config.name, "user_1")).allowed

    denied = await limiter.limit(config.name, "user_1")
    assert not denied.allowed
    assert denied.retry_after_ms > 0

    clock.advance(denied.retry_after_ms)
    assert (await limiter.limit(config.name, "user_1")).allowed


async def test_token_bucket_refill_capped_at_capacity(clock):
    config = RATE_LIMITS["sendMessage"]
    limiter = _limiter(clock, config)
    await limiter.limit(config.name, "user_1")

    clock.advance(HOUR_MS)

    results = [(await limiter.limit(config.name, "user_1")).allowed for _ in range(config.limit + 1)]
    assert results == [True] * config.limit + [False]


async def test_fixed_window_admits_rate_then_resets_at_boundary(clock):
    config = RATE_LIMITS["createThread"]
    clock.now_ms = 5 * HOUR_MS + 1234
    limiter = _limiter(clock, config)

    for _ in range(config.rate):
        assert (await limiter.limit(config.name, "user_1")).allowed

    denied = await limiter.limit(config.name, "user_1")
    assert not denied.allowed
    assert denied.retry_after_ms == HOUR_MS - 1234

    clock.advance(denied.retry_after_ms)
    assert (await limiter.limit(config.name, "user_1")).allowed


async def test_anonymous_daily_window_waits_until_utc_midnight(clock):
    # 2024-01-15 15:30 UTC
    clock.now_ms = 19737 * DAY_MS + 15 * HOUR_MS + 30 * MINUTE_MS
    limiter = _limiter(clock)
    anon = "anon_0f9d7c1e-55aa-4c6b-9e61-3d2b8f1c7a10"
    bucket = bucket_for("send_message", is_anonymous=True)

    for _ in range(5):
        assert (await limiter.limit(bucket, anon)).allowed

    denied = await limiter.limit(bucket, anon)
    assert not denied.allowed
    assert denied.retry_after_ms == 8 * HOUR_MS + 30 * MINUTE_MS


async def test_subjects_do_not_share_buckets(clock):
    limiter = _limiter(clock)
    for _ in range(2):
        assert (await limiter.limit("anonymousThreads", "anon_aaaaaaaa")).allowed
    assert not (await limiter.limit("anonymousThreads", "anon_aaaaaaaa")).allowed
    assert (await limiter.limit("anonymousThreads", "anon_bbbbbbbb")).allowed


async def test_check_never_consumes(clock):
    config = RATE_LIMITS["sendMessage"]
    limiter = _limiter(clock, config)

    for _ in range(10):
        assert (await limiter.check(config.name, "user_1")).allowed

    for _ in range(config.limit):
        assert (await limiter.limit(config.name, "user_1")).allowed
    peek = await limiter.check(config.name, "user_1")
    assert not peek.allowed
    assert peek.retry_after_ms > 0


async def test_denied_attempts_do_not_push_back_recovery(clock):
    config = RATE_LIMITS["sendMessage"]
    limiter = _limiter(clock, config)
    for _ in range(config.limit):
        await limiter.limit(config.name, "user_1")

    first = await limiter.limit(config.name, "user_1")
    clock.advance(first.retry_after_ms // 2)
    for _ in range(5):
        assert not (await limiter.limit(config.name, "user_1")).allowed
    clock.advance(first.retry_after_ms - first.retry_after_ms // 2)

    assert (await limiter.limit(config.name, "user_1")).allowed


async def test_sharded_bucket_capacity_is_sum_of_shards(clock):
    config = RATE_LIMITS["heavyOperations"]
    limiter = _limiter(clock, config)

    allowed = 0
    for _ in range(config.rate + 5):
        if (await limiter.limit(config.name, "user_1")).allowed:
            allowed += 1

    assert allowed == config.rate
    denied = await limiter.limit(config.name, "user_1")
    assert denied.retry_after_ms == MINUTE_MS


def test_split_evenly_assigns_remainder_to_lowest_parts():
    assert split_evenly(100, 3) == [34, 33, 33]
    assert split_evenly(5, 5) == [1, 1, 1, 1, 1]
    assert sum(split_evenly(7, 4)) == 7


async def test_reset_restores_full_capacity(clock):
    limiter = _limiter(clock)
    for _ in range(2):
        await limiter.limit("anonymousThreads", "anon_aaaaaaaa")
    assert not (await limiter.check("anonymousThreads", "anon_aaaaaaaa")).allowed

    await limiter.reset("anonymousThreads", "anon_aaaaaaaa")

    assert (await limiter.limit("anonymousThreads", "anon_aaaaaaaa")).allowed


async def test_enforce_raises_with_wait_message(clock):
    limiter = _limiter(clock)
    for _ in range(2):
        await limiter.enforce("anonymousThreads", "anon_aaaaaaaa")

    with pytest.raises(RateLimitedError) as excinfo:
        await limiter.enforce("anonymousThreads", "anon_aaaaaaaa")

    err = excinfo.value
    assert err.bucket == "anonymousThreads"
    assert err.retry_after_ms == DAY_MS
    assert err.detail["retry_after_ms"] == DAY_MS
    assert "Please wait 24 hours" in err.message


async def test_invalid_requests_rejected(clock):
    limiter = _limiter(clock)
    with pytest.raises(ValueError):
        await limiter.limit("noSuchBucket", "user_1")
    with pytest.raises(ValueError):
        await limiter.limit("sendMessage", "user_1", count=6)


def test_bucket_families():
    assert bucket_for("send_message", is_anonymous=False) == "sendMessage"
    assert bucket_for("send_message", is_anonymous=True) == "anonymousMessages"
    assert bucket_for("ai_request", is_anonymous=True) == "anonymousAiRequests"
    assert bucket_for("create_thread", is_anonymous=False) == "createThread"
    with pytest.raises(ValueError):
        bucket_for("upload", is_anonymous=False)


def test_bucket_config_validation():
    with pytest.raises(ValueError):
        BucketConfig("bad", "leaky bucket", rate=1, period_ms=1000)
    with pytest.raises(ValueError):
        BucketConfig("bad", FIXED_WINDOW, rate=0, period_ms=1000)
    assert BucketConfig("w", FIXED_WINDOW, rate=4, period_ms=1000).limit == 4


@pytest.mark.parametrize(
    "retry_ms,expected",
    [
        (1, "Please wait 1 second before trying again."),
        (1500, "Please wait 2 seconds before trying again."),
        (90_000, "Please wait 2 minutes before trying again."),
        (HOUR_MS, "Please wait 1 hour before trying again."),
        (8 * HOUR_MS + 1, "Please wait 9 hours before trying again."),
    ],
)
def test_format_retry_after(retry_ms, expected):
    assert format_retry_after(retry_ms) == expected


async def test_redis_backed_window_keys_carry_window_index(clock):
    cache = AsyncMock()
    cache.fixed_window.return_value = (True, 9)
    clock.now_ms = 3 * HOUR_MS + 10
    limiter = RateLimiter(cache, clock=clock)

    result = await limiter.check("createThread", "user_1")

    assert result.allowed
    cache.fixed_window.assert_awaited_once_with(
        _normalize_rate_key("createThread", "user_1") + ":w3",
        limit=10,
        ttl_ms=HOUR_MS - 10,
        cost=1,
        apply=False,
    )


async def test_redis_backed_token_bucket_reports_wait(clock):
    cache = AsyncMock()
    cache.token_bucket.return_value = (False, 0.0, 2000)
    limiter = RateLimiter(cache, clock=clock)

    result = await limiter.limit("sendMessage", "user_1")

    assert result.allowed is False
    assert result.retry_after_ms == 2000
    kwargs = cache.token_bucket.await_args.kwargs
    assert kwargs["capacity"] == 5
    assert kwargs["refill_per_ms"] == pytest.approx(30 / MINUTE_MS)


def test_rate_keys_hash_subject():
    key = _normalize_rate_key("sendMessage", "user:1")
    assert key.startswith("rate:sendMessage:")
    assert "user:1" not in key
    assert _normalize_rate_key("sendMessage", "user:1", 2).endswith(":2")


async def test_expired_local_state_is_pruned(clock):
    limiter = _limiter(clock, RATE_LIMITS["sendMessage"], RATE_LIMITS["createThread"])
    await limiter.limit("sendMessage", "user_1")
    await limiter.limit("createThread", "user_1")

    clock.advance(HOUR_MS)
    await limiter.limit("sendMessage", "user_2")
    await limiter.limit("createThread", "user_2")

    assert set(limiter._local_buckets) == {_normalize_rate_key("sendMessage", "user_2")}
    assert set(limiter._local_windows) == {_normalize_rate_key("createThread", "user_2")}
    results = [
        (await limiter.limit("sendMessage", "user_1")).allowed
        for _ in range(RATE_LIMITS["sendMessage"].limit + 1)
    ]
    assert results == [True] * RATE_LIMITS["sendMessage"].limit + [False]


async def test_live_local_state_survives_pruning(clock):
    limiter = _limiter(clock, RATE_LIMITS["anonymousMessages"])
    subject = "anon_3b241101-e2bb"
    for _ in range(5):
        await limiter.limit("anonymousMessages", subject)

    clock.advance(2 * MINUTE_MS)
    await limiter.limit("anonymousMessages", "anon_other")

    assert not (await limiter.limit("anonymousMessages", subject)).allowed
