"""Retention sweep over anonymous conversations."""

from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from chatrelay.service.retention import RetentionScheduler, RetentionSweeper
from chatrelay.storage.memory import MemoryStore
from chatrelay.storage.models import THREAD_ACTIVE, THREAD_ARCHIVED

NOW = datetime(2024, 6, 10, 2, 0)
ANON_A = "anon_11111111-aaaa"
ANON_B = "anon_22222222-bbbb"


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def sweeper(store):
    return RetentionSweeper(store, retention_days=7, clock=lambda: NOW)


def _thread(store, owner, age_days, messages=3):
    thread = store.create_thread(owner, created_at=NOW - timedelta(days=age_days))
    for i in range(messages):
        store.append_message(thread.id, user_id=owner, role="user", content=f"m{i}")
    return thread


def test_old_anonymous_thread_purged_and_recent_untouched(store, sweeper):
    old = _thread(store, ANON_A, 8)
    recent = _thread(store, ANON_A, 2)

    outcome = sweeper.run()

    assert outcome.success
    assert store.count_messages(old.id, exclude_tool_messages=False) == 0
    assert store.get_thread(old.id).status == THREAD_ARCHIVED
    assert store.count_messages(recent.id) == 3
    assert store.get_thread(recent.id).status == THREAD_ACTIVE
    assert outcome.archived_threads == 1
    assert outcome.deleted_messages == 3


def test_authenticated_threads_never_swept(store, sweeper):
    kept = _thread(store, "user_1", 90)
    _thread(store, ANON_A, 10)

    outcome = sweeper.run()

    assert store.get_thread(kept.id).status == THREAD_ACTIVE
    assert store.count_messages(kept.id) == 3
    assert outcome.processed_subjects == 2
    assert outcome.anonymous_subjects == 1


def test_messages_deleted_across_batches(store, sweeper):
    big = _thread(store, ANON_A, 30, messages=250)

    outcome = sweeper.run()

    assert outcome.deleted_messages == 250
    assert store.list_messages(big.id).page == []


def test_archived_threads_are_skipped_on_rerun(store, sweeper):
    _thread(store, ANON_A, 8)
    sweeper.run()

    second = sweeper.run()

    assert second.archived_threads == 0
    assert second.deleted_messages == 0


def test_thread_failure_is_logged_and_skipped(store, sweeper):
    first = _thread(store, ANON_A, 9)
    second = _thread(store, ANON_B, 9)
    original = store.delete_messages
    calls = []

    def flaky_delete(ids):
        calls.append(list(ids))
        if len(calls) == 1:
            raise RuntimeError("storage timeout")
        return original(ids)

    with patch.object(store, "delete_messages", side_effect=flaky_delete):
        outcome = sweeper.run()

    assert outcome.success
    assert outcome.failed_threads == 1
    assert outcome.archived_threads == 1
    assert store.get_thread(first.id).status == THREAD_ACTIVE
    assert store.get_thread(second.id).status == THREAD_ARCHIVED


def test_sweep_level_failure_reported_not_raised(store, sweeper):
    with patch.object(store, "list_users_with_threads", side_effect=RuntimeError("db gone")):
        outcome = sweeper.run()

    assert outcome.success is False
    assert outcome.error == "db gone"
    assert outcome.to_dict()["cleanup_date"] == NOW.isoformat()


def test_dry_run_counts_without_deleting(store, sweeper):
    old = _thread(store, ANON_A, 8, messages=4)

    outcome = sweeper.run(dry_run=True)

    assert outcome.dry_run
    assert outcome.deleted_messages == 4
    assert outcome.archived_threads == 1
    assert store.count_messages(old.id) == 4
    assert store.get_thread(old.id).status == THREAD_ACTIVE


def test_retention_boundary_is_exclusive(store, sweeper):
    exactly_seven = _thread(store, ANON_A, 7)

    sweeper.run()

    assert store.get_thread(exactly_seven.id).status == THREAD_ACTIVE


@pytest.mark.parametrize(
    "now,expected",
    [
        (datetime(2024, 6, 10, 1, 0), datetime(2024, 6, 10, 2, 0)),
        (datetime(2024, 6, 10, 2, 0), datetime(2024, 6, 11, 2, 0)),
        (datetime(2024, 6, 10, 23, 59), datetime(2024, 6, 11, 2, 0)),
    ],
)
def test_scheduler_next_run_is_daily_at_fixed_utc_time(sweeper, now, expected):
    scheduler = RetentionScheduler(sweeper, hour_utc=2, minute_utc=0)
    assert scheduler.next_run_at(now) == expected


async def test_scheduler_run_once_records_outcome(store, sweeper):
    _thread(store, ANON_A, 8)
    scheduler = RetentionScheduler(sweeper)

    outcome = await scheduler.run_once()

    assert scheduler.last_outcome is outcome
    assert outcome.archived_threads == 1
    assert not scheduler.running
