"""MemoryStore semantics shared with the Postgres store."""

import threading
from datetime import datetime, timedelta

import pytest

from chatrelay.storage.errors import ConstraintViolation, ThreadNotFound
from chatrelay.storage.memory import MemoryStore
from chatrelay.storage.models import MESSAGE_FAILED, THREAD_ARCHIVED


@pytest.fixture
def store():
    return MemoryStore()


def test_positions_strictly_increase_without_reuse(store):
    thread = store.create_thread("user_1")
    first = store.append_message(thread.id, user_id="user_1", role="user", content="a")
    second = store.append_message(thread.id, user_id="user_1", role="assistant", content="b")
    store.delete_messages([second.id])
    third = store.append_message(thread.id, user_id="user_1", role="user", content="c")

    assert [first.position, second.position, third.position] == [0, 1, 2]


def test_concurrent_appends_get_gap_free_positions(store):
    thread = store.create_thread("user_1")
    start = threading.Barrier(8)
    errors = []

    def send(worker):
        try:
            start.wait()
            for i in range(25):
                store.append_message(
                    thread.id, user_id="user_1", role="user", content=f"{worker}-{i}"
                )
        except Exception as exc:  # pragma: no cover
            errors.append(exc)

    workers = [threading.Thread(target=send, args=(n,)) for n in range(8)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    assert errors == []
    positions = [m.position for m in store.list_messages(thread.id, order="asc").page]
    assert positions == list(range(200))
    assert len({m.content for m in store.list_messages(thread.id).page}) == 200


def test_append_to_unknown_thread_fails(store):
    with pytest.raises(ThreadNotFound):
        store.append_message("missing", user_id="user_1", role="user", content="hi")
    thread = store.create_thread("user_1")
    with pytest.raises(ValueError):
        store.append_message(thread.id, user_id="user_1", role="robot", content="hi")


def test_message_pages_walk_newest_first(store):
    thread = store.create_thread("user_1")
    for i in range(5):
        store.append_message(thread.id, user_id="user_1", role="user", content=str(i))

    first = store.list_messages(thread.id, num_items=2)
    second = store.list_messages(thread.id, num_items=2, cursor=first.continue_cursor)
    third = store.list_messages(thread.id, num_items=2, cursor=second.continue_cursor)

    assert [m.content for m in first.page] == ["4", "3"]
    assert [m.content for m in second.page] == ["2", "1"]
    assert [m.content for m in third.page] == ["0"]
    assert not first.is_done and not second.is_done and third.is_done


def test_tool_messages_can_be_excluded(store):
    thread = store.create_thread("user_1")
    store.append_message(thread.id, user_id="user_1", role="user", content="q")
    store.append_message(thread.id, user_id="user_1", role="tool", content="{}")

    page = store.list_messages(thread.id, exclude_tool_messages=True)

    assert [m.role for m in page.page] == ["user"]
    assert store.count_messages(thread.id) == 1
    assert store.count_messages(thread.id, exclude_tool_messages=False) == 2


def test_stream_deltas_visible_until_finalize(store):
    thread = store.create_thread("user_1")
    msg = store.append_message(
        thread.id, user_id="user_1", role="assistant", content="", streaming=True
    )
    assert msg.status == "pending" and msg.finalized_at is None
    for text in ["Hel", "lo ", "there"]:
        store.add_stream_delta(msg.id, thread.id, text)

    assert [m.id for m in store.list_active_streams(thread.id)] == [msg.id]
    tail = store.list_stream_deltas(thread.id, {msg.id: 1})
    assert [(d.seq, d.text) for d in tail] == [(1, "lo "), (2, "there")]

    final = store.finalize_message(msg.id, "Hello there", usage={"total_tokens": 3})

    assert final.streaming is False and final.finalized_at is not None
    assert store.list_active_streams(thread.id) == []
    assert store.list_stream_deltas(thread.id, {msg.id: 0}) == []
    with pytest.raises(ConstraintViolation):
        store.add_stream_delta(msg.id, thread.id, "late")
    with pytest.raises(ConstraintViolation):
        store.finalize_message(msg.id, "again")


def test_fail_message_leaves_it_unfinalized(store):
    thread = store.create_thread("user_1")
    msg = store.append_message(
        thread.id, user_id="user_1", role="assistant", content="", streaming=True
    )

    failed = store.fail_message(msg.id, "provider down")

    assert failed.status == MESSAGE_FAILED
    assert failed.error == "provider down"
    assert failed.finalized_at is None
    assert store.list_active_streams(thread.id) == []


def test_threads_listing_and_archived_filter(store):
    base = datetime(2024, 1, 1)
    older = store.create_thread("user_1", "Older", created_at=base)
    newer = store.create_thread("user_1", "Newer", created_at=base + timedelta(days=1))
    store.create_thread("user_2", "Other", created_at=base)
    store.update_thread(older.id, status=THREAD_ARCHIVED)

    all_threads = store.list_threads_by_user("user_1")
    active = store.list_threads_by_user("user_1", include_archived=False)
    first = store.list_threads_by_user("user_1", order="asc", num_items=1)
    rest = store.list_threads_by_user(
        "user_1", order="asc", num_items=1, cursor=first.continue_cursor
    )

    assert [t.id for t in all_threads.page] == [newer.id, older.id]
    assert [t.id for t in active.page] == [newer.id]
    assert [t.id for t in first.page] == [older.id]
    assert [t.id for t in rest.page] == [newer.id] and rest.is_done


def test_update_thread_validates(store):
    thread = store.create_thread("user_1")
    with pytest.raises(ValueError):
        store.update_thread(thread.id, status="deleted")
    with pytest.raises(ThreadNotFound):
        store.update_thread("missing", title="x")


def test_search_requires_every_term(store):
    store.create_thread("user_1", "Paris trip planning")
    store.create_thread("user_1", "Python packaging")
    store.create_thread("user_2", "Paris trip notes")

    hits = store.search_threads("user_1", "paris TRIP")

    assert [t.title for t in hits] == ["Paris trip planning"]
    assert store.search_threads("user_1", "   ") == []


def test_subjects_listed_once_in_pages(store):
    for user in ["b", "a", "c", "a"]:
        store.create_thread(user)

    first = store.list_users_with_threads(num_items=2)
    second = store.list_users_with_threads(num_items=2, cursor=first.continue_cursor)

    assert first.page == ["a", "b"] and not first.is_done
    assert second.page == ["c"] and second.is_done


def test_jobs_claimed_fifo_once(store):
    first = store.enqueue_job("stream_response", {"n": 1})
    second = store.enqueue_job("stream_response", {"n": 2})

    claimed = store.claim_jobs(limit=1)
    assert [j.id for j in claimed] == [first.id]
    assert claimed[0].status == "running" and claimed[0].attempts == 1

    assert [j.id for j in store.claim_jobs(limit=5)] == [second.id]
    assert store.claim_jobs() == []

    store.complete_job(first.id)
    store.fail_job(second.id, "boom")
    assert store.get_job(first.id).status == "completed"
    assert store.get_job(second.id).error == "boom"
    assert [j.id for j in store.list_jobs(status="failed")] == [second.id]


def test_finished_jobs_evicted_oldest_first():
    store = MemoryStore(max_finished_jobs=2)
    jobs = [store.enqueue_job("stream_response", {"n": n}) for n in range(4)]
    for job in store.claim_jobs(limit=4):
        store.complete_job(job.id)

    assert store.get_job(jobs[0].id) is None
    assert store.get_job(jobs[1].id) is None
    assert [j.id for j in store.list_jobs()] == [jobs[2].id, jobs[3].id]
    assert store.claim_jobs() == []


def test_claim_skips_jobs_finished_before_claim(store):
    first = store.enqueue_job("stream_response", {"n": 1})
    second = store.enqueue_job("stream_response", {"n": 2})
    store.fail_job(first.id, "cancelled")

    assert [j.id for j in store.claim_jobs()] == [second.id]
