"""HTTP surface: envelopes, identity, status codes, and rate-limit headers."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from chatrelay import app as app_module
from chatrelay.service.model_registry import FREE_MODEL, PAID_MODELS
from chatrelay.service.runtime import get_runtime

ANON = "anon_3b241101-e2bb-4255-8caf-4136c566a962"


@pytest.fixture
def client():
    """Create a test client (lifespan not entered, so no background workers)."""
    return TestClient(app_module.app)


@pytest.fixture
def auth_headers():
    token = get_runtime().identity.encode_session_token("user_alice")
    return {"Authorization": f"Bearer {token}"}


def _create_thread(client, **kwargs):
    response = client.post("/v1/threads", **kwargs)
    assert response.status_code == 201, response.text
    return response.json()["data"]


def test_anonymous_conversation_round_trip(client):
    thread = _create_thread(client, json={"anonymous_user_id": ANON})
    assert thread["model_id"] == FREE_MODEL.id
    assert thread["status"] == "active"

    sent = client.post(
        f"/v1/threads/{thread['id']}/messages",
        json={"prompt": "Hello", "anonymous_user_id": ANON},
    )
    assert sent.status_code == 202
    body = sent.json()
    assert body["status"] == "ok"
    assert body["data"]["job_id"]

    asyncio.run(get_runtime().job_worker.drain())

    listed = client.get(
        f"/v1/threads/{thread['id']}/messages", params={"anonymous_user_id": ANON}
    )
    assert listed.status_code == 200
    page = listed.json()["data"]["page"]
    assert [(m["position"], m["role"]) for m in page] == [(1, "assistant"), (0, "user")]

    threads = client.get("/v1/threads", params={"anonymous_user_id": ANON})
    assert threads.json()["data"]["page"][0]["title"] == "Quick chat"


def test_missing_identity_is_401(client):
    response = client.post("/v1/threads", json={})

    assert response.status_code == 401
    body = response.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "unauthorized"


@pytest.mark.parametrize(
    "headers,params",
    [
        ({"Authorization": "Bearer garbage"}, {}),
        ({"Authorization": "Basic dXNlcjpwYXNz"}, {}),
        ({}, {"anonymous_user_id": "user_pretending"}),
    ],
)
def test_bad_credentials_are_401(client, headers, params):
    response = client.get("/v1/threads", headers=headers, params=params)
    assert response.status_code == 401


def test_reading_another_subjects_thread_is_403(client, auth_headers):
    thread = _create_thread(client, json={}, headers=auth_headers)
    client.post(
        f"/v1/threads/{thread['id']}/messages", json={"prompt": "secret"}, headers=auth_headers
    )

    response = client.get(
        f"/v1/threads/{thread['id']}/messages", params={"anonymous_user_id": ANON}
    )

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "forbidden"


def test_anonymous_daily_quota_returns_429_with_retry_after(client):
    thread = _create_thread(client, json={"anonymous_user_id": ANON})
    url = f"/v1/threads/{thread['id']}/messages"
    for i in range(5):
        ok = client.post(url, json={"prompt": f"msg {i}", "anonymous_user_id": ANON})
        assert ok.status_code == 202

    denied = client.post(url, json={"prompt": "again", "anonymous_user_id": ANON})

    assert denied.status_code == 429
    retry_after = int(denied.headers["Retry-After"])
    assert 1 <= retry_after <= 24 * 3600
    error = denied.json()["error"]
    assert error["code"] == "rate_limited"
    assert error["details"]["retry_after_ms"] > 0
    assert error["details"]["bucket"] == "anonymousMessages"
    assert "Please wait" in error["message"]


def test_blank_prompt_is_422(client, auth_headers):
    thread = _create_thread(client, json={}, headers=auth_headers)

    response = client.post(
        f"/v1/threads/{thread['id']}/messages",
        json={"prompt": "\u200b  "},
        headers=auth_headers,
    )

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "validation_error"


def test_unknown_thread_is_404(client, auth_headers):
    response = client.post(
        "/v1/threads/does-not-exist/messages", json={"prompt": "hi"}, headers=auth_headers
    )
    assert response.status_code == 404
    listed = client.get("/v1/threads/does-not-exist/messages", headers=auth_headers)
    assert listed.status_code == 404


def test_stream_deltas_returned_from_cursor(client, auth_headers):
    thread = _create_thread(client, json={}, headers=auth_headers)
    store = get_runtime().store
    live = store.append_message(
        thread["id"], user_id="user_alice", role="assistant", content="", streaming=True
    )
    for text in ["a ", "b ", "c"]:
        store.add_stream_delta(live.id, thread["id"], text)

    response = client.get(
        f"/v1/threads/{thread['id']}/messages",
        params={"stream_kind": "deltas", "stream_cursor": f"{live.id}:1"},
        headers=auth_headers,
    )

    streams = response.json()["data"]["streams"]
    assert streams["kind"] == "deltas"
    assert [(d["seq"], d["text"]) for d in streams["deltas"]] == [(1, "b "), (2, "c")]

    listed = client.get(
        f"/v1/threads/{thread['id']}/messages",
        params={"stream_kind": "list"},
        headers=auth_headers,
    )
    assert [s["stream_id"] for s in listed.json()["data"]["streams"]["streams"]] == [live.id]


def test_malformed_stream_cursor_is_400(client, auth_headers):
    thread = _create_thread(client, json={}, headers=auth_headers)

    response = client.get(
        f"/v1/threads/{thread['id']}/messages",
        params={"stream_kind": "deltas", "stream_cursor": "no-seq-here"},
        headers=auth_headers,
    )

    assert response.status_code == 400


def test_model_listing_marks_pro_unavailable_for_anonymous(client, auth_headers):
    anonymous = client.get("/v1/models").json()["data"]
    signed_in = client.get("/v1/models", headers=auth_headers).json()["data"]

    assert anonymous["default_model_id"] == FREE_MODEL.id
    availability = {m["id"]: m["available"] for m in anonymous["items"]}
    assert availability[FREE_MODEL.id] is True
    assert all(availability[m.id] is False for m in PAID_MODELS)
    assert all(m["available"] for m in signed_in["items"])


def test_request_id_echoed_in_header_and_envelope(client, auth_headers):
    response = client.get(
        "/v1/threads", headers={**auth_headers, "X-Request-ID": "req-123"}
    )

    assert response.headers["X-Request-ID"] == "req-123"
    assert response.json()["request_id"] == "req-123"


def test_healthz_reports_memory_store(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["store"] == "memory"
    assert body["redis"] is False
    assert body["workers"] == {"jobs": False, "retention": False}
