"""Test suite for the API endpoints."""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from medimate_ai.api.app import create_app
from medimate_ai.api.context import ClientContextRegistry


SIGN_UP = {
    "name": "Alice Doe",
    "username": "alice",
    "email": "alice@example.com",
    "password": "secret123",
}


@pytest.fixture
def app(backend):
    return create_app(backend)


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


async def open_session(client) -> dict:
    response = await client.post("/sessions")
    assert response.status_code == 201
    return {"Authorization": f"Bearer {response.json()['token']}"}


async def verified_session(client, backend) -> dict:
    headers = await open_session(client)
    response = await client.post("/auth/sign-up", json=SIGN_UP, headers=headers)
    backend.auth.verify_email(response.json()["identity"]["uid"])
    response = await client.post("/verification/check", headers=headers)
    assert response.json() == {"verified": True, "state": "ready"}
    return headers


@pytest.mark.asyncio
async def test_requests_without_token_are_rejected(client):
    response = await client.get("/me")
    assert response.status_code == 401

    response = await client.get("/chats", headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_new_session_is_signed_out(client):
    headers = await open_session(client)

    response = await client.get("/me", headers=headers)
    assert response.json() == {"state": "signed_out", "identity": None}

    response = await client.get("/views/chat", headers=headers)
    assert response.json() == {"requested": "chat", "view": "sign_in"}


@pytest.mark.asyncio
async def test_unverified_user_is_sent_to_the_gate(client):
    headers = await open_session(client)

    response = await client.post("/auth/sign-up", json=SIGN_UP, headers=headers)
    assert response.status_code == 200
    assert response.json()["state"] == "unverified"

    response = await client.get("/chats", headers=headers)
    assert response.status_code == 403
    assert response.json()["redirect"] == "verification_gate"

    response = await client.post("/verification/check", headers=headers)
    assert response.json() == {"verified": False, "state": "unverified"}


@pytest.mark.asyncio
async def test_sign_up_validation_errors_are_per_field(client):
    headers = await open_session(client)
    response = await client.post(
        "/auth/sign-up",
        json={**SIGN_UP, "username": "b!", "password": "123"},
        headers=headers,
    )

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "validation_failed"
    assert {"username", "password"} <= set(body["errors"])


@pytest.mark.asyncio
async def test_taken_username_is_a_conflict(client, make_user):
    await make_user(username="alice")
    headers = await open_session(client)

    response = await client.post(
        "/auth/sign-up", json={**SIGN_UP, "email": "other@example.com"}, headers=headers
    )
    assert response.status_code == 409
    assert response.json()["field"] == "username"


@pytest.mark.asyncio
async def test_chat_lifecycle(client, backend, answers):
    headers = await verified_session(client, backend)

    response = await client.post("/chats", headers=headers)
    assert response.status_code == 201
    chat_id = response.json()["id"]

    response = await client.post(
        f"/chats/{chat_id}/messages", json={"content": "How long does the flu last?"}, headers=headers
    )
    assert response.status_code == 200
    body = response.json()
    assert body["reply"]["content"] == "Rest and drink fluids."
    assert body["reply"]["source"] == "CDC"
    assert [m["role"] for m in body["messages"]] == ["user", "assistant"]
    assert answers.questions == ["How long does the flu last?"]

    response = await client.get("/chats", headers=headers)
    chats = response.json()
    assert [c["id"] for c in chats] == [chat_id]
    assert chats[0]["title"] == "How long does the flu last?"

    response = await client.patch(f"/chats/{chat_id}", json={"title": "Flu"}, headers=headers)
    assert response.status_code == 204
    response = await client.get(f"/chats/{chat_id}", headers=headers)
    assert response.json()["title"] == "Flu"

    response = await client.delete(f"/chats/{chat_id}", params={"active": chat_id}, headers=headers)
    assert response.json() == {"navigate_away": True}
    response = await client.get(f"/chats/{chat_id}", headers=headers)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_failed_send_returns_error_and_rolls_back(client, backend, answers):
    headers = await verified_session(client, backend)
    chat_id = (await client.post("/chats", headers=headers)).json()["id"]
    backend.store.inject_fault("update", code="unavailable")

    response = await client.post(
        f"/chats/{chat_id}/messages", json={"content": "Is this serious?"}, headers=headers
    )
    assert response.status_code == 503
    assert response.json()["code"] == "network_unavailable"

    response = await client.get(f"/chats/{chat_id}", headers=headers)
    assert response.json()["messages"] == []
    assert answers.questions == []


@pytest.mark.asyncio
async def test_profile_edit_and_picture(client, backend):
    headers = await verified_session(client, backend)

    response = await client.get("/profile", headers=headers)
    assert response.json()["profile"]["username"] == "alice"

    response = await client.patch(
        "/profile",
        json={"name": "Alice Cooper", "username": "alice", "mobile": "+15550001111"},
        headers=headers,
    )
    assert response.status_code == 200
    assert response.json()["updated_fields"] == ["mobile", "name"]

    response = await client.post(
        "/profile/picture", content=b"\x89PNG....", headers={**headers, "Content-Type": "image/png"}
    )
    assert response.status_code == 200
    assert response.json()["progress"] == 1.0
    assert response.json()["photo_url"].startswith("memory://")

    response = await client.post(
        "/profile/picture", content=b"text", headers={**headers, "Content-Type": "text/plain"}
    )
    assert response.status_code == 422
    assert response.json()["field"] == "picture"


@pytest.mark.asyncio
async def test_sign_out_closes_protected_views(client, backend):
    headers = await verified_session(client, backend)

    response = await client.post("/auth/sign-out", headers=headers)
    assert response.json()["state"] == "signed_out"

    response = await client.get("/profile", headers=headers)
    assert response.status_code == 403
    assert response.json()["redirect"] == "sign_in"


@pytest.mark.asyncio
async def test_closed_session_token_is_forgotten(client):
    headers = await open_session(client)
    response = await client.delete("/sessions", headers=headers)
    assert response.status_code == 204

    response = await client.get("/me", headers=headers)
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_metrics_endpoint(client):
    await client.post("/sessions")
    response = await client.get("/metrics")
    assert response.status_code == 200
    assert "requests_total" in response.text


@pytest.mark.asyncio
async def test_least_recently_used_context_is_evicted_at_capacity(backend):
    app = create_app(backend, contexts=ClientContextRegistry(max_contexts=2))
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        first = await open_session(client)
        second = await open_session(client)
        assert (await client.get("/me", headers=first)).status_code == 200

        third = await open_session(client)

        assert (await client.get("/me", headers=second)).status_code == 401
        assert (await client.get("/me", headers=first)).status_code == 200
        assert (await client.get("/me", headers=third)).status_code == 200
        assert len(app.state.contexts) == 2


@pytest.mark.asyncio
async def test_idle_context_expires_and_releases_subscriptions(backend):
    now = [0.0]
    app = create_app(backend, contexts=ClientContextRegistry(idle_seconds=60, clock=lambda: now[0]))
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        headers = await verified_session(client, backend)
        assert (await client.get("/chats", headers=headers)).status_code == 200
        assert backend.store.subscription_count() > 0

        now[0] += 30
        assert (await client.get("/me", headers=headers)).status_code == 200
        now[0] += 61
        assert (await client.get("/me", headers=headers)).status_code == 401

    assert len(app.state.contexts) == 0
    assert backend.store.subscription_count() == 0
