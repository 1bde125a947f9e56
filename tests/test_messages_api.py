"""HTTP API tests — history, posting, dev sign-in.

Learn: POST /messages goes through the same channel a stream would
subscribe to, so a subscription opened here sees exactly what a live
client would see.
"""

import json

import pytest

from chatstream.auth.jwt import create_access_token
from chatstream.config import settings


@pytest.mark.asyncio
async def test_list_messages_empty(client):
    resp = await client.get("/api/v1/messages")
    assert resp.status_code == 200
    assert resp.json() == {"messages": []}


@pytest.mark.asyncio
async def test_post_and_list_messages(client, auth_headers):
    for text in ("first", "second", "third"):
        resp = await client.post("/api/v1/messages", json={"content": text}, headers=auth_headers)
        assert resp.status_code == 201

    messages = (await client.get("/api/v1/messages")).json()["messages"]
    assert [m["content"] for m in messages] == ["first", "second", "third"]
    assert all(m["username"] == "octocat" for m in messages)

    recent = (await client.get("/api/v1/messages", params={"limit": 2})).json()["messages"]
    assert [m["content"] for m in recent] == ["second", "third"]


@pytest.mark.asyncio
async def test_post_escapes_content_on_the_way_out(client, auth_headers):
    resp = await client.post(
        "/api/v1/messages",
        json={"content": "<img src=x onerror=alert(1)>"},
        headers=auth_headers,
    )
    body = resp.json()["message"]
    assert body["content"] == "&lt;img src=x onerror=alert(1)&gt;"
    assert body["user_id"] == 7
    assert body["avatar_url"] == "https://avatars.example/7.png"

    listed = (await client.get("/api/v1/messages")).json()["messages"]
    assert listed[0]["content"] == "&lt;img src=x onerror=alert(1)&gt;"


@pytest.mark.asyncio
async def test_post_announces_committed_message(client, channel, auth_headers):
    handle = await channel.subscribe(settings.notify_channel)

    resp = await client.post("/api/v1/messages", json={"content": "ping"}, headers=auth_headers)
    created = resp.json()["message"]

    note = await channel.poll(handle, timeout=1.0)
    assert note.message_id == created["id"]
    assert note.data["user_id"] == 7
    assert note.data["content"] == "ping"
    assert note.data["created_at"] == created["created_at"]
    await channel.unsubscribe(handle)


@pytest.mark.asyncio
async def test_post_requires_auth(client, channel):
    resp = await client.post("/api/v1/messages", json={"content": "hi"})
    assert resp.status_code == 401
    assert channel.published == 0


@pytest.mark.asyncio
async def test_post_with_invalid_token(client):
    resp = await client.post(
        "/api/v1/messages",
        json={"content": "hi"},
        headers={"Authorization": "Bearer not-a-jwt"},
    )
    assert resp.status_code == 401
    assert resp.headers["WWW-Authenticate"] == "Bearer"


@pytest.mark.asyncio
async def test_post_token_for_missing_user(client):
    headers = {"Authorization": f"Bearer {create_access_token(4242)}"}
    resp = await client.post("/api/v1/messages", json={"content": "hi"}, headers=headers)
    assert resp.status_code == 401
    assert resp.json()["detail"] == "Unknown user"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "content",
    ["", "   \n\t", "x" * (settings.max_message_length + 1)],
)
async def test_post_rejects_invalid_content(client, auth_headers, content):
    resp = await client.post("/api/v1/messages", json={"content": content}, headers=auth_headers)
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_post_accepts_max_length(client, auth_headers):
    content = "x" * settings.max_message_length
    resp = await client.post("/api/v1/messages", json={"content": content}, headers=auth_headers)
    assert resp.status_code == 201


@pytest.mark.asyncio
async def test_list_rejects_bad_limit(client):
    assert (await client.get("/api/v1/messages", params={"limit": 0})).status_code == 422


# ═══════════════════════════════════════════════════════════
# Auth
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_dev_login_issues_working_token(client):
    resp = await client.post(
        "/api/v1/auth/dev-login",
        json={"username": "hubot", "avatar_url": "https://avatars.example/h.png"},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["token_type"] == "bearer"
    assert body["user"]["username"] == "hubot"

    me = await client.get(
        "/api/v1/auth/me", headers={"Authorization": f"Bearer {body['access_token']}"}
    )
    assert me.status_code == 200
    assert me.json()["id"] == body["user"]["id"]


@pytest.mark.asyncio
async def test_dev_login_is_idempotent_per_username(client):
    first = (await client.post("/api/v1/auth/dev-login", json={"username": "hubot"})).json()
    second = (await client.post("/api/v1/auth/dev-login", json={"username": "hubot"})).json()
    assert first["user"]["id"] == second["user"]["id"]


@pytest.mark.asyncio
async def test_dev_login_rejects_odd_usernames(client):
    resp = await client.post("/api/v1/auth/dev-login", json={"username": "<script>"})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_dev_login_disabled_outside_development(client, monkeypatch):
    monkeypatch.setattr(settings, "environment", "production")
    resp = await client.post("/api/v1/auth/dev-login", json={"username": "hubot"})
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_me_accepts_query_token(client, user):
    resp = await client.get("/api/v1/auth/me", params={"token": create_access_token(user.id)})
    assert resp.status_code == 200
    assert resp.json()["username"] == "octocat"


@pytest.mark.asyncio
async def test_me_requires_auth(client):
    assert (await client.get("/api/v1/auth/me")).status_code == 401


# ═══════════════════════════════════════════════════════════
# Event stream endpoint (pre-stream paths)
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_events_requires_auth(client, channel):
    resp = await client.get("/api/v1/events")
    assert resp.status_code == 401
    assert channel.active_subscriptions == 0


@pytest.mark.asyncio
async def test_events_without_channel_is_unavailable(client, auth_headers):
    from chatstream.main import app

    app.state.notification_channel = None
    resp = await client.get("/api/v1/events", headers=auth_headers)
    assert resp.status_code == 503
    assert json.loads(resp.text)["detail"] == "Notification channel not initialized"
