"""
HTTP surface tests against a minimal app without the Mongo lifespan.
"""

import pytest
import pytest_asyncio
from fastapi import FastAPI, WebSocketDisconnect
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient
from pymongo.errors import ServerSelectionTimeoutError

from beliyo.core.context import AppContext
from beliyo.core.exceptions import ChatError, chat_exception_handler
from beliyo.routers.chat import manager
from beliyo.routers.chat import router as chat_router
from beliyo.routers.conversations import router as conversations_router
from beliyo.routers.presence import router as presence_router
from beliyo.utils.realtime_bus import LocalBus
from beliyo.utils.security import create_access_token


def build_app(context) -> FastAPI:
    app = FastAPI()
    app.add_exception_handler(ChatError, chat_exception_handler)
    app.include_router(chat_router)
    app.include_router(conversations_router)
    app.include_router(presence_router)
    app.state.context = context
    return app


@pytest_asyncio.fixture
async def client(ctx):
    transport = ASGITransport(app=build_app(ctx))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def _start_chat(client, headers, other="bob", **body):
    response = await client.post("/conversations", json={"other_user_id": other, **body}, headers=headers)
    assert response.status_code == 200
    return response.json()


@pytest.mark.asyncio
async def test_requests_without_token_are_rejected(client):
    response = await client.get("/conversations")
    assert response.status_code == 401

    response = await client.get("/conversations", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_get_or_create_conversation(client, auth_headers):
    created = await _start_chat(client, auth_headers("alice"))
    again = await _start_chat(client, auth_headers("bob"), other="alice")

    assert created["id"] == again["id"]
    assert created["context_type"] == "general"
    assert created["context_id"] is None


@pytest.mark.asyncio
async def test_context_chat_requires_context_id(client, auth_headers):
    response = await client.post(
        "/conversations",
        json={"other_user_id": "bob", "context_type": "shop"},
        headers=auth_headers("alice"),
    )

    assert response.status_code == 422
    assert response.json() == {"detail": "Context ID is required for shop chats", "code": "INVALID_REQUEST"}


@pytest.mark.asyncio
async def test_send_read_and_unread_flow(client, auth_headers):
    alice, bob = auth_headers("alice"), auth_headers("bob")
    conv = await _start_chat(client, alice, context_type="mission", context_id="m1")

    sent = await client.post(f"/conversations/{conv['id']}/messages", json={"content": "hello", "temp_id": "temp_1"}, headers=alice)
    assert sent.status_code == 200
    body = sent.json()
    assert body["success"] is True
    assert body["message"]["receiver_id"] == "bob"
    assert body["message"]["temp_id"] == "temp_1"

    unread = await client.get(f"/conversations/{conv['id']}/unread", headers=bob)
    assert unread.json() == {"unread": 1}
    listing = await client.get("/conversations", headers=bob)
    assert listing.json()["unread_total"] == 1
    assert listing.json()["items"][0]["title"] == "Mission Chat"
    assert listing.json()["items"][0]["last_message"] == "hello"

    read = await client.post(f"/conversations/{conv['id']}/read", headers=bob)
    assert read.json() == {"updated": 1}
    total = await client.get("/conversations/unread", headers=bob)
    assert total.json() == {"unread": 0}

    history = await client.get(f"/conversations/{conv['id']}/messages", headers=alice)
    assert [(m["content"], m["delivery_status"], m["is_read"]) for m in history.json()] == [("hello", "delivered", True)]


@pytest.mark.asyncio
async def test_empty_message_is_refused_by_validation(client, auth_headers):
    conv = await _start_chat(client, auth_headers("alice"))

    response = await client.post(f"/conversations/{conv['id']}/messages", json={"content": ""}, headers=auth_headers("alice"))

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_outsiders_and_unknown_conversations(client, auth_headers):
    conv = await _start_chat(client, auth_headers("alice"))

    forbidden = await client.get(f"/conversations/{conv['id']}/messages", headers=auth_headers("mallory"))
    assert forbidden.status_code == 403
    assert forbidden.json()["code"] == "FORBIDDEN"

    missing = await client.get("/conversations/nope/messages", headers=auth_headers("alice"))
    assert missing.status_code == 404
    assert missing.json()["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_typing_shows_in_presence(ctx, client, auth_headers):
    ctx.settings.typing_timeout_seconds = 5
    alice = auth_headers("alice")
    conv = await _start_chat(client, alice)

    response = await client.post(f"/conversations/{conv['id']}/typing", json={"is_typing": True}, headers=alice)
    assert response.json() == {"ok": True}

    presence = await client.get(f"/presence/{conv['id']}", headers=auth_headers("bob"))
    assert [(p["user_id"], p["is_typing"]) for p in presence.json()] == [("alice", True)]


@pytest.mark.asyncio
async def test_sign_out_closes_open_sessions(ctx, client, auth_headers):
    conv = await _start_chat(client, auth_headers("alice"))
    session = await ctx.sessions.open(conv["id"], "alice")

    response = await client.post("/presence/sign-out", headers=auth_headers("alice"))

    assert response.json() == {"closed_sessions": 1}
    assert session.closed


def _socket_app(settings) -> FastAPI:
    return build_app(AppContext(settings=settings, db=AsyncMongoMockClient()["beliyo_ws"], bus=LocalBus()))


def test_socket_rejects_missing_or_bad_token(settings):
    with TestClient(_socket_app(settings)) as client:
        for url in ("/messages/ws/c1", "/messages/ws/c1?token=garbage"):
            with pytest.raises(WebSocketDisconnect) as exc:
                with client.websocket_connect(url):
                    pass
            assert exc.value.code == 4401


def test_socket_rejects_non_participant(settings, auth_headers):
    with TestClient(_socket_app(settings)) as client:
        conv = client.post("/conversations", json={"other_user_id": "bob"}, headers=auth_headers("alice")).json()

        with client.websocket_connect(f"/messages/ws/{conv['id']}?token={create_access_token('mallory')}") as ws:
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
        assert exc.value.code == 4403


def test_socket_session_round_trip(settings, auth_headers):
    with TestClient(_socket_app(settings)) as client:
        conv = client.post("/conversations", json={"other_user_id": "bob"}, headers=auth_headers("alice")).json()

        with client.websocket_connect(f"/messages/ws/{conv['id']}?token={create_access_token('alice')}") as ws:
            history = ws.receive_json()
            assert history == {"type": "history", "conversation_id": conv["id"], "messages": []}

            ws.send_json({"type": "message", "content": "hello"})
            committed = None
            for _ in range(20):
                frame = ws.receive_json()
                if frame["type"] == "message" and frame["message"]["state"] == "committed":
                    committed = frame["message"]
                    break

        assert committed is not None
        assert committed["content"] == "hello"
        assert committed["receiver_id"] == "bob"
        assert committed["temp_id"].startswith("temp_")

        history = client.get(f"/conversations/{conv['id']}/messages", headers=auth_headers("bob")).json()
        assert [m["content"] for m in history] == ["hello"]


def test_socket_closes_when_session_cannot_open(settings):
    app = _socket_app(settings)
    context = app.state.context

    async def unavailable(conversation_id, viewer_id, listener=None):
        raise ServerSelectionTimeoutError("no primary")

    context.sessions.open = unavailable
    with TestClient(app) as client:
        with client.websocket_connect(f"/messages/ws/c1?token={create_access_token('carol')}") as ws:
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
        assert exc.value.code == 1011

    assert manager.connections_for("carol") == []
