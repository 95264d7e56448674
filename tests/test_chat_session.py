import asyncio

import pytest
import pytest_asyncio

from beliyo.core.exceptions import AuthorizationError, ConnectivityError, InvalidRequestError
from beliyo.repositories.message_repository import MessageRepository
from beliyo.schemas.chat import SendResult
from beliyo.services.chat_session import ChatSession, SessionListener, SessionState
from beliyo.services.message_thread import COMMITTED, FAILED
from beliyo.services.realtime_channel import RealtimeChannel
from beliyo.utils.realtime_bus import LocalBus, conversation_channel


class UnreachableBus(LocalBus):
    async def subscribe(self, channel, on_message):
        raise ConnectivityError("connection refused")


class RecordingListener(SessionListener):
    def __init__(self) -> None:
        self.items = []
        self.states = []

    def on_item(self, item) -> None:
        self.items.append((item.key, item.state))

    def on_connection(self, state) -> None:
        self.states.append(state.status)


async def _no_sleep(delay: float) -> None:
    await asyncio.sleep(0)


@pytest_asyncio.fixture
async def conversation(ctx):
    return await ctx.chat_service().get_or_create_conversation("exchange", "EX-1", "alice", "bob")


@pytest.mark.asyncio
async def test_exchange_message_scenario(ctx, bus, conversation, settle):
    conv_id = conversation["_id"]
    service = ctx.chat_service()
    inbox = []
    ctx.channel.subscribe(conv_id, "bob", inbox.append)
    assert await settle(lambda: bus.subscriber_count(conversation_channel(conv_id)) == 1)

    alice = await ctx.sessions.open(conv_id, "alice")
    assert await settle(lambda: alice.connection.status == "connected")

    sent = await alice.send("hello")
    assert sent.state == COMMITTED
    assert sent.delivery_status == "sent"

    assert await settle(lambda: len(inbox) == 1)
    await asyncio.sleep(0.05)
    assert [m.content for m in inbox] == ["hello"]
    assert await service.get_unread_count(conv_id, "bob") == 1

    bob = await ctx.sessions.open(conv_id, "bob")

    assert [it.content for it in bob.thread.items] == ["hello"]
    assert await service.get_unread_count(conv_id, "bob") == 0
    stored = await MessageRepository(ctx.db).get_by_id(sent.id)
    assert stored["delivery_status"] == "delivered"
    assert await settle(lambda: alice.thread.get(sent.id).delivery_status == "delivered")
    assert len(alice.thread) == 1


@pytest.mark.asyncio
async def test_inbound_message_in_open_session_is_marked_read(ctx, conversation, settle):
    conv_id = conversation["_id"]
    alice = await ctx.sessions.open(conv_id, "alice")
    bob = await ctx.sessions.open(conv_id, "bob")
    assert await settle(lambda: alice.connection.status == "connected" and bob.connection.status == "connected")

    sent = await alice.send("are you there?")

    assert await settle(lambda: bob.thread.get(sent.id) is not None)
    service = ctx.chat_service()
    assert await settle(lambda: alice.thread.get(sent.id).delivery_status == "delivered")
    assert await service.get_unread_count(conv_id, "bob") == 0


@pytest.mark.asyncio
async def test_send_while_disconnected_fails(ctx, settings, conversation, settle):
    channel = RealtimeChannel(UnreachableBus(), ctx.presence, settings, sleep=_no_sleep)
    listener = RecordingListener()
    session = ChatSession(conversation["_id"], "alice", ctx.chat_service(), ctx.presence, channel, settings, listener)
    await session.open()
    assert await settle(lambda: session.connection.status == "disconnected")

    item = await session.send("hello")

    assert item.state == FAILED
    assert item.delivery_status == "failed"
    assert [state for _, state in listener.items] == ["pending", "failed"]
    assert await MessageRepository(ctx.db).find_by_temp_id(conversation["_id"], item.temp_id) is None

    retried = await session.retry(item.temp_id)
    assert retried.state == FAILED
    session.close()
    await channel.close()


@pytest.mark.asyncio
async def test_failed_send_is_marked_after_bounded_attempts(ctx, settings, conversation, monkeypatch):
    session = await ctx.sessions.open(conversation["_id"], "alice")
    calls = []

    async def refuse(*args, **kwargs):
        calls.append(args)
        return SendResult(success=False, error="Message could not be stored")

    monkeypatch.setattr(session._service, "send_message", refuse)

    item = await session.send("hello")

    assert item.state == FAILED
    assert len(calls) == settings.send_max_attempts


@pytest.mark.asyncio
async def test_lost_acknowledgement_reconciles_from_history(ctx, conversation, monkeypatch):
    session = await ctx.sessions.open(conversation["_id"], "alice")
    real_send = session._service.send_message

    async def lossy(*args, **kwargs):
        await real_send(*args, **kwargs)
        return SendResult(success=False, error="timeout")

    monkeypatch.setattr(session._service, "send_message", lossy)

    item = await session.send("hello")

    assert item.state == COMMITTED
    assert item.id is not None
    assert len(session.thread) == 1
    assert await ctx.db["messages"].count_documents({"conversation_id": conversation["_id"]}) == 1


@pytest.mark.asyncio
async def test_send_clears_own_typing(ctx, conversation):
    session = await ctx.sessions.open(conversation["_id"], "alice")
    await session.set_typing(True)
    assert ctx.presence.is_typing(conversation["_id"], "alice")

    await session.send("done typing")

    assert not ctx.presence.is_typing(conversation["_id"], "alice")


@pytest.mark.asyncio
async def test_non_participant_is_rejected(ctx, conversation):
    session = ChatSession(conversation["_id"], "mallory", ctx.chat_service(), ctx.presence, ctx.channel, ctx.settings)

    with pytest.raises(AuthorizationError):
        await session.open()

    assert session.state == SessionState.CLOSED
    assert not ctx.channel.is_active(conversation["_id"], "mallory")


@pytest.mark.asyncio
async def test_closed_session_rejects_sends(ctx, conversation):
    session = await ctx.sessions.open(conversation["_id"], "alice")
    await session.set_typing(True)

    session.close()
    session.close()

    assert not ctx.channel.is_active(conversation["_id"], "alice")
    assert not ctx.presence.has_pending_timer(conversation["_id"], "alice")
    with pytest.raises(InvalidRequestError):
        await session.send("too late")


@pytest.mark.asyncio
async def test_registry_keeps_one_session_per_viewer(ctx, conversation):
    first = await ctx.sessions.open(conversation["_id"], "alice")
    second = await ctx.sessions.open(conversation["_id"], "alice")

    assert first.closed
    assert ctx.sessions.get(conversation["_id"], "alice") is second
    assert ctx.sign_out("alice") == 1
    assert second.closed
    assert ctx.sessions.get(conversation["_id"], "alice") is None


@pytest.mark.asyncio
async def test_other_participant_typing_is_visible(ctx, conversation, settle):
    ctx.settings.typing_timeout_seconds = 5
    alice = await ctx.sessions.open(conversation["_id"], "alice")
    bob = await ctx.sessions.open(conversation["_id"], "bob")
    assert await settle(lambda: bob.connection.status == "connected")

    await alice.set_typing(True)
    assert await settle(lambda: bob.other_user_typing)

    await alice.set_typing(False)
    assert await settle(lambda: not bob.other_user_typing)


@pytest.mark.asyncio
async def test_updates_for_messages_outside_loaded_page_keep_order(ctx, settings, conversation, settle):
    settings.history_page_size = 2
    conv_id = conversation["_id"]
    service = ctx.chat_service()
    for content in ("one", "two", "three"):
        await service.send_message(conv_id, "alice", None, content)

    alice = await ctx.sessions.open(conv_id, "alice")
    assert await settle(lambda: alice.connection.status == "connected")
    assert [it.content for it in alice.thread.items] == ["two", "three"]

    await service.mark_messages_as_read(conv_id, "bob")

    assert await settle(lambda: all(it.delivery_status == "delivered" for it in alice.thread.items))
    await asyncio.sleep(0.05)
    stamps = [it.created_at for it in alice.thread.items]
    assert [it.content for it in alice.thread.items] == ["two", "three"]
    assert stamps == sorted(stamps)
