"""
Realtime delivery for one open conversation.

A subscription moves ``disconnected -> connecting -> connected``. When the
transport drops it goes ``reconnecting`` and tries again on the configured
delay schedule; after ``max_retry_attempts`` failed attempts it settles in
``disconnected``. Callbacks run on the event loop and must not block.
"""

import asyncio
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError

from beliyo.core.config import Settings
from beliyo.core.exceptions import ConnectivityError
from beliyo.core.logging import get_logger
from beliyo.schemas.chat import ConnectionState, MessageOut, PresenceOut
from beliyo.services import events
from beliyo.services.presence_service import PresenceTracker
from beliyo.utils.realtime_bus import conversation_channel
from beliyo.utils.retry import backoff_delay
from beliyo.utils.timeutils import utcnow


logger = get_logger(__name__)

OnMessage = Callable[[MessageOut], None]
OnPresence = Callable[[List[PresenceOut]], None]
OnError = Callable[[Exception], None]
OnConnectionChange = Callable[[ConnectionState], None]
Unsubscribe = Callable[[], None]


def _noop(*args: Any) -> None:
    return None


@dataclass
class Subscription:
    conversation_id: str
    viewer_id: str
    on_message: OnMessage
    on_presence: OnPresence
    on_error: OnError
    on_connection_change: OnConnectionChange
    on_message_updated: Optional[OnMessage] = None
    state: ConnectionState = field(default_factory=ConnectionState)
    seen_ids: Set[str] = field(default_factory=set)
    task: Optional[asyncio.Task] = None
    heartbeat: Optional[asyncio.Task] = None
    closed: bool = False


class RealtimeChannel:

    def __init__(
        self,
        bus,
        presence: PresenceTracker,
        settings: Settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._bus = bus
        self._presence = presence
        self._settings = settings
        self._sleep = sleep
        self._active: Dict[Tuple[str, str], Subscription] = {}
        self._background: Set[asyncio.Task] = set()

    def subscribe(
        self,
        conversation_id: str,
        viewer_id: str,
        on_message: OnMessage,
        on_presence: Optional[OnPresence] = None,
        on_error: Optional[OnError] = None,
        on_connection_state_change: Optional[OnConnectionChange] = None,
        on_message_updated: Optional[OnMessage] = None,
    ) -> Unsubscribe:
        key = (conversation_id, viewer_id)
        previous = self._active.get(key)
        if previous is not None:
            self._release(previous)

        sub = Subscription(
            conversation_id=conversation_id,
            viewer_id=viewer_id,
            on_message=on_message,
            on_presence=on_presence or _noop,
            on_error=on_error or _noop,
            on_connection_change=on_connection_state_change or _noop,
            on_message_updated=on_message_updated,
        )
        self._active[key] = sub
        self._set_state(sub, "connecting")
        sub.task = asyncio.get_running_loop().create_task(self._run(sub))
        return partial(self._release, sub)

    def state(self, conversation_id: str, viewer_id: str) -> ConnectionState:
        sub = self._active.get((conversation_id, viewer_id))
        return sub.state.model_copy() if sub else ConnectionState()

    def is_active(self, conversation_id: str, viewer_id: str) -> bool:
        return (conversation_id, viewer_id) in self._active

    async def _run(self, sub: Subscription) -> None:
        while not sub.closed:
            try:
                handle = await self._bus.subscribe(
                    conversation_channel(sub.conversation_id), partial(self._dispatch, sub)
                )
            except ConnectivityError as exc:
                if not await self._backoff(sub, exc):
                    return
                continue

            self._set_state(sub, "connected")
            if sub.heartbeat is None:
                sub.heartbeat = asyncio.create_task(self._heartbeat(sub))
            try:
                await handle.run()
                if not sub.closed:
                    self._set_state(sub, "disconnected", "Realtime transport closed")
                    self._stop_heartbeat(sub)
                return
            except ConnectivityError as exc:
                self._notify(sub.on_error, exc)
                if not await self._backoff(sub, exc):
                    return
            finally:
                await handle.cancel()

    async def _backoff(self, sub: Subscription, exc: Exception) -> bool:
        sub.state.retry_count += 1
        if sub.state.retry_count > self._settings.max_retry_attempts:
            logger.error("realtime_retries_exhausted", conversation_id=sub.conversation_id, viewer_id=sub.viewer_id)
            self._set_state(sub, "disconnected", "Max retry attempts reached")
            self._stop_heartbeat(sub)
            return False
        delay = backoff_delay(self._settings.reconnect_delays, sub.state.retry_count)
        logger.warning(
            "realtime_reconnecting",
            conversation_id=sub.conversation_id,
            attempt=sub.state.retry_count,
            delay=delay,
            error=str(exc),
        )
        self._set_state(sub, "reconnecting", str(exc))
        await self._sleep(delay)
        return not sub.closed

    async def _heartbeat(self, sub: Subscription) -> None:
        await self._presence.update(sub.conversation_id, sub.viewer_id, True, False)
        while not sub.closed:
            await asyncio.sleep(self._settings.presence_heartbeat_seconds)
            await self._presence.heartbeat(sub.conversation_id, sub.viewer_id)

    async def _dispatch(self, sub: Subscription, raw: str) -> None:
        if sub.closed:
            return
        # the counter only resets once the new connection has carried traffic
        sub.state.retry_count = 0
        try:
            event = events.decode_event(raw)
            kind = event["type"]
            if kind == events.MESSAGE:
                message = MessageOut.model_validate(event["message"])
                if message.id in sub.seen_ids:
                    return
                sub.seen_ids.add(message.id)
                self._notify(sub.on_message, message)
            elif kind == events.MESSAGE_UPDATED:
                self._notify(sub.on_message_updated or sub.on_message, MessageOut.model_validate(event["message"]))
            elif kind == events.PRESENCE:
                presence = [PresenceOut.model_validate(p) for p in event.get("presence", [])]
                self._notify(sub.on_presence, presence)
        except (ValueError, KeyError, ValidationError) as exc:
            logger.warning("realtime_bad_event", conversation_id=sub.conversation_id, error=str(exc))
            self._notify(sub.on_error, exc)

    def _set_state(self, sub: Subscription, status: str, error: Optional[str] = None) -> None:
        sub.state.status = status
        sub.state.last_error = error
        if status == "connected":
            sub.state.last_connected = utcnow()
        self._notify(sub.on_connection_change, sub.state.model_copy())

    def _notify(self, callback: Callable, *args: Any) -> None:
        try:
            callback(*args)
        except Exception as exc:
            logger.exception("realtime_callback_failed", error=str(exc))

    def _stop_heartbeat(self, sub: Subscription) -> None:
        if sub.heartbeat is not None and not sub.heartbeat.done():
            sub.heartbeat.cancel()
        sub.heartbeat = None

    def _release(self, sub: Subscription) -> None:
        if sub.closed:
            return
        sub.closed = True
        key = (sub.conversation_id, sub.viewer_id)
        if self._active.get(key) is sub:
            del self._active[key]
        if sub.task is not None and not sub.task.done():
            sub.task.cancel()
        self._stop_heartbeat(sub)
        self._presence.cancel_typing_timers(sub.conversation_id, sub.viewer_id)
        sub.state.status = "disconnected"
        # presence removal is fire-and-forget
        leave = asyncio.ensure_future(self._presence.leave(sub.conversation_id, sub.viewer_id))
        self._background.add(leave)
        leave.add_done_callback(self._background.discard)

    async def close(self) -> None:
        pending: List[asyncio.Task] = []
        for sub in list(self._active.values()):
            pending.extend(t for t in (sub.task, sub.heartbeat) if t is not None)
            self._release(sub)
        pending.extend(self._background)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
