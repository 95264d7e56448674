"""
One open chat view: ``loading -> access_check -> ready -> closed``.

The session owns the local thread, the realtime subscription and the
viewer's typing timer. Closing is synchronous; sends already in flight
finish against the store but no longer touch the thread.
"""

import asyncio
import enum
from typing import Callable, Dict, List, Optional, Set, Tuple

from pymongo.errors import PyMongoError

from beliyo.core.config import Settings
from beliyo.core.exceptions import AuthorizationError, InvalidRequestError
from beliyo.core.logging import get_logger
from beliyo.repositories.conversation_repository import is_participant, other_participant
from beliyo.schemas.chat import ConnectionState, MessageOut, PresenceOut
from beliyo.services.chat_service import ChatService
from beliyo.services.message_thread import MessageThread, ThreadItem
from beliyo.services.presence_service import PresenceTracker
from beliyo.services.realtime_channel import RealtimeChannel, Unsubscribe
from beliyo.utils.retry import read_after_write


logger = get_logger(__name__)


class SessionState(str, enum.Enum):
    LOADING = "loading"
    ACCESS_CHECK = "access_check"
    READY = "ready"
    CLOSED = "closed"


class SessionListener:
    """Receives session changes; the default implementation ignores them."""

    def on_item(self, item: ThreadItem) -> None:
        pass

    def on_presence(self, presence: List[PresenceOut]) -> None:
        pass

    def on_connection(self, state: ConnectionState) -> None:
        pass

    def on_error(self, error: Exception) -> None:
        pass


class ChatSession:

    def __init__(
        self,
        conversation_id: str,
        viewer_id: str,
        chat_service: ChatService,
        presence: PresenceTracker,
        channel: RealtimeChannel,
        settings: Settings,
        listener: Optional[SessionListener] = None,
    ) -> None:
        self.conversation_id = conversation_id
        self.viewer_id = viewer_id
        self.state = SessionState.LOADING
        self.thread = MessageThread(conversation_id)
        self.connection = ConnectionState()
        self.presence: List[PresenceOut] = []
        self.other_user_id: Optional[str] = None
        self._service = chat_service
        self._presence = presence
        self._channel = channel
        self._settings = settings
        self._listener = listener or SessionListener()
        self._unsubscribe: Optional[Unsubscribe] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def closed(self) -> bool:
        return self.state == SessionState.CLOSED

    @property
    def other_user_typing(self) -> bool:
        return any(p.user_id == self.other_user_id and p.is_typing for p in self.presence)

    async def open(self) -> "ChatSession":
        self.state = SessionState.LOADING
        conversation = await self._service.get_conversation(self.conversation_id)
        self.state = SessionState.ACCESS_CHECK
        if not is_participant(conversation, self.viewer_id):
            self.state = SessionState.CLOSED
            raise AuthorizationError("Not a participant of this conversation")
        self.other_user_id = other_participant(conversation, self.viewer_id)

        history = await self._service.get_messages(self.conversation_id, limit=self._settings.history_page_size)
        self.thread.load(history)
        await self._service.mark_messages_as_read(self.conversation_id, self.viewer_id)

        self._unsubscribe = self._channel.subscribe(
            self.conversation_id,
            self.viewer_id,
            self._handle_message,
            self._handle_presence,
            self._handle_error,
            self._handle_connection,
            on_message_updated=self._handle_update,
        )
        self.state = SessionState.READY
        logger.info("chat_session_ready", conversation_id=self.conversation_id, viewer_id=self.viewer_id, history=len(self.thread))
        return self

    async def send(self, content: str, message_type: str = "text") -> ThreadItem:
        if not content or not content.strip():
            raise InvalidRequestError("Message content cannot be empty")
        if self.state != SessionState.READY:
            raise InvalidRequestError("Chat session is not ready")
        if self._presence.is_typing(self.conversation_id, self.viewer_id):
            await self.set_typing(False)
        item = self.thread.add_pending(self.viewer_id, self.other_user_id, content.strip())
        self._listener.on_item(item)
        return await self._deliver(item, message_type)

    async def retry(self, temp_id: str) -> Optional[ThreadItem]:
        if self.closed:
            return None
        item = self.thread.retry(temp_id)
        if item is None:
            return None
        self._listener.on_item(item)
        return await self._deliver(item)

    async def _deliver(self, item: ThreadItem, message_type: str = "text") -> ThreadItem:
        if self.connection.status == "disconnected":
            logger.info("send_while_disconnected", conversation_id=self.conversation_id, temp_id=item.temp_id)
            return self._mark_failed(item)

        attempts = max(self._settings.send_max_attempts, 1)
        for attempt in range(1, attempts + 1):
            result = await self._service.send_message(
                self.conversation_id,
                self.viewer_id,
                self.other_user_id,
                item.content,
                temp_id=item.temp_id,
                message_type=message_type,
            )
            if self.closed:
                return item
            if result.success:
                committed = self.thread.commit(item.temp_id, result.message)
                self._listener.on_item(committed)
                return committed
            logger.warning("send_attempt_failed", conversation_id=self.conversation_id, attempt=attempt, error=result.error)

            # the write may have landed even though the call reported failure
            stored = await self._reread(item.temp_id)
            if self.closed:
                return item
            if stored is not None:
                committed = self.thread.commit(item.temp_id, stored)
                self._listener.on_item(committed)
                return committed
            if attempt < attempts:
                await asyncio.sleep(self._settings.send_retry_delay_seconds)
        return self._mark_failed(item)

    async def _reread(self, temp_id: str) -> Optional[MessageOut]:
        try:
            return await read_after_write(
                lambda: self._service.find_by_temp_id(self.conversation_id, temp_id),
                lambda found: found is not None,
                attempts=2,
                delay=self._settings.send_retry_delay_seconds,
            )
        except PyMongoError as exc:
            logger.warning("reconcile_read_failed", conversation_id=self.conversation_id, error=str(exc))
            return None

    def _mark_failed(self, item: ThreadItem) -> ThreadItem:
        failed = self.thread.fail(item.temp_id) or item
        self._listener.on_item(failed)
        return failed

    async def set_typing(self, is_typing: bool) -> None:
        if self.closed:
            return
        await self._presence.set_typing_status(self.conversation_id, self.viewer_id, is_typing)

    async def mark_read(self) -> int:
        if self.closed:
            return 0
        return await self._service.mark_messages_as_read(self.conversation_id, self.viewer_id)

    def close(self) -> None:
        if self.closed:
            return
        self.state = SessionState.CLOSED
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._presence.cancel_typing_timers(self.conversation_id, self.viewer_id)
        for task in list(self._tasks):
            task.cancel()
        self.connection = ConnectionState()
        logger.info("chat_session_closed", conversation_id=self.conversation_id, viewer_id=self.viewer_id)

    # realtime callbacks: keep them short, defer store work to tasks

    def _handle_message(self, message: MessageOut) -> None:
        if self.closed:
            return
        item, _ = self.thread.apply(message)
        self._listener.on_item(item)
        if message.receiver_id == self.viewer_id and not message.is_read:
            self._spawn(self._service.mark_messages_as_read(self.conversation_id, self.viewer_id))

    def _handle_update(self, message: MessageOut) -> None:
        if self.closed:
            return
        item = self.thread.update(message)
        if item is not None:
            self._listener.on_item(item)

    def _handle_presence(self, presence: List[PresenceOut]) -> None:
        if self.closed:
            return
        self.presence = presence
        self._listener.on_presence(presence)

    def _handle_error(self, error: Exception) -> None:
        logger.warning("chat_session_error", conversation_id=self.conversation_id, error=str(error))
        self._listener.on_error(error)

    def _handle_connection(self, state: ConnectionState) -> None:
        if self.closed:
            return
        self.connection = state
        self._listener.on_connection(state)

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._finish_task)

    def _finish_task(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("chat_session_task_failed", conversation_id=self.conversation_id, error=str(task.exception()))


class SessionRegistry:
    """At most one open session per conversation and viewer."""

    def __init__(self, factory: Callable[..., ChatSession]) -> None:
        self._factory = factory
        self._sessions: Dict[Tuple[str, str], ChatSession] = {}

    async def open(self, conversation_id: str, viewer_id: str, listener: Optional[SessionListener] = None) -> ChatSession:
        key = (conversation_id, viewer_id)
        previous = self._sessions.pop(key, None)
        if previous is not None:
            previous.close()
        session = self._factory(conversation_id, viewer_id, listener)
        await session.open()
        self._sessions[key] = session
        return session

    def get(self, conversation_id: str, viewer_id: str) -> Optional[ChatSession]:
        return self._sessions.get((conversation_id, viewer_id))

    def close(self, session: ChatSession) -> None:
        key = (session.conversation_id, session.viewer_id)
        if self._sessions.get(key) is session:
            del self._sessions[key]
        session.close()

    def close_user(self, viewer_id: str) -> int:
        keys = [k for k in self._sessions if k[1] == viewer_id]
        for key in keys:
            self._sessions.pop(key).close()
        return len(keys)

    def close_all(self) -> None:
        for session in list(self._sessions.values()):
            session.close()
        self._sessions.clear()
