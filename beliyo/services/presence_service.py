import asyncio
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from pymongo.errors import PyMongoError

from beliyo.core.config import Settings
from beliyo.core.exceptions import ChatError
from beliyo.core.logging import get_logger
from beliyo.repositories.presence_repository import PresenceRepository
from beliyo.schemas.chat import PresenceOut
from beliyo.services import events
from beliyo.utils.realtime_bus import conversation_channel
from beliyo.utils.timeutils import utcnow


logger = get_logger(__name__)

Key = Tuple[str, str]


class PresenceTracker:
    """
    Online/typing state per user and conversation.

    Rows are overwritten on every update and removed when the chat view goes
    away. Typing reverts to false after ``typing_timeout_seconds`` unless
    renewed.
    """

    def __init__(self, repo: PresenceRepository, bus, settings: Settings) -> None:
        self._repo = repo
        self._bus = bus
        self._settings = settings
        self._typing: Dict[Key, bool] = {}
        self._typing_timers: Dict[Key, asyncio.Task] = {}

    async def update(self, conversation_id: str, user_id: str, is_online: bool = True, is_typing: bool = False) -> None:
        self._typing[(conversation_id, user_id)] = is_typing
        try:
            await self._repo.upsert(conversation_id, user_id, is_online, is_typing)
            await self._broadcast(conversation_id)
        except (PyMongoError, ChatError) as exc:
            logger.warning("presence_update_failed", conversation_id=conversation_id, user_id=user_id, error=str(exc))

    async def heartbeat(self, conversation_id: str, user_id: str) -> None:
        await self.update(conversation_id, user_id, True, self._typing.get((conversation_id, user_id), False))

    async def set_typing_status(self, conversation_id: str, user_id: str, is_typing: bool) -> None:
        key = (conversation_id, user_id)
        self._cancel_timer(key)
        await self.update(conversation_id, user_id, True, is_typing)
        if is_typing:
            self._typing_timers[key] = asyncio.create_task(self._expire_typing(key))

    async def _expire_typing(self, key: Key) -> None:
        await asyncio.sleep(self._settings.typing_timeout_seconds)
        self._typing_timers.pop(key, None)
        conversation_id, user_id = key
        await self.update(conversation_id, user_id, True, False)

    def is_typing(self, conversation_id: str, user_id: str) -> bool:
        return self._typing.get((conversation_id, user_id), False)

    def has_pending_timer(self, conversation_id: str, user_id: str) -> bool:
        return (conversation_id, user_id) in self._typing_timers

    def cancel_typing_timers(self, conversation_id: str, user_id: Optional[str] = None) -> None:
        for key in list(self._typing_timers):
            if key[0] == conversation_id and (user_id is None or key[1] == user_id):
                self._cancel_timer(key)

    def _cancel_timer(self, key: Key) -> None:
        timer = self._typing_timers.pop(key, None)
        if timer is not None and not timer.done():
            timer.cancel()

    async def leave(self, conversation_id: str, user_id: str) -> None:
        key = (conversation_id, user_id)
        self._cancel_timer(key)
        self._typing.pop(key, None)
        try:
            await self._repo.remove(conversation_id, user_id)
            await self._broadcast(conversation_id)
        except (PyMongoError, ChatError) as exc:
            logger.warning("presence_leave_failed", conversation_id=conversation_id, user_id=user_id, error=str(exc))

    async def get_presence(self, conversation_id: str) -> List[PresenceOut]:
        since = utcnow() - timedelta(seconds=self._settings.presence_stale_seconds)
        rows = await self._repo.list_fresh(conversation_id, since)
        return [
            PresenceOut(
                user_id=r["user_id"],
                conversation_id=r["conversation_id"],
                is_online=r.get("is_online", False),
                is_typing=r.get("is_typing", False),
                last_seen=r["last_seen"],
            )
            for r in rows
        ]

    async def is_online(self, user_id: str) -> bool:
        since = utcnow() - timedelta(seconds=self._settings.presence_stale_seconds)
        return await self._repo.is_online(user_id, since)

    async def _broadcast(self, conversation_id: str) -> None:
        presence = await self.get_presence(conversation_id)
        await self._bus.publish(conversation_channel(conversation_id), events.presence_event(conversation_id, presence))

    def close(self) -> None:
        for key in list(self._typing_timers):
            self._cancel_timer(key)
        self._typing.clear()
