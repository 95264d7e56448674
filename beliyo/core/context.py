"""
Process-wide collaborators, created on start-up and torn down on shutdown.

Routers receive the context through a dependency instead of reaching for
module globals.
"""

from dataclasses import dataclass, field
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from beliyo.core.config import Settings
from beliyo.core.logging import get_logger
from beliyo.repositories.catalog_repository import CatalogRepository
from beliyo.repositories.conversation_repository import ConversationRepository
from beliyo.repositories.exchange_message_repository import ExchangeMessageRepository
from beliyo.repositories.message_repository import MessageRepository
from beliyo.repositories.presence_repository import PresenceRepository
from beliyo.services.aggregation_service import ChatAggregationService
from beliyo.services.chat_service import ChatService
from beliyo.services.chat_session import ChatSession, SessionListener, SessionRegistry
from beliyo.services.presence_service import PresenceTracker
from beliyo.services.realtime_channel import RealtimeChannel


logger = get_logger(__name__)


@dataclass
class AppContext:
    settings: Settings
    db: AsyncIOMotorDatabase
    bus: object
    presence: PresenceTracker = field(init=False)
    channel: RealtimeChannel = field(init=False)
    sessions: SessionRegistry = field(init=False)

    def __post_init__(self) -> None:
        self.presence = PresenceTracker(PresenceRepository(self.db), self.bus, self.settings)
        self.channel = RealtimeChannel(self.bus, self.presence, self.settings)
        self.sessions = SessionRegistry(self._new_session)

    def chat_service(self) -> ChatService:
        return ChatService(
            MessageRepository(self.db),
            ConversationRepository(self.db),
            self.bus,
            ExchangeMessageRepository(self.db),
        )

    def aggregation_service(self) -> ChatAggregationService:
        return ChatAggregationService(
            ConversationRepository(self.db),
            MessageRepository(self.db),
            ExchangeMessageRepository(self.db),
            CatalogRepository(self.db),
            self.presence,
        )

    def _new_session(self, conversation_id: str, viewer_id: str, listener: Optional[SessionListener] = None) -> ChatSession:
        return ChatSession(
            conversation_id,
            viewer_id,
            self.chat_service(),
            self.presence,
            self.channel,
            self.settings,
            listener,
        )

    async def ensure_indexes(self) -> None:
        await ConversationRepository(self.db).ensure_indexes()
        await MessageRepository(self.db).ensure_indexes()
        await ExchangeMessageRepository(self.db).ensure_indexes()
        await PresenceRepository(self.db).ensure_indexes()

    def sign_out(self, user_id: str) -> int:
        closed = self.sessions.close_user(user_id)
        logger.info("user_sessions_closed", user_id=user_id, count=closed)
        return closed

    async def teardown(self) -> None:
        self.sessions.close_all()
        await self.channel.close()
        self.presence.close()
