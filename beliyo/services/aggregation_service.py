"""
Unified chat list.

Three stores hold chat history for a user: the ``conversations`` table,
per-exchange ``exchange_messages`` and the legacy per-product ``channels``.
Each source is fetched on its own; a source that fails is logged and left
out. Entries are merged in source order (first entry for a context and
counterpart wins) and ranked by last activity, newest first.
"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from beliyo.core.logging import get_logger
from beliyo.repositories.catalog_repository import CatalogRepository
from beliyo.repositories.conversation_repository import ConversationRepository, other_participant
from beliyo.repositories.exchange_message_repository import ExchangeMessageRepository
from beliyo.repositories.message_repository import MessageRepository
from beliyo.schemas.chat import ChatSummary
from beliyo.services.presence_service import PresenceTracker
from beliyo.utils.chat_routing import chat_path
from beliyo.utils.timeutils import EPOCH, as_utc


logger = get_logger(__name__)

NO_MESSAGES = "No messages yet"

Source = Callable[[str], Awaitable[List[ChatSummary]]]


class ChatAggregationService:

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        message_repo: MessageRepository,
        exchange_message_repo: ExchangeMessageRepository,
        catalog_repo: CatalogRepository,
        presence: PresenceTracker,
    ) -> None:
        self._conversation_repo = conversation_repo
        self._message_repo = message_repo
        self._exchange_message_repo = exchange_message_repo
        self._catalog_repo = catalog_repo
        self._presence = presence

    def sources(self) -> List[Tuple[str, Source]]:
        return [
            ("conversations", self._conversation_chats),
            ("exchange_messages", self._exchange_chats),
            ("product_channels", self._product_channel_chats),
        ]

    async def list_chats(self, viewer_id: str, chat_type: Optional[str] = None, search: Optional[str] = None) -> List[ChatSummary]:
        sources = self.sources()
        results = await asyncio.gather(*(self._guarded(name, fetch, viewer_id) for name, fetch in sources))

        merged: List[ChatSummary] = []
        seen = set()
        for entries in results:
            for entry in entries:
                key = (entry.type, entry.context_id, entry.other_participant_id)
                if key in seen:
                    continue
                seen.add(key)
                merged.append(entry)

        if chat_type and chat_type != "all":
            merged = [c for c in merged if c.type == chat_type]
        if search:
            needle = search.lower()
            merged = [
                c for c in merged
                if needle in c.title.lower() or needle in c.subtitle.lower() or needle in c.last_message.lower()
            ]
        merged.sort(key=lambda c: c.last_message_timestamp, reverse=True)
        return merged

    async def unread_total(self, viewer_id: str) -> int:
        return sum(c.unread_count for c in await self.list_chats(viewer_id))

    async def _guarded(self, name: str, fetch: Source, viewer_id: str) -> List[ChatSummary]:
        try:
            return await fetch(viewer_id)
        except Exception as exc:
            logger.warning("chat_source_failed", source=name, viewer_id=viewer_id, error=str(exc))
            return []

    async def _conversation_chats(self, viewer_id: str) -> List[ChatSummary]:
        conversations = await self._conversation_repo.list_for_user(viewer_id)
        return list(await asyncio.gather(*(self._summarize_conversation(c, viewer_id) for c in conversations)))

    async def _summarize_conversation(self, conv: Dict[str, Any], viewer_id: str) -> ChatSummary:
        other_id = other_participant(conv, viewer_id)
        context_type = conv.get("context_type") or "general"
        context_id = conv.get("context_id")
        last, unread, online, (title, subtitle) = await asyncio.gather(
            self._message_repo.get_latest(conv["_id"]),
            self._message_repo.count_unread(conv["_id"], viewer_id),
            self._presence.is_online(other_id),
            self._resolve_title(context_type, context_id),
        )
        return ChatSummary(
            id=conv["_id"],
            type=context_type,
            title=title,
            subtitle=subtitle,
            last_message=(last or {}).get("content") or conv.get("last_message") or NO_MESSAGES,
            last_message_timestamp=_first_time(
                (last or {}).get("created_at"), conv.get("last_message_at"), conv.get("created_at")
            ),
            unread_count=unread,
            other_participant_id=other_id,
            is_online=online,
            context_id=context_id if context_type != "general" else None,
            navigation_target=chat_path(context_type, context_id, other_id),
        )

    async def _resolve_title(self, context_type: str, context_id: Optional[str]) -> Tuple[str, str]:
        if context_type == "shop" and context_id:
            product = await self._catalog_repo.get_product(context_id)
            return (product or {}).get("name") or "Product Chat", "Product Discussion"
        if context_type == "exchange" and context_id:
            exchange = await self._catalog_repo.get_exchange(context_id)
            return _exchange_title(exchange), "Currency Exchange"
        if context_type == "mission" and context_id:
            mission = await self._catalog_repo.get_mission(context_id)
            return (mission or {}).get("title") or "Mission Chat", "Mission Discussion"
        return "Direct Message", "Private Chat"

    async def _exchange_chats(self, viewer_id: str) -> List[ChatSummary]:
        owned = await self._catalog_repo.list_exchanges_by_owner(viewer_id)
        exchange_ids: List[str] = []
        for exchange in owned:
            exchange_id = exchange.get("unique_id") or exchange["_id"]
            if exchange_id not in exchange_ids:
                exchange_ids.append(exchange_id)
        for exchange_id in await self._exchange_message_repo.list_exchange_ids_for_user(viewer_id):
            if exchange_id not in exchange_ids:
                exchange_ids.append(exchange_id)

        entries = await asyncio.gather(*(self._summarize_exchange(e, viewer_id) for e in exchange_ids))
        return [e for e in entries if e is not None]

    async def _summarize_exchange(self, exchange_id: str, viewer_id: str) -> Optional[ChatSummary]:
        exchange, last, other_id = await asyncio.gather(
            self._catalog_repo.get_exchange(exchange_id),
            self._exchange_message_repo.get_latest(exchange_id),
            self._exchange_message_repo.latest_counterpart(exchange_id, viewer_id),
        )
        if not other_id and exchange and exchange.get("user_id") != viewer_id:
            other_id = exchange.get("user_id")
        if not other_id:
            # an exchange nobody has written about yet has no one to chat with
            return None
        unread, online = await asyncio.gather(
            self._exchange_message_repo.count_unread(exchange_id, viewer_id),
            self._presence.is_online(other_id),
        )
        return ChatSummary(
            id=f"exchange_{exchange_id}_{other_id}",
            type="exchange",
            title=_exchange_title(exchange),
            subtitle="Currency Exchange",
            last_message=(last or {}).get("content") or NO_MESSAGES,
            last_message_timestamp=_first_time((last or {}).get("created_at"), (exchange or {}).get("created_at")),
            unread_count=unread,
            other_participant_id=other_id,
            is_online=online,
            context_id=exchange_id,
            navigation_target=chat_path("exchange", exchange_id, other_id),
        )

    async def _product_channel_chats(self, viewer_id: str) -> List[ChatSummary]:
        channels: List[Tuple[Dict[str, Any], Optional[Dict[str, Any]]]] = []
        seen = set()
        for product in await self._catalog_repo.list_products_by_seller(viewer_id):
            channel = await self._catalog_repo.get_channel_by_name(f"product_{product['_id']}")
            if channel and channel["_id"] not in seen:
                seen.add(channel["_id"])
                channels.append((channel, product))
        for channel_id in await self._message_repo.list_channel_ids_for_sender(viewer_id):
            if channel_id in seen:
                continue
            channel = await self._catalog_repo.get_channel(channel_id)
            if channel and (channel.get("name") or "").startswith("product_"):
                seen.add(channel["_id"])
                channels.append((channel, None))

        entries = await asyncio.gather(*(self._summarize_channel(c, p, viewer_id) for c, p in channels))
        return [e for e in entries if e is not None]

    async def _summarize_channel(self, channel: Dict[str, Any], product: Optional[Dict[str, Any]], viewer_id: str) -> Optional[ChatSummary]:
        product_id = channel.get("product_id") or channel["name"][len("product_"):]
        if product is None:
            product = await self._catalog_repo.get_product(product_id)
        last = await self._message_repo.get_latest_in_channel(channel["_id"])
        if last is None:
            return None
        seller_id = (product or {}).get("seller_id")
        if seller_id and seller_id != viewer_id:
            other_id = seller_id
        else:
            other_id = await self._message_repo.latest_other_sender_in_channel(channel["_id"], viewer_id)
        if not other_id:
            return None
        unread, online = await asyncio.gather(
            self._message_repo.count_unread_in_channel(channel["_id"], viewer_id),
            self._presence.is_online(other_id),
        )
        return ChatSummary(
            id=f"product_{product_id}_{other_id}",
            type="shop",
            title=(product or {}).get("name") or "Product Chat",
            subtitle="Your Product" if seller_id == viewer_id else "Product Discussion",
            last_message=last.get("content") or NO_MESSAGES,
            last_message_timestamp=_first_time(last.get("created_at"), channel.get("created_at")),
            unread_count=unread,
            other_participant_id=other_id,
            is_online=online,
            context_id=product_id,
            navigation_target=chat_path("shop", product_id, other_id),
        )


def _exchange_title(exchange: Optional[Dict[str, Any]]) -> str:
    if exchange and exchange.get("from_currency") and exchange.get("to_currency"):
        return f"{exchange['from_currency']} → {exchange['to_currency']}"
    return "Exchange Chat"


def _first_time(*values: Optional[datetime]) -> datetime:
    for value in values:
        if value is not None:
            return as_utc(value)
    return EPOCH
