from datetime import datetime
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from beliyo.models.message import MessageDocument
from beliyo.utils.ids import id_filter, normalize_id
from beliyo.utils.timeutils import next_after, storage_time, utcnow


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("created_at", ASCENDING)])
        await self.collection.create_index([("channel_id", ASCENDING), ("created_at", ASCENDING)])
        await self.collection.create_index([("receiver_id", ASCENDING), ("is_read", ASCENDING)])

    async def save_message(
        self,
        conversation_id: str,
        sender_id: str,
        receiver_id: str,
        content: str,
        temp_id: Optional[str] = None,
        message_type: str = "text",
    ) -> MessageDocument:
        latest = await self.get_latest(conversation_id)
        created_at = next_after(latest["created_at"] if latest else None, utcnow())
        doc: MessageDocument = {
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "receiver_id": receiver_id,
            "content": content,
            "created_at": created_at,
            "delivery_status": "sent",
            "is_read": False,
            "read_at": None,
            "temp_id": temp_id,
            "message_type": message_type,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        return doc

    async def get_by_id(self, message_id: str) -> Optional[MessageDocument]:
        return normalize_id(await self.collection.find_one(id_filter(message_id)))

    async def get_latest(self, conversation_id: str) -> Optional[MessageDocument]:
        return await self._latest({"conversation_id": conversation_id})

    async def get_latest_in_channel(self, channel_id: str) -> Optional[Dict[str, Any]]:
        return await self._latest({"channel_id": channel_id})

    async def _latest(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        cursor = self.collection.find(query).sort([("created_at", DESCENDING), ("_id", DESCENDING)]).limit(1)
        items = await cursor.to_list(length=1)
        return normalize_id(items[0]) if items else None

    async def get_messages_by_conversation(
        self,
        conversation_id: str,
        limit: int = 50,
        before: Optional[datetime] = None,
    ) -> List[MessageDocument]:
        query: Dict[str, Any] = {"conversation_id": conversation_id}
        if before is not None:
            query["created_at"] = {"$lt": storage_time(before)}
        # newest page first, then flipped to chronological order for rendering
        cursor = self.collection.find(query).sort([("created_at", DESCENDING), ("_id", DESCENDING)]).limit(limit)
        items = await cursor.to_list(length=limit)
        for it in items:
            normalize_id(it)
        return list(reversed(items))

    async def find_by_temp_id(self, conversation_id: str, temp_id: str) -> Optional[Dict[str, Any]]:
        return normalize_id(await self.collection.find_one({"conversation_id": conversation_id, "temp_id": temp_id}))

    async def count_unread(self, conversation_id: str, viewer_id: str) -> int:
        return await self.collection.count_documents(
            {"conversation_id": conversation_id, "receiver_id": viewer_id, "is_read": False}
        )

    async def count_unread_in_channel(self, channel_id: str, viewer_id: str) -> int:
        # legacy channel rows have no receiver; anything not sent by the viewer counts
        return await self.collection.count_documents(
            {"channel_id": channel_id, "sender_id": {"$ne": viewer_id}, "is_read": False}
        )

    async def list_channel_ids_for_sender(self, sender_id: str, limit: int = 200) -> List[str]:
        cursor = self.collection.find(
            {"sender_id": sender_id, "channel_id": {"$exists": True}},
            {"channel_id": 1},
        ).limit(limit)
        rows = await cursor.to_list(length=limit)
        seen: List[str] = []
        for row in rows:
            channel_id = row.get("channel_id")
            if channel_id and channel_id not in seen:
                seen.append(channel_id)
        return seen

    async def latest_other_sender_in_channel(self, channel_id: str, viewer_id: str) -> Optional[str]:
        cursor = self.collection.find(
            {"channel_id": channel_id, "sender_id": {"$ne": viewer_id}}
        ).sort([("created_at", DESCENDING)]).limit(1)
        items = await cursor.to_list(length=1)
        return items[0].get("sender_id") if items else None

    async def list_ids_to_mark_read(self, conversation_id: str, receiver_id: str) -> List[str]:
        cursor = self.collection.find(
            {
                "conversation_id": conversation_id,
                "receiver_id": receiver_id,
                "$or": [{"is_read": False}, {"delivery_status": "sent"}],
            },
            {"_id": 1},
        ).sort([("created_at", ASCENDING)])
        rows = await cursor.to_list(length=None)
        return [str(row["_id"]) for row in rows]

    async def mark_read(self, conversation_id: str, receiver_id: str) -> int:
        now = utcnow()
        result = await self.collection.update_many(
            {"conversation_id": conversation_id, "receiver_id": receiver_id, "is_read": False},
            {"$set": {"is_read": True, "read_at": now}},
        )
        # reading implies delivery; failed stays terminal
        await self.collection.update_many(
            {"conversation_id": conversation_id, "receiver_id": receiver_id, "delivery_status": "sent"},
            {"$set": {"delivery_status": "delivered"}},
        )
        return result.modified_count or 0
