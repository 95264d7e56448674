from datetime import datetime
from typing import List

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from beliyo.models.presence import PresenceDocument
from beliyo.utils.ids import normalize_id
from beliyo.utils.timeutils import storage_time, utcnow


class PresenceRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["user_presence"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("user_id", ASCENDING), ("conversation_id", ASCENDING)], unique=True)
        await self.collection.create_index([("conversation_id", ASCENDING), ("last_seen", ASCENDING)])

    async def upsert(self, conversation_id: str, user_id: str, is_online: bool, is_typing: bool) -> PresenceDocument:
        now = utcnow()
        doc: PresenceDocument = {
            "user_id": user_id,
            "conversation_id": conversation_id,
            "is_online": is_online,
            "is_typing": is_typing,
            "last_seen": now,
            "updated_at": now,
        }
        await self.collection.update_one(
            {"user_id": user_id, "conversation_id": conversation_id},
            {"$set": doc},
            upsert=True,
        )
        return doc

    async def remove(self, conversation_id: str, user_id: str) -> bool:
        result = await self.collection.delete_one({"user_id": user_id, "conversation_id": conversation_id})
        return bool(result.deleted_count)

    async def list_fresh(self, conversation_id: str, since: datetime) -> List[PresenceDocument]:
        cursor = self.collection.find({"conversation_id": conversation_id, "last_seen": {"$gte": storage_time(since)}})
        items = await cursor.to_list(length=100)
        for it in items:
            normalize_id(it)
        return items

    async def is_online(self, user_id: str, since: datetime) -> bool:
        # online anywhere counts
        count = await self.collection.count_documents(
            {"user_id": user_id, "is_online": True, "last_seen": {"$gte": storage_time(since)}}
        )
        return count > 0
