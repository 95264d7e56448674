from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from beliyo.models.message import ExchangeMessageDocument
from beliyo.utils.ids import normalize_id
from beliyo.utils.timeutils import utcnow


class ExchangeMessageRepository:
    """Per-exchange chat rows kept from before conversations were unified."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["exchange_messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("exchange_id", ASCENDING), ("created_at", ASCENDING)])

    async def list_exchange_ids_for_user(self, user_id: str, limit: int = 200) -> List[str]:
        cursor = self.collection.find(
            {"$or": [{"sender_id": user_id}, {"receiver_id": user_id}]},
            {"exchange_id": 1},
        ).limit(limit)
        rows = await cursor.to_list(length=limit)
        ids: List[str] = []
        for row in rows:
            exchange_id = row.get("exchange_id")
            if exchange_id and exchange_id not in ids:
                ids.append(exchange_id)
        return ids

    async def get_latest(self, exchange_id: str) -> Optional[ExchangeMessageDocument]:
        cursor = self.collection.find({"exchange_id": exchange_id}).sort([("created_at", DESCENDING), ("_id", DESCENDING)]).limit(1)
        items = await cursor.to_list(length=1)
        return normalize_id(items[0]) if items else None

    async def latest_counterpart(self, exchange_id: str, user_id: str) -> Optional[str]:
        cursor = self.collection.find(
            {"exchange_id": exchange_id, "$or": [{"sender_id": user_id}, {"receiver_id": user_id}]}
        ).sort([("created_at", DESCENDING)]).limit(1)
        items = await cursor.to_list(length=1)
        if not items:
            return None
        row = items[0]
        return row.get("receiver_id") if row.get("sender_id") == user_id else row.get("sender_id")

    async def count_unread(self, exchange_id: str, user_id: str) -> int:
        return await self.collection.count_documents(
            {"exchange_id": exchange_id, "receiver_id": user_id, "read_at": None}
        )

    async def mark_read(self, exchange_id: str, user_id: str) -> int:
        result = await self.collection.update_many(
            {"exchange_id": exchange_id, "receiver_id": user_id, "read_at": None},
            {"$set": {"read_at": utcnow()}},
        )
        return result.modified_count or 0
