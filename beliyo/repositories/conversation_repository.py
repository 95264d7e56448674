from datetime import datetime
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from beliyo.models.conversation import ConversationDocument
from beliyo.utils.ids import id_filter, normalize_id
from beliyo.utils.timeutils import utcnow


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("participants", ASCENDING)])
        await self.collection.create_index([("last_message_at", DESCENDING)])
        await self.collection.create_index(
            [("pair_key", ASCENDING), ("context_type", ASCENDING), ("context_id", ASCENDING)],
            unique=True,
        )

    async def get_by_id(self, conversation_id: str) -> Optional[ConversationDocument]:
        return normalize_id(await self.collection.find_one(id_filter(conversation_id)))

    async def find_one_to_one(self, context_type: str, context_id: Optional[str], user_a: str, user_b: str) -> Optional[ConversationDocument]:
        query = {
            "pair_key": pair_key(user_a, user_b),
            "context_type": context_type,
            "context_id": context_id,
        }
        return normalize_id(await self.collection.find_one(query))

    async def get_or_create_one_to_one(self, context_type: str, context_id: Optional[str], user_a: str, user_b: str) -> ConversationDocument:
        existing = await self.find_one_to_one(context_type, context_id, user_a, user_b)
        if existing:
            return existing
        now = utcnow()
        doc: ConversationDocument = {
            "participant1_id": user_a,
            "participant2_id": user_b,
            "participants": sorted([user_a, user_b]),
            "pair_key": pair_key(user_a, user_b),
            "context_type": context_type,
            "context_id": context_id,
            "last_message": None,
            "last_message_at": None,
            "created_at": now,
            "updated_at": now,
        }
        try:
            result = await self.collection.insert_one(doc)
        except DuplicateKeyError:
            # lost a creation race against the other participant
            return await self.find_one_to_one(context_type, context_id, user_a, user_b)
        doc["_id"] = str(result.inserted_id)
        return doc

    async def update_on_new_message(self, conversation_id: str, preview: str, sent_at: datetime) -> None:
        await self.collection.update_one(
            id_filter(conversation_id),
            {
                "$set": {
                    "last_message": preview,
                    "last_message_at": sent_at,
                    "updated_at": utcnow(),
                },
            },
        )

    async def list_for_user(self, user_id: str, limit: int = 100) -> List[ConversationDocument]:
        cursor = self.collection.find({"participants": user_id}).sort([("last_message_at", DESCENDING), ("_id", DESCENDING)]).limit(limit)
        items = await cursor.to_list(length=limit)
        for it in items:
            normalize_id(it)
        return items


def pair_key(user_a: str, user_b: str) -> str:
    # scalar key; a unique index over the participants array would be multikey
    return ":".join(sorted([user_a, user_b]))


def other_participant(conversation: ConversationDocument, user_id: str) -> str:
    if conversation.get("participant1_id") == user_id:
        return conversation.get("participant2_id", "")
    return conversation.get("participant1_id", "")


def is_participant(conversation: ConversationDocument, user_id: str) -> bool:
    return user_id in (conversation.get("participant1_id"), conversation.get("participant2_id"))
