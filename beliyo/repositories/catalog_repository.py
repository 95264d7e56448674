from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from beliyo.models.catalog import ChannelDocument, MissionDocument, MoneyExchangeDocument, ProductDocument
from beliyo.utils.ids import id_candidates, id_filter, normalize_id


class CatalogRepository:
    """Read-only lookups into marketplace tables owned by the listing forms."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    async def get_product(self, product_id: str) -> Optional[ProductDocument]:
        return normalize_id(await self._db["products"].find_one(id_filter(product_id), {"name": 1, "seller_id": 1}))

    async def list_products_by_seller(self, seller_id: str, limit: int = 100) -> List[ProductDocument]:
        cursor = self._db["products"].find({"seller_id": seller_id}, {"name": 1, "seller_id": 1}).limit(limit)
        items = await cursor.to_list(length=limit)
        for it in items:
            normalize_id(it)
        return items

    async def get_exchange(self, exchange_id: str) -> Optional[MoneyExchangeDocument]:
        # exchanges are addressed by either their row id or their public unique_id
        query = {"$or": [{"_id": {"$in": id_candidates(exchange_id)}}, {"unique_id": exchange_id}]}
        return normalize_id(await self._db["money_exchanges"].find_one(query))

    async def list_exchanges_by_owner(self, user_id: str, limit: int = 100) -> List[MoneyExchangeDocument]:
        cursor = self._db["money_exchanges"].find({"user_id": user_id}).limit(limit)
        items = await cursor.to_list(length=limit)
        for it in items:
            normalize_id(it)
        return items

    async def get_mission(self, mission_id: str) -> Optional[MissionDocument]:
        return normalize_id(await self._db["missions"].find_one(id_filter(mission_id), {"title": 1}))

    async def get_channel_by_name(self, name: str) -> Optional[ChannelDocument]:
        return normalize_id(await self._db["channels"].find_one({"name": name}))

    async def get_channel(self, channel_id: str) -> Optional[ChannelDocument]:
        return normalize_id(await self._db["channels"].find_one(id_filter(channel_id)))
