from datetime import datetime
from typing import Optional, TypedDict


class ProductDocument(TypedDict, total=False):
    _id: str
    name: str
    seller_id: str


class MoneyExchangeDocument(TypedDict, total=False):
    _id: str
    unique_id: Optional[str]
    user_id: str
    from_currency: str
    to_currency: str
    from_amount: float
    to_amount: float
    created_at: datetime


class MissionDocument(TypedDict, total=False):
    _id: str
    title: str
    user_id: str


class ChannelDocument(TypedDict, total=False):
    _id: str
    # "product_<product id>" or "general"
    name: str
    product_id: Optional[str]
    created_at: datetime
