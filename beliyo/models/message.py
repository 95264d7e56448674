from datetime import datetime
from typing import Literal, Optional, TypedDict


DeliveryStatus = Literal["sending", "sent", "delivered", "failed"]
MessageType = Literal["text", "system", "action"]


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    # legacy per-product channel rows carry channel_id instead
    channel_id: str
    sender_id: str
    receiver_id: str
    content: str
    created_at: datetime
    # delivery states
    delivery_status: DeliveryStatus
    is_read: bool
    read_at: Optional[datetime]
    # client placeholder id used for optimistic reconciliation
    temp_id: Optional[str]
    message_type: MessageType


class ExchangeMessageDocument(TypedDict, total=False):
    _id: str
    exchange_id: str
    sender_id: str
    receiver_id: str
    content: str
    created_at: datetime
    read_at: Optional[datetime]
