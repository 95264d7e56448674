from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from beliyo.models.conversation import ContextType
from beliyo.models.message import DeliveryStatus, MessageType


ConnectionStatus = Literal["disconnected", "connecting", "connected", "reconnecting"]


class MessageOut(BaseModel):

    id: str
    conversation_id: str
    sender_id: str
    receiver_id: str
    content: str
    created_at: datetime
    delivery_status: DeliveryStatus = "sent"
    is_read: bool = False
    read_at: Optional[datetime] = None
    temp_id: Optional[str] = None
    message_type: MessageType = "text"

    @classmethod
    def from_document(cls, doc: dict) -> "MessageOut":
        return cls(
            id=str(doc["_id"]),
            conversation_id=str(doc["conversation_id"]),
            sender_id=doc["sender_id"],
            receiver_id=doc.get("receiver_id", ""),
            content=doc["content"],
            created_at=doc["created_at"],
            delivery_status=doc.get("delivery_status", "sent"),
            is_read=bool(doc.get("is_read", False)),
            read_at=doc.get("read_at"),
            temp_id=doc.get("temp_id"),
            message_type=doc.get("message_type", "text"),
        )


class SendMessageRequest(BaseModel):

    content: str = Field(min_length=1, max_length=5000)
    receiver_id: Optional[str] = None
    temp_id: Optional[str] = None
    message_type: MessageType = "text"


class SendResult(BaseModel):

    success: bool
    message: Optional[MessageOut] = None
    error: Optional[str] = None


class ConversationCreate(BaseModel):

    context_type: ContextType = "general"
    context_id: Optional[str] = None
    other_user_id: str


class ConversationOut(BaseModel):

    id: str
    participant1_id: str
    participant2_id: str
    context_type: ContextType
    context_id: Optional[str] = None
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None


class ChatSummary(BaseModel):

    id: str
    type: ContextType
    title: str
    subtitle: str
    last_message: str
    last_message_timestamp: datetime
    unread_count: int = 0
    other_participant_id: str
    is_online: bool = False
    context_id: Optional[str] = None
    navigation_target: str


class ChatList(BaseModel):

    items: List[ChatSummary]
    unread_total: int


class TypingRequest(BaseModel):

    is_typing: bool


class PresenceOut(BaseModel):

    user_id: str
    conversation_id: str
    is_online: bool
    is_typing: bool
    last_seen: datetime


class ConnectionState(BaseModel):

    status: ConnectionStatus = "disconnected"
    retry_count: int = 0
    last_connected: Optional[datetime] = None
    last_error: Optional[str] = None
