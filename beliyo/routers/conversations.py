from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from beliyo.core.context import AppContext
from beliyo.schemas.chat import (
    ChatList,
    ConversationCreate,
    ConversationOut,
    MessageOut,
    SendMessageRequest,
    SendResult,
    TypingRequest,
)
from beliyo.services.aggregation_service import ChatAggregationService
from beliyo.services.chat_service import ChatService
from beliyo.utils.dependencies import get_app_context, get_current_user


router = APIRouter(prefix="/conversations", tags=["chat"])


def get_chat_service(ctx: AppContext = Depends(get_app_context)) -> ChatService:
    return ctx.chat_service()


def get_aggregation_service(ctx: AppContext = Depends(get_app_context)) -> ChatAggregationService:
    return ctx.aggregation_service()


def _conversation_out(doc: dict) -> ConversationOut:
    return ConversationOut(
        id=doc["_id"],
        participant1_id=doc["participant1_id"],
        participant2_id=doc["participant2_id"],
        context_type=doc["context_type"],
        context_id=doc.get("context_id"),
        last_message=doc.get("last_message"),
        last_message_at=doc.get("last_message_at"),
    )


@router.get("", response_model=ChatList)
async def list_chats(
    type: Optional[str] = Query(None, pattern="^(all|shop|exchange|mission|general)$"),
    search: Optional[str] = None,
    current_user: dict = Depends(get_current_user),
    service: ChatAggregationService = Depends(get_aggregation_service),
):
    items = await service.list_chats(current_user["_id"], chat_type=type, search=search)
    return ChatList(items=items, unread_total=sum(c.unread_count for c in items))


@router.get("/unread")
async def unread_total(current_user: dict = Depends(get_current_user), service: ChatAggregationService = Depends(get_aggregation_service)):
    return {"unread": await service.unread_total(current_user["_id"])}


@router.post("", response_model=ConversationOut)
async def get_or_create_conversation(body: ConversationCreate, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    doc = await service.get_or_create_conversation(body.context_type, body.context_id, current_user["_id"], body.other_user_id)
    return _conversation_out(doc)


@router.get("/{conversation_id}/messages", response_model=List[MessageOut])
async def list_messages(
    conversation_id: str,
    limit: int = Query(50, ge=1, le=200),
    before: Optional[datetime] = None,
    current_user: dict = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    await service.get_conversation_for(conversation_id, current_user["_id"])
    return await service.get_messages(conversation_id, limit=limit, before=before)


@router.post("/{conversation_id}/messages", response_model=SendResult)
async def send_message(conversation_id: str, body: SendMessageRequest, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    await service.get_conversation_for(conversation_id, current_user["_id"])
    return await service.send_message(
        conversation_id,
        current_user["_id"],
        body.receiver_id,
        body.content,
        temp_id=body.temp_id,
        message_type=body.message_type,
    )


@router.post("/{conversation_id}/read")
async def mark_read(conversation_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    await service.get_conversation_for(conversation_id, current_user["_id"])
    count = await service.mark_messages_as_read(conversation_id, current_user["_id"])
    return {"updated": count}


@router.get("/{conversation_id}/unread")
async def unread_count(conversation_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    await service.get_conversation_for(conversation_id, current_user["_id"])
    return {"unread": await service.get_unread_count(conversation_id, current_user["_id"])}


@router.post("/{conversation_id}/typing")
async def set_typing(
    conversation_id: str,
    body: TypingRequest,
    current_user: dict = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
    ctx: AppContext = Depends(get_app_context),
):
    await service.get_conversation_for(conversation_id, current_user["_id"])
    await ctx.presence.set_typing_status(conversation_id, current_user["_id"], body.is_typing)
    return {"ok": True}
