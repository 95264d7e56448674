from typing import List

from fastapi import APIRouter, Depends

from beliyo.core.context import AppContext
from beliyo.routers.chat import manager
from beliyo.schemas.chat import PresenceOut
from beliyo.utils.dependencies import get_app_context, get_current_user


router = APIRouter(prefix="/presence", tags=["chat"])


@router.get("/{conversation_id}", response_model=List[PresenceOut])
async def presence(conversation_id: str, current_user: dict = Depends(get_current_user), ctx: AppContext = Depends(get_app_context)):
    """
    Presence rows for a conversation seen within the stale window.
    Older rows are left out, so their users read as offline.
    """
    await ctx.chat_service().get_conversation_for(conversation_id, current_user["_id"])
    return await ctx.presence.get_presence(conversation_id)


@router.post("/sign-out")
async def sign_out(current_user: dict = Depends(get_current_user), ctx: AppContext = Depends(get_app_context)):
    closed = ctx.sign_out(current_user["_id"])
    await manager.close_user(current_user["_id"])
    return {"closed_sessions": closed}
