"""
Navigation targets for the 1:1 chat surfaces (shop, exchange, mission, general).
"""

from typing import Optional, Tuple

from beliyo.models.conversation import CONTEXT_TYPES


CONTEXT_REQUIRED = ("shop", "exchange", "mission")


def chat_path(context_type: str, context_id: Optional[str], other_user_id: str) -> str:
    if context_type in CONTEXT_REQUIRED and context_id:
        return f"/chat/{context_type}/{context_id}/{other_user_id}"
    return f"/chat/general/{other_user_id}"


def back_path(context_type: str, context_id: Optional[str] = None) -> str:
    if context_type == "shop":
        return f"/shop/product/{context_id}" if context_id else "/shop"
    if context_type == "exchange":
        return f"/money-exchange/{context_id}" if context_id else "/money-exchange"
    if context_type == "mission":
        return f"/missions/{context_id}" if context_id else "/missions"
    return "/chat-list"


def validate_chat_route(context_type: Optional[str], context_id: Optional[str], other_user_id: Optional[str]) -> Tuple[bool, Optional[str]]:
    if not other_user_id:
        return False, "Other user ID is required for 1:1 conversations"
    if context_type and context_type not in CONTEXT_TYPES:
        return False, "Invalid chat context type"
    if context_type in CONTEXT_REQUIRED and not context_id:
        return False, f"Context ID is required for {context_type} chats"
    return True, None
