from datetime import datetime
from typing import TypedDict


class PresenceDocument(TypedDict, total=False):
    _id: str
    user_id: str
    conversation_id: str
    is_online: bool
    is_typing: bool
    last_seen: datetime
    updated_at: datetime
