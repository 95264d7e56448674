from datetime import datetime
from typing import List, Literal, Optional, TypedDict


ContextType = Literal["shop", "exchange", "mission", "general"]

CONTEXT_TYPES = ("shop", "exchange", "mission", "general")


class ConversationDocument(TypedDict, total=False):
    _id: str
    # participant pair as created; order carries no meaning
    participant1_id: str
    participant2_id: str
    # sorted pair, used for membership queries
    participants: List[str]
    # "a:b" of the sorted pair; unique together with the context
    pair_key: str
    context_type: ContextType
    context_id: Optional[str]
    # snapshot, may lag behind the messages collection
    last_message: Optional[str]
    last_message_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime
