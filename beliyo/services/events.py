import json
from typing import Any, Dict, Iterable

from beliyo.schemas.chat import MessageOut, PresenceOut


MESSAGE = "message"
MESSAGE_UPDATED = "message_updated"
PRESENCE = "presence"


def message_event(message: MessageOut, event_type: str = MESSAGE) -> str:
    return json.dumps({"type": event_type, "message": message.model_dump(mode="json")})


def presence_event(conversation_id: str, presence: Iterable[PresenceOut]) -> str:
    return json.dumps({
        "type": PRESENCE,
        "conversation_id": conversation_id,
        "presence": [p.model_dump(mode="json") for p in presence],
    })


def decode_event(raw: str) -> Dict[str, Any]:
    data = json.loads(raw)
    if not isinstance(data, dict) or "type" not in data:
        raise ValueError("Realtime event without a type")
    return data
