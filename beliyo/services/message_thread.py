"""
Local view of one open conversation with optimistic sends.

Each item moves ``pending -> committed | failed`` and is addressed by a
stable key: the client temp id while pending, the server id once known.
Items are never looked up by position; inbound messages are appended at
the tail.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from beliyo.schemas.chat import MessageOut
from beliyo.utils.timeutils import utcnow


PENDING = "pending"
COMMITTED = "committed"
FAILED = "failed"

_STATUS_RANK = {"sending": 0, "sent": 1, "delivered": 2}


@dataclass
class ThreadItem:
    temp_id: Optional[str]
    id: Optional[str]
    conversation_id: str
    sender_id: str
    receiver_id: str
    content: str
    created_at: datetime
    delivery_status: str = "sending"
    is_read: bool = False
    state: str = PENDING

    @property
    def key(self) -> str:
        return self.id or self.temp_id or ""

    @classmethod
    def from_message(cls, message: MessageOut) -> "ThreadItem":
        return cls(
            temp_id=message.temp_id,
            id=message.id,
            conversation_id=message.conversation_id,
            sender_id=message.sender_id,
            receiver_id=message.receiver_id,
            content=message.content,
            created_at=message.created_at,
            delivery_status=message.delivery_status,
            is_read=message.is_read,
            state=COMMITTED,
        )

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "temp_id": self.temp_id,
            "conversation_id": self.conversation_id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "delivery_status": self.delivery_status,
            "is_read": self.is_read,
            "state": self.state,
        }


def new_temp_id() -> str:
    return f"temp_{uuid.uuid4().hex}"


def _merge_status(current: str, incoming: str) -> str:
    # delivery only moves forward
    if _STATUS_RANK.get(incoming, -1) > _STATUS_RANK.get(current, -1):
        return incoming
    return current


class MessageThread:

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        self._items: List[ThreadItem] = []
        self._by_id: Dict[str, ThreadItem] = {}
        self._by_temp: Dict[str, ThreadItem] = {}

    def __len__(self) -> int:
        return len(self._items)

    @property
    def items(self) -> List[ThreadItem]:
        return list(self._items)

    def ids(self) -> List[str]:
        return [it.id for it in self._items if it.id]

    def get(self, key: str) -> Optional[ThreadItem]:
        return self._by_id.get(key) or self._by_temp.get(key)

    def load(self, messages: Iterable[MessageOut]) -> None:
        """Replace the thread with authoritative history, oldest first."""
        pending = [it for it in self._items if it.state != COMMITTED]
        self._items, self._by_id, self._by_temp = [], {}, {}
        for message in sorted(messages, key=lambda m: m.created_at):
            if message.id in self._by_id:
                continue
            self._append(ThreadItem.from_message(message))
        for item in pending:
            if item.temp_id and item.temp_id not in self._by_temp:
                self._append(item)

    def add_pending(self, sender_id: str, receiver_id: str, content: str, temp_id: Optional[str] = None) -> ThreadItem:
        item = ThreadItem(
            temp_id=temp_id or new_temp_id(),
            id=None,
            conversation_id=self.conversation_id,
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            created_at=utcnow(),
        )
        self._append(item)
        return item

    def commit(self, temp_id: str, message: MessageOut) -> ThreadItem:
        placeholder = self._by_temp.get(temp_id)
        existing = self._by_id.get(message.id)
        if existing is not None and existing is not placeholder:
            # realtime delivery beat the acknowledgement
            if placeholder is not None:
                self._remove(placeholder)
            existing.delivery_status = _merge_status(existing.delivery_status, message.delivery_status)
            return existing
        if placeholder is None:
            return self._append(ThreadItem.from_message(message))
        placeholder.id = message.id
        placeholder.created_at = message.created_at
        base = "sending" if placeholder.delivery_status == "failed" else placeholder.delivery_status
        placeholder.delivery_status = _merge_status(base, message.delivery_status)
        placeholder.is_read = message.is_read
        placeholder.state = COMMITTED
        self._by_id[message.id] = placeholder
        return placeholder

    def fail(self, temp_id: str) -> Optional[ThreadItem]:
        item = self._by_temp.get(temp_id)
        if item is None or item.state == COMMITTED:
            return item
        item.state = FAILED
        item.delivery_status = "failed"
        return item

    def retry(self, temp_id: str) -> Optional[ThreadItem]:
        item = self._by_temp.get(temp_id)
        if item is None or item.state != FAILED:
            return None
        item.state = PENDING
        item.delivery_status = "sending"
        return item

    def apply(self, message: MessageOut) -> Tuple[ThreadItem, bool]:
        """
        Merge a message from the realtime channel.

        Returns the thread item and whether it was appended as new.
        """
        existing = self._by_id.get(message.id)
        if existing is not None:
            existing.delivery_status = _merge_status(existing.delivery_status, message.delivery_status)
            existing.is_read = existing.is_read or message.is_read
            return existing, False
        if message.temp_id and message.temp_id in self._by_temp:
            return self.commit(message.temp_id, message), False
        return self._append(ThreadItem.from_message(message)), True

    def update(self, message: MessageOut) -> Optional[ThreadItem]:
        """Apply a status change to an item already in the thread; unknown ids are ignored."""
        existing = self._by_id.get(message.id)
        if existing is None:
            return None
        existing.delivery_status = _merge_status(existing.delivery_status, message.delivery_status)
        existing.is_read = existing.is_read or message.is_read
        return existing

    def _append(self, item: ThreadItem) -> ThreadItem:
        self._items.append(item)
        if item.id:
            self._by_id[item.id] = item
        if item.temp_id:
            self._by_temp[item.temp_id] = item
        return item

    def _remove(self, item: ThreadItem) -> None:
        self._items = [it for it in self._items if it is not item]
        if item.id:
            self._by_id.pop(item.id, None)
        if item.temp_id:
            self._by_temp.pop(item.temp_id, None)
