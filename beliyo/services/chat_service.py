from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo.errors import PyMongoError

from beliyo.core.exceptions import AuthorizationError, ChatError, InvalidRequestError, NotFoundError
from beliyo.core.logging import get_logger
from beliyo.repositories.conversation_repository import ConversationRepository, is_participant, other_participant
from beliyo.repositories.exchange_message_repository import ExchangeMessageRepository
from beliyo.repositories.message_repository import MessageRepository
from beliyo.schemas.chat import MessageOut, SendResult
from beliyo.services import events
from beliyo.utils.chat_routing import validate_chat_route
from beliyo.utils.realtime_bus import conversation_channel


logger = get_logger(__name__)

PREVIEW_LENGTH = 200


class ChatService:

    def __init__(
        self,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        bus,
        exchange_message_repo: Optional[ExchangeMessageRepository] = None,
    ) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._bus = bus
        self._exchange_message_repo = exchange_message_repo

    async def get_or_create_conversation(self, context_type: str, context_id: Optional[str], user_id: str, other_user_id: str) -> Dict[str, Any]:
        valid, error = validate_chat_route(context_type, context_id, other_user_id)
        if not valid:
            raise InvalidRequestError(error)
        if user_id == other_user_id:
            raise InvalidRequestError("Cannot start a conversation with yourself")
        if context_type == "general":
            context_id = None
        return await self._conversation_repo.get_or_create_one_to_one(context_type, context_id, user_id, other_user_id)

    async def get_conversation(self, conversation_id: str) -> Dict[str, Any]:
        conversation = await self._conversation_repo.get_by_id(conversation_id)
        if not conversation:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    async def get_conversation_for(self, conversation_id: str, user_id: str) -> Dict[str, Any]:
        conversation = await self.get_conversation(conversation_id)
        if not is_participant(conversation, user_id):
            raise AuthorizationError("Not a participant of this conversation")
        return conversation

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        receiver_id: Optional[str],
        content: str,
        temp_id: Optional[str] = None,
        message_type: str = "text",
    ) -> SendResult:
        if not content or not content.strip():
            return SendResult(success=False, error="Message content cannot be empty")
        try:
            conversation = await self.get_conversation_for(conversation_id, sender_id)
            expected = other_participant(conversation, sender_id)
            if receiver_id is None:
                receiver_id = expected
            elif receiver_id != expected:
                raise InvalidRequestError("Receiver is not the other participant")
            saved = await self._message_repo.save_message(
                conversation_id=conversation_id,
                sender_id=sender_id,
                receiver_id=receiver_id,
                content=content.strip(),
                temp_id=temp_id,
                message_type=message_type,
            )
        except ChatError as exc:
            logger.info("send_rejected", conversation_id=conversation_id, sender_id=sender_id, error=exc.detail)
            return SendResult(success=False, error=exc.detail)
        except PyMongoError as exc:
            logger.warning("send_failed", conversation_id=conversation_id, sender_id=sender_id, error=str(exc))
            return SendResult(success=False, error="Message could not be stored")

        message = MessageOut.from_document(saved)
        # the snapshot is a separate write; messages stay the source of truth if it fails
        try:
            await self._conversation_repo.update_on_new_message(conversation_id, message.content[:PREVIEW_LENGTH], message.created_at)
        except PyMongoError as exc:
            logger.warning("snapshot_update_failed", conversation_id=conversation_id, error=str(exc))
        await self._publish(conversation_id, events.message_event(message))
        return SendResult(success=True, message=message)

    async def get_messages(self, conversation_id: str, limit: int = 50, before: Optional[datetime] = None) -> List[MessageOut]:
        docs = await self._message_repo.get_messages_by_conversation(conversation_id, limit=limit, before=before)
        return [MessageOut.from_document(d) for d in docs]

    async def find_by_temp_id(self, conversation_id: str, temp_id: str) -> Optional[MessageOut]:
        doc = await self._message_repo.find_by_temp_id(conversation_id, temp_id)
        return MessageOut.from_document(doc) if doc else None

    async def get_unread_count(self, conversation_id: str, viewer_id: str) -> int:
        return await self._message_repo.count_unread(conversation_id, viewer_id)

    async def mark_messages_as_read(self, conversation_id: str, viewer_id: str) -> int:
        touched = await self._message_repo.list_ids_to_mark_read(conversation_id, viewer_id)
        modified = await self._message_repo.mark_read(conversation_id, viewer_id)
        for message_id in touched:
            doc = await self._message_repo.get_by_id(message_id)
            if doc:
                await self._publish(conversation_id, events.message_event(MessageOut.from_document(doc), events.MESSAGE_UPDATED))
        await self._mark_exchange_rows_read(conversation_id, viewer_id)
        if modified:
            logger.debug("messages_marked_read", conversation_id=conversation_id, viewer_id=viewer_id, count=modified)
        return modified

    async def _mark_exchange_rows_read(self, conversation_id: str, viewer_id: str) -> None:
        # exchange chats also keep per-exchange rows that feed the chat list
        if self._exchange_message_repo is None:
            return
        try:
            conversation = await self._conversation_repo.get_by_id(conversation_id)
            if not conversation or conversation.get("context_type") != "exchange" or not conversation.get("context_id"):
                return
            await self._exchange_message_repo.mark_read(conversation["context_id"], viewer_id)
        except PyMongoError as exc:
            logger.warning("exchange_mark_read_failed", conversation_id=conversation_id, error=str(exc))

    async def _publish(self, conversation_id: str, payload: str) -> None:
        try:
            await self._bus.publish(conversation_channel(conversation_id), payload)
        except ChatError as exc:
            # subscribers re-read history after reconnecting
            logger.warning("publish_failed", conversation_id=conversation_id, error=exc.detail)
