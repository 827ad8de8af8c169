"""
Message delivery pipeline.

send() always persists before it pushes: a receive_message push is only ever
emitted for a message that is already durable, and it goes to the recipient's
sessions only. The sender's own view is updated from the return value.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from server.conversations import ConversationResolver
from server.fanout import EventFanout
from server.models import Message
from server.storage import MessageStorage, storage_call
from shared.errors import InvalidArgument, NotFound, StorageFailure
from shared.events import MessagesRead, ReceiveMessage, UserTyping
from shared.log import get_logger
from shared.utils import is_identity, now_ms, require_identities, require_text

logger = get_logger(__name__)


@dataclass
class HistoryPage:
    conversation_id: Optional[str]
    messages: List[Message]         # oldest first within the page
    page: int
    has_more: bool


@dataclass
class ReadResult:
    conversation_id: str
    read_at: int
    updated: int


class MessageDeliveryPipeline:

    def __init__(self, storage: MessageStorage, resolver: ConversationResolver, fanout: EventFanout,
                 *, page_size: int = 50, max_page_size: int = 200):
        self.storage = storage
        self.resolver = resolver
        self.fanout = fanout
        self.page_size = page_size
        self.max_page_size = max_page_size

    async def send(self, sender_id: str, recipient_id: str, text: str) -> Message:
        """
        Persist a text message from sender to recipient and push it to the recipient.

        Raises InvalidArgument before any side effect, StorageFailure if the
        message could not be stored. Push problems never raise.
        """
        require_identities(sender=sender_id, receiver=recipient_id)
        body = require_text(text, "message")
        if sender_id == recipient_id:
            raise InvalidArgument("Cannot send a message to yourself")

        conversation = await self.resolver.find_or_create_direct(sender_id, recipient_id)

        message = Message.new_text(conversation.id, sender_id, body)
        stored = await storage_call("create_message", self.storage.create_message(message))

        # The message is durable at this point; a stale pointer heals on the next send
        try:
            await storage_call(
                "update_conversation_activity",
                self.storage.update_conversation_activity(
                    conversation.id, last_message=stored.id, last_activity=stored.created_at
                ),
            )
        except StorageFailure as e:
            logger.warning("Conversation pointer not updated: %s", e.detail,
                           extra={"conversation_id": conversation.id})

        await self.fanout.push_to_user(recipient_id, ReceiveMessage(message=stored.to_dict()))
        logger.debug("Delivered message %s", stored.id[:8],
                     extra={"user_id": sender_id, "conversation_id": conversation.id})
        return stored

    async def mark_read(self, conversation_id: str, reader_id: str) -> ReadResult:
        """
        Add the reader's receipt to every message they have not read yet.

        Idempotent. Other participants get messages_read only when something changed.
        """
        require_identities(reader=reader_id)
        if not is_identity(conversation_id):
            raise InvalidArgument("conversationId must be a valid conversation id")

        conversation = await self.resolver.get(conversation_id)
        if conversation is None:
            raise NotFound(f"Conversation {conversation_id} not found")
        if not conversation.has_participant(reader_id):
            raise InvalidArgument("Reader is not a participant of this conversation")

        read_at = now_ms()
        updated = await storage_call(
            "add_read_receipts", self.storage.add_read_receipts(conversation_id, reader_id, read_at)
        )
        try:
            await storage_call("set_last_read", self.storage.set_last_read(conversation_id, reader_id, read_at))
        except StorageFailure as e:
            logger.warning("lastRead not advanced: %s", e.detail,
                           extra={"conversation_id": conversation_id, "user_id": reader_id})

        if updated:
            others = [u for u in conversation.active_participant_ids() if u != reader_id]
            await self.fanout.push_to_users(
                others,
                MessagesRead(conversation_id=conversation_id, read_by=reader_id, read_at=read_at),
            )
        return ReadResult(conversation_id=conversation_id, read_at=read_at, updated=updated)

    async def history(self, user_id: str, friend_id: str, page: int = 1,
                      limit: Optional[int] = None) -> HistoryPage:
        """
        One page of the pair's history. Pages run newest first, messages
        inside a page oldest first. Reading never creates a conversation.
        """
        require_identities(user_id=user_id, friend_id=friend_id)
        if not isinstance(page, int) or isinstance(page, bool) or page < 1:
            raise InvalidArgument("page must be a positive integer")
        if limit is None:
            limit = self.page_size
        if not isinstance(limit, int) or isinstance(limit, bool) or limit < 1:
            raise InvalidArgument("limit must be a positive integer")
        limit = min(limit, self.max_page_size)

        conversation = await self.resolver.find_direct(user_id, friend_id)
        if conversation is None:
            return HistoryPage(conversation_id=None, messages=[], page=page, has_more=False)

        skip = (page - 1) * limit
        newest_first = await storage_call(
            "find_messages", self.storage.find_messages(conversation.id, skip=skip, limit=limit)
        )
        total = await storage_call("count_messages", self.storage.count_messages(conversation.id))
        return HistoryPage(
            conversation_id=conversation.id,
            messages=list(reversed(newest_first)),
            page=page,
            has_more=skip + len(newest_first) < total,
        )

    async def typing(self, sender_id: str, receiver_id: str, is_typing: bool,
                     conversation_id: Optional[str] = None) -> None:
        """Relay a transient typing hint to the receiver. Nothing is stored."""
        require_identities(sender=sender_id, receiver=receiver_id)
        if sender_id == receiver_id:
            raise InvalidArgument("Cannot signal typing to yourself")
        await self.fanout.push_to_user(
            receiver_id,
            UserTyping(user_id=sender_id, is_typing=is_typing, conversation_id=conversation_id),
        )
