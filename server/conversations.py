from __future__ import annotations

from typing import Optional

from server.models import Conversation
from server.storage import MessageStorage, storage_call
from shared.errors import Conflict, InvalidArgument, StorageFailure
from shared.log import get_logger
from shared.utils import require_identities

logger = get_logger(__name__)


class ConversationResolver:
    """
    Finds or lazily creates the direct conversation shared by a participant pair.

    Find-then-create is not atomic: two first-contact sends racing each other
    may both miss the lookup and create two records. That duplicate is
    tolerated. When the store enforces uniqueness on the pair key, the losing
    create comes back as Conflict and is resolved by re-fetching the winner.
    """

    def __init__(self, storage: MessageStorage):
        self.storage = storage

    async def find_or_create_direct(self, user_a: str, user_b: str) -> Conversation:
        require_identities(user_a=user_a, user_b=user_b)
        if user_a == user_b:
            raise InvalidArgument("A direct conversation needs two distinct participants")

        existing = await storage_call(
            "find_direct_conversation", self.storage.find_direct_conversation(user_a, user_b)
        )
        if existing is not None:
            return existing

        conversation = Conversation.new_direct(user_a, user_b)
        try:
            created = await storage_call("create_conversation", self.storage.create_conversation(conversation))
        except Conflict:
            winner = await storage_call(
                "find_direct_conversation", self.storage.find_direct_conversation(user_a, user_b)
            )
            if winner is None:
                raise StorageFailure("Conversation reported as existing but could not be re-fetched")
            logger.debug("Lost first-contact race; using existing conversation",
                         extra={"conversation_id": winner.id})
            return winner

        logger.info("Created direct conversation", extra={"conversation_id": created.id, "user_id": user_a})
        return created

    async def find_direct(self, user_a: str, user_b: str) -> Optional[Conversation]:
        """Lookup only; reading never creates a conversation."""
        require_identities(user_a=user_a, user_b=user_b)
        return await storage_call(
            "find_direct_conversation", self.storage.find_direct_conversation(user_a, user_b)
        )

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        return await storage_call("get_conversation", self.storage.get_conversation(conversation_id))
