"""
Client-side view of one direct conversation.

History fetched from the server is authoritative. Realtime pushes are merged
into it by durable message id, so a push that races a history fetch never
produces a duplicate. The sender's own messages enter the view only through
its send reply (message_sent); any receive_message carrying our own message
is a legacy echo and is discarded.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from shared.events import (
    EventPayload,
    History,
    MessageError,
    MessageSent,
    MessagesRead,
    ReceiveMessage,
    UserTyping,
)
from shared.log import get_logger
from shared.utils import new_id, now_ms

logger = get_logger(__name__)


class Outcome(str, Enum):
    APPENDED = "appended"           # new message merged into the list
    CONFIRMED = "confirmed"         # a pending send was replaced by its persisted message
    DUPLICATE = "duplicate"         # id already present; nothing changed
    SELF_ECHO = "self_echo"         # our own message pushed back at us; discarded
    FAILED = "failed"               # a pending send was rejected; composed text restorable
    UPDATED = "updated"             # receipts, typing state or history changed
    IGNORED = "ignored"             # not for this conversation


@dataclass
class PendingSend:
    temp_id: str
    text: str
    created_at: int
    failed: bool = False
    error: Optional[str] = None


class ConversationView:

    def __init__(self, self_id: str, counterpart_id: str, *,
                 typing_timeout: float = 3.0, clock: Callable[[], float] = time.monotonic):
        self.self_id = self_id
        self.counterpart_id = counterpart_id
        self.typing_timeout = typing_timeout
        self._clock = clock

        self.conversation_id: Optional[str] = None
        self.messages: List[Dict[str, Any]] = []
        self._by_id: Dict[str, Dict[str, Any]] = {}
        self.pending: Dict[str, PendingSend] = {}
        self._restorable: Optional[str] = None
        self._typing_until: Optional[float] = None
        self.oldest_page_loaded = 0
        self.has_more = True

    # ---------- merging ----------

    def _merge(self, message: Dict[str, Any]) -> bool:
        """Insert or refresh by id. Returns True if the id was new."""
        message_id = message["id"]
        if message_id in self._by_id:
            current = self._by_id[message_id]
            # Receipts only grow; keep whichever copy knows more readers
            if len(message.get("readBy", [])) > len(current.get("readBy", [])):
                current.update(message)
            return False
        stored = dict(message)
        self._by_id[message_id] = stored
        self.messages.append(stored)
        self.messages.sort(key=lambda m: m.get("createdAt", 0))
        if self.conversation_id is None and stored.get("conversationId"):
            self.conversation_id = stored["conversationId"]
        return True

    def _belongs_here(self, message: Dict[str, Any]) -> bool:
        conversation_id = message.get("conversationId")
        if self.conversation_id is not None and conversation_id is not None:
            return conversation_id == self.conversation_id
        return message.get("sender") in (self.self_id, self.counterpart_id)

    def load_history(self, page_messages: Iterable[Dict[str, Any]], *, page: int = 1,
                     has_more: bool = False, conversation_id: Optional[str] = None) -> int:
        """Merge one fetched page. Returns how many messages were new."""
        if conversation_id is not None:
            self.conversation_id = conversation_id
        added = sum(1 for m in page_messages if self._merge(m))
        self.oldest_page_loaded = max(self.oldest_page_loaded, page)
        self.has_more = has_more
        return added

    # ---------- sending ----------

    def begin_send(self, text: str) -> str:
        """Register an outgoing message before it is sent. Returns its tempId."""
        temp_id = new_id()
        self.pending[temp_id] = PendingSend(temp_id=temp_id, text=text, created_at=now_ms())
        return temp_id

    def restore_text(self) -> Optional[str]:
        """Composed text of the last failed send, handed back once."""
        text, self._restorable = self._restorable, None
        return text

    def failed_sends(self) -> List[PendingSend]:
        return [p for p in self.pending.values() if p.failed]

    # ---------- realtime events ----------

    def apply(self, event: EventPayload) -> Outcome:
        if isinstance(event, ReceiveMessage):
            return self._apply_receive(event.message)
        if isinstance(event, MessageSent):
            return self._apply_sent(event)
        if isinstance(event, MessageError):
            return self._apply_error(event)
        if isinstance(event, MessagesRead):
            return self._apply_read(event)
        if isinstance(event, UserTyping):
            return self._apply_typing(event)
        if isinstance(event, History):
            if event.friend_id != self.counterpart_id:
                return Outcome.IGNORED
            self.load_history(event.messages, page=event.page, has_more=event.has_more,
                              conversation_id=event.conversation_id)
            return Outcome.UPDATED
        return Outcome.IGNORED

    def _apply_receive(self, message: Dict[str, Any]) -> Outcome:
        sender = message.get("sender")
        if sender == self.self_id:
            logger.debug("Discarding self echo %s", message.get("id"))
            return Outcome.SELF_ECHO
        if sender != self.counterpart_id or not self._belongs_here(message):
            return Outcome.IGNORED
        # A message from the counterpart ends their typing indicator
        self._typing_until = None
        return Outcome.APPENDED if self._merge(message) else Outcome.DUPLICATE

    def _apply_sent(self, event: MessageSent) -> Outcome:
        if event.temp_id not in self.pending:
            return Outcome.IGNORED
        del self.pending[event.temp_id]
        self._merge(event.message)
        return Outcome.CONFIRMED

    def _apply_error(self, event: MessageError) -> Outcome:
        pending = self.pending.get(event.temp_id) if event.temp_id else None
        if pending is None:
            return Outcome.IGNORED
        pending.failed = True
        pending.error = event.detail
        self._restorable = pending.text
        return Outcome.FAILED

    def _apply_read(self, event: MessagesRead) -> Outcome:
        if event.conversation_id != self.conversation_id or event.read_by != self.counterpart_id:
            return Outcome.IGNORED
        changed = False
        for message in self.messages:
            if message.get("sender") == event.read_by:
                continue
            readers = message.setdefault("readBy", [])
            if not any(r.get("user") == event.read_by for r in readers):
                readers.append({"user": event.read_by, "readAt": event.read_at})
                changed = True
        return Outcome.UPDATED if changed else Outcome.DUPLICATE

    def _apply_typing(self, event: UserTyping) -> Outcome:
        if event.user_id != self.counterpart_id:
            return Outcome.IGNORED
        self._typing_until = self._clock() + self.typing_timeout if event.is_typing else None
        return Outcome.UPDATED

    # ---------- derived state ----------

    def typing_active(self) -> bool:
        """True while the counterpart's last typing signal is fresher than typing_timeout."""
        if self._typing_until is None:
            return False
        if self._clock() >= self._typing_until:
            self._typing_until = None
            return False
        return True

    def unread_count(self) -> int:
        return sum(
            1 for m in self.messages
            if m.get("sender") != self.self_id
            and not any(r.get("user") == self.self_id for r in m.get("readBy", []))
        )

    def message_ids(self) -> List[str]:
        return [m["id"] for m in self.messages]
