"""
Storage collaborators for the realtime server.

The realtime layer only talks to storage through four narrow async interfaces:

- MessageStorage     conversations and messages
- UserStatusStore    "set status + lastSeen by identity", actor profiles
- FriendGraph        friend lists and pending friend requests
- NotificationStore  durable notification records

InMemoryStore implements all four. JSONFileStore extends it with atomic
JSON persistence so state survives a restart:

<storage_path>/
    conversations.json
    messages.json
    users.json
    friend_requests.json
    notifications.json
"""

from __future__ import annotations

import abc
import asyncio
import copy
import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Awaitable, Dict, Iterator, List, Optional, TypeVar

from server.models import Conversation, FriendRequest, Message, Notification, UserRecord
from shared.errors import Conflict, RealtimeError, StorageFailure
from shared.log import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


async def storage_call(operation: str, awaitable: Awaitable[T]) -> T:
    """
    Await a collaborator call, converting unexpected failures into StorageFailure.

    Taxonomy errors (Conflict from a uniqueness constraint, NotFound, ...) pass through.
    """
    try:
        return await awaitable
    except RealtimeError:
        raise
    except Exception as exc:
        logger.error("Storage operation %s failed: %s", operation, exc)
        raise StorageFailure(f"{operation} failed") from exc


# ========================================
#           COLLABORATOR INTERFACES
# ========================================

class MessageStorage(abc.ABC):

    @abc.abstractmethod
    async def find_direct_conversation(self, user_a: str, user_b: str) -> Optional[Conversation]:
        """Direct conversation whose participant set is exactly {user_a, user_b}."""

    @abc.abstractmethod
    async def create_conversation(self, conversation: Conversation) -> Conversation: ...

    @abc.abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]: ...

    @abc.abstractmethod
    async def update_conversation_activity(self, conversation_id: str, *, last_message: str, last_activity: int) -> None: ...

    @abc.abstractmethod
    async def set_last_read(self, conversation_id: str, user_id: str, read_at: int) -> None: ...

    @abc.abstractmethod
    async def create_message(self, message: Message) -> Message: ...

    @abc.abstractmethod
    async def find_messages(self, conversation_id: str, *, skip: int = 0, limit: int = 50) -> List[Message]:
        """Non-deleted messages, newest first."""

    @abc.abstractmethod
    async def count_messages(self, conversation_id: str) -> int: ...

    @abc.abstractmethod
    async def add_read_receipts(self, conversation_id: str, reader_id: str, read_at: int) -> int:
        """
        Update-many: append (reader, read_at) to every message in the conversation
        not sent by the reader and not already read by them. Returns the number updated.
        """


class UserStatusStore(abc.ABC):

    @abc.abstractmethod
    async def set_status(self, user_id: str, status: str, last_seen: int) -> None: ...

    @abc.abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserRecord]: ...


class FriendGraph(abc.ABC):

    @abc.abstractmethod
    async def are_friends(self, user_a: str, user_b: str) -> bool: ...

    @abc.abstractmethod
    async def add_friend(self, user_id: str, friend_id: str) -> None:
        """Idempotent set-add of friend_id to user_id's friend list."""

    @abc.abstractmethod
    async def remove_friend(self, user_id: str, friend_id: str) -> None: ...

    @abc.abstractmethod
    async def find_pending_request(self, sender: str, receiver: str) -> Optional[FriendRequest]: ...

    @abc.abstractmethod
    async def create_friend_request(self, request: FriendRequest) -> FriendRequest: ...

    @abc.abstractmethod
    async def get_friend_request(self, request_id: str) -> Optional[FriendRequest]: ...

    @abc.abstractmethod
    async def delete_friend_request(self, request_id: str) -> Optional[FriendRequest]: ...


class NotificationStore(abc.ABC):

    @abc.abstractmethod
    async def create_notification(self, notification: Notification) -> Notification: ...

    @abc.abstractmethod
    async def get_notification(self, notification_id: str) -> Optional[Notification]: ...

    @abc.abstractmethod
    async def mark_notification_read(self, notification_id: str) -> bool: ...

    @abc.abstractmethod
    async def list_notifications(self, user_id: str, *, unread_only: bool = False) -> List[Notification]: ...


# ========================================
#           IN-MEMORY IMPLEMENTATION
# ========================================

class InMemoryStore(MessageStorage, UserStatusStore, FriendGraph, NotificationStore):
    """
    Dict-backed implementation of every collaborator.

    Records are copied on the way in and out so callers never alias stored state.

    Args:
        latency: seconds to sleep at the start of every call, making each call a
            real suspension point (used to exercise interleavings in tests)
        unique_direct_pairs: reject a second direct conversation for the same
            participant pair with Conflict
    """

    def __init__(self, *, latency: float = 0.0, unique_direct_pairs: bool = False):
        self.latency = latency
        self.unique_direct_pairs = unique_direct_pairs
        self.conversations: Dict[str, Conversation] = {}
        self.messages: Dict[str, Message] = {}
        self.users: Dict[str, UserRecord] = {}
        self.friend_requests: Dict[str, FriendRequest] = {}
        self.notifications: Dict[str, Notification] = {}

    async def _io(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)

    def _flush(self, collection: str) -> None:
        """Hook for persistent subclasses; called after every mutation."""

    def _snapshot(self, collection: str) -> Optional[Dict[str, Any]]:
        """Copy of a collection to restore if persisting fails. Nothing is persisted here."""
        return None

    @contextmanager
    def _mutating(self, collection: str) -> Iterator[None]:
        """Change one collection, then persist it. A failed flush restores the collection."""
        snapshot = self._snapshot(collection)
        try:
            yield
            self._flush(collection)
        except Exception:
            if snapshot is not None:
                setattr(self, collection, snapshot)
            raise

    def _user(self, user_id: str) -> UserRecord:
        record = self.users.get(user_id)
        if record is None:
            record = UserRecord(id=user_id)
            self.users[user_id] = record
        return record

    def add_user(self, record: UserRecord) -> UserRecord:
        with self._mutating("users"):
            self.users[record.id] = copy.deepcopy(record)
        return record

    # ---------- MessageStorage ----------

    async def find_direct_conversation(self, user_a: str, user_b: str) -> Optional[Conversation]:
        await self._io()
        wanted = {user_a, user_b}
        matches = [
            c for c in self.conversations.values()
            if c.type == "direct" and set(c.participant_ids()) == wanted
        ]
        if not matches:
            return None
        # Duplicates from a first-contact race resolve to the oldest record
        matches.sort(key=lambda c: c.created_at)
        return copy.deepcopy(matches[0])

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        await self._io()
        if self.unique_direct_pairs and conversation.direct_key:
            for existing in self.conversations.values():
                if existing.direct_key == conversation.direct_key:
                    raise Conflict(f"Direct conversation {conversation.direct_key} already exists")
        with self._mutating("conversations"):
            self.conversations[conversation.id] = copy.deepcopy(conversation)
        return copy.deepcopy(conversation)

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        await self._io()
        found = self.conversations.get(conversation_id)
        return copy.deepcopy(found) if found else None

    async def update_conversation_activity(self, conversation_id: str, *, last_message: str, last_activity: int) -> None:
        await self._io()
        if conversation_id not in self.conversations:
            return
        with self._mutating("conversations"):
            conversation = self.conversations[conversation_id]
            conversation.last_message = last_message
            conversation.last_activity = max(conversation.last_activity, last_activity)

    async def set_last_read(self, conversation_id: str, user_id: str, read_at: int) -> None:
        await self._io()
        conversation = self.conversations.get(conversation_id)
        if conversation is None or conversation.participant(user_id) is None:
            return
        with self._mutating("conversations"):
            self.conversations[conversation_id].participant(user_id).last_read = read_at

    async def create_message(self, message: Message) -> Message:
        await self._io()
        with self._mutating("messages"):
            self.messages[message.id] = copy.deepcopy(message)
        return copy.deepcopy(message)

    def _conversation_messages(self, conversation_id: str) -> List[Message]:
        return [m for m in self.messages.values() if m.conversation == conversation_id and not m.is_deleted]

    async def find_messages(self, conversation_id: str, *, skip: int = 0, limit: int = 50) -> List[Message]:
        await self._io()
        found = self._conversation_messages(conversation_id)
        # Records are kept in insertion order; reversing first keeps same-millisecond ties newest first
        found.reverse()
        found.sort(key=lambda m: m.created_at, reverse=True)
        return [copy.deepcopy(m) for m in found[skip:skip + limit]]

    async def count_messages(self, conversation_id: str) -> int:
        await self._io()
        return len(self._conversation_messages(conversation_id))

    async def add_read_receipts(self, conversation_id: str, reader_id: str, read_at: int) -> int:
        await self._io()
        unread = [
            m.id for m in self.messages.values()
            if m.conversation == conversation_id and m.sender != reader_id and not m.has_reader(reader_id)
        ]
        if not unread:
            return 0
        with self._mutating("messages"):
            for message_id in unread:
                self.messages[message_id].add_reader(reader_id, read_at)
        return len(unread)

    # ---------- UserStatusStore ----------

    async def set_status(self, user_id: str, status: str, last_seen: int) -> None:
        await self._io()
        with self._mutating("users"):
            record = self._user(user_id)
            record.status = status
            record.last_seen = last_seen

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        await self._io()
        found = self.users.get(user_id)
        return copy.deepcopy(found) if found else None

    # ---------- FriendGraph ----------

    async def are_friends(self, user_a: str, user_b: str) -> bool:
        await self._io()
        record = self.users.get(user_a)
        return record is not None and user_b in record.friends

    async def add_friend(self, user_id: str, friend_id: str) -> None:
        await self._io()
        with self._mutating("users"):
            self._user(user_id).friends.add(friend_id)

    async def remove_friend(self, user_id: str, friend_id: str) -> None:
        await self._io()
        if user_id not in self.users:
            return
        with self._mutating("users"):
            self.users[user_id].friends.discard(friend_id)

    async def find_pending_request(self, sender: str, receiver: str) -> Optional[FriendRequest]:
        await self._io()
        for request in self.friend_requests.values():
            if request.sender == sender and request.receiver == receiver and request.status == "pending":
                return copy.deepcopy(request)
        return None

    async def create_friend_request(self, request: FriendRequest) -> FriendRequest:
        await self._io()
        with self._mutating("friend_requests"):
            self.friend_requests[request.id] = copy.deepcopy(request)
        return copy.deepcopy(request)

    async def get_friend_request(self, request_id: str) -> Optional[FriendRequest]:
        await self._io()
        found = self.friend_requests.get(request_id)
        return copy.deepcopy(found) if found else None

    async def delete_friend_request(self, request_id: str) -> Optional[FriendRequest]:
        await self._io()
        if request_id not in self.friend_requests:
            return None
        with self._mutating("friend_requests"):
            removed = self.friend_requests.pop(request_id)
        return removed

    # ---------- NotificationStore ----------

    async def create_notification(self, notification: Notification) -> Notification:
        await self._io()
        with self._mutating("notifications"):
            self.notifications[notification.id] = copy.deepcopy(notification)
        return copy.deepcopy(notification)

    async def get_notification(self, notification_id: str) -> Optional[Notification]:
        await self._io()
        found = self.notifications.get(notification_id)
        return copy.deepcopy(found) if found else None

    async def mark_notification_read(self, notification_id: str) -> bool:
        await self._io()
        notification = self.notifications.get(notification_id)
        if notification is None:
            return False
        if not notification.is_read:
            with self._mutating("notifications"):
                self.notifications[notification_id].is_read = True
        return True

    async def list_notifications(self, user_id: str, *, unread_only: bool = False) -> List[Notification]:
        await self._io()
        found = [
            n for n in self.notifications.values()
            if n.user == user_id and (not unread_only or not n.is_read)
        ]
        found.sort(key=lambda n: n.created_at, reverse=True)
        return [copy.deepcopy(n) for n in found]

    def get_storage_stats(self) -> Dict[str, Any]:
        return {
            "conversations": len(self.conversations),
            "messages": len(self.messages),
            "users": len(self.users),
            "friend_requests": len(self.friend_requests),
            "notifications": len(self.notifications),
        }


# ========================================
#           JSON FILE PERSISTENCE
# ========================================

_COLLECTIONS = {
    "conversations": Conversation,
    "messages": Message,
    "users": UserRecord,
    "friend_requests": FriendRequest,
    "notifications": Notification,
}


class JSONFileStore(InMemoryStore):
    """
    InMemoryStore that rewrites a collection's JSON file after every mutation.

    All writes are atomic (temp file + rename) to prevent corruption.
    """

    def __init__(self, storage_path: Path, **kwargs: Any):
        super().__init__(**kwargs)
        self.storage_path = Path(storage_path).expanduser()
        self.storage_path.mkdir(parents=True, exist_ok=True)
        self._load_all()
        logger.info(f"Initialized JSON storage at {self.storage_path}")

    def _file(self, collection: str) -> Path:
        return self.storage_path / f"{collection}.json"

    def _atomic_write(self, file_path: Path, data: Dict[str, Any]) -> None:
        """
        Atomically write JSON data to file.

        Uses temp file + rename for atomicity to prevent corruption.
        """
        file_path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(
            prefix=f"{file_path.stem}_",
            suffix=".json.tmp",
            dir=file_path.parent
        )

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                json.dump(data, tmp, indent=2, sort_keys=True)
                tmp.flush()
                os.fsync(tmp.fileno())

            os.replace(tmp_path, file_path)
            logger.debug(f"Saved {file_path.name}")

        except Exception as e:
            logger.error(f"Failed to write {file_path}: {e}")
            if os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError:
                    pass
            raise

    def _atomic_read(self, file_path: Path) -> Optional[Dict[str, Any]]:
        """Parsed JSON dict, or None if the file doesn't exist or is invalid."""
        if not file_path.exists():
            return None

        try:
            with open(file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            logger.debug(f"Loaded {file_path.name}")
            return data
        except Exception as e:
            logger.error(f"Failed to read {file_path}: {e}")
            return None

    def _snapshot(self, collection: str) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(getattr(self, collection))

    def _flush(self, collection: str) -> None:
        records = getattr(self, collection)
        self._atomic_write(self._file(collection), {collection: [r.to_dict() for r in records.values()]})

    def _load_all(self) -> None:
        for collection, model in _COLLECTIONS.items():
            data = self._atomic_read(self._file(collection))
            if not data or collection not in data:
                continue
            target = getattr(self, collection)
            for raw in data[collection]:
                try:
                    record = model.from_dict(raw)
                except (KeyError, TypeError) as exc:
                    logger.warning("Skipping malformed %s record: %s", collection, exc)
                    continue
                target[record.id] = record
            logger.info(f"Loaded {len(target)} {collection} from disk")

    def get_storage_stats(self) -> Dict[str, Any]:
        stats = super().get_storage_stats()
        stats["storage_path"] = str(self.storage_path)
        stats["files"] = {}
        for collection in _COLLECTIONS:
            file_path = self._file(collection)
            if file_path.exists():
                stats["files"][file_path.name] = {"exists": True, "size_bytes": file_path.stat().st_size}
            else:
                stats["files"][file_path.name] = {"exists": False}
        return stats
