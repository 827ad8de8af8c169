from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from shared.events import (
    EventPayload,
    FriendRequestStatus,
    NewFriendRequest,
    NewNotification,
    NotificationRead,
    UserOffline,
    UserOnline,
)
from shared.utils import new_id


@dataclass
class Presence:
    users: Dict[str, Dict] = field(default_factory=dict)

    def add(self, user_id: str, meta: Dict) -> None:
        self.users[user_id] = {"meta": meta}

    def remove(self, user_id: str) -> None:
        self.users.pop(user_id, None)

    def seed(self, user_ids: List[str]) -> None:
        """Initial online list from the join ack."""
        for user_id in user_ids:
            self.add(user_id, {"status": "online"})

    def apply(self, event: EventPayload) -> bool:
        if isinstance(event, UserOnline):
            self.add(event.user_id, {"status": event.status, "lastSeen": event.last_seen})
            return True
        if isinstance(event, UserOffline):
            self.remove(event.user_id)
            return True
        return False

    def is_online(self, user_id: str) -> bool:
        return user_id in self.users

    def list_sorted(self) -> List[str]:
        return sorted(self.users.keys())


@dataclass
class InboxItem:
    id: str
    type: str
    message: str
    created_at: int
    from_user: Dict[str, Any] = field(default_factory=dict)
    is_read: bool = False
    request_id: Optional[str] = None
    action_data: Optional[Dict[str, Any]] = None


@dataclass
class NotificationInbox:
    """Notifications and friend-request prompts received over the realtime channel."""
    items: Dict[str, InboxItem] = field(default_factory=dict)

    def apply(self, event: EventPayload) -> Optional[InboxItem]:
        item: Optional[InboxItem] = None
        if isinstance(event, NewNotification):
            item = InboxItem(id=event.id, type=event.type, message=event.message,
                             created_at=event.created_at, from_user=event.from_user,
                             is_read=event.is_read, action_data=event.action_data)
        elif isinstance(event, NewFriendRequest):
            item = InboxItem(id=event.notification_id or event.request_id, type=event.type, message=event.message,
                             created_at=event.created_at, from_user=event.from_user,
                             request_id=event.request_id)
        elif isinstance(event, FriendRequestStatus):
            item = InboxItem(id=event.notification_id or new_id(), type=event.type, message=event.message,
                             created_at=event.created_at, from_user=event.from_user,
                             request_id=event.request_id)
        elif isinstance(event, NotificationRead):
            found = self.items.get(event.notification_id)
            if found is not None:
                found.is_read = True
            return found

        if item is not None and item.id not in self.items:
            self.items[item.id] = item
        return item

    def pending_requests(self) -> List[InboxItem]:
        return [i for i in self.items.values() if i.type == "friend_request" and i.request_id]

    def resolve_request(self, request_id: str) -> None:
        """Drop a friend-request prompt once it has been answered."""
        for item in self.pending_requests():
            if item.request_id == request_id:
                del self.items[item.id]

    def unread(self) -> List[InboxItem]:
        return sorted((i for i in self.items.values() if not i.is_read),
                      key=lambda i: i.created_at, reverse=True)

    def unread_count(self) -> int:
        return sum(1 for i in self.items.values() if not i.is_read)
