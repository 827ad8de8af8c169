from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Set

from shared.utils import direct_key, new_id, now_ms

'''
Durable records owned by the storage collaborators.

to_dict() produces the camelCase wire/storage form; from_dict() accepts it back.
Nothing in here performs I/O.
'''

ConversationType = Literal["direct", "group"]
ParticipantRole = Literal["admin", "member"]

# Notification type tags accepted by the notification store
NOTIFICATION_TYPES: Set[str] = {
    "friend_request", "friend_accept", "friend_reject",
    "post_like", "post_love", "post_haha", "post_wow", "post_sad", "post_angry",
    "post_comment", "comment_reply", "post_share", "post_mention",
    "story_view", "story_reaction",
    "group_invite", "group_accept", "group_post", "group_comment", "group_mention",
    "page_like", "page_follow",
    "event_invite", "event_going", "event_interested",
    "birthday", "memory", "video_call", "message", "live_video",
    "marketplace_message", "job_alert", "dating_match", "gaming_invite",
    "payment_sent", "payment_received",
}


@dataclass
class Participant:
    user: str
    role: ParticipantRole = "member"
    joined_at: int = field(default_factory=now_ms)
    is_active: bool = True
    last_read: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user": self.user,
            "role": self.role,
            "joinedAt": self.joined_at,
            "isActive": self.is_active,
            "lastRead": self.last_read,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Participant":
        return cls(
            user=data["user"],
            role=data.get("role", "member"),
            joined_at=data.get("joinedAt", 0),
            is_active=data.get("isActive", True),
            last_read=data.get("lastRead", 0),
        )


@dataclass
class Conversation:
    id: str
    participants: List[Participant]
    created_by: str
    type: ConversationType = "direct"
    created_at: int = field(default_factory=now_ms)
    last_activity: int = field(default_factory=now_ms)
    last_message: Optional[str] = None
    direct_key: Optional[str] = None

    @classmethod
    def new_direct(cls, user_a: str, user_b: str) -> "Conversation":
        ts = now_ms()
        return cls(
            id=new_id(),
            participants=[
                Participant(user=user_a, joined_at=ts, last_read=ts),
                Participant(user=user_b, joined_at=ts, last_read=ts),
            ],
            created_by=user_a,
            created_at=ts,
            last_activity=ts,
            direct_key=direct_key(user_a, user_b),
        )

    def participant_ids(self) -> List[str]:
        return [p.user for p in self.participants]

    def active_participant_ids(self) -> List[str]:
        return [p.user for p in self.participants if p.is_active]

    def has_participant(self, user_id: str) -> bool:
        return any(p.user == user_id for p in self.participants)

    def participant(self, user_id: str) -> Optional[Participant]:
        for p in self.participants:
            if p.user == user_id:
                return p
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "participants": [p.to_dict() for p in self.participants],
            "createdBy": self.created_by,
            "createdAt": self.created_at,
            "lastActivity": self.last_activity,
            "lastMessage": self.last_message,
            "directKey": self.direct_key,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        return cls(
            id=data["id"],
            type=data.get("type", "direct"),
            participants=[Participant.from_dict(p) for p in data.get("participants", [])],
            created_by=data["createdBy"],
            created_at=data.get("createdAt", 0),
            last_activity=data.get("lastActivity", 0),
            last_message=data.get("lastMessage"),
            direct_key=data.get("directKey"),
        )


@dataclass
class ReadReceipt:
    user: str
    read_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {"user": self.user, "readAt": self.read_at}


@dataclass
class Message:
    id: str
    conversation: str
    sender: str
    content: Dict[str, Any]
    type: str = "text"
    created_at: int = field(default_factory=now_ms)
    read_by: List[ReadReceipt] = field(default_factory=list)
    is_deleted: bool = False

    @classmethod
    def new_text(cls, conversation_id: str, sender: str, text: str) -> "Message":
        ts = now_ms()
        # The sender has trivially read their own message
        return cls(
            id=new_id(),
            conversation=conversation_id,
            sender=sender,
            content={"text": text},
            created_at=ts,
            read_by=[ReadReceipt(user=sender, read_at=ts)],
        )

    @property
    def text(self) -> str:
        return self.content.get("text", "")

    def readers(self) -> List[str]:
        return [r.user for r in self.read_by]

    def has_reader(self, user_id: str) -> bool:
        return any(r.user == user_id for r in self.read_by)

    def add_reader(self, user_id: str, read_at: int) -> bool:
        """Append a receipt if absent. Receipts are never removed."""
        if self.has_reader(user_id):
            return False
        self.read_by.append(ReadReceipt(user=user_id, read_at=read_at))
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversationId": self.conversation,
            "sender": self.sender,
            "type": self.type,
            "content": dict(self.content),
            "message": self.text,
            "createdAt": self.created_at,
            "readBy": [r.to_dict() for r in self.read_by],
            "isDeleted": self.is_deleted,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        content = data.get("content")
        if content is None:
            content = {"text": data.get("message", "")}
        return cls(
            id=data["id"],
            conversation=data["conversationId"],
            sender=data["sender"],
            type=data.get("type", "text"),
            content=dict(content),
            created_at=data.get("createdAt", 0),
            read_by=[ReadReceipt(user=r["user"], read_at=r.get("readAt", 0)) for r in data.get("readBy", [])],
            is_deleted=data.get("isDeleted", False),
        )


@dataclass
class FriendRequest:
    id: str
    sender: str
    receiver: str
    status: str = "pending"
    created_at: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sender": self.sender,
            "receiver": self.receiver,
            "status": self.status,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FriendRequest":
        return cls(
            id=data["id"],
            sender=data["sender"],
            receiver=data["receiver"],
            status=data.get("status", "pending"),
            created_at=data.get("createdAt", 0),
        )


@dataclass
class Notification:
    id: str
    user: str           # recipient
    sender: str         # originating actor
    type: str
    message: str
    is_read: bool = False
    action_data: Optional[Dict[str, Any]] = None
    created_at: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user": self.user,
            "sender": self.sender,
            "type": self.type,
            "message": self.message,
            "isRead": self.is_read,
            "actionData": self.action_data,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Notification":
        return cls(
            id=data["id"],
            user=data["user"],
            sender=data["sender"],
            type=data["type"],
            message=data.get("message", ""),
            is_read=data.get("isRead", False),
            action_data=data.get("actionData"),
            created_at=data.get("createdAt", 0),
        )


@dataclass
class UserRecord:
    """The slice of the user profile this subsystem reads and writes."""
    id: str
    username: str = ""
    display_name: str = ""
    avatar_url: Optional[str] = None
    status: str = "offline"
    last_seen: Optional[int] = None
    friends: Set[str] = field(default_factory=set)

    def summary(self) -> Dict[str, Any]:
        """Actor summary attached to social pushes."""
        return {
            "id": self.id,
            "displayName": self.display_name or self.username or self.id[:8],
            "username": self.username,
            "avatarUrl": self.avatar_url,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "displayName": self.display_name,
            "avatarUrl": self.avatar_url,
            "status": self.status,
            "lastSeen": self.last_seen,
            "friends": sorted(self.friends),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserRecord":
        return cls(
            id=data["id"],
            username=data.get("username", ""),
            display_name=data.get("displayName", ""),
            avatar_url=data.get("avatarUrl"),
            status=data.get("status", "offline"),
            last_seen=data.get("lastSeen"),
            friends=set(data.get("friends", [])),
        )
