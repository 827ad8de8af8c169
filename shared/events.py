"""
Realtime wire events.

Every frame on a session is a JSON object:

    {"event": "send_message", "data": {"sender": "...", "receiver": "...", "message": "hi"}}

Each event name has exactly one payload class below. Payload keys are
camelCase on the wire and snake_case on the Python side. Client code and
server components build and inspect these classes instead of probing dicts.
"""

from __future__ import annotations

import json
from dataclasses import MISSING, dataclass, fields
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Type

from shared.errors import InvalidArgument


class EventType(str, Enum):
    """Realtime event names."""

    # Handshake
    JOIN = "join"

    # Messaging
    SEND_MESSAGE = "send_message"
    RECEIVE_MESSAGE = "receive_message"
    MESSAGE_SENT = "message_sent"
    MESSAGE_ERROR = "message_error"
    MARK_MESSAGES_READ = "mark_messages_read"
    MESSAGES_READ = "messages_read"
    FETCH_HISTORY = "fetch_history"
    HISTORY = "history"
    TYPING_START = "typing_start"
    TYPING_STOP = "typing_stop"
    USER_TYPING = "user_typing"

    # Social graph and notifications
    SEND_FRIEND_REQUEST = "send_friend_request"
    NEW_FRIEND_REQUEST = "new_friend_request"
    FRIEND_REQUEST_ACCEPTED = "friend_request_accepted"
    FRIEND_REQUEST_DECLINED = "friend_request_declined"
    CANCEL_FRIEND_REQUEST = "cancel_friend_request"
    FRIEND_REQUEST_STATUS = "friend_request_status"
    REMOVE_FRIEND = "remove_friend"
    SEND_NOTIFICATION = "send_notification"
    NEW_NOTIFICATION = "new_notification"
    MARK_NOTIFICATION_READ = "mark_notification_read"
    NOTIFICATION_READ = "notification_read"

    # Presence
    USER_ONLINE = "user_online"
    USER_OFFLINE = "user_offline"

    # Control
    ACK = "ack"
    ERROR = "error"

    @classmethod
    def from_string(cls, value: str) -> "EventType":
        """Convert string to EventType, raise InvalidArgument if unknown."""
        try:
            return cls(value)
        except ValueError:
            raise InvalidArgument(f"Unknown event: {value}")

    @classmethod
    def is_valid(cls, value: str) -> bool:
        try:
            cls(value)
            return True
        except ValueError:
            return False


def _camel(name: str) -> str:
    first, *rest = name.split("_")
    return first + "".join(part.title() for part in rest)


@dataclass
class Frame:
    """A raw event frame, validated for shape only."""
    event: str
    data: Any

    @classmethod
    def from_json(cls, json_str: str) -> "Frame":
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise InvalidArgument(f"Invalid JSON: {e}")
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Any) -> "Frame":
        if not isinstance(data, dict):
            raise InvalidArgument("Frame must be a JSON object")
        event = data.get("event")
        if not isinstance(event, str) or not event:
            raise InvalidArgument("'event' must be a non-empty string")
        payload = data.get("data", {})
        if payload is None:
            payload = {}
        if not isinstance(payload, (dict, str)):
            raise InvalidArgument("'data' must be an object")
        return cls(event=event, data=payload)

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.event, "data": self.data}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(',', ':'))


@dataclass(frozen=True)
class EventPayload:
    """Base for all tagged event payloads."""

    event: ClassVar[EventType]

    def to_data(self) -> Any:
        return {_camel(f.name): getattr(self, f.name) for f in fields(self)}

    def to_frame(self) -> Frame:
        return Frame(event=self.event.value, data=self.to_data())

    @classmethod
    def from_data(cls, data: Any) -> "EventPayload":
        if not isinstance(data, dict):
            raise InvalidArgument(f"{cls.event.value} payload must be an object", ref=cls.event.value)
        kwargs: Dict[str, Any] = {}
        missing: List[str] = []
        for f in fields(cls):
            key = _camel(f.name)
            if key in data:
                kwargs[f.name] = data[key]
            elif f.name in data:
                kwargs[f.name] = data[f.name]
            elif f.default is MISSING and f.default_factory is MISSING:
                missing.append(key)
        if missing:
            raise InvalidArgument(f"Missing required fields: {sorted(missing)}", ref=cls.event.value)
        return cls(**kwargs)


# ========================================
#           CLIENT -> SERVER
# ========================================

@dataclass(frozen=True)
class Join(EventPayload):
    event: ClassVar[EventType] = EventType.JOIN
    user_id: str

    @classmethod
    def from_data(cls, data: Any) -> "Join":
        # Legacy clients send the bare identity string
        if isinstance(data, str):
            return cls(user_id=data)
        return super().from_data(data)  # type: ignore[return-value]


@dataclass(frozen=True)
class SendMessage(EventPayload):
    event: ClassVar[EventType] = EventType.SEND_MESSAGE
    sender: str
    receiver: str
    message: str
    temp_id: Optional[str] = None


@dataclass(frozen=True)
class MarkMessagesRead(EventPayload):
    event: ClassVar[EventType] = EventType.MARK_MESSAGES_READ
    conversation_id: str
    user_id: str


@dataclass(frozen=True)
class FetchHistory(EventPayload):
    event: ClassVar[EventType] = EventType.FETCH_HISTORY
    user_id: str
    friend_id: str
    page: int = 1
    limit: Optional[int] = None


@dataclass(frozen=True)
class TypingStart(EventPayload):
    event: ClassVar[EventType] = EventType.TYPING_START
    sender_id: str
    receiver_id: str
    conversation_id: Optional[str] = None

    @property
    def is_typing(self) -> bool:
        return True


@dataclass(frozen=True)
class TypingStop(TypingStart):
    event: ClassVar[EventType] = EventType.TYPING_STOP

    @property
    def is_typing(self) -> bool:
        return False


@dataclass(frozen=True)
class SendFriendRequest(EventPayload):
    event: ClassVar[EventType] = EventType.SEND_FRIEND_REQUEST
    sender: str
    receiver: str


@dataclass(frozen=True)
class AcceptFriendRequest(EventPayload):
    event: ClassVar[EventType] = EventType.FRIEND_REQUEST_ACCEPTED
    request_id: str
    user_id: str


@dataclass(frozen=True)
class DeclineFriendRequest(EventPayload):
    event: ClassVar[EventType] = EventType.FRIEND_REQUEST_DECLINED
    request_id: str
    user_id: str


@dataclass(frozen=True)
class CancelFriendRequest(EventPayload):
    event: ClassVar[EventType] = EventType.CANCEL_FRIEND_REQUEST
    sender: str
    receiver: str


@dataclass(frozen=True)
class RemoveFriend(EventPayload):
    event: ClassVar[EventType] = EventType.REMOVE_FRIEND
    user_id: str
    friend_id: str


@dataclass(frozen=True)
class SendNotification(EventPayload):
    event: ClassVar[EventType] = EventType.SEND_NOTIFICATION
    to_user: str
    from_user: str
    type: str
    message: str
    action_data: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class MarkNotificationRead(EventPayload):
    event: ClassVar[EventType] = EventType.MARK_NOTIFICATION_READ
    user_id: str
    notification_id: str


# ========================================
#           SERVER -> CLIENT
# ========================================

@dataclass(frozen=True)
class ReceiveMessage(EventPayload):
    """Delivery push to the recipient. The data is the persisted message itself."""
    event: ClassVar[EventType] = EventType.RECEIVE_MESSAGE
    message: Dict[str, Any]

    def to_data(self) -> Dict[str, Any]:
        return dict(self.message)

    @classmethod
    def from_data(cls, data: Any) -> "ReceiveMessage":
        if not isinstance(data, dict) or "id" not in data:
            raise InvalidArgument("receive_message payload must be a persisted message", ref=cls.event.value)
        return cls(message=data)


@dataclass(frozen=True)
class MessageSent(EventPayload):
    """Reply to the sending session only; the authoritative local echo."""
    event: ClassVar[EventType] = EventType.MESSAGE_SENT
    message: Dict[str, Any]
    temp_id: Optional[str] = None


@dataclass(frozen=True)
class MessageError(EventPayload):
    event: ClassVar[EventType] = EventType.MESSAGE_ERROR
    code: str
    detail: str
    temp_id: Optional[str] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class MessagesRead(EventPayload):
    event: ClassVar[EventType] = EventType.MESSAGES_READ
    conversation_id: str
    read_by: str
    read_at: int


@dataclass(frozen=True)
class History(EventPayload):
    event: ClassVar[EventType] = EventType.HISTORY
    friend_id: str
    messages: List[Dict[str, Any]]
    page: int
    has_more: bool
    conversation_id: Optional[str] = None


@dataclass(frozen=True)
class UserTyping(EventPayload):
    event: ClassVar[EventType] = EventType.USER_TYPING
    user_id: str
    is_typing: bool
    conversation_id: Optional[str] = None


@dataclass(frozen=True)
class NewFriendRequest(EventPayload):
    event: ClassVar[EventType] = EventType.NEW_FRIEND_REQUEST
    request_id: str
    from_user: Dict[str, Any]
    message: str
    created_at: int
    notification_id: Optional[str] = None
    type: str = "friend_request"
    is_read: bool = False


@dataclass(frozen=True)
class FriendRequestStatus(EventPayload):
    event: ClassVar[EventType] = EventType.FRIEND_REQUEST_STATUS
    type: str
    from_user: Dict[str, Any]
    message: str
    created_at: int
    request_id: Optional[str] = None
    notification_id: Optional[str] = None


@dataclass(frozen=True)
class NewNotification(EventPayload):
    event: ClassVar[EventType] = EventType.NEW_NOTIFICATION
    id: str
    type: str
    from_user: Dict[str, Any]
    message: str
    created_at: int
    action_data: Optional[Dict[str, Any]] = None
    is_read: bool = False


@dataclass(frozen=True)
class NotificationRead(EventPayload):
    event: ClassVar[EventType] = EventType.NOTIFICATION_READ
    notification_id: str


@dataclass(frozen=True)
class UserOnline(EventPayload):
    event: ClassVar[EventType] = EventType.USER_ONLINE
    user_id: str
    last_seen: int
    status: str = "online"


@dataclass(frozen=True)
class UserOffline(EventPayload):
    event: ClassVar[EventType] = EventType.USER_OFFLINE
    user_id: str
    last_seen: int
    status: str = "offline"


@dataclass(frozen=True)
class Ack(EventPayload):
    event: ClassVar[EventType] = EventType.ACK
    ref: str
    result: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class Error(EventPayload):
    event: ClassVar[EventType] = EventType.ERROR
    code: str
    detail: str
    ref: Optional[str] = None


# ========================================
#           REGISTRIES
# ========================================

CLIENT_EVENTS: Dict[EventType, Type[EventPayload]] = {
    cls.event: cls
    for cls in (
        Join, SendMessage, MarkMessagesRead, FetchHistory, TypingStart, TypingStop,
        SendFriendRequest, AcceptFriendRequest, DeclineFriendRequest, CancelFriendRequest,
        RemoveFriend, SendNotification, MarkNotificationRead,
    )
}

SERVER_EVENTS: Dict[EventType, Type[EventPayload]] = {
    cls.event: cls
    for cls in (
        ReceiveMessage, MessageSent, MessageError, MessagesRead, History, UserTyping,
        NewFriendRequest, FriendRequestStatus, NewNotification, NotificationRead,
        UserOnline, UserOffline, Ack, Error,
    )
}


def _parse(frame: Frame, registry: Dict[EventType, Type[EventPayload]]) -> EventPayload:
    event_type = EventType.from_string(frame.event)
    cls = registry.get(event_type)
    if cls is None:
        raise InvalidArgument(f"Event {frame.event} is not valid in this direction", ref=frame.event)
    return cls.from_data(frame.data)


def parse_client_event(frame: Frame) -> EventPayload:
    """Frame sent by a client -> payload variant. Raises InvalidArgument."""
    return _parse(frame, CLIENT_EVENTS)


def parse_server_event(frame: Frame) -> EventPayload:
    """Frame pushed by the server -> payload variant. Raises InvalidArgument."""
    return _parse(frame, SERVER_EVENTS)
