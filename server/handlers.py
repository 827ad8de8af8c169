from __future__ import annotations

from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

from shared.errors import DeliveryFailure, InvalidArgument
from shared.events import (
    AcceptFriendRequest,
    Ack,
    CancelFriendRequest,
    DeclineFriendRequest,
    EventPayload,
    EventType,
    FetchHistory,
    History,
    MarkMessagesRead,
    MarkNotificationRead,
    MessageSent,
    RemoveFriend,
    SendFriendRequest,
    SendMessage,
    SendNotification,
    TypingStart,
)
from shared.log import get_logger

if TYPE_CHECKING:
    from server.server import RealtimeServer
    from server.session import SessionLink

logger = get_logger(__name__)

# Type alias for handler functions
EventHandler = Callable[["RealtimeServer", "SessionLink", Any], Awaitable[None]]


def _require_actor(link: "SessionLink", claimed: Optional[str], field_name: str) -> str:
    """The identity a client acts as must be the one it joined with."""
    if claimed != link.user_id:
        raise InvalidArgument(f"{field_name} does not match the joined identity")
    return claimed


async def _reply(link: "SessionLink", payload: EventPayload) -> None:
    """Answer the originating session. The operation already succeeded, so a lost reply is only logged."""
    try:
        await link.send_event(payload)
    except DeliveryFailure as e:
        logger.warning("Reply %s lost: %s", payload.event.value, e.detail,
                       extra={"user_id": link.user_id, "session_id": link.session_id})


async def _ack(link: "SessionLink", payload: EventPayload, result: Optional[Dict[str, Any]] = None) -> None:
    await _reply(link, Ack(ref=payload.event.value, result=result))


class MessagingHandlers:
    """Chat delivery, read receipts, history and typing hints."""

    @staticmethod
    async def handle_send_message(server: "RealtimeServer", link: "SessionLink", payload: SendMessage) -> None:
        _require_actor(link, payload.sender, "sender")
        message = await server.delivery.send(payload.sender, payload.receiver, payload.message)
        # Only the sending session gets the echo; the recipient got receive_message
        await _reply(link, MessageSent(message=message.to_dict(), temp_id=payload.temp_id))

    @staticmethod
    async def handle_mark_messages_read(server: "RealtimeServer", link: "SessionLink", payload: MarkMessagesRead) -> None:
        _require_actor(link, payload.user_id, "userId")
        result = await server.delivery.mark_read(payload.conversation_id, payload.user_id)
        await _ack(link, payload, {
            "conversationId": result.conversation_id,
            "readAt": result.read_at,
            "updated": result.updated,
        })

    @staticmethod
    async def handle_fetch_history(server: "RealtimeServer", link: "SessionLink", payload: FetchHistory) -> None:
        _require_actor(link, payload.user_id, "userId")
        page = await server.delivery.history(payload.user_id, payload.friend_id, payload.page, payload.limit)
        await _reply(link, History(
            friend_id=payload.friend_id,
            messages=[m.to_dict() for m in page.messages],
            page=page.page,
            has_more=page.has_more,
            conversation_id=page.conversation_id,
        ))

    @staticmethod
    async def handle_typing(server: "RealtimeServer", link: "SessionLink", payload: TypingStart) -> None:
        _require_actor(link, payload.sender_id, "senderId")
        await server.delivery.typing(payload.sender_id, payload.receiver_id, payload.is_typing,
                                     payload.conversation_id)


class SocialHandlers:
    """Friend graph transitions and notifications. Successful calls are acked."""

    @staticmethod
    async def handle_send_friend_request(server: "RealtimeServer", link: "SessionLink", payload: SendFriendRequest) -> None:
        _require_actor(link, payload.sender, "sender")
        request = await server.social.send_friend_request(payload.sender, payload.receiver)
        await _ack(link, payload, {"requestId": request.id, "status": "sent"})

    @staticmethod
    async def handle_accept_friend_request(server: "RealtimeServer", link: "SessionLink", payload: AcceptFriendRequest) -> None:
        _require_actor(link, payload.user_id, "userId")
        request = await server.social.accept_friend_request(payload.request_id, payload.user_id)
        await _ack(link, payload, {"requestId": request.id, "friendId": request.sender, "status": "friends"})

    @staticmethod
    async def handle_decline_friend_request(server: "RealtimeServer", link: "SessionLink", payload: DeclineFriendRequest) -> None:
        _require_actor(link, payload.user_id, "userId")
        request = await server.social.decline_friend_request(payload.request_id, payload.user_id)
        await _ack(link, payload, {"requestId": request.id, "status": "none"})

    @staticmethod
    async def handle_cancel_friend_request(server: "RealtimeServer", link: "SessionLink", payload: CancelFriendRequest) -> None:
        _require_actor(link, payload.sender, "sender")
        request = await server.social.cancel_friend_request(payload.sender, payload.receiver)
        await _ack(link, payload, {"requestId": request.id, "status": "none"})

    @staticmethod
    async def handle_remove_friend(server: "RealtimeServer", link: "SessionLink", payload: RemoveFriend) -> None:
        _require_actor(link, payload.user_id, "userId")
        await server.social.remove_friend(payload.user_id, payload.friend_id)
        await _ack(link, payload, {"friendId": payload.friend_id, "status": "none"})

    @staticmethod
    async def handle_send_notification(server: "RealtimeServer", link: "SessionLink", payload: SendNotification) -> None:
        _require_actor(link, payload.from_user, "fromUser")
        notification = await server.social.send_notification(
            payload.to_user, payload.from_user, payload.type, payload.message, payload.action_data
        )
        await _ack(link, payload, {"notificationId": notification.id})

    @staticmethod
    async def handle_mark_notification_read(server: "RealtimeServer", link: "SessionLink", payload: MarkNotificationRead) -> None:
        _require_actor(link, payload.user_id, "userId")
        await server.social.mark_notification_read(payload.user_id, payload.notification_id)


# Handler registry mapping joined-session events to their handlers; join itself is handled by the server
EVENT_HANDLER_REGISTRY: Dict[EventType, EventHandler] = {
    EventType.SEND_MESSAGE: MessagingHandlers.handle_send_message,
    EventType.MARK_MESSAGES_READ: MessagingHandlers.handle_mark_messages_read,
    EventType.FETCH_HISTORY: MessagingHandlers.handle_fetch_history,
    EventType.TYPING_START: MessagingHandlers.handle_typing,
    EventType.TYPING_STOP: MessagingHandlers.handle_typing,
    EventType.SEND_FRIEND_REQUEST: SocialHandlers.handle_send_friend_request,
    EventType.FRIEND_REQUEST_ACCEPTED: SocialHandlers.handle_accept_friend_request,
    EventType.FRIEND_REQUEST_DECLINED: SocialHandlers.handle_decline_friend_request,
    EventType.CANCEL_FRIEND_REQUEST: SocialHandlers.handle_cancel_friend_request,
    EventType.REMOVE_FRIEND: SocialHandlers.handle_remove_friend,
    EventType.SEND_NOTIFICATION: SocialHandlers.handle_send_notification,
    EventType.MARK_NOTIFICATION_READ: SocialHandlers.handle_mark_notification_read,
}
