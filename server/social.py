from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from server.fanout import EventFanout
from server.models import NOTIFICATION_TYPES, FriendRequest, Notification, UserRecord
from server.storage import FriendGraph, NotificationStore, UserStatusStore, storage_call
from shared.errors import Conflict, InvalidArgument, NotFound, StorageFailure
from shared.events import FriendRequestStatus, NewFriendRequest, NewNotification, NotificationRead
from shared.log import get_logger
from shared.utils import is_identity, new_id, now_ms, require_identities, require_text

logger = get_logger(__name__)

FriendshipStatus = Literal["none", "friends", "sent", "received"]


class SocialEventRouter:
    """
    Friend-graph transitions and generic notifications.

    Every operation validates, then persists, then pushes to the target's
    sessions if any are open. The stored record is what clients reconcile
    against; a missed push is never an error.
    """

    def __init__(self, friends: FriendGraph, notifications: NotificationStore, users: UserStatusStore,
                 fanout: EventFanout, *, notify_on_decline: bool = False):
        self.friends = friends
        self.notifications = notifications
        self.users = users
        self.fanout = fanout
        self.notify_on_decline = notify_on_decline

    async def _actor_summary(self, user_id: str) -> Dict[str, Any]:
        try:
            record = await storage_call("get_user", self.users.get_user(user_id))
        except StorageFailure:
            record = None
        return (record or UserRecord(id=user_id)).summary()

    async def _notify(self, to_user: str, from_user: str, type: str, message: str,
                      action_data: Optional[Dict[str, Any]] = None) -> Notification:
        notification = Notification(
            id=new_id(), user=to_user, sender=from_user, type=type,
            message=message, action_data=action_data,
        )
        return await storage_call("create_notification", self.notifications.create_notification(notification))

    async def _load_request_for_receiver(self, request_id: str, user_id: str) -> FriendRequest:
        require_identities(user_id=user_id)
        if not is_identity(request_id):
            raise InvalidArgument("requestId must be a valid request id")
        request = await storage_call("get_friend_request", self.friends.get_friend_request(request_id))
        if request is None:
            raise NotFound(f"Friend request {request_id} not found")
        if request.receiver != user_id:
            raise InvalidArgument("Only the receiver can answer a friend request")
        return request

    # ---------- friend requests ----------

    async def send_friend_request(self, sender: str, receiver: str) -> FriendRequest:
        require_identities(sender=sender, receiver=receiver)
        if sender == receiver:
            raise InvalidArgument("Cannot send a friend request to yourself")

        if await storage_call("are_friends", self.friends.are_friends(sender, receiver)):
            raise Conflict("Already friends")
        if await storage_call("find_pending_request", self.friends.find_pending_request(sender, receiver)):
            raise Conflict("Friend request already sent")
        if await storage_call("find_pending_request", self.friends.find_pending_request(receiver, sender)):
            raise Conflict("This user has already sent you a friend request")

        request = await storage_call(
            "create_friend_request",
            self.friends.create_friend_request(FriendRequest(id=new_id(), sender=sender, receiver=receiver)),
        )
        notification = await self._notify(receiver, sender, "friend_request", "You have a new friend request",
                                          action_data={"requestId": request.id})

        actor = await self._actor_summary(sender)
        await self.fanout.push_to_user(receiver, NewFriendRequest(
            request_id=request.id,
            from_user=actor,
            message=f"{actor['displayName']} sent you a friend request",
            created_at=request.created_at,
            notification_id=notification.id,
        ))
        logger.info("Friend request %s created", request.id[:8], extra={"user_id": sender})
        return request

    async def accept_friend_request(self, request_id: str, user_id: str) -> FriendRequest:
        request = await self._load_request_for_receiver(request_id, user_id)

        await storage_call("add_friend", self.friends.add_friend(request.sender, request.receiver))
        await storage_call("add_friend", self.friends.add_friend(request.receiver, request.sender))
        await storage_call("delete_friend_request", self.friends.delete_friend_request(request.id))
        notification = await self._notify(request.sender, request.receiver, "friend_accept",
                                          "Your friend request was accepted")

        actor = await self._actor_summary(request.receiver)
        await self.fanout.push_to_user(request.sender, FriendRequestStatus(
            type="friend_accept",
            from_user=actor,
            message=f"{actor['displayName']} accepted your friend request",
            created_at=notification.created_at,
            request_id=request.id,
            notification_id=notification.id,
        ))
        logger.info("Friend request %s accepted", request.id[:8], extra={"user_id": user_id})
        return request

    async def decline_friend_request(self, request_id: str, user_id: str) -> FriendRequest:
        request = await self._load_request_for_receiver(request_id, user_id)
        await storage_call("delete_friend_request", self.friends.delete_friend_request(request.id))

        if self.notify_on_decline:
            notification = await self._notify(request.sender, request.receiver, "friend_reject",
                                              "Your friend request was declined")
            await self.fanout.push_to_user(request.sender, FriendRequestStatus(
                type="friend_reject",
                from_user=await self._actor_summary(request.receiver),
                message="Your friend request was declined",
                created_at=notification.created_at,
                request_id=request.id,
                notification_id=notification.id,
            ))
        logger.info("Friend request %s declined", request.id[:8], extra={"user_id": user_id})
        return request

    async def cancel_friend_request(self, sender: str, receiver: str) -> FriendRequest:
        """Sender withdraws a pending request. No push."""
        require_identities(sender=sender, receiver=receiver)
        request = await storage_call("find_pending_request", self.friends.find_pending_request(sender, receiver))
        if request is None:
            raise NotFound("No pending friend request to cancel")
        await storage_call("delete_friend_request", self.friends.delete_friend_request(request.id))
        return request

    async def remove_friend(self, user_id: str, friend_id: str) -> None:
        """Symmetric removal from both friend lists. No push."""
        require_identities(user_id=user_id, friend_id=friend_id)
        if user_id == friend_id:
            raise InvalidArgument("Cannot unfriend yourself")
        await storage_call("remove_friend", self.friends.remove_friend(user_id, friend_id))
        await storage_call("remove_friend", self.friends.remove_friend(friend_id, user_id))

    async def friendship_status(self, user_id: str, other_id: str) -> FriendshipStatus:
        require_identities(user_id=user_id, other_id=other_id)
        if await storage_call("are_friends", self.friends.are_friends(user_id, other_id)):
            return "friends"
        if await storage_call("find_pending_request", self.friends.find_pending_request(user_id, other_id)):
            return "sent"
        if await storage_call("find_pending_request", self.friends.find_pending_request(other_id, user_id)):
            return "received"
        return "none"

    # ---------- notifications ----------

    async def send_notification(self, to_user: str, from_user: str, type: str, message: str,
                                action_data: Optional[Dict[str, Any]] = None) -> Notification:
        require_identities(to_user=to_user, from_user=from_user)
        if type not in NOTIFICATION_TYPES:
            raise InvalidArgument(f"Unknown notification type: {type}")
        text = require_text(message, "message")
        if action_data is not None and not isinstance(action_data, dict):
            raise InvalidArgument("actionData must be an object")

        notification = await self._notify(to_user, from_user, type, text, action_data)
        await self.fanout.push_to_user(to_user, NewNotification(
            id=notification.id,
            type=notification.type,
            from_user=await self._actor_summary(from_user),
            message=notification.message,
            created_at=notification.created_at,
            action_data=notification.action_data,
        ))
        return notification

    async def mark_notification_read(self, user_id: str, notification_id: str) -> Notification:
        """Mark read and sync every open session of the owner."""
        require_identities(user_id=user_id)
        notification = await storage_call("get_notification", self.notifications.get_notification(notification_id))
        if notification is None or notification.user != user_id:
            raise NotFound(f"Notification {notification_id} not found")

        await storage_call("mark_notification_read", self.notifications.mark_notification_read(notification.id))
        notification.is_read = True
        await self.fanout.push_to_user(user_id, NotificationRead(notification_id=notification.id))
        return notification
