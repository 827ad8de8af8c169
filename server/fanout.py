from __future__ import annotations

from typing import Iterable, Optional

from server.presence import PresenceRegistry
from server.session import SessionLink
from shared.errors import DeliveryFailure
from shared.events import EventPayload
from shared.log import get_logger

logger = get_logger(__name__)


class EventFanout:
    """
    Best-effort push of one event to every session of a user.

    A failed push to one session never prevents the others and never raises;
    DeliveryFailure is logged only.
    """

    def __init__(self, presence: PresenceRegistry):
        self.presence = presence

    async def push_to_user(self, user_id: str, payload: EventPayload,
                           *, exclude: Optional[SessionLink] = None) -> int:
        """Returns the number of sessions the event was written to."""
        delivered = 0
        for link in self.presence.sessions_for(user_id):
            if link is exclude:
                continue
            try:
                await link.send_event(payload)
                delivered += 1
            except DeliveryFailure as e:
                logger.warning(
                    "Push failed: %s", e.detail,
                    extra={"user_id": user_id, "session_id": link.session_id, "event": payload.event.value},
                )
        if delivered == 0:
            logger.debug(
                "%s not pushed; user has no reachable session", payload.event.value,
                extra={"user_id": user_id},
            )
        return delivered

    async def push_to_users(self, user_ids: Iterable[str], payload: EventPayload) -> int:
        delivered = 0
        for user_id in user_ids:
            delivered += await self.push_to_user(user_id, payload)
        return delivered

    async def broadcast(self, payload: EventPayload, *, exclude_user: Optional[str] = None) -> int:
        """Push to every online user except exclude_user."""
        targets = [u for u in self.presence.online_users() if u != exclude_user]
        return await self.push_to_users(targets, payload)
