from __future__ import annotations

from typing import TYPE_CHECKING, Dict, List, Optional, Set

from shared.log import get_logger

if TYPE_CHECKING:
    from server.session import SessionLink

logger = get_logger(__name__)


class PresenceRegistry:
    """
    Process-local map from user identity to the set of sessions that joined as it.

    A user is online while at least one session is registered. Mutations are
    synchronous so a register/unregister pair can never interleave with
    another coroutine half-way through.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, Set["SessionLink"]] = {}
        self._owner: Dict["SessionLink", str] = {}

    def register(self, user_id: str, link: "SessionLink") -> bool:
        """
        Add link to user_id's session set. Returns True if this made the user online.

        Re-registering a link under the same user is a no-op. A link owned by
        another user must be unregistered first.
        """
        owner = self._owner.get(link)
        if owner is not None and owner != user_id:
            raise ValueError(f"session already registered for {owner[:8]}")

        sessions = self._sessions.setdefault(user_id, set())
        became_online = not sessions
        sessions.add(link)
        self._owner[link] = user_id
        logger.debug("Registered session for %s (%d open)", user_id[:8], len(sessions))
        return became_online

    def unregister(self, link: "SessionLink") -> Optional[str]:
        """
        Remove link from whichever user owns it.

        Returns the user id when that user has no sessions left, else None.
        Unknown links are ignored.
        """
        user_id = self._owner.pop(link, None)
        if user_id is None:
            return None

        sessions = self._sessions.get(user_id)
        if sessions is not None:
            sessions.discard(link)
            if not sessions:
                del self._sessions[user_id]
                logger.debug("Last session for %s released", user_id[:8])
                return user_id
        return None

    def sessions_for(self, user_id: str) -> List["SessionLink"]:
        """Snapshot of the user's sessions, safe to iterate across awaits."""
        return list(self._sessions.get(user_id, ()))

    def user_for(self, link: "SessionLink") -> Optional[str]:
        return self._owner.get(link)

    def is_online(self, user_id: str) -> bool:
        return user_id in self._sessions

    def online_users(self) -> List[str]:
        return list(self._sessions)

    def session_count(self) -> int:
        return len(self._owner)
