from __future__ import annotations

import asyncio
from contextlib import suppress
from typing import Dict, Optional, Set

from server.fanout import EventFanout
from server.presence import PresenceRegistry
from server.session import SessionLink, SessionState
from server.storage import UserStatusStore, storage_call
from shared.errors import RealtimeError
from shared.events import UserOffline, UserOnline
from shared.log import get_logger
from shared.utils import now_ms, require_identity

logger = get_logger(__name__)


class ConnectionLifecycleManager:
    """
    Owns the per-session join/disconnect handshake and is the only writer of
    the presence registry.

    Durable status writes are fire-and-forget background tasks: they never
    block the session and their failures are only logged. Writes for the same
    user are chained so they land in the order they were issued.
    """

    def __init__(self, presence: PresenceRegistry, users: UserStatusStore, fanout: EventFanout):
        self.presence = presence
        self.users = users
        self.fanout = fanout
        self._background_tasks: Set[asyncio.Task] = set()
        self._last_write: Dict[str, asyncio.Task] = {}

    def _track_background_task(self, task: asyncio.Task) -> None:
        """Keep a strong reference to background tasks until completion."""
        self._background_tasks.add(task)

        def _discard(_task: asyncio.Task) -> None:
            self._background_tasks.discard(_task)

        task.add_done_callback(_discard)

    def _write_status(self, user_id: str, status: str, last_seen: int) -> asyncio.Task:
        previous = self._last_write.get(user_id)

        async def _write() -> None:
            if previous is not None and not previous.done():
                with suppress(Exception):
                    await previous
            try:
                await storage_call("set_status", self.users.set_status(user_id, status, last_seen))
            except RealtimeError as e:
                logger.warning("Status write (%s) failed: %s", status, e.detail, extra={"user_id": user_id})

        task = asyncio.create_task(_write())
        self._track_background_task(task)
        self._last_write[user_id] = task

        def _forget(_task: asyncio.Task) -> None:
            if self._last_write.get(user_id) is _task:
                del self._last_write[user_id]

        task.add_done_callback(_forget)
        return task

    async def join(self, link: SessionLink, user_id: str) -> bool:
        """
        Bind link to user_id. Returns True if the user just came online.

        Joining again with the same identity is a no-op. Joining with a
        different identity releases the old one first.
        """
        require_identity(user_id, "userId")
        if link.state is SessionState.CLOSED:
            return False
        if link.user_id == user_id and link.joined:
            return False
        if link.user_id is not None:
            logger.info("Session switching identity", extra={"user_id": link.user_id, "session_id": link.session_id})
            await self._release(link)

        link.user_id = user_id
        link.state = SessionState.JOINED
        became_online = self.presence.register(user_id, link)
        ts = now_ms()
        self._write_status(user_id, "online", ts)

        logger.info("Joined", extra={"user_id": user_id, "session_id": link.session_id})
        if became_online:
            await self.fanout.broadcast(UserOnline(user_id=user_id, last_seen=ts), exclude_user=user_id)
        return became_online

    async def disconnect(self, link: SessionLink) -> Optional[str]:
        """
        Release the session. Returns the user id if that user is now offline.
        Safe to call more than once.
        """
        went_offline = await self._release(link)
        link.state = SessionState.CLOSED
        return went_offline

    async def _release(self, link: SessionLink) -> Optional[str]:
        user_id = self.presence.unregister(link)
        if user_id is None:
            return None

        ts = now_ms()
        self._write_status(user_id, "offline", ts)
        logger.info("User went offline", extra={"user_id": user_id, "session_id": link.session_id})
        await self.fanout.broadcast(UserOffline(user_id=user_id, last_seen=ts), exclude_user=user_id)
        return user_id

    def pending_writes(self) -> int:
        return len(self._background_tasks)

    async def drain(self) -> None:
        """Wait for outstanding status writes, typically on shutdown."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
