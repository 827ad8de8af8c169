from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from websockets.exceptions import ConnectionClosed

from shared.errors import DeliveryFailure
from shared.events import Error, EventPayload
from shared.log import get_logger
from shared.utils import new_id

logger = get_logger(__name__)


class SessionState(str, Enum):
    CONNECTING = "connecting"    # socket open, no join yet
    JOINED = "joined"
    CLOSED = "closed"


class SessionLink:
    """Wrapper around one client WebSocket with its session metadata"""

    def __init__(self, websocket: Any):
        self.websocket = websocket
        self.session_id = new_id()[:8]
        self.user_id: Optional[str] = None
        self.state = SessionState.CONNECTING

    @property
    def joined(self) -> bool:
        return self.state is SessionState.JOINED

    async def send_event(self, payload: EventPayload) -> None:
        """
        Serialize and write one event to this session.

        Raises DeliveryFailure if the session is closed or the write fails;
        callers doing fan-out catch and log it.
        """
        if self.state is SessionState.CLOSED:
            raise DeliveryFailure(f"session {self.session_id} is closed", ref=payload.event.value)
        try:
            await self.websocket.send(payload.to_frame().to_json())
            logger.debug(f"Sent {payload.event.value} to session {self.session_id}")
        except ConnectionClosed as e:
            self.state = SessionState.CLOSED
            raise DeliveryFailure(f"session {self.session_id} closed during send", ref=payload.event.value) from e
        except Exception as e:
            raise DeliveryFailure(f"send to session {self.session_id} failed: {e}", ref=payload.event.value) from e

    async def send_error(self, code: str, detail: str, *, ref: Optional[str] = None) -> None:
        """Send an error frame back to this session, never raising"""
        try:
            await self.send_event(Error(code=code, detail=detail, ref=ref))
        except DeliveryFailure as e:
            logger.warning("Could not report %s to session %s: %s", code, self.session_id, e.detail)

    async def on_error_unknown_event(self, detail: str, *, ref: Optional[str] = None) -> None:
        """Send UNKNOWN_EVENT error - unknown event name"""
        await self.send_error("UNKNOWN_EVENT", detail, ref=ref)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        """Close the WebSocket connection"""
        self.state = SessionState.CLOSED
        try:
            await self.websocket.close(code=code, reason=reason or "Connection closed")
        except Exception as e:
            logger.error(f"Error closing session {self.session_id}: {e}")

    def __repr__(self) -> str:
        user = self.user_id[:8] if self.user_id else "-"
        return f"<SessionLink {self.session_id} user={user} {self.state.value}>"
