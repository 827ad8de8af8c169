from __future__ import annotations
import asyncio
import inspect
from contextlib import suppress
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed

from shared.config import Settings
from shared.errors import DeliveryFailure, RealtimeError
from shared.events import (
    AcceptFriendRequest,
    CancelFriendRequest,
    DeclineFriendRequest,
    EventPayload,
    FetchHistory,
    Frame,
    Join,
    MarkMessagesRead,
    MarkNotificationRead,
    RemoveFriend,
    SendFriendRequest,
    SendMessage,
    SendNotification,
    TypingStart,
    TypingStop,
    parse_server_event,
)
from shared.log import get_logger

logger = get_logger(__name__)

Listener = Callable[[Any], Optional[Awaitable[None]]]
ConnectFn = Callable[[str], Awaitable[Any]]
SleepFn = Callable[[float], Awaitable[None]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"               # gave up after max_attempts; call connect() to try again


# Connector lifecycle notifications, delivered through the same listener registry as server events
STATE_CHANGED = "state_changed"
CONNECTED = "connected"
DISCONNECTED = "disconnected"
RECONNECTION_FAILED = "reconnection_failed"


class ClientConnector:
    """
    Realtime client session with an explicit reconnect state machine.

        disconnected -> connecting -> connected
                  ^          |            |
                  +----------+------------+   (failure / drop, with backoff)
        connecting -> failed                  (max_attempts consecutive failures)

    join is re-sent after every successful (re)connect. close() stops the
    machine and suppresses reconnection.

    connect and sleep are injectable so the state machine can be driven in tests
    without a network or real delays.
    """

    def __init__(
        self,
        url: str,
        user_id: str,
        *,
        connect_timeout: float = 10.0,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        connect: Optional[ConnectFn] = None,
        sleep: Optional[SleepFn] = None,
    ) -> None:
        self.url = url
        self.user_id = user_id
        self.connect_timeout = connect_timeout
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._connect = connect or websockets.connect
        self._sleep = sleep or asyncio.sleep

        self.state = ConnectionState.DISCONNECTED
        self.attempts = 0
        self.websocket: Optional[Any] = None
        self._listeners: Dict[str, List[Listener]] = {}
        self._closing = False
        self._recv_task: Optional[asyncio.Task] = None
        self._background_tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: Settings, user_id: str, **kwargs: Any) -> "ClientConnector":
        return cls(
            settings.server_url,
            user_id,
            connect_timeout=settings.connect_timeout,
            max_attempts=settings.max_reconnect_attempts,
            base_delay=settings.reconnect_base_delay,
            max_delay=settings.reconnect_max_delay,
            **kwargs,
        )

    # ---------- listeners ----------

    def on(self, event: str, listener: Listener) -> None:
        self._listeners.setdefault(event, []).append(listener)

    def off(self, event: str, listener: Optional[Listener] = None) -> None:
        """Remove one listener, or every listener for the event."""
        if listener is None:
            self._listeners.pop(event, None)
            return
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    async def _emit(self, event: str, data: Any) -> None:
        for listener in list(self._listeners.get(event, ())):
            try:
                result = listener(data)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Listener for %s failed: %s", event, e)

    async def _set_state(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        previous, self.state = self.state, state
        logger.debug("Connector %s -> %s", previous.value, state.value)
        await self._emit(STATE_CHANGED, state)

    def _track_background_task(self, task: asyncio.Task) -> None:
        """Keep a strong reference to background tasks until completion."""
        self._background_tasks.add(task)

        def _discard(_task: asyncio.Task) -> None:
            self._background_tasks.discard(_task)

        task.add_done_callback(_discard)

    # ---------- connection state machine ----------

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based): base * 2^(attempt-1), capped."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    async def _open(self) -> Any:
        return await self._connect(self.url)

    async def connect(self) -> bool:
        """
        Connect, retrying with exponential backoff.

        Returns True once connected and joined, False after max_attempts
        consecutive failures (state FAILED) or if close() was called meanwhile.
        """
        self._closing = False
        self.attempts = 0
        while not self._closing:
            await self._set_state(ConnectionState.CONNECTING)
            try:
                websocket = await asyncio.wait_for(self._open(), timeout=self.connect_timeout)
            except Exception as e:
                if not await self._attempt_failed(e):
                    return False
                continue

            if self._closing:
                await websocket.close()
                break

            try:
                await websocket.send(Join(user_id=self.user_id).to_frame().to_json())
            except Exception as e:
                with suppress(Exception):
                    await websocket.close()
                if not await self._attempt_failed(e):
                    return False
                continue

            self.websocket = websocket
            self.attempts = 0
            await self._set_state(ConnectionState.CONNECTED)
            self._recv_task = asyncio.create_task(self._recv_loop(websocket))
            self._track_background_task(self._recv_task)
            await self._emit(CONNECTED, {"userId": self.user_id})
            return True

        await self._set_state(ConnectionState.DISCONNECTED)
        return False

    async def _attempt_failed(self, error: Exception) -> bool:
        """Count a failed attempt. Returns False once max_attempts is reached, else backs off."""
        self.attempts += 1
        logger.warning(f"Connect attempt {self.attempts}/{self.max_attempts} to {self.url} failed: {error}")
        if self.attempts >= self.max_attempts:
            await self._set_state(ConnectionState.FAILED)
            await self._emit(RECONNECTION_FAILED, {"attempts": self.attempts})
            return False
        await self._set_state(ConnectionState.DISCONNECTED)
        delay = self.backoff_delay(self.attempts)
        logger.info(f"Reconnecting in {delay}s")
        await self._sleep(delay)
        return True

    async def _recv_loop(self, websocket: Any) -> None:
        try:
            async for raw in websocket:
                try:
                    if isinstance(raw, bytes):
                        raw = raw.decode('utf-8')
                    frame = Frame.from_json(raw)
                    payload = parse_server_event(frame)
                except RealtimeError as e:
                    logger.error("Failed to parse inbound frame: %s", e.detail)
                    continue
                await self._emit(frame.event, payload)
        except ConnectionClosed:
            logger.info("Connection to %s closed", self.url)
        except Exception as e:
            logger.error("Receive loop failed: %s", e)
        finally:
            if self.websocket is websocket:
                self.websocket = None
            if not self._closing:
                await self._set_state(ConnectionState.DISCONNECTED)
                await self._emit(DISCONNECTED, {"userId": self.user_id})
                self._track_background_task(asyncio.create_task(self._reconnect()))

    async def _reconnect(self) -> None:
        await self._sleep(self.backoff_delay(1))
        if not self._closing:
            await self.connect()

    async def wait_closed(self) -> None:
        """Wait for the current receive loop to end."""
        if self._recv_task is not None:
            await asyncio.gather(self._recv_task, return_exceptions=True)

    async def close(self) -> None:
        """Manual close; no reconnection follows."""
        self._closing = True
        for task in list(self._background_tasks):
            if task is not asyncio.current_task() and task is not self._recv_task:
                task.cancel()
        if self.websocket is not None:
            try:
                await self.websocket.close(code=1000)
            except Exception as e:
                logger.debug("Error closing websocket: %s", e)
        if self._recv_task is not None and self._recv_task is not asyncio.current_task():
            self._recv_task.cancel()
            await asyncio.gather(self._recv_task, return_exceptions=True)
        self.websocket = None
        await self._set_state(ConnectionState.DISCONNECTED)

    # ---------- outbound events ----------

    async def send(self, payload: EventPayload) -> None:
        """Raises DeliveryFailure when not connected or the write fails."""
        if self.websocket is None or self.state is not ConnectionState.CONNECTED:
            raise DeliveryFailure("not connected", ref=payload.event.value)
        try:
            await self.websocket.send(payload.to_frame().to_json())
        except ConnectionClosed as e:
            raise DeliveryFailure("connection closed during send", ref=payload.event.value) from e

    async def send_message(self, receiver: str, text: str, temp_id: Optional[str] = None) -> None:
        await self.send(SendMessage(sender=self.user_id, receiver=receiver, message=text, temp_id=temp_id))

    async def mark_messages_read(self, conversation_id: str) -> None:
        await self.send(MarkMessagesRead(conversation_id=conversation_id, user_id=self.user_id))

    async def fetch_history(self, friend_id: str, page: int = 1, limit: Optional[int] = None) -> None:
        await self.send(FetchHistory(user_id=self.user_id, friend_id=friend_id, page=page, limit=limit))

    async def typing(self, receiver_id: str, is_typing: bool, conversation_id: Optional[str] = None) -> None:
        event_cls = TypingStart if is_typing else TypingStop
        await self.send(event_cls(sender_id=self.user_id, receiver_id=receiver_id, conversation_id=conversation_id))

    async def send_friend_request(self, receiver: str) -> None:
        await self.send(SendFriendRequest(sender=self.user_id, receiver=receiver))

    async def respond_friend_request(self, request_id: str, accept: bool) -> None:
        event_cls = AcceptFriendRequest if accept else DeclineFriendRequest
        await self.send(event_cls(request_id=request_id, user_id=self.user_id))

    async def cancel_friend_request(self, receiver: str) -> None:
        await self.send(CancelFriendRequest(sender=self.user_id, receiver=receiver))

    async def remove_friend(self, friend_id: str) -> None:
        await self.send(RemoveFriend(user_id=self.user_id, friend_id=friend_id))

    async def send_notification(self, to_user: str, type: str, message: str,
                                action_data: Optional[Dict[str, Any]] = None) -> None:
        await self.send(SendNotification(to_user=to_user, from_user=self.user_id, type=type,
                                         message=message, action_data=action_data))

    async def mark_notification_read(self, notification_id: str) -> None:
        await self.send(MarkNotificationRead(user_id=self.user_id, notification_id=notification_id))
