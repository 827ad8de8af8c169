#!/usr/bin/env python3

from __future__ import annotations
import asyncio
from contextlib import suppress
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Optional, Set, Union

import typer
import websockets
from websockets.exceptions import ConnectionClosed

from server.conversations import ConversationResolver
from server.delivery import MessageDeliveryPipeline
from server.fanout import EventFanout
from server.handlers import EVENT_HANDLER_REGISTRY
from server.lifecycle import ConnectionLifecycleManager
from server.presence import PresenceRegistry
from server.session import SessionLink
from server.social import SocialEventRouter
from server.storage import InMemoryStore, JSONFileStore
from shared.config import Settings, load_settings
from shared.errors import InvalidArgument, RealtimeError
from shared.events import (
    CLIENT_EVENTS,
    Ack,
    EventType,
    Frame,
    Join,
    MessageError,
    SendMessage,
    parse_client_event,
)
from shared.log import configure_root_logging, get_logger, log_event

logger = get_logger(__name__)


class RealtimeServer:
    """
    Single-process realtime router: presence, message delivery and social fan-out.

    Each connected session is an independent task. Events from one session are
    processed strictly in arrival order; the presence registry is the only
    shared mutable state and is touched only through the lifecycle manager.
    """

    def __init__(self, settings: Optional[Settings] = None, storage: Optional[InMemoryStore] = None):
        self.settings = settings or Settings()

        if storage is None:
            storage_path = self.settings.resolved_storage_path()
            if storage_path is not None:
                storage = JSONFileStore(storage_path, unique_direct_pairs=self.settings.unique_direct_pairs)
            else:
                storage = InMemoryStore(unique_direct_pairs=self.settings.unique_direct_pairs)
        self.storage = storage

        self.presence = PresenceRegistry()
        self.fanout = EventFanout(self.presence)
        self.resolver = ConversationResolver(storage)
        self.delivery = MessageDeliveryPipeline(
            storage, self.resolver, self.fanout,
            page_size=self.settings.history_page_size,
            max_page_size=self.settings.max_history_page_size,
        )
        self.social = SocialEventRouter(
            storage, storage, storage, self.fanout,
            notify_on_decline=self.settings.notify_on_decline,
        )
        self.lifecycle = ConnectionLifecycleManager(self.presence, storage, self.fanout)

        self.sessions: Set[SessionLink] = set()
        self._ws_server: Optional[Any] = None
        logger.info(f"Initialized realtime server for {self.settings.host}:{self.settings.port}")

    # ========================================
    #           SERVER LIFECYCLE
    # ========================================

    async def start(self) -> int:
        """Bind the listening socket. Returns the bound port (useful with port 0)."""
        self._ws_server = await websockets.serve(
            self.handle_connection,
            self.settings.host,
            self.settings.port,
            ping_interval=self.settings.ping_interval,
            ping_timeout=self.settings.ping_timeout,
        )
        port = self.bound_port
        logger.info(f"Realtime server listening on ws://{self.settings.host}:{port}")
        return port

    @property
    def bound_port(self) -> Optional[int]:
        if self._ws_server is None:
            return None
        for sock in self._ws_server.sockets:
            return sock.getsockname()[1]
        return None

    async def stop(self) -> None:
        """Close every session, then wait for outstanding status writes."""
        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None
        await self.lifecycle.drain()
        logger.info("Realtime server stopped")

    async def start_server(self) -> None:
        """Start the WebSocket server and run until cancelled"""
        await self.start()
        try:
            await asyncio.Future()  # Run forever
        except asyncio.CancelledError:
            logger.info("Server task cancelled")
            raise
        finally:
            with suppress(Exception):
                await self.stop()

    # ========================================
    #           SESSIONS
    # ========================================

    async def handle_connection(self, websocket: Any) -> None:
        """
        Handle one client session.

        The client must send join first; anything else before that is dropped.
        A session that has not joined within join_timeout is closed.
        """
        link = SessionLink(websocket)
        self.sessions.add(link)
        logger.info(f"New session {link.session_id} from {getattr(websocket, 'remote_address', None)}")

        close_code, close_reason = 1000, None
        try:
            if not await self._await_join(link):
                close_code, close_reason = 1008, "join timeout"
                logger.info(f"Session {link.session_id} did not join in time")
                return

            async for message in websocket:
                await self.process_message(link, message)

        except ConnectionClosed:
            logger.info(f"Session {link.session_id} closed")
        except Exception as e:
            logger.error(f"Error handling session {link.session_id}: {e}")
        finally:
            await self.cleanup_connection(link, close_code=close_code, close_reason=close_reason)

    async def _await_join(self, link: SessionLink) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.join_timeout
        while not link.joined:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            try:
                message = await asyncio.wait_for(link.websocket.recv(), timeout=remaining)
            except asyncio.TimeoutError:
                return False
            await self.process_message(link, message)
        return True

    async def process_message(self, link: SessionLink, message: Union[str, bytes]) -> None:
        """Parse one frame and dispatch it. Never raises."""
        frame: Optional[Frame] = None
        payload = None
        try:
            if isinstance(message, bytes):
                try:
                    message = message.decode("utf-8")
                except UnicodeDecodeError as e:
                    raise InvalidArgument(f"Frame is not valid UTF-8: {e.reason}")
            frame = Frame.from_json(message)
            if not EventType.is_valid(frame.event) or EventType(frame.event) not in CLIENT_EVENTS:
                if link.joined:
                    await link.on_error_unknown_event(f"Unknown event: {frame.event}", ref=frame.event)
                return

            if frame.event != EventType.JOIN.value and not link.joined:
                log_event(logger, "debug", "Dropping pre-join event", frame=frame, session_id=link.session_id)
                return

            payload = parse_client_event(frame)
            if isinstance(payload, Join):
                await self.handle_join(link, payload)
                return

            handler = EVENT_HANDLER_REGISTRY[payload.event]
            log_event(logger, "debug", "Dispatching", frame=frame,
                      user_id=link.user_id, session_id=link.session_id)
            await handler(self, link, payload)

        except RealtimeError as e:
            if not link.joined and (frame is None or frame.event != EventType.JOIN.value):
                logger.debug(f"Dropping malformed pre-join frame on session {link.session_id}")
                return
            log_event(logger, "info", f"{e.code}: {e.detail}",
                      user_id=link.user_id, session_id=link.session_id, event=e.ref)
            await self._report(link, payload, e.code, e.detail, e.ref)
        except Exception as e:
            logger.exception(f"Unexpected error in session {link.session_id}: {e}")
            await self._report(link, payload, "INTERNAL", "Internal server error", None)

    async def _report(self, link: SessionLink, payload: Any, code: str, detail: str, ref: Optional[str]) -> None:
        if isinstance(payload, SendMessage):
            # Lets the client mark the pending bubble failed and restore the text
            try:
                await link.send_event(MessageError(
                    code=code, detail=detail, temp_id=payload.temp_id, message=payload.message,
                ))
            except RealtimeError as e:
                logger.warning(f"Could not report send failure to session {link.session_id}: {e.detail}")
            return
        if payload is not None and ref is None:
            ref = payload.event.value
        await link.send_error(code, detail, ref=ref)

    async def handle_join(self, link: SessionLink, payload: Join) -> None:
        await self.lifecycle.join(link, payload.user_id)
        try:
            await link.send_event(Ack(ref=EventType.JOIN.value, result={
                "userId": payload.user_id,
                "sessionId": link.session_id,
                "onlineUsers": [u for u in self.presence.online_users() if u != payload.user_id],
            }))
        except RealtimeError as e:
            logger.warning(f"Join ack lost for session {link.session_id}: {e.detail}")

    async def cleanup_connection(
        self,
        link: SessionLink,
        *,
        close_code: int = 1000,
        close_reason: Optional[str] = None,
    ) -> None:
        """Clean up when a session closes"""
        await self.lifecycle.disconnect(link)
        self.sessions.discard(link)
        await link.close(code=close_code, reason=close_reason)

    def get_status(self) -> Dict[str, Any]:
        """Expose internal status for health/diagnostics."""
        stats = self.storage.get_storage_stats() if hasattr(self.storage, "get_storage_stats") else {}
        return {
            "host": self.settings.host,
            "port": self.bound_port or self.settings.port,
            "online_users": self.presence.online_users(),
            "session_count": len(self.sessions),
            "joined_sessions": self.presence.session_count(),
            "pending_status_writes": self.lifecycle.pending_writes(),
            "storage": stats,
            "settings": asdict(self.settings),
        }


app = typer.Typer(help="Realtime presence and messaging server")


@app.command()
def serve(
    config: Optional[Path] = typer.Option(None, help="YAML settings file"),
    host: Optional[str] = typer.Option(None, help="Interface to bind"),
    port: Optional[int] = typer.Option(None, help="Port to listen on"),
    storage_path: Optional[str] = typer.Option(None, help="Directory for JSON storage; in-memory if omitted"),
    notify_on_decline: Optional[bool] = typer.Option(None, help="Tell senders when their friend request is declined"),
    log_level: str = typer.Option("INFO", help="Root log level"),
):
    """Run the realtime server until interrupted."""
    configure_root_logging(log_level)
    settings = load_settings(config).with_overrides(
        host=host, port=port, storage_path=storage_path, notify_on_decline=notify_on_decline,
    )
    server = RealtimeServer(settings)
    try:
        asyncio.run(server.start_server())
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down")


def main():
    """Main entry point"""
    app()


if __name__ == "__main__":
    main()
