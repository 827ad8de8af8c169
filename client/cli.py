#!/usr/bin/env python3

from __future__ import annotations
import asyncio
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional

import typer
from aioconsole import ainput
from rich.console import Console
from rich.table import Table

from shared.config import load_settings
from shared.errors import RealtimeError
from shared.events import (
    Ack,
    Error,
    EventType,
    FriendRequestStatus,
    History,
    MessageError,
    MessageSent,
    MessagesRead,
    NewFriendRequest,
    NewNotification,
    NotificationRead,
    ReceiveMessage,
    UserOffline,
    UserOnline,
    UserTyping,
)
from shared.log import get_logger
from shared.utils import is_identity, new_id
from .reconciliation import ConversationView, Outcome
from .state import NotificationInbox, Presence
from .ws_client import CONNECTED, RECONNECTION_FAILED, STATE_CHANGED, ClientConnector

app = typer.Typer(help="Realtime messaging client CLI")
console = Console()
logger = get_logger(__name__)

HELP = (
    "/open <user>, /compose, /history [page], /read, /online, /inbox, "
    "/friend add|accept|decline|cancel|remove <id>, /notify <user> <type> <text>, /quit"
)


class ClientApp:
    """Wires connector events into presence, inbox and the open conversation view."""

    def __init__(self, connector: ClientConnector, typing_timeout: float,
                 read_line: Callable[[str], Awaitable[str]] = ainput):
        self.connector = connector
        self.read_line = read_line
        self.typing_timeout = typing_timeout
        self.presence = Presence()
        self.inbox = NotificationInbox()
        self.views: Dict[str, ConversationView] = {}
        self.current: Optional[ConversationView] = None

        connector.on(STATE_CHANGED, lambda state: console.print(f"[dim]connection {state.value}[/]"))
        connector.on(CONNECTED, self._on_connected)
        connector.on(RECONNECTION_FAILED, lambda data: console.print(
            f"[red]Could not reach server after {data['attempts']} attempts. Use /reconnect.[/]"))
        for event in (EventType.RECEIVE_MESSAGE, EventType.MESSAGE_SENT, EventType.MESSAGE_ERROR,
                      EventType.MESSAGES_READ, EventType.USER_TYPING, EventType.HISTORY):
            connector.on(event.value, self._on_conversation_event)
        for event in (EventType.USER_ONLINE, EventType.USER_OFFLINE):
            connector.on(event.value, self._on_presence)
        for event in (EventType.NEW_NOTIFICATION, EventType.NEW_FRIEND_REQUEST,
                      EventType.FRIEND_REQUEST_STATUS, EventType.NOTIFICATION_READ):
            connector.on(event.value, self._on_inbox)
        connector.on(EventType.ACK.value, self._on_ack)
        connector.on(EventType.ERROR.value, self._on_error)

    def view_for(self, friend_id: str) -> ConversationView:
        view = self.views.get(friend_id)
        if view is None:
            view = ConversationView(self.connector.user_id, friend_id, typing_timeout=self.typing_timeout)
            self.views[friend_id] = view
        return view

    async def _on_connected(self, _data) -> None:
        console.print(f"[bold green]Connected[/] as {self.connector.user_id[:8]}")
        # History is authoritative; re-sync whatever is open after every (re)connect
        if self.current is not None:
            await self.connector.fetch_history(self.current.counterpart_id)

    def _on_conversation_event(self, event) -> None:
        if isinstance(event, (ReceiveMessage, UserTyping)):
            friend = event.message.get("sender") if isinstance(event, ReceiveMessage) else event.user_id
            view = self.view_for(friend)
        elif isinstance(event, History):
            view = self.view_for(event.friend_id)
        else:
            view = next((v for v in self.views.values() if v.apply(event) is not Outcome.IGNORED), None)
            if view is not None:
                self._render_update(view, event)
            return
        outcome = view.apply(event)
        if outcome is not Outcome.IGNORED:
            self._render_update(view, event, outcome)

    def _render_update(self, view: ConversationView, event, outcome: Optional[Outcome] = None) -> None:
        who = view.counterpart_id[:8]
        if isinstance(event, ReceiveMessage) and outcome is Outcome.APPENDED:
            console.print(f"[bold cyan]{who}[/]: {event.message.get('message')}")
        elif isinstance(event, MessageSent):
            console.print(f"[dim]sent to {who}[/]")
        elif isinstance(event, MessageError):
            console.print(f"[red]Send to {who} failed ({event.code}): {event.detail}[/]")
            restored = view.restore_text()
            if restored:
                console.print(f"[yellow]Unsent text:[/] {restored}")
        elif isinstance(event, MessagesRead):
            console.print(f"[dim]{who} read your messages[/]")
        elif isinstance(event, UserTyping) and view is self.current:
            console.print(f"[dim]{who} is typing...[/]" if view.typing_active() else f"[dim]{who} stopped typing[/]")
        elif isinstance(event, History):
            self._print_history(view)

    def _print_history(self, view: ConversationView) -> None:
        table = Table(title=f"Conversation with {view.counterpart_id[:8]}")
        table.add_column("From")
        table.add_column("Message")
        table.add_column("Read")
        for m in view.messages:
            sender = "me" if m.get("sender") == view.self_id else m.get("sender", "")[:8]
            read = "yes" if any(r.get("user") != m.get("sender") for r in m.get("readBy", [])) else ""
            table.add_row(sender, m.get("message", ""), read)
        console.print(table)
        if view.has_more:
            console.print(f"[dim]older messages: /history {view.oldest_page_loaded + 1}[/]")

    def _on_presence(self, event) -> None:
        self.presence.apply(event)
        if isinstance(event, UserOnline):
            console.print(f"[green]{event.user_id[:8]} online[/]")
        elif isinstance(event, UserOffline):
            console.print(f"[dim]{event.user_id[:8]} offline[/]")

    def _on_inbox(self, event) -> None:
        item = self.inbox.apply(event)
        if item is None or isinstance(event, NotificationRead):
            return
        if isinstance(event, NewFriendRequest):
            console.print(f"[bold magenta]Friend request[/] {event.message} (id {event.request_id})")
        elif isinstance(event, FriendRequestStatus):
            console.print(f"[bold magenta]{event.message}[/]")
        elif isinstance(event, NewNotification):
            console.print(f"[bold yellow]{event.type}[/]: {event.message}")

    def _on_ack(self, event: Ack) -> None:
        if event.ref == EventType.JOIN.value and event.result:
            self.presence.seed(event.result.get("onlineUsers", []))
            return
        console.print(f"[dim]ok {event.ref} {event.result or ''}[/]")

    def _on_error(self, event: Error) -> None:
        console.print(f"[red]ERROR {event.code}[/]: {event.detail}")

    async def handle_line(self, line: str) -> bool:
        """Returns False when the user asked to quit."""
        if line in {"/quit", "/exit"}:
            return False
        if line == "/help":
            console.print(HELP)
        elif line == "/online":
            table = Table(title="Online Users")
            table.add_column("User ID")
            for u in self.presence.list_sorted():
                table.add_row(u)
            console.print(table)
        elif line == "/inbox":
            table = Table(title=f"Inbox ({self.inbox.unread_count()} unread)")
            table.add_column("Id")
            table.add_column("Type")
            table.add_column("Message")
            for item in self.inbox.unread():
                table.add_row(item.id[:8], item.type, item.message)
            console.print(table)
        elif line == "/reconnect":
            await self.connector.connect()
        elif line.startswith("/open "):
            friend = line.split(" ", 1)[1].strip()
            if not is_identity(friend):
                console.print("Usage: /open <user id>")
                return True
            self.current = self.view_for(friend)
            await self.connector.fetch_history(friend)
        elif line.startswith("/history"):
            if self.current is None:
                console.print("Open a conversation first: /open <user>")
                return True
            parts = line.split()
            page = int(parts[1]) if len(parts) > 1 and parts[1].isdigit() else 1
            await self.connector.fetch_history(self.current.counterpart_id, page=page)
        elif line == "/read":
            if self.current is None or self.current.conversation_id is None:
                console.print("Nothing to mark read")
                return True
            await self.connector.mark_messages_read(self.current.conversation_id)
        elif line == "/compose":
            await self._compose()
        elif line.startswith("/friend "):
            await self._friend_command(line.split()[1:])
        elif line.startswith("/notify "):
            parts = line.split(" ", 3)
            if len(parts) < 4:
                console.print("Usage: /notify <user> <type> <text>")
                return True
            await self.connector.send_notification(parts[1], parts[2], parts[3])
        elif line.startswith("/"):
            console.print(f"Unknown command. {HELP}")
        else:
            await self._send_text(line)
        return True

    async def _friend_command(self, args) -> None:
        if len(args) != 2:
            console.print("Usage: /friend add|accept|decline|cancel|remove <id>")
            return
        action, target = args
        if action == "add":
            await self.connector.send_friend_request(target)
        elif action in {"accept", "decline"}:
            await self.connector.respond_friend_request(target, accept=action == "accept")
            self.inbox.resolve_request(target)
        elif action == "cancel":
            await self.connector.cancel_friend_request(target)
        elif action == "remove":
            await self.connector.remove_friend(target)
        else:
            console.print("Usage: /friend add|accept|decline|cancel|remove <id>")

    async def _compose(self) -> None:
        """Multi-line message; the counterpart sees a typing hint until it is sent or abandoned."""
        if self.current is None:
            console.print("Open a conversation first: /open <user>")
            return
        friend = self.current.counterpart_id
        console.print("[dim]Compose; end with a line containing only '.', or '/cancel'[/]")
        await self.connector.typing(friend, True, self.current.conversation_id)
        lines = []
        try:
            while True:
                line = await self.read_line("... ")
                if line.strip() in {".", "/cancel"}:
                    break
                lines.append(line)
        finally:
            await self.connector.typing(friend, False, self.current.conversation_id)
        if line.strip() == "." and "\n".join(lines).strip():
            await self._send_text("\n".join(lines))

    async def _send_text(self, text: str) -> None:
        if self.current is None:
            console.print("Open a conversation first: /open <user>")
            return
        temp_id = self.current.begin_send(text)
        try:
            await self.connector.send_message(self.current.counterpart_id, text, temp_id=temp_id)
        except RealtimeError as e:
            self.current.apply(MessageError(code=e.code, detail=e.detail, temp_id=temp_id, message=text))
            console.print(f"[red]Not sent ({e.detail}).[/] Unsent text: {self.current.restore_text()}")


@app.command()
def run(
    user_id: Optional[str] = typer.Option(None, help="User identity (UUIDv4 or 24-hex id); generated if omitted"),
    server: Optional[str] = typer.Option(None, help="WebSocket URL of the realtime server"),
    config: Optional[Path] = typer.Option(None, help="YAML settings file"),
):
    """Start the interactive client loop."""
    settings = load_settings(config)
    uid = user_id or new_id()
    if not is_identity(uid):
        console.print("[red]user id must be a UUIDv4 or a 24-hex id[/]")
        raise typer.Exit(code=2)

    async def main_loop() -> None:
        connector = ClientConnector.from_settings(settings, uid)
        if server:
            connector.url = server
        client = ClientApp(connector, settings.typing_timeout)
        console.print(f"[bold green]Realtime client starting[/] as {uid} on {connector.url}")
        await connector.connect()
        try:
            while True:
                line = (await client.read_line(": ")).strip()
                if not line:
                    continue
                try:
                    if not await client.handle_line(line):
                        break
                except RealtimeError as e:
                    console.print(f"[red]{e.code}[/]: {e.detail}")
        finally:
            await connector.close()

    asyncio.run(main_loop())


def main():
    """Main entry point"""
    app()


if __name__ == "__main__":
    main()
