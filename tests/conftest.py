import asyncio
import json
import sys
import uuid
from pathlib import Path
from typing import Any, Callable, List, Optional

import pytest
from websockets.exceptions import ConnectionClosed

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from server.conversations import ConversationResolver
from server.delivery import MessageDeliveryPipeline
from server.fanout import EventFanout
from server.lifecycle import ConnectionLifecycleManager
from server.presence import PresenceRegistry
from server.session import SessionLink, SessionState
from server.social import SocialEventRouter
from server.storage import InMemoryStore


class DummyWebSocket:
    """Records outbound frames; inbound frames are fed through a queue."""

    def __init__(self, *, fail_sends: bool = False) -> None:
        self.sent_messages: List[str] = []
        self.closed = False
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self.fail_sends = fail_sends
        self.remote_address = ("127.0.0.1", 0)
        self._inbound: "asyncio.Queue[Optional[str]]" = asyncio.Queue()

    async def send(self, data: str) -> None:
        if self.fail_sends or self.closed:
            raise ConnectionClosed(None, None)
        self.sent_messages.append(data)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        self.closed = True
        self.close_code = code
        self.close_reason = reason

    def feed(self, frame: Optional[Any]) -> None:
        """Queue an inbound frame (dict or raw str); None simulates the peer closing."""
        if isinstance(frame, dict):
            frame = json.dumps(frame)
        self._inbound.put_nowait(frame)

    async def recv(self) -> str:
        item = await self._inbound.get()
        if item is None:
            raise ConnectionClosed(None, None)
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self._inbound.get()
        if item is None:
            raise StopAsyncIteration
        return item

    def frames(self, event: Optional[str] = None) -> List[dict]:
        decoded = [json.loads(m) for m in self.sent_messages]
        if event is None:
            return decoded
        return [f for f in decoded if f["event"] == event]


async def wait_for(predicate: Callable[[], bool], timeout: float = 1.0, interval: float = 0.01) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


def new_user() -> str:
    return str(uuid.uuid4())


def joined_link(presence: PresenceRegistry, user_id: str, *, fail_sends: bool = False) -> SessionLink:
    """A session registered directly in presence, bypassing the lifecycle manager."""
    link = SessionLink(DummyWebSocket(fail_sends=fail_sends))
    link.user_id = user_id
    link.state = SessionState.JOINED
    presence.register(user_id, link)
    return link


class Harness:
    """All server components over one in-memory store."""

    def __init__(self, *, latency: float = 0.0, unique_direct_pairs: bool = False,
                 notify_on_decline: bool = False, page_size: int = 50):
        self.store = InMemoryStore(latency=latency, unique_direct_pairs=unique_direct_pairs)
        self.presence = PresenceRegistry()
        self.fanout = EventFanout(self.presence)
        self.resolver = ConversationResolver(self.store)
        self.delivery = MessageDeliveryPipeline(self.store, self.resolver, self.fanout, page_size=page_size)
        self.social = SocialEventRouter(self.store, self.store, self.store, self.fanout,
                                        notify_on_decline=notify_on_decline)
        self.lifecycle = ConnectionLifecycleManager(self.presence, self.store, self.fanout)

    def connect(self, user_id: str, **kwargs: Any) -> SessionLink:
        return joined_link(self.presence, user_id, **kwargs)


@pytest.fixture
def harness() -> Harness:
    return Harness()


@pytest.fixture
def alice() -> str:
    return new_user()


@pytest.fixture
def bob() -> str:
    return new_user()
