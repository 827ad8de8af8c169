import asyncio
import json

import pytest

from conftest import DummyWebSocket, new_user, wait_for
from server.server import RealtimeServer
from server.session import SessionLink, SessionState
from server.storage import InMemoryStore
from shared.config import Settings


def _frame(event, data):
    return json.dumps({"event": event, "data": data})


@pytest.fixture
def server():
    return RealtimeServer(Settings(join_timeout=0.2), storage=InMemoryStore())


async def _joined(server, user_id):
    link = SessionLink(DummyWebSocket())
    await server.process_message(link, _frame("join", {"userId": user_id}))
    return link


@pytest.mark.asyncio
async def test_join_is_acked_with_online_users(server):
    alice, bob = new_user(), new_user()
    a = await _joined(server, alice)
    b = await _joined(server, bob)

    ack = b.websocket.frames("ack")[0]
    assert ack["data"]["ref"] == "join"
    assert ack["data"]["result"]["userId"] == bob
    assert ack["data"]["result"]["onlineUsers"] == [alice]
    assert [f["data"]["userId"] for f in a.websocket.frames("user_online")] == [bob]
    assert b.websocket.frames("user_online") == []


@pytest.mark.asyncio
async def test_pre_join_frames_are_dropped_silently(server):
    link = SessionLink(DummyWebSocket())

    await server.process_message(link, _frame("send_message", {"sender": new_user(), "receiver": new_user(),
                                                               "message": "early"}))
    await server.process_message(link, "{not json")
    await server.process_message(link, b"\xff\xfe")
    await server.process_message(link, _frame("poke", {}))

    assert link.websocket.sent_messages == []
    assert link.state is SessionState.CONNECTING


@pytest.mark.asyncio
async def test_invalid_join_identity_is_reported(server):
    link = SessionLink(DummyWebSocket())
    await server.process_message(link, _frame("join", {"userId": "not-an-id"}))

    error = link.websocket.frames("error")[0]["data"]
    assert error["code"] == "INVALID_ARGUMENT"
    assert error["ref"] == "join"
    assert not link.joined


@pytest.mark.asyncio
async def test_unknown_and_server_only_events_after_join(server):
    link = await _joined(server, new_user())

    await server.process_message(link, _frame("poke", {}))
    await server.process_message(link, _frame("user_online", {"userId": new_user(), "lastSeen": 1}))

    errors = [f["data"] for f in link.websocket.frames("error")]
    assert [(e["code"], e["ref"]) for e in errors] == [("UNKNOWN_EVENT", "poke"), ("UNKNOWN_EVENT", "user_online")]


@pytest.mark.asyncio
async def test_send_message_replies_to_sender_and_pushes_to_recipient(server):
    alice, bob = new_user(), new_user()
    a = await _joined(server, alice)
    b = await _joined(server, bob)

    await server.process_message(a, _frame("send_message", {"sender": alice, "receiver": bob,
                                                            "message": "hello", "tempId": "t-1"}))

    sent = a.websocket.frames("message_sent")[0]["data"]
    assert sent["tempId"] == "t-1"
    assert sent["message"]["message"] == "hello"
    pushed = b.websocket.frames("receive_message")[0]["data"]
    assert pushed["id"] == sent["message"]["id"]
    assert a.websocket.frames("receive_message") == []


@pytest.mark.asyncio
async def test_sender_must_match_joined_identity(server):
    alice = new_user()
    a = await _joined(server, alice)

    await server.process_message(a, _frame("send_message", {"sender": new_user(), "receiver": alice,
                                                            "message": "spoof", "tempId": "t-2"}))

    error = a.websocket.frames("message_error")[0]["data"]
    assert error["code"] == "INVALID_ARGUMENT"
    assert error["tempId"] == "t-2"
    assert error["message"] == "spoof"
    assert server.storage.messages == {}


@pytest.mark.asyncio
async def test_unexpected_failure_is_reported_as_internal(server, monkeypatch):
    alice = new_user()
    a = await _joined(server, alice)

    async def explode(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(server.delivery, "send", explode)
    await server.process_message(a, _frame("send_message", {"sender": alice, "receiver": new_user(),
                                                            "message": "x", "tempId": "t-3"}))

    error = a.websocket.frames("message_error")[0]["data"]
    assert error["code"] == "INTERNAL"
    assert "boom" not in error["detail"]


@pytest.mark.asyncio
async def test_domain_errors_carry_the_originating_event(server):
    alice = new_user()
    a = await _joined(server, alice)

    await server.process_message(a, _frame("mark_notification_read", {"userId": alice,
                                                                      "notificationId": new_user()}))

    error = a.websocket.frames("error")[0]["data"]
    assert error["code"] == "NOT_FOUND"
    assert error["ref"] == "mark_notification_read"


@pytest.mark.asyncio
async def test_friend_request_is_acked(server):
    alice, bob = new_user(), new_user()
    a = await _joined(server, alice)
    b = await _joined(server, bob)

    await server.process_message(a, _frame("send_friend_request", {"sender": alice, "receiver": bob}))

    ack = a.websocket.frames("ack")[-1]["data"]
    assert ack["ref"] == "send_friend_request"
    assert ack["result"]["status"] == "sent"
    assert b.websocket.frames("new_friend_request")[0]["data"]["requestId"] == ack["result"]["requestId"]


@pytest.mark.asyncio
async def test_session_without_join_is_closed(server):
    websocket = DummyWebSocket()

    await server.handle_connection(websocket)

    assert websocket.closed
    assert websocket.close_code == 1008
    assert server.sessions == set()


@pytest.mark.asyncio
async def test_session_lifecycle_through_handle_connection(server):
    alice, bob = new_user(), new_user()
    watcher = await _joined(server, bob)
    websocket = DummyWebSocket()
    websocket.feed({"event": "join", "data": {"userId": alice}})

    task = asyncio.create_task(server.handle_connection(websocket))
    assert await wait_for(lambda: server.presence.is_online(alice))
    assert server.get_status()["session_count"] == 1

    websocket.feed(None)
    await task
    await server.lifecycle.drain()

    assert not server.presence.is_online(alice)
    assert websocket.close_code == 1000
    assert [f["data"]["userId"] for f in watcher.websocket.frames("user_offline")] == [alice]
    assert (await server.storage.get_user(alice)).status == "offline"


@pytest.mark.asyncio
async def test_undecodable_frame_does_not_end_the_session(server):
    alice = new_user()
    websocket = DummyWebSocket()
    websocket.feed({"event": "join", "data": {"userId": alice}})
    task = asyncio.create_task(server.handle_connection(websocket))
    assert await wait_for(lambda: server.presence.is_online(alice))

    websocket.feed(b"\xff\xfe")
    websocket.feed(json.dumps({"event": "poke", "data": {}}).encode("utf-8"))

    assert await wait_for(lambda: len(websocket.frames("error")) == 2)
    codes = [f["data"]["code"] for f in websocket.frames("error")]
    assert codes == ["INVALID_ARGUMENT", "UNKNOWN_EVENT"]
    assert server.presence.is_online(alice)
    assert not websocket.closed

    websocket.feed(None)
    await task


@pytest.mark.asyncio
async def test_status_snapshot(server):
    alice = new_user()
    await _joined(server, alice)

    status = server.get_status()

    assert status["online_users"] == [alice]
    assert status["joined_sessions"] == 1
    assert status["settings"]["join_timeout"] == 0.2
    assert "storage" in status
