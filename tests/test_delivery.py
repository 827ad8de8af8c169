import json

import pytest

from conftest import Harness, new_user
from shared.errors import InvalidArgument, NotFound, StorageFailure


@pytest.mark.asyncio
async def test_send_pushes_to_recipient_sessions_only(harness, alice, bob):
    alice_link = harness.connect(alice)
    bob_tab1 = harness.connect(bob)
    bob_tab2 = harness.connect(bob)

    message = await harness.delivery.send(alice, bob, "hello")

    for tab in (bob_tab1, bob_tab2):
        pushed = tab.websocket.frames("receive_message")
        assert len(pushed) == 1
        assert pushed[0]["data"]["id"] == message.id
        assert pushed[0]["data"]["message"] == "hello"
    # The sender's view comes from the return value, never from a push
    assert alice_link.websocket.frames() == []


@pytest.mark.asyncio
async def test_offline_recipient_still_gets_durable_message(harness, alice, bob):
    message = await harness.delivery.send(alice, bob, "hi")

    stored = harness.store.messages[message.id]
    assert stored.readers() == [alice]
    conversation = harness.store.conversations[stored.conversation]
    assert conversation.last_message == message.id
    assert conversation.last_activity >= message.created_at


@pytest.mark.asyncio
async def test_sent_message_appears_once_in_history(harness, alice, bob):
    sent = await harness.delivery.send(alice, bob, "hello")

    page = await harness.delivery.history(bob, alice)

    matching = [m for m in page.messages if m.id == sent.id]
    assert len(matching) == 1
    assert matching[0].text == "hello"
    assert matching[0].sender == alice
    assert bob not in matching[0].readers()


@pytest.mark.asyncio
async def test_history_pages_newest_first_oldest_within_page(alice, bob):
    harness = Harness(page_size=2)
    for i in range(5):
        await harness.delivery.send(alice, bob, f"m{i}")

    first = await harness.delivery.history(alice, bob, page=1)
    second = await harness.delivery.history(alice, bob, page=2)
    last = await harness.delivery.history(alice, bob, page=3)

    assert [m.text for m in first.messages] == ["m3", "m4"]
    assert first.has_more is True
    assert [m.text for m in second.messages] == ["m1", "m2"]
    assert [m.text for m in last.messages] == ["m0"]
    assert last.has_more is False


@pytest.mark.asyncio
async def test_history_without_conversation_is_empty_and_creates_nothing(harness, alice, bob):
    page = await harness.delivery.history(alice, bob)
    assert page.messages == [] and page.conversation_id is None and page.has_more is False
    assert harness.store.conversations == {}


@pytest.mark.asyncio
async def test_history_skips_deleted_messages(harness, alice, bob):
    keep = await harness.delivery.send(alice, bob, "keep")
    drop = await harness.delivery.send(alice, bob, "drop")
    harness.store.messages[drop.id].is_deleted = True

    page = await harness.delivery.history(alice, bob)
    assert [m.id for m in page.messages] == [keep.id]


@pytest.mark.asyncio
async def test_history_rejects_bad_paging(harness, alice, bob):
    with pytest.raises(InvalidArgument):
        await harness.delivery.history(alice, bob, page=0)
    with pytest.raises(InvalidArgument):
        await harness.delivery.history(alice, bob, limit=0)


@pytest.mark.asyncio
async def test_send_to_self_rejected_without_persistence(harness, alice):
    with pytest.raises(InvalidArgument):
        await harness.delivery.send(alice, alice, "x")
    assert harness.store.conversations == {}
    assert harness.store.messages == {}


@pytest.mark.asyncio
async def test_send_rejects_blank_text_and_bad_identity(harness, alice, bob):
    with pytest.raises(InvalidArgument):
        await harness.delivery.send(alice, bob, "   ")
    with pytest.raises(InvalidArgument):
        await harness.delivery.send("alice", bob, "hi")
    assert harness.store.messages == {}


@pytest.mark.asyncio
async def test_message_is_stored_before_push(harness, alice, bob):
    bob_link = harness.connect(bob)
    seen_in_store = []
    original_send = bob_link.websocket.send

    async def checking_send(data):
        message_id = json.loads(data)["data"]["id"]
        seen_in_store.append(message_id in harness.store.messages)
        await original_send(data)

    bob_link.websocket.send = checking_send

    await harness.delivery.send(alice, bob, "ordered")
    assert seen_in_store == [True]


@pytest.mark.asyncio
async def test_persistence_failure_aborts_without_push(harness, alice, bob, monkeypatch):
    bob_link = harness.connect(bob)

    async def broken(message):
        raise IOError("disk full")

    monkeypatch.setattr(harness.store, "create_message", broken)

    with pytest.raises(StorageFailure):
        await harness.delivery.send(alice, bob, "lost")
    assert bob_link.websocket.frames() == []


@pytest.mark.asyncio
async def test_stale_conversation_pointer_does_not_fail_send(harness, alice, bob, monkeypatch):
    async def broken(*args, **kwargs):
        raise IOError("timeout")

    monkeypatch.setattr(harness.store, "update_conversation_activity", broken)

    message = await harness.delivery.send(alice, bob, "still here")
    assert message.id in harness.store.messages


@pytest.mark.asyncio
async def test_push_failure_is_not_an_error(harness, alice, bob):
    broken_tab = harness.connect(bob, fail_sends=True)
    good_tab = harness.connect(bob)

    message = await harness.delivery.send(alice, bob, "hi")

    assert message.id in harness.store.messages
    assert broken_tab.websocket.frames() == []
    assert len(good_tab.websocket.frames("receive_message")) == 1


@pytest.mark.asyncio
async def test_mark_read_scenario(harness, alice, bob):
    message = await harness.delivery.send(alice, bob, "hi")
    alice_link = harness.connect(alice)

    result = await harness.delivery.mark_read(message.conversation, bob)

    assert result.updated == 1
    assert harness.store.messages[message.id].has_reader(bob)
    pushed = alice_link.websocket.frames("messages_read")
    assert len(pushed) == 1
    assert pushed[0]["data"] == {
        "conversationId": message.conversation,
        "readBy": bob,
        "readAt": result.read_at,
    }
    conversation = harness.store.conversations[message.conversation]
    assert conversation.participant(bob).last_read == result.read_at


@pytest.mark.asyncio
async def test_mark_read_is_idempotent(harness, alice, bob):
    await harness.delivery.send(alice, bob, "one")
    message = await harness.delivery.send(alice, bob, "two")
    await harness.delivery.send(bob, alice, "reply")
    alice_link = harness.connect(alice)

    await harness.delivery.mark_read(message.conversation, bob)
    receipts_once = {m.id: m.readers() for m in harness.store.messages.values()}
    again = await harness.delivery.mark_read(message.conversation, bob)
    receipts_twice = {m.id: m.readers() for m in harness.store.messages.values()}

    assert again.updated == 0
    assert receipts_once == receipts_twice
    # Bob's own reply is not receipted again, and nothing changed the second time so no second push
    assert len(alice_link.websocket.frames("messages_read")) == 1


@pytest.mark.asyncio
async def test_mark_read_errors(harness, alice, bob):
    message = await harness.delivery.send(alice, bob, "hi")

    with pytest.raises(NotFound):
        await harness.delivery.mark_read(new_user(), bob)
    with pytest.raises(InvalidArgument):
        await harness.delivery.mark_read(message.conversation, new_user())
    with pytest.raises(InvalidArgument):
        await harness.delivery.mark_read("nope", bob)


@pytest.mark.asyncio
async def test_typing_goes_to_receiver_only(harness, alice, bob):
    alice_link = harness.connect(alice)
    bob_link = harness.connect(bob)

    await harness.delivery.typing(alice, bob, True, conversation_id=None)
    await harness.delivery.typing(alice, bob, False)

    typing = bob_link.websocket.frames("user_typing")
    assert [f["data"]["isTyping"] for f in typing] == [True, False]
    assert typing[0]["data"]["userId"] == alice
    assert alice_link.websocket.frames() == []
