import pytest

from conftest import Harness, new_user
from server.models import FriendRequest, UserRecord
from shared.errors import Conflict, InvalidArgument, NotFound


@pytest.mark.asyncio
async def test_friend_request_persists_and_pushes(harness, alice, bob):
    harness.store.add_user(UserRecord(id=alice, username="alice", display_name="Alice"))
    bob_link = harness.connect(bob)

    request = await harness.social.send_friend_request(alice, bob)

    assert harness.store.friend_requests[request.id].status == "pending"
    notifications = await harness.store.list_notifications(bob)
    assert [n.type for n in notifications] == ["friend_request"]
    assert notifications[0].sender == alice

    pushed = bob_link.websocket.frames("new_friend_request")
    assert len(pushed) == 1
    data = pushed[0]["data"]
    assert data["requestId"] == request.id
    assert data["fromUser"]["displayName"] == "Alice"
    assert data["type"] == "friend_request" and data["isRead"] is False


@pytest.mark.asyncio
async def test_friend_request_to_self_has_no_side_effect(harness, alice):
    with pytest.raises(InvalidArgument):
        await harness.social.send_friend_request(alice, alice)
    assert harness.store.friend_requests == {}
    assert harness.store.notifications == {}


@pytest.mark.asyncio
async def test_reverse_pending_request_conflicts(harness, alice, bob):
    await harness.social.send_friend_request(bob, alice)

    with pytest.raises(Conflict) as excinfo:
        await harness.social.send_friend_request(alice, bob)

    assert "already sent you" in excinfo.value.detail
    assert len(harness.store.friend_requests) == 1


@pytest.mark.asyncio
async def test_duplicate_request_and_existing_friends_conflict(harness, alice, bob):
    await harness.social.send_friend_request(alice, bob)
    with pytest.raises(Conflict):
        await harness.social.send_friend_request(alice, bob)

    await harness.store.add_friend(alice, bob)
    await harness.store.add_friend(bob, alice)
    carol = new_user()
    await harness.store.add_friend(alice, carol)
    with pytest.raises(Conflict) as excinfo:
        await harness.social.send_friend_request(alice, carol)
    assert excinfo.value.detail == "Already friends"


@pytest.mark.asyncio
async def test_accept_links_both_sides_and_notifies_sender(harness, alice, bob):
    harness.store.add_user(UserRecord(id=bob, display_name="Bob"))
    request = await harness.social.send_friend_request(alice, bob)
    alice_link = harness.connect(alice)

    await harness.social.accept_friend_request(request.id, bob)

    assert await harness.store.are_friends(alice, bob)
    assert await harness.store.are_friends(bob, alice)
    assert request.id not in harness.store.friend_requests

    accept_notes = [n for n in await harness.store.list_notifications(alice) if n.type == "friend_accept"]
    assert len(accept_notes) == 1
    # The request's own notification record stays behind for the receiver
    assert [n.type for n in await harness.store.list_notifications(bob)] == ["friend_request"]

    status = alice_link.websocket.frames("friend_request_status")
    assert len(status) == 1
    assert status[0]["data"]["type"] == "friend_accept"
    assert status[0]["data"]["fromUser"]["displayName"] == "Bob"


@pytest.mark.asyncio
async def test_accept_when_one_side_already_lists_the_other(harness, alice, bob):
    # A half-written friendship from an earlier partial failure
    await harness.store.add_friend(alice, bob)
    request = await harness.store.create_friend_request(FriendRequest(id=new_user(), sender=alice, receiver=bob))

    await harness.social.accept_friend_request(request.id, bob)

    assert (await harness.store.get_user(alice)).friends == {bob}
    assert (await harness.store.get_user(bob)).friends == {alice}


@pytest.mark.asyncio
async def test_only_receiver_may_answer(harness, alice, bob):
    request = await harness.social.send_friend_request(alice, bob)

    with pytest.raises(InvalidArgument):
        await harness.social.accept_friend_request(request.id, alice)
    with pytest.raises(InvalidArgument):
        await harness.social.decline_friend_request(request.id, new_user())
    assert request.id in harness.store.friend_requests


@pytest.mark.asyncio
async def test_accept_unknown_request_is_not_found(harness, bob):
    with pytest.raises(NotFound):
        await harness.social.accept_friend_request(new_user(), bob)


@pytest.mark.asyncio
async def test_decline_is_silent_by_default(harness, alice, bob):
    request = await harness.social.send_friend_request(alice, bob)
    alice_link = harness.connect(alice)

    await harness.social.decline_friend_request(request.id, bob)

    assert harness.store.friend_requests == {}
    assert alice_link.websocket.frames() == []
    assert await harness.store.list_notifications(alice) == []


@pytest.mark.asyncio
async def test_decline_can_notify_sender():
    harness = Harness(notify_on_decline=True)
    alice, bob = new_user(), new_user()
    request = await harness.social.send_friend_request(alice, bob)
    alice_link = harness.connect(alice)

    await harness.social.decline_friend_request(request.id, bob)

    status = alice_link.websocket.frames("friend_request_status")
    assert [s["data"]["type"] for s in status] == ["friend_reject"]
    assert [n.type for n in await harness.store.list_notifications(alice)] == ["friend_reject"]


@pytest.mark.asyncio
async def test_cancel_removes_pending_request_without_push(harness, alice, bob):
    bob_link = harness.connect(bob)
    await harness.social.send_friend_request(alice, bob)
    pushes_before = len(bob_link.websocket.frames())

    await harness.social.cancel_friend_request(alice, bob)

    assert harness.store.friend_requests == {}
    assert len(bob_link.websocket.frames()) == pushes_before
    with pytest.raises(NotFound):
        await harness.social.cancel_friend_request(alice, bob)


@pytest.mark.asyncio
async def test_remove_friend_is_symmetric(harness, alice, bob):
    request = await harness.social.send_friend_request(alice, bob)
    await harness.social.accept_friend_request(request.id, bob)

    await harness.social.remove_friend(bob, alice)

    assert not await harness.store.are_friends(alice, bob)
    assert not await harness.store.are_friends(bob, alice)


@pytest.mark.asyncio
async def test_friendship_status_transitions(harness, alice, bob):
    assert await harness.social.friendship_status(alice, bob) == "none"

    request = await harness.social.send_friend_request(alice, bob)
    assert await harness.social.friendship_status(alice, bob) == "sent"
    assert await harness.social.friendship_status(bob, alice) == "received"

    await harness.social.accept_friend_request(request.id, bob)
    assert await harness.social.friendship_status(bob, alice) == "friends"


@pytest.mark.asyncio
async def test_generic_notification(harness, alice, bob):
    bob_link = harness.connect(bob)

    notification = await harness.social.send_notification(
        bob, alice, "post_like", "liked your post", {"postId": "p1"}
    )

    assert harness.store.notifications[notification.id].is_read is False
    pushed = bob_link.websocket.frames("new_notification")
    assert len(pushed) == 1
    assert pushed[0]["data"]["id"] == notification.id
    assert pushed[0]["data"]["actionData"] == {"postId": "p1"}
    assert pushed[0]["data"]["fromUser"]["id"] == alice


@pytest.mark.asyncio
async def test_notification_to_offline_user_is_still_stored(harness, alice, bob):
    notification = await harness.social.send_notification(bob, alice, "post_comment", "commented")
    assert notification.id in harness.store.notifications


@pytest.mark.asyncio
async def test_notification_type_must_be_known(harness, alice, bob):
    with pytest.raises(InvalidArgument):
        await harness.social.send_notification(bob, alice, "poke", "hey")
    assert harness.store.notifications == {}


@pytest.mark.asyncio
async def test_mark_notification_read_syncs_every_tab(harness, alice, bob):
    notification = await harness.social.send_notification(bob, alice, "message", "new message")
    tab1 = harness.connect(bob)
    tab2 = harness.connect(bob)

    await harness.social.mark_notification_read(bob, notification.id)

    assert harness.store.notifications[notification.id].is_read is True
    for tab in (tab1, tab2):
        assert tab.websocket.frames("notification_read") == [
            {"event": "notification_read", "data": {"notificationId": notification.id}}
        ]


@pytest.mark.asyncio
async def test_mark_someone_elses_notification_is_not_found(harness, alice, bob):
    notification = await harness.social.send_notification(bob, alice, "message", "new message")
    with pytest.raises(NotFound):
        await harness.social.mark_notification_read(alice, notification.id)
    assert harness.store.notifications[notification.id].is_read is False


@pytest.mark.asyncio
async def test_friend_request_notifications_can_be_marked_read(harness, alice, bob):
    bob_link = harness.connect(bob)
    alice_link = harness.connect(alice)
    request = await harness.social.send_friend_request(alice, bob)

    pushed = bob_link.websocket.frames("new_friend_request")[0]["data"]
    assert harness.store.notifications[pushed["notificationId"]].type == "friend_request"
    await harness.social.mark_notification_read(bob, pushed["notificationId"])
    assert bob_link.websocket.frames("notification_read")[0]["data"] == {"notificationId": pushed["notificationId"]}

    await harness.social.accept_friend_request(request.id, bob)

    status = alice_link.websocket.frames("friend_request_status")[0]["data"]
    assert harness.store.notifications[status["notificationId"]].type == "friend_accept"
    await harness.social.mark_notification_read(alice, status["notificationId"])
    assert harness.store.notifications[status["notificationId"]].is_read is True
