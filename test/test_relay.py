"""Tests for the signaling relay's routing and membership announcements."""
import asyncio

from standardcam.signaling.messages import (
    EVENT_ROOM_JOINED,
    EVENT_SERVER_MESSAGE,
    EVENT_USER_CONNECTED,
    EVENT_USER_DISCONNECTED,
    MessageKind,
)
from standardcam.signaling.relay import SignalingRelay

OFFER = {"type": "offer", "sdp": "v=0\r\n"}


async def make_room(emitter, *members, room="r1"):
    relay = SignalingRelay(emit=emitter)
    for member in members:
        await relay.join(room, member, f"sid-{member}")
    return relay


async def test_welcome_carries_socket_id(emitter):
    relay = SignalingRelay(emit=emitter)
    await relay.welcome("sid-x")

    [(event, data)] = emitter.to("sid-x")
    assert event == EVENT_SERVER_MESSAGE
    assert data["type"] == "welcome"
    assert data["socketId"] == "sid-x"


async def test_join_announces_to_others_and_acknowledges_joiner(emitter):
    await make_room(emitter, "A", "B")

    assert emitter.to("sid-A", EVENT_USER_CONNECTED) == [(EVENT_USER_CONNECTED, "B")]
    assert emitter.to("sid-B", EVENT_USER_CONNECTED) == []

    [(_, ack)] = emitter.to("sid-B", EVENT_ROOM_JOINED)
    assert ack == {"room": "r1", "id": "B", "users": ["A", "B"]}


async def test_offer_reaches_target_exactly_once(emitter):
    relay = await make_room(emitter, "A", "B")

    delivered = await relay.relay_from("sid-A", MessageKind.OFFER, OFFER, "B")

    assert delivered is True
    assert emitter.to("sid-B", "offer") == [("offer", (OFFER, "A"))]
    assert emitter.to("sid-A", "offer") == []


async def test_offer_to_absent_member_is_dropped_silently(emitter):
    relay = await make_room(emitter, "A", "B")
    before = list(emitter.events)

    delivered = await relay.relay_from("sid-A", MessageKind.OFFER, OFFER, "ghost")

    assert delivered is False
    assert emitter.events == before
    assert relay.dropped_count == 1


async def test_missing_target_is_dropped(emitter):
    relay = await make_room(emitter, "A", "B")
    before = list(emitter.events)

    assert await relay.relay_from("sid-A", MessageKind.ANSWER, OFFER, None) is False
    assert emitter.events == before


async def test_messages_never_cross_rooms(emitter):
    relay = await make_room(emitter, "A")
    await relay.join("r2", "B", "sid-B")

    assert await relay.relay(MessageKind.OFFER, "r1", "A", "B", OFFER) is False
    assert emitter.to("sid-B", "offer") == []


async def test_unknown_room_is_dropped(emitter):
    relay = SignalingRelay(emit=emitter)
    assert await relay.relay(MessageKind.OFFER, "nowhere", "A", "B", OFFER) is False
    assert relay.registry.room_count() == 0


async def test_unjoined_connection_cannot_relay(emitter):
    relay = await make_room(emitter, "A")
    assert await relay.relay_from("sid-stranger", MessageKind.OFFER, OFFER, "A") is False
    assert emitter.to("sid-A", "offer") == []


async def test_duplicate_join_replaces_connection_without_second_announcement(emitter):
    relay = await make_room(emitter, "A", "B")

    await relay.join("r1", "B", "sid-B2")

    assert emitter.to("sid-A", EVENT_USER_CONNECTED) == [(EVENT_USER_CONNECTED, "B")]
    assert relay.registry.lookup("r1", "B") == "sid-B2"
    [(_, ack)] = emitter.to("sid-B2", EVENT_ROOM_JOINED)
    assert ack["users"] == ["A", "B"]

    # The stale connection going away must not remove the live member
    await relay.leave("sid-B")
    assert emitter.to("sid-A", EVENT_USER_DISCONNECTED) == []
    assert relay.registry.lookup("r1", "B") == "sid-B2"

    await relay.relay_from("sid-A", MessageKind.OFFER, OFFER, "B")
    assert emitter.to("sid-B2", "offer") == [("offer", (OFFER, "A"))]
    assert emitter.to("sid-B", "offer") == []


async def test_leave_announces_to_remaining_members(emitter):
    relay = await make_room(emitter, "A", "B", "C")

    await relay.leave("sid-B")

    assert emitter.to("sid-A", EVENT_USER_DISCONNECTED) == [(EVENT_USER_DISCONNECTED, "B")]
    assert emitter.to("sid-C", EVENT_USER_DISCONNECTED) == [(EVENT_USER_DISCONNECTED, "B")]
    assert relay.registry.members("r1") == ["A", "C"]


async def test_last_leave_destroys_room(emitter):
    relay = await make_room(emitter, "A")
    await relay.leave("sid-A")
    await relay.leave("sid-A")
    assert relay.registry.room_count() == 0


async def test_joining_other_room_leaves_previous(emitter):
    relay = await make_room(emitter, "A", "B")

    await relay.join("r2", "A", "sid-A")

    assert emitter.to("sid-B", EVENT_USER_DISCONNECTED) == [(EVENT_USER_DISCONNECTED, "A")]
    assert relay.registry.members("r1") == ["B"]
    assert relay.registry.members("r2") == ["A"]


async def test_messages_to_one_target_keep_submission_order(emitter):
    relay = await make_room(emitter, "A", "B")
    payloads = [OFFER] + [{"candidate": f"candidate:{i}"} for i in range(5)]
    kinds = [MessageKind.OFFER] + [MessageKind.ICE_CANDIDATE] * 5

    await asyncio.gather(*[
        relay.relay_from("sid-A", kind, payload, "B") for kind, payload in zip(kinds, payloads)
    ])

    received = [data[0] for event, data in emitter.to("sid-B") if event in ("offer", "ice-candidate")]
    assert received == payloads


async def test_status_reports_rooms_and_counters(emitter):
    relay = await make_room(emitter, "A", "B")
    await relay.relay_from("sid-A", MessageKind.OFFER, OFFER, "B")
    await relay.relay_from("sid-A", MessageKind.OFFER, OFFER, "ghost")

    status = relay.status()
    assert status["rooms"] == {"r1": ["A", "B"]}
    assert status["member_count"] == 2
    assert status["relayed_count"] == 1
    assert status["dropped_count"] == 1


async def test_room_locks_released_when_rooms_empty(emitter):
    relay = SignalingRelay(emit=emitter)

    for i in range(100):
        await relay.join(f"room-{i}", "A", "sid-A")
        await relay.relay_from("sid-A", MessageKind.OFFER, OFFER, "ghost")
    await relay.leave("sid-A")

    assert relay.registry.room_count() == 0
    assert relay.registry._locks == {}
    assert relay.registry._lock_users == {}


async def test_room_lock_survives_while_room_is_in_use(emitter):
    relay = await make_room(emitter, "A", "B")
    lock = relay.registry.lock("r1")

    await relay.leave("sid-A")

    assert relay.registry.lock("r1") is lock
    await relay.leave("sid-B")
    assert "r1" not in relay.registry._locks
