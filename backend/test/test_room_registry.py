"""RoomRegistry 테스트."""

import asyncio

import pytest

from screencast.errors import AlreadyInRoom, InvalidToken, NotHost, RoomNotFound
from screencast.signaling import RoomRegistry


async def test_create_room_issues_id_and_token(registry):
    room_id, token = await registry.create_room("host-1")

    assert room_id in registry.rooms
    assert token
    room = registry.lookup_room_of("host-1")
    assert room.host_id == "host-1"
    assert room.presence_task is None


async def test_create_room_twice_for_same_identity_fails(registry):
    await registry.create_room("host-1")
    with pytest.raises(AlreadyInRoom):
        await registry.create_room("host-1")


async def test_viewer_join_requires_matching_token(registry):
    room_id, token = await registry.create_room("host-1")

    with pytest.raises(InvalidToken):
        await registry.join_as_viewer("viewer-1", room_id, "wrong")
    assert registry.lookup_room_of("viewer-1") is None
    assert registry.rooms[room_id].viewers == set()

    host_id = await registry.join_as_viewer("viewer-1", room_id, token)
    assert host_id == "host-1"
    assert registry.rooms[room_id].viewers == {"viewer-1"}


async def test_join_unknown_room(registry):
    with pytest.raises(RoomNotFound):
        await registry.join_as_viewer("viewer-1", "nope", "token")
    with pytest.raises(RoomNotFound):
        await registry.join_as_host("host-1", "nope", "token")


async def test_only_recorded_host_can_heartbeat(registry):
    room_id, token = await registry.create_room("host-1")
    await registry.join_as_viewer("viewer-1", room_id, token)

    with pytest.raises(NotHost):
        await registry.join_as_host("viewer-1", room_id, token)

    await registry.join_as_host("host-1", room_id, token)
    assert registry.rooms[room_id].presence_task is not None
    await registry.shutdown()


async def test_viewer_cannot_join_two_rooms(registry):
    room_a, token_a = await registry.create_room("host-a")
    room_b, token_b = await registry.create_room("host-b")
    await registry.join_as_viewer("viewer-1", room_a, token_a)

    with pytest.raises(AlreadyInRoom):
        await registry.join_as_viewer("viewer-1", room_b, token_b)
    with pytest.raises(AlreadyInRoom):
        await registry.join_as_viewer("host-a", room_a, token_a)


async def test_close_room_checks_caller_and_is_idempotent(registry):
    room_id, token = await registry.create_room("host-1")
    await registry.join_as_viewer("viewer-1", room_id, token)

    with pytest.raises(NotHost):
        await registry.close_room("viewer-1", room_id, token)
    with pytest.raises(InvalidToken):
        await registry.close_room("host-1", room_id, "wrong")

    room = await registry.close_room("host-1", room_id, token)
    assert room is not None and room.closed
    assert room_id not in registry.rooms
    assert registry.lookup_room_of("viewer-1") is None

    assert await registry.close_room("host-1", room_id, token) is None


async def test_leave_removes_viewer(registry):
    room_id, token = await registry.create_room("host-1")
    await registry.join_as_viewer("viewer-1", room_id, token)

    room = await registry.leave("viewer-1")
    assert room.room_id == room_id
    assert registry.rooms[room_id].viewers == set()
    assert await registry.leave("viewer-1") is None
    # the host is not a viewer
    assert await registry.leave("host-1") is None


async def test_list_rooms_summary(registry):
    room_id, token = await registry.create_room("host-1")
    await registry.join_as_viewer("viewer-1", room_id, token)

    assert registry.list_rooms() == [{
        "room_id": room_id,
        "host_id": "host-1",
        "viewer_count": 1,
        "viewers": ["viewer-1"],
    }]


async def test_presence_expiry_detaches_room_and_calls_back():
    registry = RoomRegistry(presence_timeout=0.05)
    expired = []

    async def on_expired(room):
        expired.append(room)

    registry.on_expired = on_expired
    room_id, token = await registry.create_room("host-1")
    await registry.join_as_viewer("viewer-1", room_id, token)
    await registry.join_as_host("host-1", room_id, token)

    await asyncio.sleep(0.15)

    assert [room.room_id for room in expired] == [room_id]
    assert room_id not in registry.rooms
    assert registry.lookup_room_of("host-1") is None
    assert registry.lookup_room_of("viewer-1") is None


async def test_heartbeat_keeps_room_alive():
    registry = RoomRegistry(presence_timeout=0.1)
    expired = []

    async def on_expired(room):
        expired.append(room)

    registry.on_expired = on_expired
    room_id, token = await registry.create_room("host-1")

    for _ in range(5):
        await registry.join_as_host("host-1", room_id, token)
        await asyncio.sleep(0.04)

    assert expired == []
    assert room_id in registry.rooms
    await registry.shutdown()


async def test_room_without_heartbeat_never_expires():
    registry = RoomRegistry(presence_timeout=0.01)
    room_id, _ = await registry.create_room("host-1")

    await asyncio.sleep(0.05)

    assert room_id in registry.rooms
