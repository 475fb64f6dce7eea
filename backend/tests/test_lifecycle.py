import uuid
from datetime import datetime, timedelta

import pytest

from coderoom.exceptions import (
    InvalidRoomConfigException,
    NotInRoomException,
    NotRoomHostException,
    ProblemNotFoundException,
    RoomNotFoundException,
)
from coderoom.schemas.room import RoomCreate
from coderoom.services.lifecycle import ROOM_ID_ALPHABET, ROOM_ID_LENGTH, generate_room_id

from helpers import build


def room_create(seed, **overrides):
    values = {"problem_id": uuid.UUID(seed.problem_id)}
    values.update(overrides)
    return RoomCreate(**values)


def test_generated_room_ids_are_opaque_and_fixed_length():
    ids = {generate_room_id() for _ in range(200)}
    assert len(ids) == 200
    assert all(len(i) == ROOM_ID_LENGTH and set(i) <= set(ROOM_ID_ALPHABET) for i in ids)


async def test_create_room_makes_owner_host_and_sole_participant(aseed):
    lifecycle, coordinator, _ = build()
    alice = aseed.principal("alice")

    room = await lifecycle.create_room(alice, room_create(aseed, language="java"))

    assert room.host_id == alice.user_id
    assert list(room.participants) == [alice.user_id]
    assert room.name == "Two Sum - Team Session"
    assert room.code == "class Solution {}"
    assert room.max_participants == 6
    assert room.expires_at is None


async def test_create_room_with_time_limit_and_name(aseed):
    lifecycle, _, _ = build()
    before = datetime.utcnow()

    room = await lifecycle.create_room(
        aseed.principal("alice"), room_create(aseed, room_name="  Mock interview ", time_limit=30)
    )

    assert room.name == "Mock interview"
    assert before + timedelta(minutes=29) < room.expires_at <= datetime.utcnow() + timedelta(minutes=30)


@pytest.mark.parametrize("overrides", [
    {"max_participants": 1},
    {"max_participants": 11},
    {"language": "ruby"},
    {"time_limit": 0},
])
async def test_create_room_rejects_invalid_config(aseed, overrides):
    lifecycle, _, _ = build()
    with pytest.raises(InvalidRoomConfigException):
        await lifecycle.create_room(aseed.principal("alice"), room_create(aseed, **overrides))


async def test_create_room_requires_known_problem(aseed, unknown_problem_id):
    lifecycle, _, _ = build()
    with pytest.raises(ProblemNotFoundException):
        await lifecycle.create_room(
            aseed.principal("alice"), RoomCreate(problem_id=uuid.UUID(unknown_problem_id))
        )


async def test_http_join_records_inactive_participant(aseed):
    lifecycle, coordinator, _ = build()
    room = await lifecycle.create_room(aseed.principal("alice"), room_create(aseed))
    bob = aseed.principal("bob")

    state = await lifecycle.join(room.room_id, bob)

    assert state.participant(bob.user_id).is_active is False
    assert state.active_count() == 1
    await coordinator.flush_all()
    mine = await lifecycle.list_for_user(bob.user_id)
    assert [r.room_id for r in mine] == [room.room_id]


async def test_http_leave_requires_membership(aseed):
    lifecycle, coordinator, _ = build()
    room = await lifecycle.create_room(aseed.principal("alice"), room_create(aseed))

    with pytest.raises(NotInRoomException):
        await lifecycle.leave(room.room_id, aseed.principal("carol"))
    assert await lifecycle.leave(room.room_id, aseed.principal("alice")) is True
    await coordinator.shutdown()


async def test_close_room_is_host_only_and_idempotent(aseed):
    lifecycle, coordinator, transport = build()
    alice = aseed.principal("alice")
    room = await lifecycle.create_room(alice, room_create(aseed))

    with pytest.raises(NotRoomHostException):
        await lifecycle.close_room(room.room_id, aseed.principal("bob"))

    assert await lifecycle.close_room(room.room_id, alice) is True
    assert await lifecycle.close_room(room.room_id, alice) is False

    with pytest.raises(RoomNotFoundException):
        await lifecycle.get_room(room.room_id)
    with pytest.raises(RoomNotFoundException):
        await lifecycle.close_room(room.room_id, aseed.principal("bob"))
    with pytest.raises(RoomNotFoundException):
        await lifecycle.close_room("nosuchroom", alice)


async def test_expire_sweep_closes_expired_rooms(aseed):
    lifecycle, coordinator, transport = build()
    alice = aseed.principal("alice")
    timed = await lifecycle.create_room(alice, room_create(aseed, time_limit=5))
    open_ended = await lifecycle.create_room(alice, room_create(aseed))
    await coordinator.join(timed.room_id, aseed.principal("bob"), "conn-b")

    assert await lifecycle.expire_sweep(datetime.utcnow()) == []
    closed = await lifecycle.expire_sweep(datetime.utcnow() + timedelta(minutes=10))

    assert closed == [timed.room_id]
    assert transport.sent["conn-b"][-1]["type"] == "room-closed"
    assert transport.sent["conn-b"][-1]["reason"] == "Room expired"
    active = [r.room_id for r in await lifecycle.list_active()]
    assert active == [open_ended.room_id]
    await coordinator.shutdown()


async def test_list_active_hides_locked_rooms(aseed):
    lifecycle, coordinator, _ = build()
    alice = aseed.principal("alice")
    locked = await lifecycle.create_room(alice, room_create(aseed))
    visible = await lifecycle.create_room(alice, room_create(aseed, language="cpp"))

    await coordinator.set_room_lock(locked.room_id, alice, True)
    await coordinator.flush_all()

    assert [r.room_id for r in await lifecycle.list_active()] == [visible.room_id]
    assert [r.room_id for r in await lifecycle.list_active(language="javascript")] == []
