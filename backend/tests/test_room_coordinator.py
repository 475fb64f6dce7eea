import asyncio
import uuid
from datetime import datetime, timedelta

import pytest

from coderoom.config import settings
from coderoom.exceptions import (
    EditorLockedException,
    InvalidInputException,
    NotInRoomException,
    NotRoomHostException,
    PermissionDeniedException,
    RoomFullException,
    RoomLockedException,
    RoomNotFoundException,
)
from coderoom.schemas.room import RoomCreate
from coderoom.services.room_store import RoomStore

from helpers import FlakyStore, build


async def create(lifecycle, seed, max_participants=4):
    return await lifecycle.create_room(
        seed.principal("alice"),
        RoomCreate(problem_id=uuid.UUID(seed.problem_id), max_participants=max_participants),
    )


async def test_join_sends_snapshot_to_joiner_and_notice_to_others(aseed):
    lifecycle, coordinator, transport = build()
    room = await create(lifecycle, aseed)

    await coordinator.join(room.room_id, aseed.principal("alice"), "conn-a")
    await coordinator.join(room.room_id, aseed.principal("bob"), "conn-b")

    assert transport.types("conn-a") == ["room-state", "user-joined"]
    assert transport.types("conn-b") == ["room-state"]
    snapshot = transport.sent["conn-b"][0]
    assert snapshot["code"] == "function twoSum(nums, target) {}"
    assert {p["userId"] for p in snapshot["participants"]} == {
        aseed.principal("alice").user_id,
        aseed.principal("bob").user_id,
    }
    joined = transport.sent["conn-a"][1]
    assert joined["userId"] == aseed.principal("bob").user_id
    assert joined["userData"]["displayName"] == "Bob"
    await coordinator.shutdown()


async def test_capacity_is_never_exceeded(aseed):
    lifecycle, coordinator, transport = build()
    room = await create(lifecycle, aseed, max_participants=2)

    results = await asyncio.gather(
        coordinator.join(room.room_id, aseed.principal("bob"), "conn-b"),
        coordinator.join(room.room_id, aseed.principal("carol"), "conn-c"),
        return_exceptions=True,
    )

    assert sum(isinstance(r, RoomFullException) for r in results) == 1
    state = await coordinator.snapshot(room.room_id)
    assert state.active_count() == 2
    await coordinator.shutdown()


async def test_rejoining_active_user_does_not_count_twice(aseed):
    lifecycle, coordinator, transport = build()
    room = await create(lifecycle, aseed, max_participants=2)
    bob = aseed.principal("bob")

    await coordinator.join(room.room_id, bob, "conn-b1")
    await coordinator.join(room.room_id, bob, "conn-b2")

    state = await coordinator.snapshot(room.room_id)
    assert state.active_count() == 2
    await coordinator.shutdown()


async def test_change_code_is_last_writer_wins_in_coordinator_order(aseed):
    lifecycle, coordinator, transport = build()
    room = await create(lifecycle, aseed)
    alice, bob = aseed.principal("alice"), aseed.principal("bob")
    await coordinator.join(room.room_id, alice, "conn-a")
    await coordinator.join(room.room_id, bob, "conn-b")
    await coordinator.join(room.room_id, aseed.principal("carol"), "conn-c")

    await asyncio.gather(*[
        coordinator.change_code(room.room_id, alice if i % 2 else bob, "conn-a" if i % 2 else "conn-b", f"v{i}")
        for i in range(20)
    ])

    state = await coordinator.snapshot(room.room_id)
    observed = [f["code"] for f in transport.sent["conn-c"] if f["type"] == "code-update"]
    assert len(observed) == 20
    assert observed[-1] == state.code
    assert len(state.code_history) == settings.CODE_HISTORY_LIMIT
    # senders never receive their own edits
    assert all(f["userId"] != alice.user_id for f in transport.sent["conn-a"] if f["type"] == "code-update")
    await coordinator.shutdown()


async def test_change_code_requires_active_participant(aseed):
    lifecycle, coordinator, transport = build()
    room = await create(lifecycle, aseed)

    with pytest.raises(NotInRoomException):
        await coordinator.change_code(room.room_id, aseed.principal("carol"), "conn-c", "x")
    with pytest.raises(InvalidInputException):
        await coordinator.change_code(
            room.room_id, aseed.principal("alice"), "conn-a", "x" * (settings.MAX_CODE_LENGTH + 1)
        )
    await coordinator.shutdown()


async def test_only_host_changes_language(aseed):
    lifecycle, coordinator, transport = build()
    room = await create(lifecycle, aseed)
    await coordinator.join(room.room_id, aseed.principal("alice"), "conn-a")
    await coordinator.join(room.room_id, aseed.principal("bob"), "conn-b")
    before_a = len(transport.sent["conn-a"])

    with pytest.raises(NotRoomHostException):
        await coordinator.change_language(room.room_id, aseed.principal("bob"), "java")

    state = await coordinator.snapshot(room.room_id)
    assert state.language == "javascript"
    assert len(transport.sent["conn-a"]) == before_a

    await coordinator.change_language(room.room_id, aseed.principal("alice"), "java")
    assert transport.sent["conn-b"][-1]["type"] == "language-updated"
    assert transport.sent["conn-b"][-1]["language"] == "java"
    await coordinator.shutdown()


async def test_chat_uses_authenticated_display_name(aseed):
    lifecycle, coordinator, transport = build()
    room = await create(lifecycle, aseed)
    await coordinator.join(room.room_id, aseed.principal("alice"), "conn-a")
    await coordinator.join(room.room_id, aseed.principal("bob"), "conn-b")

    entry = await coordinator.send_chat_message(room.room_id, aseed.principal("bob"), "  hello  ")

    assert entry["username"] == "Bob"
    assert entry["message"] == "hello"
    for conn_id in ("conn-a", "conn-b"):
        frame = transport.sent[conn_id][-1]
        assert frame["type"] == "new-message"
        assert frame["message"] == "hello"
    with pytest.raises(InvalidInputException):
        await coordinator.send_chat_message(room.room_id, aseed.principal("bob"), "   ")
    await coordinator.shutdown()


async def test_join_snapshot_replays_chat_history(aseed):
    lifecycle, coordinator, transport = build()
    room = await create(lifecycle, aseed)
    await coordinator.join(room.room_id, aseed.principal("alice"), "conn-a")
    await coordinator.send_chat_message(room.room_id, aseed.principal("alice"), "first")
    await coordinator.change_code(room.room_id, aseed.principal("alice"), "conn-a", "let a = 1")

    await coordinator.join(room.room_id, aseed.principal("bob"), "conn-b")

    snapshot = transport.sent["conn-b"][0]
    assert snapshot["code"] == "let a = 1"
    assert [m["message"] for m in snapshot["chatHistory"]] == ["first"]
    await coordinator.shutdown()


async def test_editor_lock(aseed):
    lifecycle, coordinator, transport = build()
    room = await create(lifecycle, aseed)
    alice, bob, carol = (aseed.principal(n) for n in ("alice", "bob", "carol"))
    for principal, conn_id in ((alice, "conn-a"), (bob, "conn-b"), (carol, "conn-c")):
        await coordinator.join(room.room_id, principal, conn_id)

    await coordinator.acquire_editor_lock(room.room_id, bob)
    await coordinator.acquire_editor_lock(room.room_id, bob)
    with pytest.raises(EditorLockedException):
        await coordinator.acquire_editor_lock(room.room_id, carol)
    with pytest.raises(EditorLockedException):
        await coordinator.change_code(room.room_id, alice, "conn-a", "blocked")
    with pytest.raises(PermissionDeniedException):
        await coordinator.release_editor_lock(room.room_id, carol)

    await coordinator.change_code(room.room_id, bob, "conn-b", "by bob")
    await coordinator.release_editor_lock(room.room_id, alice)

    assert transport.types("conn-c").count("editor-locked") == 1
    assert transport.types("conn-c")[-1] == "editor-unlocked"
    await coordinator.change_code(room.room_id, carol, "conn-c", "free again")
    await coordinator.shutdown()


async def test_leave_releases_editor_lock_and_notifies(aseed):
    lifecycle, coordinator, transport = build()
    room = await create(lifecycle, aseed)
    await coordinator.join(room.room_id, aseed.principal("alice"), "conn-a")
    await coordinator.join(room.room_id, aseed.principal("bob"), "conn-b")
    await coordinator.acquire_editor_lock(room.room_id, aseed.principal("bob"))

    assert await coordinator.leave(room.room_id, aseed.principal("bob").user_id, "conn-b") is True

    assert transport.types("conn-a")[-2:] == ["editor-unlocked", "user-left"]
    state = await coordinator.snapshot(room.room_id)
    assert state.editor_locked_by is None
    assert state.participant(aseed.principal("bob").user_id).is_active is False
    # host keeps the room after leaving
    await coordinator.leave(room.room_id, aseed.principal("alice").user_id, "conn-a")
    state = await coordinator.snapshot(room.room_id)
    assert state.host_id == aseed.principal("alice").user_id
    await coordinator.shutdown()


async def test_leave_waits_for_last_connection_of_user(aseed):
    lifecycle, coordinator, transport = build()
    room = await create(lifecycle, aseed)
    bob = aseed.principal("bob")
    await coordinator.join(room.room_id, bob, "conn-b1")
    await coordinator.join(room.room_id, bob, "conn-b2")

    assert await coordinator.leave(room.room_id, bob.user_id, "conn-b1") is False
    assert await coordinator.leave(room.room_id, bob.user_id, "conn-b2") is True
    await coordinator.shutdown()


async def test_locked_room_admits_known_participants_only(aseed):
    lifecycle, coordinator, transport = build()
    room = await create(lifecycle, aseed)
    await coordinator.join(room.room_id, aseed.principal("bob"), "conn-b")
    await coordinator.leave(room.room_id, aseed.principal("bob").user_id, "conn-b")

    with pytest.raises(NotRoomHostException):
        await coordinator.set_room_lock(room.room_id, aseed.principal("bob"), True)
    await coordinator.set_room_lock(room.room_id, aseed.principal("alice"), True)

    with pytest.raises(RoomLockedException):
        await coordinator.join(room.room_id, aseed.principal("carol"), "conn-c")
    await coordinator.join(room.room_id, aseed.principal("bob"), "conn-b")
    state = await coordinator.snapshot(room.room_id)
    assert state.is_locked and state.locked_by == aseed.principal("alice").user_id
    await coordinator.shutdown()


async def test_dropped_connection_leaves_after_grace(aseed):
    lifecycle, coordinator, transport = build()
    room = await create(lifecycle, aseed)
    bob = aseed.principal("bob")
    await coordinator.join(room.room_id, aseed.principal("alice"), "conn-a")
    await coordinator.join(room.room_id, bob, "conn-b")

    coordinator.registry.unbind("conn-b")
    coordinator.connection_dropped(room.room_id, bob.user_id)
    assert transport.has_pending_leave(room.room_id, bob.user_id)
    await asyncio.sleep(settings.WS_DISCONNECT_GRACE_SECONDS + 0.3)

    assert transport.types("conn-a")[-1] == "user-left"
    state = await coordinator.snapshot(room.room_id)
    assert state.participant(bob.user_id).is_active is False
    await coordinator.shutdown()


async def test_rejoin_within_grace_cancels_leave(aseed):
    lifecycle, coordinator, transport = build()
    room = await create(lifecycle, aseed)
    bob = aseed.principal("bob")
    await coordinator.join(room.room_id, aseed.principal("alice"), "conn-a")
    await coordinator.join(room.room_id, bob, "conn-b")

    coordinator.registry.unbind("conn-b")
    coordinator.connection_dropped(room.room_id, bob.user_id)
    await coordinator.join(room.room_id, bob, "conn-b2")
    await asyncio.sleep(settings.WS_DISCONNECT_GRACE_SECONDS + 0.3)

    assert "user-left" not in transport.types("conn-a")
    state = await coordinator.snapshot(room.room_id)
    assert state.participant(bob.user_id).is_active is True
    await coordinator.shutdown()


async def test_close_evicts_and_deletes(aseed):
    lifecycle, coordinator, transport = build()
    room = await create(lifecycle, aseed)
    await coordinator.join(room.room_id, aseed.principal("alice"), "conn-a")
    await coordinator.join(room.room_id, aseed.principal("bob"), "conn-b")

    assert await coordinator.close(room.room_id, "Room closed by host") is True

    closed_frame = transport.sent["conn-b"][-1]
    assert closed_frame["type"] == "room-closed"
    assert closed_frame["reason"] == "Room closed by host"
    assert transport.closed == {"conn-a": 4010, "conn-b": 4010}
    assert coordinator.registry.members_of(room.room_id) == []
    with pytest.raises(RoomNotFoundException):
        await coordinator.join(room.room_id, aseed.principal("carol"), "conn-c")
    assert await coordinator.store.load(room.room_id) is None
    await coordinator.shutdown()


async def test_mutations_are_persisted_behind(aseed):
    lifecycle, coordinator, transport = build()
    room = await create(lifecycle, aseed)
    await coordinator.join(room.room_id, aseed.principal("alice"), "conn-a")
    await coordinator.change_code(room.room_id, aseed.principal("alice"), "conn-a", "saved()")
    await coordinator.send_chat_message(room.room_id, aseed.principal("alice"), "note")

    await coordinator.flush_all()

    stored = await coordinator.store.load(room.room_id)
    assert stored.code == "saved()"
    assert stored.chat_history[-1]["message"] == "note"


async def test_persistence_failure_degrades_then_recovers(aseed):
    store = FlakyStore(failures=settings.PERSIST_DEGRADED_AFTER + 1)
    lifecycle, coordinator, transport = build(store)
    room = await create(lifecycle, aseed)
    await coordinator.join(room.room_id, aseed.principal("alice"), "conn-a")

    await coordinator.change_code(room.room_id, aseed.principal("alice"), "conn-a", "eventually durable")
    await coordinator.flush_all()

    statuses = [f["degraded"] for f in transport.sent["conn-a"] if f["type"] == "persistence-status"]
    assert statuses == [True, False]
    assert not coordinator.is_degraded(room.room_id)
    stored = await RoomStore().load(room.room_id)
    assert stored.code == "eventually durable"


async def test_expired_cached_room_is_gone_and_closed(aseed):
    lifecycle, coordinator, transport = build()
    room = await lifecycle.create_room(
        aseed.principal("alice"),
        RoomCreate(problem_id=uuid.UUID(aseed.problem_id), time_limit=1),
    )
    alice = aseed.principal("alice")
    await coordinator.join(room.room_id, alice, "conn-a")
    coordinator._rooms[room.room_id].expires_at = datetime.utcnow() - timedelta(seconds=1)

    with pytest.raises(RoomNotFoundException):
        await coordinator.change_code(room.room_id, alice, "conn-a", "too late")
    with pytest.raises(RoomNotFoundException):
        await coordinator.join(room.room_id, aseed.principal("bob"), "conn-b")
    await coordinator.shutdown()

    assert transport.sent["conn-a"][-1]["type"] == "room-closed"
    assert transport.sent["conn-a"][-1]["reason"] == "Room expired"
    assert transport.closed == {"conn-a": 4010}
    assert await coordinator.store.load(room.room_id) is None


async def test_write_that_gave_up_is_retried_on_shutdown(aseed):
    store = FlakyStore(failures=settings.PERSIST_MAX_RETRIES + 1)
    lifecycle, coordinator, transport = build(store)
    room = await create(lifecycle, aseed)
    alice = aseed.principal("alice")
    await coordinator.join(room.room_id, alice, "conn-a")

    await coordinator.change_code(room.room_id, alice, "conn-a", "kept edit")
    for _ in range(200):
        if store.attempts > settings.PERSIST_MAX_RETRIES:
            break
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.05)

    assert coordinator.is_degraded(room.room_id)
    stored = await RoomStore().load(room.room_id)
    assert stored.code == "function twoSum(nums, target) {}"

    await coordinator.shutdown()

    stored = await RoomStore().load(room.room_id)
    assert stored.code == "kept edit"
    assert not coordinator.is_degraded(room.room_id)
    statuses = [f["degraded"] for f in transport.sent["conn-a"] if f["type"] == "persistence-status"]
    assert statuses == [True, False]


async def test_retry_dirty_restarts_only_abandoned_writes(aseed):
    store = FlakyStore(failures=settings.PERSIST_MAX_RETRIES + 1)
    lifecycle, coordinator, transport = build(store)
    room = await create(lifecycle, aseed)
    alice = aseed.principal("alice")
    await coordinator.join(room.room_id, alice, "conn-a")
    await coordinator.change_code(room.room_id, alice, "conn-a", "retried")
    for _ in range(200):
        if store.attempts > settings.PERSIST_MAX_RETRIES:
            break
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.05)

    assert coordinator.retry_dirty() == [room.room_id]
    assert coordinator.retry_dirty() == []
    await coordinator.flush_all()

    assert (await RoomStore().load(room.room_id)).code == "retried"
    await coordinator.shutdown()


async def test_restart_releases_seats_nobody_reconnects_to(aseed):
    lifecycle, coordinator, transport = build()
    room = await create(lifecycle, aseed, max_participants=2)
    alice, bob, carol = (aseed.principal(n) for n in ("alice", "bob", "carol"))
    await coordinator.join(room.room_id, alice, "conn-a")
    await coordinator.join(room.room_id, bob, "conn-b")
    await coordinator.shutdown()

    # Fresh process over the same store: no sockets are bound yet
    _, restarted, restarted_transport = build()
    await restarted.join(room.room_id, bob, "conn-b2")
    assert restarted_transport.has_pending_leave(room.room_id, alice.user_id)
    assert not restarted_transport.has_pending_leave(room.room_id, bob.user_id)
    with pytest.raises(RoomFullException):
        await restarted.join(room.room_id, carol, "conn-c")

    await asyncio.sleep(settings.WS_DISCONNECT_GRACE_SECONDS + 0.3)

    state = await restarted.snapshot(room.room_id)
    assert state.participant(alice.user_id).is_active is False
    assert state.participant(bob.user_id).is_active is True
    assert state.host_id == alice.user_id
    await restarted.join(room.room_id, carol, "conn-c")
    assert "user-left" in restarted_transport.types("conn-b2")
    await restarted.shutdown()
