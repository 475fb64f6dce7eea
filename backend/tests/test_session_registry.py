from coderoom.services.session_registry import SessionRegistry, Binding


def test_bind_is_idempotent():
    registry = SessionRegistry()
    assert registry.bind("c1", "room-a", "u1") is None
    assert registry.bind("c1", "room-a", "u1") is None
    assert registry.members_of("room-a") == ["c1"]
    assert registry.binding_of("c1") == Binding("room-a", "u1")


def test_rebind_moves_connection_between_rooms():
    registry = SessionRegistry()
    registry.bind("c1", "room-a", "u1")
    previous = registry.bind("c1", "room-b", "u1")

    assert previous == Binding("room-a", "u1")
    assert registry.members_of("room-a") == []
    assert registry.members_of("room-b") == ["c1"]
    assert "room-a" not in registry.rooms()


def test_unbind_returns_prior_binding():
    registry = SessionRegistry()
    registry.bind("c1", "room-a", "u1")
    registry.bind("c2", "room-a", "u2")

    assert registry.unbind("c1") == Binding("room-a", "u1")
    assert registry.unbind("c1") is None
    assert registry.members_of("room-a") == ["c2"]


def test_connections_of_user_in_room():
    registry = SessionRegistry()
    registry.bind("c1", "room-a", "u1")
    registry.bind("c2", "room-a", "u1")
    registry.bind("c3", "room-a", "u2")

    assert sorted(registry.connections_of("room-a", "u1")) == ["c1", "c2"]
    assert sorted(registry.members_of("room-a")) == ["c1", "c2", "c3"]
    assert registry.connections_of("room-b", "u1") == []


def test_evict_room_removes_every_binding():
    registry = SessionRegistry()
    registry.bind("c1", "room-a", "u1")
    registry.bind("c2", "room-a", "u2")
    registry.bind("c3", "room-b", "u3")

    removed = registry.evict_room("room-a")

    assert sorted(conn_id for conn_id, _ in removed) == ["c1", "c2"]
    assert registry.binding_of("c1") is None
    assert registry.members_of("room-a") == []
    assert registry.members_of("room-b") == ["c3"]
