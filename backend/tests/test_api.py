import pytest
from fastapi.testclient import TestClient

from coderoom.main import app
from helpers import PASSWORD


@pytest.fixture
def client(seed):
    with TestClient(app) as c:
        yield c


def create_room(client, seed, owner="alice", **payload):
    body = {"problem_id": seed.problem_id}
    body.update(payload)
    return client.post("/api/team/create", json=body, headers=seed.headers(owner))


def test_health_and_ready(client):
    assert client.get("/health").json()["status"] == "healthy"
    ready = client.get("/ready")
    assert ready.status_code == 200
    assert ready.json()["database_connected"] is True


def test_login_and_me(client, seed):
    response = client.post("/api/auth/login", json={"username": "alice", "password": PASSWORD})
    assert response.status_code == 200
    tokens = response.json()
    assert tokens["token_type"] == "bearer"

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {tokens['access_token']}"})
    assert me.status_code == 200
    assert me.json()["display_name"] == "Alice Host"


def test_login_with_wrong_password(client, seed):
    response = client.post("/api/auth/login", json={"username": "alice", "password": "nope"})
    assert response.status_code == 401
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "AUTH_003"


def test_refresh_tokens(client, seed):
    tokens = client.post("/api/auth/login", json={"username": "bob", "password": PASSWORD}).json()
    refreshed = client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert refreshed.status_code == 200
    bad = client.post("/api/auth/refresh", json={"refresh_token": tokens["access_token"]})
    assert bad.status_code == 401


def test_logout_revokes_token(client, seed):
    headers = seed.headers("bob")
    assert client.post("/api/auth/logout", headers=headers).status_code == 204

    response = client.get("/api/auth/me", headers=headers)
    assert response.status_code == 401
    assert response.json()["error"] == "AUTH_006"


def test_room_endpoints_require_authentication(client):
    assert client.get("/api/team/rooms").status_code in (401, 403)
    bad = client.get("/api/team/rooms", headers={"Authorization": "Bearer not-a-token"})
    assert bad.status_code == 401


def test_create_room(client, seed):
    response = create_room(client, seed, max_participants=3, language="java")

    assert response.status_code == 201
    room = response.json()
    assert len(room["room_id"]) == 10
    assert room["host_id"] == seed.principal("alice").user_id
    assert room["max_participants"] == 3
    assert room["code"] == "class Solution {}"
    assert room["problem_title"] == "Two Sum"
    assert [p["username"] for p in room["participants"]] == ["alice"]
    assert room["editor_lock"]["is_locked"] is False


@pytest.mark.parametrize("payload", [
    {"max_participants": 11},
    {"max_participants": 1},
    {"language": "cobol"},
])
def test_create_room_with_invalid_config(client, seed, payload):
    response = create_room(client, seed, **payload)
    assert response.status_code == 400
    assert response.json()["error"] == "ROOM_009"


def test_create_room_for_unknown_problem(client, seed, unknown_problem_id):
    response = client.post(
        "/api/team/create", json={"problem_id": unknown_problem_id}, headers=seed.headers("alice")
    )
    assert response.status_code == 404
    assert response.json()["error"] == "PROB_001"


def test_list_and_fetch_rooms(client, seed):
    js_room = create_room(client, seed).json()
    java_room = create_room(client, seed, language="java").json()

    listed = client.get("/api/team/rooms", headers=seed.headers("bob")).json()
    assert {r["room_id"] for r in listed} == {js_room["room_id"], java_room["room_id"]}
    assert listed[0]["room_id"] == java_room["room_id"]

    java_only = client.get("/api/team/rooms", params={"language": "java"}, headers=seed.headers("bob")).json()
    assert [r["room_id"] for r in java_only] == [java_room["room_id"]]

    fetched = client.get(f"/api/team/room/{js_room['room_id']}", headers=seed.headers("bob"))
    assert fetched.status_code == 200
    assert fetched.json()["code"] == "function twoSum(nums, target) {}"
    assert fetched.json()["persistence_degraded"] is False

    missing = client.get("/api/team/room/doesnotexist", headers=seed.headers("bob"))
    assert missing.status_code == 404
    assert missing.json()["error"] == "ROOM_001"


def test_join_then_leave_over_http(client, seed):
    room = create_room(client, seed).json()
    room_id = room["room_id"]
    bob_id = seed.principal("bob").user_id

    joined = client.post(f"/api/team/room/{room_id}/join", headers=seed.headers("bob"))
    assert joined.status_code == 200
    participants = {p["user_id"]: p for p in joined.json()["participants"]}
    assert participants[bob_id]["is_active"] is False

    mine = client.get("/api/team/my-rooms", headers=seed.headers("bob")).json()
    assert [r["room_id"] for r in mine] == [room_id]

    assert client.post(f"/api/team/room/{room_id}/leave", headers=seed.headers("bob")).status_code == 204
    not_member = client.post(f"/api/team/room/{room_id}/leave", headers=seed.headers("carol"))
    assert not_member.status_code == 409
    assert not_member.json()["error"] == "ROOM_007"


def test_http_join_does_not_take_a_seat(client, seed):
    room_id = create_room(client, seed, max_participants=2).json()["room_id"]
    # alice (host) counts as active from creation; bob is admitted but not connected
    assert client.post(f"/api/team/room/{room_id}/join", headers=seed.headers("bob")).status_code == 200
    assert client.post(f"/api/team/room/{room_id}/join", headers=seed.headers("carol")).status_code == 200


def test_close_room(client, seed):
    room_id = create_room(client, seed).json()["room_id"]

    forbidden = client.delete(f"/api/team/room/{room_id}", headers=seed.headers("bob"))
    assert forbidden.status_code == 403
    assert forbidden.json()["error"] == "ROOM_005"

    assert client.delete(f"/api/team/room/{room_id}", headers=seed.headers("alice")).status_code == 204
    assert client.delete(f"/api/team/room/{room_id}", headers=seed.headers("alice")).status_code == 204

    assert client.get(f"/api/team/room/{room_id}", headers=seed.headers("alice")).status_code == 404
    joined = client.post(f"/api/team/room/{room_id}/join", headers=seed.headers("bob"))
    assert joined.status_code == 404


def test_heartbeat_and_active_users(client, seed):
    assert client.post("/api/team/heartbeat", headers=seed.headers("carol")).json() == {"status": "ok"}

    users = client.get("/api/team/active-users", headers=seed.headers("alice")).json()
    assert "carol" in {u["username"] for u in users}


def test_logout_drops_user_from_active_users(client, seed):
    headers = seed.headers("bob")
    client.post("/api/team/heartbeat", headers=headers)
    users = client.get("/api/team/active-users", headers=seed.headers("alice")).json()
    assert "bob" in {u["username"] for u in users}

    assert client.post("/api/auth/logout", headers=headers).status_code == 204

    users = client.get("/api/team/active-users", headers=seed.headers("alice")).json()
    assert "bob" not in {u["username"] for u in users}
    # other tokens of the same user stay valid
    assert client.get("/api/auth/me", headers=seed.headers("bob")).status_code == 200
