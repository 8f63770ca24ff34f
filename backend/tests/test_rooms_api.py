"""Tests for the REST routes."""
from fastapi.testclient import TestClient

from main import create_app


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "healthy"
    assert body["connections"] == 0
    assert body["rooms"] == 3
    assert body["active_rooms_with_subscribers"] == 0


def test_health_reports_degraded_store(client, state):
    state.store.close()
    assert client.get("/health").json()["status"] == "degraded"


def test_metrics(client, auth_headers):
    client.post("/rooms/general/messages", json={"text": "hi"}, headers=auth_headers("alice"))

    body = client.get("/metrics").json()

    assert body["total_messages"] == 1
    assert body["stored_messages"] == 1
    assert body["concurrent_connections"] == 0
    assert body["total_rooms"] == 3
    assert body["dropped_slow_consumers"] == 0
    assert body["subscriber_queue_size"] == 4


def test_list_groups(client):
    assert {g["id"] for g in client.get("/groups").json()} == {"tech", "misc"}


def test_list_rooms_by_group(client):
    rooms = client.get("/rooms", params={"group_id": "misc"}).json()
    assert {r["id"] for r in rooms} == {"random", "lobby"}
    assert all(r["subscriber_count"] == 0 for r in rooms)


def test_unknown_room_error_body(client):
    response = client.get("/rooms/nope")
    assert response.status_code == 404
    assert response.json() == {"detail": "Room nope not found", "code": "room_not_found", "retryable": False}


def test_snapshot_requires_token(client):
    response = client.get("/rooms/general/messages")
    assert response.status_code == 401
    assert response.json()["code"] == "authentication_failed"


def test_snapshot_requires_membership(client, auth_headers):
    response = client.get("/rooms/general/messages", headers=auth_headers("carol"))
    assert response.status_code == 403
    assert response.json()["code"] == "not_a_member"


def test_public_snapshot_without_membership(client, auth_headers):
    response = client.get("/rooms/lobby/messages", headers=auth_headers("carol"))
    assert response.status_code == 200
    assert response.json() == []


def test_snapshot_is_ordered(client, auth_headers):
    ids = [
        client.post("/rooms/general/messages", json={"text": f"m{n}"}, headers=auth_headers("bob")).json()["id"]
        for n in range(3)
    ]
    snapshot = client.get("/rooms/general/messages", headers=auth_headers("alice")).json()
    assert [m["id"] for m in snapshot] == ids


def test_post_requires_membership_even_for_public_rooms(client, auth_headers):
    response = client.post("/rooms/lobby/messages", json={"text": "hi"}, headers=auth_headers("carol"))
    assert response.status_code == 403


def test_post_rejects_blank_text(client, auth_headers):
    response = client.post("/rooms/general/messages", json={"text": "  "}, headers=auth_headers("alice"))
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_request"


def test_post_when_store_is_down_is_retryable(client, auth_headers, state):
    headers = auth_headers("alice")
    state.store.close()

    response = client.post("/rooms/general/messages", json={"text": "hi"}, headers=headers)

    assert response.status_code == 503
    assert response.json()["retryable"] is True
    assert state.broker.accepted_count == 0


def test_join_then_post(client, auth_headers):
    headers = auth_headers("carol")
    first = client.post("/rooms/general/join", headers=headers)
    again = client.post("/rooms/general/join", headers=headers)

    assert first.status_code == 200
    assert first.json()["joined_at"] == again.json()["joined_at"]
    response = client.post("/rooms/general/messages", json={"text": "hi all"}, headers=headers)
    assert response.status_code == 200
    assert response.json()["author_id"] == "carol"


def test_leave_when_not_a_member(client, auth_headers):
    response = client.post("/rooms/general/leave", headers=auth_headers("carol"))
    assert response.json() == {"status": "not_a_member", "room_id": "general"}


def test_join_unknown_room(client, auth_headers):
    assert client.post("/rooms/nope/join", headers=auth_headers("alice")).status_code == 404


def test_apps_are_independent(settings, store):
    other = create_app(settings)
    with TestClient(other) as other_client:
        assert other_client.get("/health").json()["rooms"] == 0
    assert other.state.chat.registry is not create_app(settings, store).state.chat.registry
