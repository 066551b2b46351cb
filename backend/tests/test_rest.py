"""Tests for the users, chats and messages REST API."""
from fastapi.testclient import TestClient

from parley.main import app

client = TestClient(app)


def register(username: str) -> str:
    response = client.post("/users", json={"username": username, "email": f"{username}@example.com"})
    assert response.status_code == 201
    return response.json()["id"]


def auth(user_id: str) -> dict:
    return {"X-User-Id": user_id}


def open_direct(user_id: str, other_id: str) -> str:
    response = client.post("/chats/direct", json={"userId": other_id}, headers=auth(user_id))
    assert response.status_code in (200, 201)
    return response.json()["id"]


def test_health():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


class TestUsersAPI:
    def test_register(self):
        response = client.post("/users", json={"username": "alice", "email": "alice@example.com"})

        assert response.status_code == 201
        body = response.json()
        assert body["username"] == "alice"
        assert body["id"]

    def test_register_duplicate(self):
        register("alice")
        response = client.post("/users", json={"username": "alice"})
        assert response.status_code == 400

    def test_register_requires_username(self):
        response = client.post("/users", json={"username": ""})
        assert response.status_code == 422

    def test_online_users_empty(self):
        response = client.get("/users/online")
        assert response.status_code == 200
        assert response.json() == []

    def test_list_users_excludes_caller(self):
        alice, bob, carol = register("alice"), register("bob"), register("carol")

        response = client.get("/users", headers=auth(alice))

        assert response.status_code == 200
        assert {u["id"] for u in response.json()} == {bob, carol}

    def test_list_users_search(self):
        alice = register("alice")
        bob = register("bob")
        register("carol")

        response = client.get("/users", params={"search": "BO"}, headers=auth(alice))

        assert [u["id"] for u in response.json()] == [bob]

    def test_list_users_requires_identity(self):
        assert client.get("/users").status_code == 401

    def test_profile(self):
        alice = register("alice")

        response = client.get("/users/me", headers=auth(alice))

        assert response.status_code == 200
        assert response.json()["id"] == alice
        assert response.json()["email"] == "alice@example.com"


class TestAuthHeader:
    def test_missing_header(self):
        assert client.get("/chats").status_code == 401

    def test_unknown_user(self):
        assert client.get("/chats", headers=auth("nobody")).status_code == 401


class TestChatsAPI:
    def test_direct_chat_created_then_reused(self):
        alice, bob = register("alice"), register("bob")

        first = client.post("/chats/direct", json={"userId": bob}, headers=auth(alice))
        second = client.post("/chats/direct", json={"userId": alice}, headers=auth(bob))

        assert first.status_code == 201
        assert second.status_code == 200
        assert first.json()["id"] == second.json()["id"]

    def test_direct_chat_with_self(self):
        alice = register("alice")
        response = client.post("/chats/direct", json={"userId": alice}, headers=auth(alice))
        assert response.status_code == 400

    def test_direct_chat_with_unknown_user(self):
        alice = register("alice")
        response = client.post("/chats/direct", json={"userId": "nobody"}, headers=auth(alice))
        assert response.status_code == 404

    def test_group_chat(self):
        alice, bob, carol = register("alice"), register("bob"), register("carol")

        response = client.post(
            "/chats/group", json={"name": "team", "userIds": [bob, carol]}, headers=auth(alice)
        )

        assert response.status_code == 201
        body = response.json()
        assert body["is_group"] is True
        assert {m["user_id"] for m in body["members"]} == {alice, bob, carol}

    def test_list_and_get(self):
        alice, bob, carol = register("alice"), register("bob"), register("carol")
        chat_id = open_direct(alice, bob)

        listed = client.get("/chats", headers=auth(alice)).json()
        assert [c["id"] for c in listed] == [chat_id]

        assert client.get(f"/chats/{chat_id}", headers=auth(bob)).status_code == 200
        assert client.get(f"/chats/{chat_id}", headers=auth(carol)).status_code == 403
        assert client.get("/chats/missing", headers=auth(alice)).status_code == 404

    def test_delete_chat(self):
        alice, bob = register("alice"), register("bob")
        chat_id = open_direct(alice, bob)
        client.post(f"/messages/{chat_id}", json={"content": "hi"}, headers=auth(alice))

        response = client.delete(f"/chats/{chat_id}", headers=auth(bob))

        assert response.status_code == 200
        assert response.json()["deleted"] is True
        assert client.get(f"/chats/{chat_id}", headers=auth(alice)).status_code == 404
        assert client.post(
            f"/messages/{chat_id}", json={"content": "again"}, headers=auth(alice)
        ).status_code == 404

    def test_delete_by_outsider(self):
        alice, bob, carol = register("alice"), register("bob"), register("carol")
        chat_id = open_direct(alice, bob)

        assert client.delete(f"/chats/{chat_id}", headers=auth(carol)).status_code == 403


class TestMessagesAPI:
    def test_post_and_list(self):
        alice, bob = register("alice"), register("bob")
        chat_id = open_direct(alice, bob)

        posted = client.post(f"/messages/{chat_id}", json={"content": "hi"}, headers=auth(alice))
        assert posted.status_code == 201
        assert posted.json()["content"] == "hi"
        assert posted.json()["status"] == "sent"

        listed = client.get(f"/messages/{chat_id}", headers=auth(bob)).json()
        assert [m["content"] for m in listed] == ["hi"]
        assert listed[0]["senderName"] == "alice"
        assert listed[0]["status"] == "sent"

    def test_empty_content(self):
        alice, bob = register("alice"), register("bob")
        chat_id = open_direct(alice, bob)

        response = client.post(f"/messages/{chat_id}", json={"content": "  "}, headers=auth(alice))
        assert response.status_code == 400

    def test_outsider_cannot_post_or_read(self):
        alice, bob, carol = register("alice"), register("bob"), register("carol")
        chat_id = open_direct(alice, bob)

        assert client.post(
            f"/messages/{chat_id}", json={"content": "hi"}, headers=auth(carol)
        ).status_code == 403
        assert client.get(f"/messages/{chat_id}", headers=auth(carol)).status_code == 403

    def test_limit_returns_latest(self):
        alice, bob = register("alice"), register("bob")
        chat_id = open_direct(alice, bob)
        for i in range(4):
            client.post(f"/messages/{chat_id}", json={"content": f"m{i}"}, headers=auth(alice))

        listed = client.get(f"/messages/{chat_id}?limit=2", headers=auth(bob)).json()
        assert [m["content"] for m in listed] == ["m2", "m3"]

    def test_delivery_read_flow(self):
        alice, bob = register("alice"), register("bob")
        chat_id = open_direct(alice, bob)
        message_id = client.post(
            f"/messages/{chat_id}", json={"content": "hi"}, headers=auth(alice)
        ).json()["id"]

        unread = client.get(f"/messages/{chat_id}/unread-count", headers=auth(bob)).json()
        assert unread["unreadCount"] == 1

        read_early = client.post(f"/messages/{chat_id}/read", json={}, headers=auth(bob)).json()
        assert read_early["updatedCount"] == 0

        delivered = client.post(f"/messages/{chat_id}/delivered", headers=auth(bob)).json()
        assert delivered["markedCount"] == 1

        read = client.post(
            f"/messages/{chat_id}/read", json={"messageIds": [message_id]}, headers=auth(bob)
        ).json()
        assert read["updatedCount"] == 1

        listed = client.get(f"/messages/{chat_id}", headers=auth(bob)).json()
        assert listed[0]["status"] == "read"

        receipts = client.get(f"/messages/receipts/{message_id}", headers=auth(alice)).json()
        assert receipts["totalMembers"] == 2
        assert receipts["delivered"] == 1
        assert receipts["read"] == 1
        assert receipts["receipts"][0]["userId"] == bob

    def test_receipts_for_unknown_message(self):
        alice = register("alice")
        assert client.get("/messages/receipts/missing", headers=auth(alice)).status_code == 404
