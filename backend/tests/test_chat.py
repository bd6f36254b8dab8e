"""Tests for the chat HTTP API and the realtime WebSocket endpoint.

SECURITY NOTE: the socket identity comes from the handshake credential only:
1. A missing or invalid token closes the socket with 1008 before it joins anything
2. On success the server sends {type: "connected", payload: {user_id, username}}
3. Every relayed event carries the socket's identity, not the claimed one
"""
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from bubbles.chat.manager import manager, user_room

from conftest import auth_headers, make_token


def receive_connected(ws):
    """Helper to receive and validate the handshake reply."""
    connected = ws.receive_json()
    assert connected["type"] == "connected"
    return connected["payload"]


def create_chat(client: TestClient, creator: str, members, name=None) -> dict:
    response = client.post(
        "/chats", json={"member_ids": members, "name": name}, headers=auth_headers(creator)
    )
    assert response.status_code == 200, response.text
    return response.json()


def send(client: TestClient, sender: str, chat_id: str, content: str, message_id: str = None) -> dict:
    body = {"content": content}
    if message_id:
        body["id"] = message_id
    response = client.post(f"/chats/{chat_id}/messages", json=body, headers=auth_headers(sender))
    assert response.status_code == 200, response.text
    return response.json()


class TestWebSocketHandshake:
    """Tests for socket authentication."""

    def test_missing_token_closes_with_policy_violation(self, api_client):
        with pytest.raises(WebSocketDisconnect) as exc:
            with api_client.websocket_connect("/ws"):
                pass
        assert exc.value.code == 1008
        assert manager.rooms == {}

    def test_invalid_token_closes_with_policy_violation(self, api_client):
        with pytest.raises(WebSocketDisconnect) as exc:
            with api_client.websocket_connect("/ws?token=forged"):
                pass
        assert exc.value.code == 1008

    def test_query_token_connects_to_user_room(self, api_client):
        with api_client.websocket_connect(f"/ws?token={make_token('alice')}") as ws:
            assert receive_connected(ws) == {"user_id": "alice", "username": "Alice"}
            assert manager.get_room_size(user_room("alice")) == 1

    def test_bearer_subprotocol_is_accepted_and_echoed(self, api_client):
        protocol = f"Bearer.{make_token('bob')}"
        with api_client.websocket_connect("/ws", subprotocols=[protocol]) as ws:
            assert ws.accepted_subprotocol == protocol
            assert receive_connected(ws)["user_id"] == "bob"

    def test_invalid_json_keeps_socket_open(self, api_client):
        with api_client.websocket_connect(f"/ws?token={make_token('alice')}") as ws:
            receive_connected(ws)
            ws.send_text("{not json")
            assert ws.receive_json()["payload"]["error"] == "Invalid JSON"
            ws.send_json({"type": "nope", "payload": {}})
            assert ws.receive_json()["type"] == "error"


class TestChatAPI:
    """Tests for chat endpoints."""

    def test_direct_chat_created_once(self, api_client):
        first = create_chat(api_client, "alice", ["bob"])
        second = create_chat(api_client, "bob", ["alice"])
        assert first["existing"] is False
        assert second["existing"] is True
        assert first["chat"]["id"] == second["chat"]["id"]

    def test_group_without_name_is_400(self, api_client):
        response = api_client.post(
            "/chats", json={"member_ids": ["bob", "carol"]}, headers=auth_headers("alice")
        )
        assert response.status_code == 400

    def test_list_and_get_chats(self, api_client):
        chat = create_chat(api_client, "alice", ["bob"])["chat"]
        send(api_client, "alice", chat["id"], "hello")

        listed = api_client.get("/chats", headers=auth_headers("bob")).json()
        assert listed[0]["chat"]["id"] == chat["id"]
        assert listed[0]["last_message"]["content"] == "hello"

        assert api_client.get(f"/chats/{chat['id']}", headers=auth_headers("bob")).status_code == 200
        assert api_client.get(f"/chats/{chat['id']}", headers=auth_headers("mallory")).status_code == 403

    def test_leave_chat(self, api_client):
        chat = create_chat(api_client, "alice", ["bob"])["chat"]
        first = api_client.post(f"/chats/{chat['id']}/leave", headers=auth_headers("alice"))
        assert first.json() == {"chat_id": chat["id"], "deleted": False}
        second = api_client.post(f"/chats/{chat['id']}/leave", headers=auth_headers("bob"))
        assert second.json()["deleted"] is True
        assert api_client.get(f"/chats/{chat['id']}", headers=auth_headers("bob")).status_code == 404


class TestMessageAPI:
    """Tests for message endpoints."""

    def test_pagination_over_http(self, api_client):
        chat = create_chat(api_client, "alice", ["bob"])["chat"]
        for i in range(120):
            send(api_client, "alice", chat["id"], f"m{i}")

        url = f"/chats/{chat['id']}/messages"
        sizes, ids, params = [], [], {"limit": 50}
        while True:
            page = api_client.get(url, params=params, headers=auth_headers("bob")).json()
            sizes.append(len(page["items"]))
            ids.extend(m["id"] for m in page["items"])
            if not page["has_more"]:
                break
            params = {"limit": 50, "cursor_sent_at": page["next_cursor"]["sent_at"],
                      "cursor_id": page["next_cursor"]["id"]}

        assert sizes == [50, 50, 20]
        assert len(set(ids)) == 120

    def test_half_cursor_is_400(self, api_client):
        chat = create_chat(api_client, "alice", ["bob"])["chat"]
        response = api_client.get(
            f"/chats/{chat['id']}/messages", params={"cursor_id": "x"}, headers=auth_headers("alice")
        )
        assert response.status_code == 400

    def test_edit_and_delete(self, api_client):
        chat = create_chat(api_client, "alice", ["bob"])["chat"]
        sent = send(api_client, "alice", chat["id"], "draft", message_id="m-1")

        edited = api_client.patch("/messages/m-1", json={"content": "final"}, headers=auth_headers("alice"))
        assert edited.status_code == 200
        assert edited.json()["is_edited"] is True
        assert edited.json()["sent_at"] == sent["sent_at"]

        forbidden = api_client.delete("/messages/m-1", headers=auth_headers("bob"))
        assert forbidden.status_code == 403

        deleted = api_client.delete("/messages/m-1", headers=auth_headers("alice"))
        assert deleted.json()["is_deleted"] is True
        assert deleted.json()["content"] is None

    def test_non_member_cannot_send(self, api_client):
        chat = create_chat(api_client, "alice", ["bob"])["chat"]
        response = api_client.post(
            f"/chats/{chat['id']}/messages", json={"content": "hi"}, headers=auth_headers("mallory")
        )
        assert response.status_code == 403

    def test_unknown_message_is_404(self, api_client):
        response = api_client.patch("/messages/nope", json={"content": "x"}, headers=auth_headers("alice"))
        assert response.status_code == 404


class TestRealtime:
    """End-to-end fan-out through the HTTP write path and the socket."""

    def test_new_chat_is_pushed_to_members(self, api_client):
        with api_client.websocket_connect(f"/ws?token={make_token('alice')}") as alice_ws, \
             api_client.websocket_connect(f"/ws?token={make_token('bob')}") as bob_ws:
            receive_connected(alice_ws)
            receive_connected(bob_ws)

            chat = create_chat(api_client, "alice", ["bob"])["chat"]
            for ws in (alice_ws, bob_ws):
                event = ws.receive_json()
                assert event["type"] == "chat_created"
                assert event["payload"]["id"] == chat["id"]
                assert sorted(m["user_id"] for m in event["payload"]["members"]) == ["alice", "bob"]

            # Finding the existing chat pushes nothing; the next frame is the message
            assert create_chat(api_client, "bob", ["alice"])["existing"] is True
            send(api_client, "alice", chat["id"], "hi", message_id="m-1")
            assert bob_ws.receive_json()["type"] == "message_sent"

    def test_sent_message_reaches_members_and_senders_other_tab(self, api_client):
        chat = create_chat(api_client, "alice", ["bob"])["chat"]

        with api_client.websocket_connect(f"/ws?token={make_token('alice')}") as alice_tab, \
             api_client.websocket_connect(f"/ws?token={make_token('bob')}") as bob_ws:
            receive_connected(alice_tab)
            receive_connected(bob_ws)

            send(api_client, "alice", chat["id"], "hello bob", message_id="m-1")

            for ws in (alice_tab, bob_ws):
                event = ws.receive_json()
                assert event["type"] == "message_sent"
                assert event["payload"]["id"] == "m-1"
                assert event["payload"]["content"] == "hello bob"
                assert sorted(event["payload"]["member_ids"]) == ["alice", "bob"]

    def test_typing_and_read_receipts_relay(self, api_client):
        chat = create_chat(api_client, "alice", ["bob"])["chat"]
        send(api_client, "alice", chat["id"], "hi", message_id="m-1")

        with api_client.websocket_connect(f"/ws?token={make_token('alice')}") as alice_ws, \
             api_client.websocket_connect(f"/ws?token={make_token('bob')}") as bob_ws:
            receive_connected(alice_ws)
            receive_connected(bob_ws)

            bob_ws.send_json({"type": "join_chat", "payload": {"chat_id": chat["id"]}})
            bob_ws.send_json({"type": "typing_start", "payload": {
                "chat_id": chat["id"], "user_id": "bob", "username": "Bob", "member_ids": ["alice", "bob"],
            }})
            typing = alice_ws.receive_json()
            assert typing["type"] == "typing_start"
            assert typing["payload"]["user_id"] == "bob"

            bob_ws.send_json({"type": "message_read", "payload": {"chat_id": chat["id"], "message_id": "m-1"}})
            # Reading stops nothing; the next frame for alice is the receipt
            receipt = alice_ws.receive_json()
            assert receipt["type"] == "message_read"
            assert receipt["payload"]["user_id"] == "bob"
            assert receipt["payload"]["last_read_message_id"] == "m-1"

        receipts = api_client.get(f"/chats/{chat['id']}/read-receipts", headers=auth_headers("alice")).json()
        assert [r["user_id"] for r in receipts] == ["bob"]

    def test_join_of_foreign_chat_is_refused(self, api_client):
        chat = create_chat(api_client, "alice", ["bob"])["chat"]
        with api_client.websocket_connect(f"/ws?token={make_token('mallory')}") as ws:
            receive_connected(ws)
            ws.send_json({"type": "join_chat", "payload": {"chat_id": chat["id"]}})
            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["payload"]["error"] == "You are not a member of this chat"
