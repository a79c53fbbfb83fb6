"""Tests for direct messaging over WebSocket and the HTTP pull-sync routes.

Delivery order on a successful send: the ``new_message`` push reaches every
session of sender and receiver first, then the sender's connection gets its
``ack``. To prove that a connection received *nothing* from an earlier send,
the tests make it send an invalid frame and check that the next event is the
resulting error.
"""
import threading
from datetime import timedelta

import pytest
from fastapi import WebSocketDisconnect

from taskchat.chat.channel import get_channel
from taskchat.chat.schemas import ChatError
from taskchat.chat.store import MessageStoreError


def _send(ws, sender, receiver, content, **extra):
    ws.send_json({
        "sender_id": sender.id,
        "receiver_id": receiver.id,
        "content": content,
        **extra,
    })


def assert_nothing_pending(ws):
    """The next event on ``ws`` is the error for a throwaway invalid frame."""
    ws.send_text("not json")
    event = ws.receive_json()
    assert event == {"type": "error", "status": "error", "message": ChatError.INVALID_JSON}


# =============================================================================
# Handshake
# =============================================================================


class TestHandshake:
    def test_missing_credential_closes_4001(self, client, users):
        with client.websocket_connect("/ws/chat") as ws:
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
        assert exc.value.code == 4001
        assert exc.value.reason == "unauthorized: missing credential"

    def test_invalid_credential_closes_4002(self, client, users):
        with client.websocket_connect("/ws/chat?token=garbage") as ws:
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
        assert exc.value.code == 4002
        assert exc.value.reason == "unauthorized: invalid credential"

    def test_expired_credential_closes_4002(self, client, users, token_for):
        token = token_for(users["alice"], expires_in=timedelta(seconds=-30))
        with client.websocket_connect(f"/ws/chat?token={token}") as ws:
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
        assert exc.value.code == 4002

    def test_rejected_connection_is_not_registered(self, client, users):
        with client.websocket_connect("/ws/chat") as ws:
            with pytest.raises(WebSocketDisconnect):
                ws.receive_json()
        assert get_channel().registry.connection_count() == 0

    def test_bearer_header_accepted(self, client, users, auth_headers):
        alice = users["alice"]
        with client.websocket_connect("/ws/chat", headers=auth_headers(alice)) as ws:
            assert_nothing_pending(ws)
            assert get_channel().registry.connection_count(alice.id) == 1

    def test_disconnect_deregisters(self, client, users, token_for):
        alice = users["alice"]
        with client.websocket_connect(f"/ws/chat?token={token_for(alice)}") as ws:
            assert_nothing_pending(ws)
            assert get_channel().registry.connection_count(alice.id) == 1
        assert get_channel().registry.connection_count(alice.id) == 0


# =============================================================================
# Sending
# =============================================================================


class TestSend:
    def test_send_pushes_to_both_then_acks(self, client, users, token_for, auth_headers):
        alice, admin = users["alice"], users["admin"]

        with client.websocket_connect(f"/ws/chat?token={token_for(alice)}") as ws_alice, \
             client.websocket_connect(f"/ws/chat?token={token_for(admin)}") as ws_admin:

            _send(ws_alice, alice, admin, "  hello  ", client_id="tmp-1")

            pushed = ws_alice.receive_json()
            assert pushed["type"] == "new_message"
            message = pushed["message"]
            assert message["content"] == "hello"
            assert message["senderId"] == alice.id
            assert message["receiverId"] == admin.id
            assert message["isRead"] is False
            assert message["senderName"] == "alice"
            assert message["receiverName"] == "support"
            assert message["createdAt"]

            ack = ws_alice.receive_json()
            assert ack == {
                "type": "ack",
                "status": "success",
                "messageId": message["id"],
                "clientId": "tmp-1",
            }

            assert ws_admin.receive_json() == pushed

        # Pull-sync returns the same message
        history = client.get(
            f"/api/admin/messages/{alice.id}", headers=auth_headers(admin)
        ).json()
        assert history == [message]

    def test_ack_without_client_id(self, client, users, token_for):
        alice, admin = users["alice"], users["admin"]
        with client.websocket_connect(f"/ws/chat?token={token_for(alice)}") as ws:
            _send(ws, alice, admin, "hi")
            ws.receive_json()
            ack = ws.receive_json()
            assert ack["type"] == "ack"
            assert "clientId" not in ack

    def test_every_session_receives_push(self, client, users, token_for):
        alice, admin = users["alice"], users["admin"]
        admin_token = token_for(admin)

        with client.websocket_connect(f"/ws/chat?token={token_for(alice)}") as ws_alice, \
             client.websocket_connect(f"/ws/chat?token={admin_token}") as tab1, \
             client.websocket_connect(f"/ws/chat?token={admin_token}") as tab2:

            _send(ws_alice, alice, admin, "anyone there?")
            ws_alice.receive_json()
            ws_alice.receive_json()

            first = tab1.receive_json()
            second = tab2.receive_json()
            assert first == second
            assert first["message"]["content"] == "anyone there?"

    def test_bystander_receives_nothing(self, client, users, token_for):
        alice, admin, carol = users["alice"], users["admin"], users["carol"]

        with client.websocket_connect(f"/ws/chat?token={token_for(alice)}") as ws_alice, \
             client.websocket_connect(f"/ws/chat?token={token_for(carol)}") as ws_carol:

            _send(ws_alice, alice, admin, "private")
            assert ws_alice.receive_json()["type"] == "new_message"
            assert ws_alice.receive_json()["type"] == "ack"

            assert_nothing_pending(ws_carol)

    def test_offline_receiver_gets_message_on_pull(self, client, users, token_for, auth_headers):
        alice, bob = users["alice"], users["bob"]

        with client.websocket_connect(f"/ws/chat?token={token_for(alice)}") as ws:
            _send(ws, alice, bob, "see you later")
            ws.receive_json()
            assert ws.receive_json()["type"] == "ack"

        history = client.get(f"/api/messages/{alice.id}", headers=auth_headers(bob)).json()
        assert [m["content"] for m in history] == ["see you later"]

    def test_accepted_message_survives_sender_disconnect(
        self, client, users, token_for, auth_headers, monkeypatch
    ):
        alice, admin = users["alice"], users["admin"]
        store = get_channel().store
        real_insert = store.insert
        started, release = threading.Event(), threading.Event()

        def stalled_insert(*args):
            started.set()
            release.wait(timeout=5)
            return real_insert(*args)

        monkeypatch.setattr(store, "insert", stalled_insert)

        with client.websocket_connect(f"/ws/chat?token={token_for(admin)}") as ws_admin:
            with client.websocket_connect(f"/ws/chat?token={token_for(alice)}") as ws_alice:
                _send(ws_alice, alice, admin, "sent just before closing")
                assert started.wait(timeout=5)
            # Sender's socket is gone while the insert is still pending
            release.set()

            pushed = ws_admin.receive_json()
            assert pushed["type"] == "new_message"
            assert pushed["message"]["content"] == "sent just before closing"
            assert pushed["message"]["senderId"] == alice.id

        monkeypatch.undo()
        history = client.get(
            f"/api/admin/messages/{alice.id}", headers=auth_headers(admin)
        ).json()
        assert history == [pushed["message"]]

    def test_messages_in_send_order(self, client, users, token_for, auth_headers):
        alice, admin = users["alice"], users["admin"]

        with client.websocket_connect(f"/ws/chat?token={token_for(alice)}") as ws:
            ids = []
            for i in range(5):
                _send(ws, alice, admin, f"msg {i}")
                ws.receive_json()
                ids.append(ws.receive_json()["messageId"])

        assert ids == sorted(ids)
        history = client.get("/api/student/messages", headers=auth_headers(alice)).json()
        assert [m["content"] for m in history] == [f"msg {i}" for i in range(5)]
        assert [m["id"] for m in history] == ids


# =============================================================================
# Rejections
# =============================================================================


class TestRejections:
    def test_sender_mismatch(self, client, users, token_for, auth_headers):
        alice, bob, admin = users["alice"], users["bob"], users["admin"]

        with client.websocket_connect(f"/ws/chat?token={token_for(alice)}") as ws_alice, \
             client.websocket_connect(f"/ws/chat?token={token_for(admin)}") as ws_admin:

            _send(ws_alice, bob, admin, "spoofed", client_id="tmp-2")
            assert ws_alice.receive_json() == {
                "type": "error",
                "status": "error",
                "message": ChatError.SENDER_MISMATCH,
                "clientId": "tmp-2",
            }
            assert_nothing_pending(ws_admin)

        assert client.get(
            f"/api/admin/messages/{bob.id}", headers=auth_headers(admin)
        ).json() == []

    def test_unknown_receiver(self, client, users, token_for, auth_headers):
        alice, admin = users["alice"], users["admin"]

        with client.websocket_connect(f"/ws/chat?token={token_for(alice)}") as ws_alice, \
             client.websocket_connect(f"/ws/chat?token={token_for(admin)}") as ws_admin:

            ws_alice.send_json({"sender_id": alice.id, "receiver_id": 9999, "content": "hello?"})
            event = ws_alice.receive_json()
            assert event == {
                "type": "error",
                "status": "error",
                "message": ChatError.UNKNOWN_RECEIVER,
            }

            # No new_message push to the sender or anyone else
            assert_nothing_pending(ws_alice)
            assert_nothing_pending(ws_admin)

        headers = auth_headers(alice)
        assert client.get("/api/messages/9999", headers=headers).json() == []
        assert client.get("/api/messages/threads", headers=headers).json() == []

    @pytest.mark.parametrize("field,reason", [
        ("receiver_id", ChatError.INVALID_RECEIVER),
        ("sender_id", ChatError.INVALID_SENDER),
    ])
    def test_id_beyond_storage_range(self, client, users, token_for, field, reason):
        alice = users["alice"]
        payload = {"sender_id": alice.id, "receiver_id": users["admin"].id, "content": "hi"}
        payload[field] = 10 ** 40

        with client.websocket_connect(f"/ws/chat?token={token_for(alice)}") as ws:
            ws.send_json(payload)
            assert ws.receive_json()["message"] == reason

    def test_invalid_json_keeps_connection_open(self, client, users, token_for):
        alice, admin = users["alice"], users["admin"]
        with client.websocket_connect(f"/ws/chat?token={token_for(alice)}") as ws:
            ws.send_text("{broken")
            assert ws.receive_json()["message"] == ChatError.INVALID_JSON

            # Same connection still works
            _send(ws, alice, admin, "after error")
            assert ws.receive_json()["type"] == "new_message"
            assert ws.receive_json()["type"] == "ack"

    @pytest.mark.parametrize("payload,reason", [
        ({"receiver_id": 1, "content": "x"}, ChatError.INVALID_SENDER),
        ({"sender_id": "{me}", "receiver_id": "abc", "content": "x"}, ChatError.INVALID_RECEIVER),
        ({"sender_id": "{me}", "receiver_id": 1, "content": "   "}, ChatError.EMPTY_CONTENT),
        ({"sender_id": "{me}", "receiver_id": 1, "content": "x" * 2001}, ChatError.TOO_LONG),
        ({"type": "typing", "sender_id": "{me}", "receiver_id": 1}, ChatError.INVALID_FORMAT),
    ])
    def test_validation_errors(self, client, users, token_for, payload, reason):
        alice = users["alice"]
        payload = {k: (alice.id if v == "{me}" else v) for k, v in payload.items()}
        with client.websocket_connect(f"/ws/chat?token={token_for(alice)}") as ws:
            ws.send_json(payload)
            assert ws.receive_json()["message"] == reason

    def test_max_length_accepted(self, client, users, token_for):
        alice, admin = users["alice"], users["admin"]
        with client.websocket_connect(f"/ws/chat?token={token_for(alice)}") as ws:
            _send(ws, alice, admin, "x" * 2000)
            assert len(ws.receive_json()["message"]["content"]) == 2000
            assert ws.receive_json()["type"] == "ack"

    def test_store_failure(self, client, users, token_for, auth_headers, monkeypatch):
        alice, admin = users["alice"], users["admin"]

        def failing_insert(*args, **kwargs):
            raise MessageStoreError("database unavailable")

        monkeypatch.setattr(get_channel().store, "insert", failing_insert)

        with client.websocket_connect(f"/ws/chat?token={token_for(alice)}") as ws_alice, \
             client.websocket_connect(f"/ws/chat?token={token_for(admin)}") as ws_admin:

            _send(ws_alice, alice, admin, "lost", client_id="tmp-3")
            event = ws_alice.receive_json()
            assert event["type"] == "error"
            assert event["message"] == ChatError.SAVE_FAILED
            assert event["clientId"] == "tmp-3"

            assert_nothing_pending(ws_admin)

        monkeypatch.undo()
        assert client.get("/api/student/messages", headers=auth_headers(alice)).json() == []


# =============================================================================
# HTTP fallback and pull-sync
# =============================================================================


class TestHttpRoutes:
    def test_http_send_pushes_to_open_sockets(self, client, users, token_for, auth_headers):
        alice, admin = users["alice"], users["admin"]

        with client.websocket_connect(f"/ws/chat?token={token_for(admin)}") as ws_admin:
            response = client.post(
                "/api/student/messages",
                json={"content": " via http "},
                headers=auth_headers(alice),
            )
            assert response.status_code == 201
            body = response.json()
            assert body["content"] == "via http"
            assert body["receiverId"] == admin.id

            pushed = ws_admin.receive_json()
            assert pushed == {"type": "new_message", "message": body}

    def test_http_send_to_any_user(self, client, users, auth_headers):
        admin, bob = users["admin"], users["bob"]
        response = client.post(
            "/api/messages",
            json={"receiver_id": bob.id, "content": "hi bob"},
            headers=auth_headers(admin),
        )
        assert response.status_code == 201
        assert response.json()["senderId"] == admin.id

    @pytest.mark.parametrize("body,status,error", [
        ({"receiver_id": 9999, "content": "x"}, 404, ChatError.UNKNOWN_RECEIVER),
        ({"receiver_id": 1, "content": "  "}, 400, ChatError.EMPTY_CONTENT),
        ({"receiver_id": 1, "content": "x" * 2001}, 400, ChatError.TOO_LONG),
        ({"receiver_id": 10 ** 40, "content": "x"}, 400, ChatError.INVALID_RECEIVER),
    ])
    def test_http_send_rejections(self, client, users, auth_headers, body, status, error):
        response = client.post("/api/messages", json=body, headers=auth_headers(users["alice"]))
        assert response.status_code == status
        assert response.json() == {"error": error}

    def test_http_send_requires_token(self, client, users):
        response = client.post("/api/messages", json={"receiver_id": 1, "content": "x"})
        assert response.status_code == 401

    def test_read_receipt(self, client, users, token_for, auth_headers):
        alice, admin = users["alice"], users["admin"]
        sent = client.post(
            "/api/student/messages", json={"content": "read me"}, headers=auth_headers(alice)
        ).json()

        with client.websocket_connect(f"/ws/chat?token={token_for(alice)}") as ws_alice:
            # Only the receiver may mark it read
            response = client.post(f"/api/messages/{sent['id']}/read", headers=auth_headers(alice))
            assert response.status_code == 403

            response = client.post(f"/api/messages/{sent['id']}/read", headers=auth_headers(admin))
            assert response.status_code == 200
            assert response.json()["isRead"] is True

            assert ws_alice.receive_json() == {
                "type": "message_read",
                "messageIds": [sent["id"]],
                "readerId": admin.id,
            }

            # Second mark is a no-op and sends no receipt
            response = client.post(f"/api/messages/{sent['id']}/read", headers=auth_headers(admin))
            assert response.status_code == 200
            assert_nothing_pending(ws_alice)

    def test_read_unknown_message(self, client, users, auth_headers):
        response = client.post("/api/messages/424242/read", headers=auth_headers(users["admin"]))
        assert response.status_code == 404

    def test_unread_count_threads_and_read_all(self, client, users, auth_headers):
        alice, bob, admin = users["alice"], users["bob"], users["admin"]
        for student, text in ((alice, "a1"), (alice, "a2"), (bob, "b1")):
            client.post("/api/student/messages", json={"content": text}, headers=auth_headers(student))

        assert client.get(
            "/api/messages/unread-count", headers=auth_headers(admin)
        ).json() == {"count": 3}

        threads = client.get("/api/messages/threads", headers=auth_headers(admin)).json()
        assert [t["userId"] for t in threads] == [bob.id, alice.id]
        assert threads[1]["unreadCount"] == 2
        assert threads[1]["lastMessage"]["content"] == "a2"

        updated = client.post(
            f"/api/messages/read-all/{alice.id}", headers=auth_headers(admin)
        ).json()
        assert [m["content"] for m in updated] == ["a1", "a2"]
        assert client.get(
            "/api/messages/unread-count", headers=auth_headers(admin)
        ).json() == {"count": 1}

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}
