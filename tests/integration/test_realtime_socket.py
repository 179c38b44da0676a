"""Integration tests for the /ws/chat realtime endpoint."""

from collections.abc import Callable
from typing import Any
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from tests.conftest import CUSTOMER_ID, OTHER_USER_ID, VENDOR_ID, make_token

Headers = Callable[..., dict[str, str]]


def receive_until(ws: Any, event: str, /, **match: Any) -> dict[str, Any]:
    """Read frames until one with ``event`` (and matching data fields) arrives."""
    while True:
        frame = ws.receive_json()
        if frame["event"] == event and all(frame["data"].get(k) == v for k, v in match.items()):
            return frame["data"]


def sync(ws: Any) -> None:
    """Round-trip an unknown event so every earlier frame has been handled."""
    ws.send_json({"event": "sync", "data": None})
    receive_until(ws, "message-error", event="sync")


def start_conversation(client: TestClient, auth_headers: Headers) -> str:
    response = client.post(
        "/api/v1/chat/conversations",
        json={"customer_id": CUSTOMER_ID, "vendor_id": VENDOR_ID},
        headers=auth_headers(),
    )
    return response.json()["data"]["id"]


class TestConnection:
    """Tests for connection admission."""

    def test_invalid_token_is_rejected(self, client: TestClient) -> None:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws/chat?token=not-a-jwt") as ws:
                ws.receive_json()

        assert exc_info.value.code == 1008

    def test_anonymous_rejected_when_auth_required(self, client: TestClient) -> None:
        with patch("src.api.routes.realtime.get_settings") as settings:
            settings.return_value.realtime_require_auth = True
            with pytest.raises(WebSocketDisconnect) as exc_info:
                with client.websocket_connect("/ws/chat") as ws:
                    ws.receive_json()

        assert exc_info.value.code == 1008

    def test_token_connection_is_online(self, client: TestClient, auth_headers: Headers) -> None:
        with client.websocket_connect(f"/ws/chat?token={make_token(CUSTOMER_ID)}") as ws:
            sync(ws)
            response = client.get("/health/auth", headers=auth_headers())

        assert response.json()["online"] is True

    def test_malformed_frame_keeps_connection_open(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/chat") as ws:
            ws.send_text("this is not json")
            error = receive_until(ws, "message-error")
            sync(ws)

        assert error == {"event": None, "message": "Malformed frame"}

    def test_binary_frame_is_handled_as_text(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/chat") as ws:
            ws.send_bytes(b'{"event": "sync", "data": null}')
            error = receive_until(ws, "message-error")
            sync(ws)

        assert error == {"event": "sync", "message": "Unknown event: sync"}

    def test_undecodable_binary_frame_keeps_connection_open(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/chat") as ws:
            ws.send_bytes(b"\xff\xfe\x00")
            error = receive_until(ws, "message-error")
            sync(ws)

        assert error == {"event": None, "message": "Malformed frame"}


class TestChatFlow:
    """End-to-end message flow between two sockets."""

    def test_message_reaches_room_and_receiver(self, client: TestClient, auth_headers: Headers) -> None:
        conversation_id = start_conversation(client, auth_headers)

        with client.websocket_connect("/ws/chat") as customer, client.websocket_connect("/ws/chat") as vendor:
            customer.send_json({"event": "presence-announce", "data": {"user_id": CUSTOMER_ID}})
            customer.send_json({"event": "room-join", "data": {"conversation_id": conversation_id}})
            sync(customer)
            vendor.send_json({"event": "presence-announce", "data": VENDOR_ID})
            vendor.send_json({"event": "room-join", "data": conversation_id})
            sync(vendor)

            customer.send_json(
                {
                    "event": "message-send",
                    "data": {
                        "conversation_id": conversation_id,
                        "sender_id": CUSTOMER_ID,
                        "sender_type": "customer",
                        "message": "Hello from the socket",
                    },
                }
            )

            echoed = receive_until(customer, "message-receive")
            delivered = receive_until(vendor, "message-receive")
            unread = receive_until(vendor, "unread-update")

        assert echoed["message"]["message"] == "Hello from the socket"
        assert delivered["conversation_id"] == conversation_id
        assert unread == {"conversation_id": conversation_id, "unread_count": 1, "total_unread": 1}

        stored = client.get(f"/api/v1/chat/conversations/{conversation_id}", headers=auth_headers()).json()["data"]
        assert [m["message"] for m in stored["messages"]] == ["Hello from the socket"]

    def test_http_send_is_pushed_to_sockets(self, client: TestClient, auth_headers: Headers) -> None:
        conversation_id = start_conversation(client, auth_headers)

        with client.websocket_connect("/ws/chat") as vendor:
            vendor.send_json({"event": "room-join", "data": conversation_id})
            sync(vendor)

            client.post(
                f"/api/v1/chat/conversations/{conversation_id}/messages",
                json={"message": "Sent over HTTP"},
                headers=auth_headers(),
            )
            received = receive_until(vendor, "message-receive")

        assert received["message"]["sender_type"] == "customer"
        assert received["last_message"] == "Sent over HTTP"

    def test_bound_identity_cannot_be_spoofed(self, client: TestClient, auth_headers: Headers) -> None:
        conversation_id = start_conversation(client, auth_headers)

        with client.websocket_connect(f"/ws/chat?token={make_token(OTHER_USER_ID)}") as ws:
            ws.send_json(
                {
                    "event": "message-send",
                    "data": {
                        "conversation_id": conversation_id,
                        "sender_id": CUSTOMER_ID,
                        "sender_type": "customer",
                        "message": "spoofed",
                    },
                }
            )
            error = receive_until(ws, "message-error")
            sync(ws)

        assert error["event"] == "message-send"
        assert "does not match" in error["message"]
        stored = client.get(f"/api/v1/chat/conversations/{conversation_id}", headers=auth_headers()).json()["data"]
        assert stored["messages"] == []
