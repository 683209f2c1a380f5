"""/ws 시그널링 엔드포인트 및 HTTP API 테스트 (FastAPI TestClient)."""

import pytest
from fastapi.testclient import TestClient

from screencast.app import create_app


@pytest.fixture
def client():
    with TestClient(create_app(presence_timeout=60.0)) as client:
        yield client


def request(ws, msg_type, data=None, request_id=1):
    ws.send_json({"type": msg_type, "request_id": request_id, "data": data or {}})
    return ws.receive_json()


def connect(ws):
    hello = ws.receive_json()
    assert hello["type"] == "peer_id"
    return hello["data"]["peer_id"]


def test_root_and_health(client):
    assert client.get("/").json()["status"] == "ok"

    health = client.get("/api/health").json()
    assert health == {"status": "ok", "rooms": 0, "connections": 0}


def test_turn_credentials_lists_stun_servers(client):
    servers = client.get("/api/turn-credentials").json()

    urls = [server["urls"] for server in servers]
    assert "stun:stun.l.google.com:19302" in urls


def test_room_lifecycle_over_websocket(client):
    with client.websocket_connect("/ws") as host:
        host_id = connect(host)
        created = request(host, "create_room", request_id="c1")
        assert created["type"] == "result"
        assert created["request_id"] == "c1"
        room_id, token = created["data"]["room_id"], created["data"]["token"]

        joined = request(host, "join_room", {"room_id": room_id, "token": token})
        assert joined["data"] == {"role": "host", "host_id": host_id}

        with client.websocket_connect("/ws") as viewer:
            viewer_id = connect(viewer)

            rejected = request(viewer, "join_room", {"room_id": room_id, "token": "wrong-token"}, request_id=7)
            assert rejected == {
                "type": "error",
                "request_id": 7,
                "data": {"code": "invalid_token", "message": f"Invalid token for room '{room_id}'"},
            }

            accepted = request(viewer, "join_room", {"room_id": room_id, "token": token})
            assert accepted["data"] == {"role": "viewer", "host_id": host_id}
            assert host.receive_json() == {"type": "viewer_joined", "data": {"peer_id": viewer_id}}

            rooms = client.get("/api/rooms").json()["rooms"]
            assert rooms[0]["room_id"] == room_id
            assert rooms[0]["viewer_count"] == 1

            # sender id is always the server-issued identity
            sent = request(host, "signal", {
                "type": "offer",
                "payload": {"sdp": "v=0", "type": "offer"},
                "senderId": "spoofed",
            })
            assert sent["data"] == {"delivered": 1}
            relayed = viewer.receive_json()
            assert relayed == {
                "type": "signal",
                "data": {
                    "type": "offer",
                    "payload": {"sdp": "v=0", "type": "offer"},
                    "senderId": host_id,
                    "targetId": None,
                },
            }

            answered = request(viewer, "signal", {"type": "answer", "payload": {"sdp": "v=0", "type": "answer"}})
            assert answered["data"] == {"delivered": 1}
            assert host.receive_json()["data"]["senderId"] == viewer_id

        assert host.receive_json() == {"type": "viewer_left", "data": {"peer_id": viewer_id}}


def test_host_disconnect_sends_stop_to_viewers(client):
    with client.websocket_connect("/ws") as viewer:
        connect(viewer)
        with client.websocket_connect("/ws") as host:
            host_id = connect(host)
            room = request(host, "create_room")["data"]
            request(host, "join_room", room)
            request(viewer, "join_room", room)
            host.receive_json()  # viewer_joined

        stop = viewer.receive_json()
        assert stop["type"] == "signal"
        assert stop["data"]["type"] == "stop"
        assert stop["data"]["senderId"] == host_id

    assert client.get("/api/rooms").json() == {"rooms": []}


def test_close_room_by_viewer_is_rejected(client):
    with client.websocket_connect("/ws") as host, client.websocket_connect("/ws") as viewer:
        connect(host)
        connect(viewer)
        room = request(host, "create_room")["data"]
        request(viewer, "join_room", room)
        host.receive_json()  # viewer_joined

        refused = request(viewer, "close_room", room)
        assert refused["type"] == "error"
        assert refused["data"]["code"] == "not_host"

        closed = request(host, "close_room", room)
        assert closed["type"] == "result"
        stop = viewer.receive_json()
        assert stop["data"]["type"] == "stop"


def test_bad_requests(client):
    with client.websocket_connect("/ws") as ws:
        connect(ws)

        assert request(ws, "dance")["data"]["code"] == "bad_request"
        assert request(ws, "join_room", {"room_id": "x"})["data"]["code"] == "bad_request"
        assert request(ws, "join_room", {"room_id": "x", "token": "y"})["data"]["code"] == "room_not_found"
        assert request(ws, "signal", {"type": "offer"})["data"]["code"] == "not_in_room"
        assert request(ws, "signal", {"type": "nonsense"})["data"]["code"] == "bad_request"


def test_malformed_frames_keep_connection_open(client):
    with client.websocket_connect("/ws") as ws:
        connect(ws)

        ws.send_json([1, 2, 3])
        rejected = ws.receive_json()
        assert rejected["type"] == "error"
        assert rejected["request_id"] is None
        assert rejected["data"]["code"] == "bad_request"

        ws.send_json({"type": "heartbeat", "request_id": 3, "data": ["room", "token"]})
        rejected = ws.receive_json()
        assert rejected["request_id"] == 3
        assert rejected["data"]["code"] == "bad_request"

        assert request(ws, "create_room")["type"] == "result"
