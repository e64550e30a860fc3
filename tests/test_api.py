"""
tests.test_api
~~~~~~~~~~~~~~

端到端测试 —— 通过 FastAPI ``TestClient`` 驱动真实的 ``/ws`` 端点与 HTTP 旁路接口。
"""
from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.main import app


def _join(room_id: str, username: str) -> dict:
    return {"type": "join", "payload": {"roomId": room_id, "username": username}}


@pytest.fixture()
def client() -> Iterator[TestClient]:
    # 进入上下文以触发 lifespan（创建 ChatSystem 并挂载到 app.state）
    with TestClient(app) as test_client:
        yield test_client


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_status_counts_connections_and_rooms(client: TestClient) -> None:
    assert client.get("/api/status").json()["data"] == {"connections": 0, "rooms": 0}

    with client.websocket_connect("/ws") as alice, client.websocket_connect("/ws") as idle:
        alice.send_json(_join("lobby", "alice"))
        assert [alice.receive_json()["type"] for _ in range(3)] == ["system", "room_state", "history"]

        body = client.get("/api/status").json()

        assert body["code"] == 200
        assert body["data"] == {"connections": 2, "rooms": 1}


def test_room_info(client: TestClient) -> None:
    assert client.get("/api/rooms/nowhere").status_code == 404

    with client.websocket_connect("/ws") as alice:
        alice.send_json(_join("lobby", "alice"))
        for _ in range(3):
            alice.receive_json()
        alice.send_json({"type": "chat", "payload": {"message": "hello"}})
        assert alice.receive_json()["type"] == "chat"

        data = client.get("/api/rooms/lobby").json()["data"]

        assert data == {
            "roomId": "lobby",
            "host": "alice",
            "isLocked": False,
            "users": ["alice"],
            "historySize": 1,
        }


def test_lobby_scenario_over_websocket(client: TestClient) -> None:
    """alice 加入 → 重名被拒 1008 → bob 加入 → alice 锁房 → carol 被拒 1008。"""
    with client.websocket_connect("/ws") as alice:
        alice.send_json(_join("lobby", "alice"))
        welcome = alice.receive_json()
        assert welcome == {"type": "system", "message": 'Welcome to room "lobby"!'}
        assert alice.receive_json()["type"] == "room_state"
        assert alice.receive_json() == {"type": "history", "payload": []}

        with client.websocket_connect("/ws") as duplicate:
            duplicate.send_json(_join("lobby", "alice"))
            with pytest.raises(WebSocketDisconnect) as exc_info:
                duplicate.receive_json()
            assert exc_info.value.code == 1008

        with client.websocket_connect("/ws") as bob:
            bob.send_json(_join("lobby", "bob"))
            assert [bob.receive_json()["type"] for _ in range(3)] == ["system", "room_state", "history"]
            assert alice.receive_json() == {"type": "user_joined", "payload": {"username": "bob", "isHost": False}}
            assert alice.receive_json()["type"] == "system"

            alice.send_json({"type": "admin", "payload": {"command": "lock"}})
            for ws in (alice, bob):
                assert ws.receive_json() == {"type": "room_lock_update", "payload": {"isLocked": True}}
                assert ws.receive_json() == {"type": "system", "message": "Room is now locked."}

            with client.websocket_connect("/ws") as carol:
                carol.send_json(_join("lobby", "carol"))
                with pytest.raises(WebSocketDisconnect) as exc_info:
                    carol.receive_json()
                assert exc_info.value.code == 1008


def test_dm_and_kick_over_websocket(client: TestClient) -> None:
    with client.websocket_connect("/ws") as alice, client.websocket_connect("/ws") as bob:
        alice.send_json(_join("den", "alice"))
        for _ in range(3):
            alice.receive_json()
        bob.send_json(_join("den", "bob"))
        for _ in range(3):
            bob.receive_json()
        alice.receive_json()  # user_joined
        alice.receive_json()  # system

        alice.send_json({"type": "dm", "payload": {"toUsername": "bob", "message": "hi"}})
        to_bob = bob.receive_json()
        echo = alice.receive_json()
        assert to_bob == echo
        assert to_bob["type"] == "private_message"

        alice.send_json({"type": "dm", "payload": {"toUsername": "ghost", "message": "hi"}})
        error = alice.receive_json()
        assert error["type"] == "error"
        assert "ghost" in error["message"]

        alice.send_json({"type": "admin", "payload": {"command": "kick", "targetUser": "bob"}})
        assert bob.receive_json() == {"type": "system", "message": "You have been kicked from the room."}
        with pytest.raises(WebSocketDisconnect) as exc_info:
            bob.receive_json()
        assert exc_info.value.code == 4001
        assert alice.receive_json() == {"type": "user_left", "payload": {"username": "bob", "reason": "kicked"}}
