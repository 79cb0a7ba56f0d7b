import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from copytrader.api import websocket
from copytrader.main import create_app
from copytrader.services.notification_service import NotificationService


@pytest.fixture
def client():
    notifier = NotificationService()
    websocket.set_ws_dependencies(lambda: notifier)
    return TestClient(create_app())


def test_ping_pong(client):
    with client.websocket_connect("/ws?user_id=f1") as ws:
        ws.send_text('{"action": "ping"}')
        assert ws.receive_json() == {"type": "pong", "data": {}}


def test_user_id_is_required(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws") as ws:
            ws.receive_text()


def test_logs_endpoint(client):
    response = client.get("/api/logs", params={"limit": 5})
    assert response.status_code == 200
    assert set(response.json()) == {"entries", "latest_seq"}
