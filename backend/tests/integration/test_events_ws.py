"""Integration tests for the /ws event stream."""

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from backend.src.api.main import app
from backend.src.services import config as config_module
from backend.src.services.dependencies import reset_services

TOKEN = "integration-test-token-0123456789"


@pytest.fixture(autouse=True)
def restore_state(monkeypatch):
    monkeypatch.delenv("COORD_AUTH_TOKEN", raising=False)
    config_module.reload_config()
    reset_services()
    yield
    reset_services()
    config_module.reload_config()


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


@pytest.mark.integration
class TestEventStream:
    """Events reach connected WebSocket clients."""

    def test_initial_state_lists_current_nodes(self, client: TestClient):
        client.post("/api/v1/nodes", json={"id": "n1"})

        with client.websocket_connect("/ws") as ws:
            message = ws.receive_json()

        assert message["type"] == "initial_state"
        assert message["data"]["count"] == 1
        assert [n["id"] for n in message["data"]["nodes"]] == ["n1"]

    def test_registration_is_broadcast(self, client: TestClient):
        with client.websocket_connect("/ws") as ws:
            assert ws.receive_json()["data"]["count"] == 0

            client.post("/api/v1/nodes", json={"id": "n1", "name": "worker"})
            event = ws.receive_json()

        assert event["type"] == "node_registered"
        assert event["data"]["node"]["id"] == "n1"
        assert event["data"]["created"] is True
        assert "timestamp" in event

    def test_unregister_is_broadcast(self, client: TestClient):
        client.post("/api/v1/nodes", json={"id": "n1"})

        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            client.delete("/api/v1/nodes/n1")
            event = ws.receive_json()

        assert event == {**event, "type": "node_unregistered", "data": {"node_id": "n1"}}

    def test_command_dispatch_is_broadcast(self, client: TestClient):
        client.post("/api/v1/nodes", json={"id": "poller"})

        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            command = client.post("/api/v1/nodes/poller/commands", json={"action": "list"}).json()
            dispatched = ws.receive_json()
            client.post(f"/api/v1/commands/{command['id']}/result", json={"status": "success"})
            result = ws.receive_json()

        assert dispatched["type"] == "command_dispatched"
        assert dispatched["data"]["command"]["id"] == command["id"]
        assert result["type"] == "command_result"
        assert result["data"]["command"]["status"] == "success"

    def test_every_client_receives_events(self, client: TestClient):
        with client.websocket_connect("/ws") as first, client.websocket_connect("/ws") as second:
            first.receive_json()
            second.receive_json()

            client.post("/api/v1/nodes", json={"id": "n1"})

            assert first.receive_json()["type"] == "node_registered"
            assert second.receive_json()["type"] == "node_registered"


@pytest.mark.integration
class TestEventStreamAuth:
    """With a token configured, /ws requires it."""

    @pytest.fixture(autouse=True)
    def secured(self, monkeypatch):
        monkeypatch.setenv("COORD_AUTH_TOKEN", TOKEN)
        config_module.reload_config()

    def test_missing_token_closes_with_policy_violation(self, client: TestClient):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws") as ws:
                ws.receive_json()

        assert exc_info.value.code == 1008

    def test_token_in_query(self, client: TestClient):
        with client.websocket_connect(f"/ws?token={TOKEN}") as ws:
            assert ws.receive_json()["type"] == "initial_state"

    def test_token_in_header(self, client: TestClient):
        with client.websocket_connect("/ws", headers={"Authorization": f"Bearer {TOKEN}"}) as ws:
            assert ws.receive_json()["type"] == "initial_state"
