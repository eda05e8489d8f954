"""Tests for the relay's FastAPI application."""

import time

import pytest

from smartpark.config import Config, NodeConfig

# Only run tests if fastapi is installed
pytest.importorskip("fastapi")


from fastapi.testclient import TestClient
from smartpark.relay import create_app

from helpers import spots_payload


@pytest.fixture
def config():
    """Create a test configuration."""
    return Config(node=NodeConfig(name="test-relay-node"))


@pytest.fixture
def client(config):
    """Test client sharing one event loop across all sessions."""
    with TestClient(create_app(config)) as test_client:
        yield test_client


def _wait_for_spots(client, count: int, timeout: float = 2.0) -> dict:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        state = client.get("/api/state").json()
        if len(state["spots"]) == count:
            return state
        time.sleep(0.01)
    raise AssertionError(f"Relay never reached {count} spots")


class TestApiRoutes:
    """Tests for the HTTP routes."""

    def test_health(self, client):
        """Test the health endpoint."""
        response = client.get("/api/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["node_name"] == "test-relay-node"
        assert data["peers"] == 0
        assert data["seeded"] is False
        assert "timestamp" in data

    def test_state_starts_empty(self, client):
        """Test the state endpoint starts with an empty document."""
        data = client.get("/api/state").json()

        assert data["spots"] == []
        assert data["spotLocations"] == {}
        assert data["zones"] == []
        assert data["mapImage"] is None
        assert isinstance(data["lastUpdated"], int)


class TestWebSocket:
    """Tests for the WebSocket endpoint."""

    def test_connect_receives_init(self, client):
        """Test a new connection receives INIT."""
        with client.websocket_connect("/ws") as ws:
            message = ws.receive_json()

        assert message["type"] == "INIT"
        assert message["payload"]["spots"] == []

    def test_seed_then_second_client_gets_state(self, client):
        """Test a seeded state reaches a later client."""
        with client.websocket_connect("/ws") as first:
            first.receive_json()
            first.send_json({"type": "SYNC_INITIAL", "payload": {"spots": spots_payload(4)}})
            _wait_for_spots(client, 4)

            with client.websocket_connect("/ws") as second:
                init = second.receive_json()

        assert init["type"] == "INIT"
        assert init["payload"]["spots"] == spots_payload(4)

    def test_update_relayed_to_other_client(self, client):
        """Test an UPDATE is relayed to the other client."""
        with client.websocket_connect("/ws") as a, client.websocket_connect("/ws") as b:
            a.receive_json()
            b.receive_json()

            a.send_json({"type": "UPDATE", "payload": {"mapImage": "data:image/png;base64,AAAA"}})
            message = b.receive_json()

        assert message == {
            "type": "UPDATE",
            "payload": {"mapImage": "data:image/png;base64,AAAA"},
        }
        assert client.get("/api/state").json()["mapImage"] == "data:image/png;base64,AAAA"

    def test_malformed_message_keeps_connection(self, client):
        """Test malformed input does not close the connection."""
        with client.websocket_connect("/ws") as a, client.websocket_connect("/ws") as b:
            a.receive_json()
            b.receive_json()

            a.send_text("this is not json")
            a.send_text("[" * 100000)
            a.send_json({"type": "UPDATE", "payload": {"zones": []}})
            message = b.receive_json()

        assert message["payload"] == {"zones": []}
        assert client.get("/api/health").json()["updates_applied"] == 1

    def test_disconnect_updates_peer_count(self, client):
        """Test disconnecting lowers the peer count."""
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            assert client.get("/api/health").json()["peers"] == 1

        deadline = time.monotonic() + 2.0
        while client.get("/api/health").json()["peers"] and time.monotonic() < deadline:
            time.sleep(0.01)
        assert client.get("/api/health").json()["peers"] == 0

    def test_custom_path(self):
        """Test serving the WebSocket on a configured path."""
        config = Config()
        config.relay.path = "/relay"

        with TestClient(create_app(config)) as client:
            with client.websocket_connect("/relay") as ws:
                assert ws.receive_json()["type"] == "INIT"
