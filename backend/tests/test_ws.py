"""WebSocket job event stream."""
import pytest
from fastapi.testclient import TestClient

from cvewatch.main import app
from cvewatch.services.log_broker import LogBroker


@pytest.fixture
def broker():
    app.state.broker = LogBroker()
    return app.state.broker


@pytest.fixture
def client():
    # No context manager: the lifespan (database, scheduler) is not needed here
    return TestClient(app)


class TestJobWebSocket:
    def test_ping_pong(self, client, broker):
        with client.websocket_connect("/api/ws/jobs/1") as ws:
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_invalid_json(self, client, broker):
        with client.websocket_connect("/api/ws/jobs/1") as ws:
            ws.send_text("not json")
            assert ws.receive_json()["type"] == "error"

    def test_forwards_published_events(self, client, broker):
        with client.websocket_connect("/api/ws/jobs/7") as ws:
            ws.send_json({"type": "ping"})
            ws.receive_json()
            assert broker.subscriber_count(7) == 1
            ws.portal.call(broker.publish, 7, {"type": "end", "status": "COMPLETED", "error": None})
            assert ws.receive_json() == {"type": "end", "status": "COMPLETED", "error": None}

    def test_disconnect_releases_subscription(self, client, broker):
        with client.websocket_connect("/api/ws/jobs/9") as ws:
            ws.send_json({"type": "ping"})
            ws.receive_json()
            assert broker.subscriber_count(9) == 1
        assert broker.subscriber_count(9) == 0
