"""HTTP and websocket surface, exercised through FastAPI's TestClient."""
import pytest
from fastapi.testclient import TestClient

from fanout.core.config import Settings
from fanout.main import create_app
from fanout.shared.schemas import RegisterChannelRequest, ReplayGeneratorConfig


@pytest.fixture
def app_settings():
    return Settings(
        default_channels=[
            RegisterChannelRequest(name="temp", cadence_ms=60_000, generator=ReplayGeneratorConfig(values=[20.0]))
        ],
        drain_timeout_ms=50,
        send_timeout_ms=500,
        prometheus_enabled=True,
    )


@pytest.fixture
def client(app_settings):
    with TestClient(create_app(app_settings)) as client:
        yield client


class TestChannelsApi:
    def test_default_channels_are_registered_at_startup(self, client):
        response = client.get("/api/channels")

        assert response.status_code == 200
        channels = response.json()
        assert [channel["name"] for channel in channels] == ["temp"]
        assert channels[0]["running"] is True
        assert channels[0]["retained"] is True

    def test_register_and_fetch_a_channel(self, client):
        response = client.post(
            "/api/channels",
            json={"name": "manual", "generator": {"kind": "external"}},
        )

        assert response.status_code == 201
        assert response.json()["running"] is False
        assert client.get("/api/channels/manual").json()["name"] == "manual"

    def test_register_duplicate_is_a_conflict(self, client):
        assert client.post("/api/channels", json={"name": "temp"}).status_code == 409

    def test_register_rejects_invalid_cadence(self, client):
        response = client.post("/api/channels", json={"name": "fast", "cadence_ms": 0})
        assert response.status_code == 422

    def test_unknown_channel_is_404(self, client):
        assert client.get("/api/channels/missing").status_code == 404
        assert client.get("/api/channels/missing/latest").status_code == 404
        assert client.delete("/api/channels/missing").status_code == 404
        assert client.post("/api/channels/missing/samples", json={"value": 1.0}).status_code == 404

    def test_publish_then_read_latest(self, client):
        client.post("/api/channels", json={"name": "manual", "generator": {"kind": "external"}})
        assert client.get("/api/channels/manual/latest").json() is None

        response = client.post("/api/channels/manual/samples", json={"value": 4.25})

        assert response.status_code == 202
        assert response.json()["value"] == 4.25
        latest = client.get("/api/channels/manual/latest").json()
        assert latest["type"] == "sample"
        assert latest["value"] == 4.25

    def test_publish_rejects_non_numeric(self, client):
        response = client.post("/api/channels/temp/samples", json={"value": "warm"})
        assert response.status_code == 422

    def test_unregister_channel(self, client):
        assert client.delete("/api/channels/temp").status_code == 204
        assert client.get("/api/channels").json() == []

    def test_recent_events(self, client):
        client.post("/api/channels", json={"name": "manual", "generator": {"kind": "external"}})

        events = client.get("/api/events/recent", params={"kind": "channel_registered"}).json()

        assert [event["fields"]["channel"] for event in events] == ["temp", "manual"]


class TestServiceEndpoints:
    def test_health(self, client):
        body = client.get("/health").json()

        assert body["status"] == "ok"
        assert body["channels"] == 1
        assert "channel:temp" in body["coordinator"]

    def test_metrics(self, client):
        client.post("/api/channels", json={"name": "manual", "generator": {"kind": "external"}})
        client.post("/api/channels/manual/samples", json={"value": 1.0})

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "fanout_samples_emitted_total" in response.text


class TestViewerWebsocket:
    def test_subscriber_receives_published_samples(self, client):
        client.post("/api/channels", json={"name": "manual", "generator": {"kind": "external"}})

        with client.websocket_connect("/ws") as websocket:
            websocket.send_json({"type": "subscribe", "channel": "manual"})
            # messages are handled in order, so the error reply means the subscribe landed
            websocket.send_text("ping")
            assert websocket.receive_json()["code"] == "bad_message"
            connections = client.get("/api/connections").json()
            assert connections[0]["channels"] == ["manual"]

            client.post("/api/channels/manual/samples", json={"value": 7.5})
            message = websocket.receive_json()

        assert message["type"] == "sample"
        assert message["channel"] == "manual"
        assert message["value"] == 7.5

    def test_unknown_channel_returns_an_error(self, client):
        with client.websocket_connect("/ws") as websocket:
            websocket.send_json({"type": "subscribe", "channel": "pressure"})
            message = websocket.receive_json()

        assert message == {"type": "error", "code": "unknown_channel", "message": "Unknown channel: pressure"}

    def test_malformed_message_keeps_the_connection_open(self, client):
        with client.websocket_connect("/ws") as websocket:
            websocket.send_text("{not json")
            assert websocket.receive_json()["code"] == "bad_message"

            websocket.send_json({"type": "subscribe", "channel": "missing"})
            assert websocket.receive_json()["code"] == "unknown_channel"

    def test_binary_frames_are_handled_like_text(self, client):
        client.post("/api/channels", json={"name": "manual", "generator": {"kind": "external"}})

        with client.websocket_connect("/ws") as websocket:
            websocket.send_bytes(b'{"type": "subscribe", "channel": "pressure"}')
            assert websocket.receive_json()["code"] == "unknown_channel"

            websocket.send_bytes(b"\xff\xfe\x00")
            assert websocket.receive_json()["code"] == "bad_message"

            websocket.send_bytes(b'{"type": "subscribe", "channel": "manual"}')
            websocket.send_text("ping")
            assert websocket.receive_json()["code"] == "bad_message"
            assert client.get("/api/connections").json()[0]["state"] == "active"

            client.post("/api/channels/manual/samples", json={"value": 2.5})
            assert websocket.receive_json()["value"] == 2.5

    def test_admin_close_disconnects_the_viewer(self, client):
        with client.websocket_connect("/ws") as websocket:
            websocket.send_text("ping")
            assert websocket.receive_json()["code"] == "bad_message"
            connection_id = client.get("/api/connections").json()[0]["id"]

            response = client.delete(f"/api/connections/{connection_id}")

            assert response.status_code == 202
            assert client.get("/api/connections").json() == []

        assert client.delete(f"/api/connections/{connection_id}").status_code == 404
