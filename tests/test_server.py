"""
Tests for the HTTP and WebSocket endpoints.
"""

from unittest.mock import ANY, AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from server.app import DEFAULT_ISSUE, app, metrics
from src.helpline.audio import write_wav_mono_pcm16
from src.helpline.errors import TelephonyError
from src.helpline.registry import SessionRegistry


@pytest.fixture
def orchestrator():
    mock = MagicMock()
    mock.registry = SessionRegistry()
    mock.place_call = AsyncMock(return_value="CA123")
    mock.on_call_terminated = AsyncMock()
    mock.on_call_started = AsyncMock()
    mock.on_media_frame = AsyncMock(return_value=True)
    mock.on_call_stopped = AsyncMock()
    mock.stats.return_value = {"sessions": 0, "pending_calls": 0, "delivery": {}, "calls": {}}
    return mock


@pytest.fixture
def client(orchestrator):
    app.state.orchestrator = orchestrator
    yield TestClient(app)
    del app.state.orchestrator


class TestHttpEndpoints:
    def test_health(self, client, orchestrator):
        orchestrator.registry.register_pending("CA9", {"issue": "x"})

        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["active_sessions"] == 0
        assert body["pending_calls"] == 1

    def test_metrics_merges_orchestrator_stats(self, client):
        body = client.get("/metrics").json()

        assert "uptime_seconds" in body
        assert body["sessions"] == 0
        assert body["calls"] == {}

    @pytest.mark.parametrize("method", ["get", "post"])
    def test_twiml(self, client, method):
        response = getattr(client, method)("/twiml")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert "wss://test.ngrok.io/media-stream" in response.text
        assert response.text.index("<Start>") < response.text.index("<Say")


class TestMakeCall:
    def test_places_call_with_issue(self, client, orchestrator):
        response = client.post("/make-call", json={"to": "+15551234567", "issue": "internet caiu"})

        assert response.status_code == 200
        assert response.json() == {"message": "Call started", "sid": "CA123", "issue": "internet caiu"}
        orchestrator.place_call.assert_awaited_once_with(
            "+15551234567",
            {"issue": "internet caiu"},
            answer_url="https://test.ngrok.io/twiml",
            status_callback="https://test.ngrok.io/call-status",
        )

    def test_default_issue(self, client, orchestrator):
        response = client.post("/make-call", json={"to": "+15551234567"})

        assert response.json()["issue"] == DEFAULT_ISSUE

    def test_missing_number(self, client):
        assert client.post("/make-call", json={}).status_code == 422

    def test_blank_number(self, client, orchestrator):
        response = client.post("/make-call", json={"to": "  "})

        assert response.status_code == 400
        orchestrator.place_call.assert_not_awaited()

    def test_telephony_failure(self, client, orchestrator):
        orchestrator.place_call.side_effect = TelephonyError("invalid number", status=400, code=21211)

        response = client.post("/make-call", json={"to": "+1"})

        assert response.status_code == 502
        assert "invalid number" in response.json()["error"]


class TestCallStatus:
    def test_terminal_status_releases_call(self, client, orchestrator):
        response = client.post("/call-status", data={"CallSid": "CA1", "CallStatus": "completed"})

        assert response.status_code == 200
        assert response.text == "OK"
        orchestrator.on_call_terminated.assert_awaited_once_with("CA1", "completed")

    def test_progress_status_ignored(self, client, orchestrator):
        client.post("/call-status", data={"CallSid": "CA1", "CallStatus": "in-progress"})

        orchestrator.on_call_terminated.assert_not_awaited()


class TestAudio:
    def test_serves_stored_artifact(self, client, monkeypatch, tmp_path):
        from src.helpline.config import get_config

        monkeypatch.setenv("ARTIFACT_DIR", str(tmp_path))
        get_config.cache_clear()
        audio = write_wav_mono_pcm16(b"\x00\x00" * 800, 8000)
        (tmp_path / "CA1-abc.wav").write_bytes(audio)

        response = client.get("/audio/CA1-abc.wav")

        assert response.status_code == 200
        assert response.headers["content-type"] == "audio/wav"
        assert response.content == audio

    def test_unknown_artifact(self, client, monkeypatch, tmp_path):
        from src.helpline.config import get_config

        monkeypatch.setenv("ARTIFACT_DIR", str(tmp_path))
        get_config.cache_clear()

        assert client.get("/audio/missing.wav").status_code == 404
        assert client.get("/audio/notes.txt").status_code == 404


class TestMediaStream:
    def test_start_media_stop(
        self,
        client,
        orchestrator,
        twilio_start_message,
        twilio_media_message,
        twilio_stop_message,
        sample_ulaw_audio,
    ):
        streams_before = metrics.total_streams

        with client.websocket_connect("/media-stream") as websocket:
            websocket.send_text('{"event": "connected", "protocol": "Call"}')
            websocket.send_text(twilio_start_message)
            websocket.send_text(twilio_media_message)
            websocket.send_text(twilio_stop_message)

        orchestrator.on_call_started.assert_awaited_once_with("CA789012", ANY, {})
        orchestrator.on_media_frame.assert_awaited_once_with("CA789012", sample_ulaw_audio)
        orchestrator.on_call_stopped.assert_awaited_once_with("CA789012", ANY)
        assert metrics.total_streams == streams_before + 1

    def test_media_before_start_is_dropped(self, client, orchestrator, twilio_media_message):
        with client.websocket_connect("/media-stream") as websocket:
            websocket.send_text(twilio_media_message)
            websocket.send_text("not json")

        orchestrator.on_media_frame.assert_not_awaited()
        orchestrator.on_call_stopped.assert_not_awaited()
