"""
Tests for the HTTP and WebSocket endpoints.
"""

import json
import os
import xml.etree.ElementTree as ET
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from tests.fakes import FakeGenerator, FakeProfileStore, FakeSynthesizer, FakeTranscriber


@pytest.fixture
def client():
    from server.app import app

    return TestClient(app, raise_server_exceptions=False)


class TestVoiceWebhook:
    """Tests for the TwiML webhook."""

    def test_twiml_contains_stream_element(self, client):
        response = client.post("/voice")

        assert response.status_code == 200
        assert "text/xml" in response.headers.get("content-type", "")

        root = ET.fromstring(response.text)
        assert root.tag == "Response"
        stream = root.find("./Connect/Stream")
        assert stream is not None
        assert stream.get("url") == "wss://test.ngrok.io/streams"

    def test_twiml_uses_request_host_without_public_host(self):
        with patch.dict(os.environ, {"PUBLIC_HOST": ""}):
            from src.callrelay.config import get_config
            get_config.cache_clear()
            from server.app import app

            client = TestClient(app, raise_server_exceptions=False)
            plain = client.post("/voice", headers={"host": "relay.example.com"})
            proxied = client.post(
                "/voice",
                headers={"host": "relay.example.com", "x-forwarded-proto": "https"},
            )

        assert 'url="ws://relay.example.com/streams"' in plain.text
        assert 'url="wss://relay.example.com/streams"' in proxied.text


class TestStatusEndpoints:
    def test_health_returns_ok(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data

    def test_root_is_health(self, client):
        assert client.get("/").json()["status"] == "healthy"

    def test_streams_status(self, client):
        data = client.get("/streams-status").json()

        assert data["endpoint"] == "/streams"
        assert data["protocol"] == "websocket"

    def test_metrics_returns_json(self, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        data = response.json()
        for key in ("uptime_seconds", "total_connections", "active_connections",
                    "total_calls", "active_calls", "errors"):
            assert key in data


class TestStreamsWebSocket:
    def test_greeting_is_streamed_after_start(self, client, business_profile, monkeypatch, twilio_start_message):
        import src.callrelay.orchestrator as orchestrator

        synthesizer = FakeSynthesizer()
        base = orchestrator.CallSession

        class InMemoryCallSession(base):
            def __init__(self, transport, **kwargs):
                super().__init__(
                    transport,
                    call_id="ws-test",
                    generator=FakeGenerator(),
                    synthesizer=synthesizer,
                    profile_store=FakeProfileStore(business_profile),
                    transcriber_factory=FakeTranscriber,
                )

        monkeypatch.setattr(orchestrator, "CallSession", InMemoryCallSession)

        with client.websocket_connect("/streams") as ws:
            ws.send_text(json.dumps({"event": "connected", "protocol": "Call"}))
            ws.send_text(twilio_start_message)

            messages = [ws.receive_json() for _ in range(4)]
            ws.send_text(json.dumps({"event": "stop", "streamSid": "MZ123456"}))

        assert [m["event"] for m in messages] == ["media", "media", "media", "mark"]
        assert all(m["streamSid"] == "MZ123456" for m in messages)
        assert synthesizer.calls == [("Thanks for calling Corner Bakery!", None)]

        from server.app import active_calls
        assert "ws-test" not in active_calls

    def test_binary_frame_does_not_end_call(self, client, business_profile, monkeypatch, twilio_start_message):
        import src.callrelay.orchestrator as orchestrator

        synthesizer = FakeSynthesizer()
        base = orchestrator.CallSession

        class InMemoryCallSession(base):
            def __init__(self, transport, **kwargs):
                super().__init__(
                    transport,
                    call_id="ws-binary",
                    generator=FakeGenerator(),
                    synthesizer=synthesizer,
                    profile_store=FakeProfileStore(business_profile),
                    transcriber_factory=FakeTranscriber,
                )

        monkeypatch.setattr(orchestrator, "CallSession", InMemoryCallSession)

        with client.websocket_connect("/streams") as ws:
            ws.send_bytes(b"\x00\x01not json")
            ws.send_text(twilio_start_message)

            messages = [ws.receive_json() for _ in range(4)]
            ws.send_text(json.dumps({"event": "stop", "streamSid": "MZ123456"}))

        assert [m["event"] for m in messages] == ["media", "media", "media", "mark"]
        assert synthesizer.calls == [("Thanks for calling Corner Bakery!", None)]

        from server.app import active_calls
        assert "ws-binary" not in active_calls
