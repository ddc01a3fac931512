"""
Tests for the HTTP and WebSocket endpoints.
"""

import json
import os
import xml.etree.ElementTree as ET
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from src.clinic_agent.config import get_config
from src.clinic_agent.messaging import APOLOGY_REPLY
from src.clinic_agent.metrics import ServerMetrics
from src.clinic_agent.registry import SessionRegistry
from src.clinic_agent.services import AgentServices


@pytest.fixture
def messenger():
    messenger = MagicMock()
    messenger.send_whatsapp = AsyncMock(return_value="SM1")
    return messenger


@pytest.fixture
def services(fake_llm, fake_tts, fake_stt_factory, messenger):
    return AgentServices(
        config=get_config(),
        registry=SessionRegistry(),
        metrics=ServerMetrics(),
        llm=fake_llm,
        tts=fake_tts,
        store=MagicMock(),
        stt_factory=fake_stt_factory,
        messenger=messenger,
    )


@pytest.fixture
def client(services):
    from server.app import app

    app.state.services = services
    yield TestClient(app, raise_server_exceptions=False)
    app.state.services = None


class TestTwimlGeneration:
    """Tests for the voice webhook."""

    @pytest.mark.parametrize("path", ["/voice", "/twiml"])
    def test_twiml_contains_stream_element(self, client, path):
        response = client.post(path)

        assert response.status_code == 200
        assert "application/xml" in response.headers.get("content-type", "")

        content = response.text
        assert "<Connect>" in content
        assert '<Stream url="wss://test.ngrok.io/ws" />' in content
        assert "Thank you for calling Smile Dental" in content

    def test_twiml_is_valid_xml(self, client):
        root = ET.fromstring(client.post("/voice").text)

        assert root.tag == "Response"
        assert root[0].tag == "Say"
        assert root[1].tag == "Connect"

    def test_twiml_uses_correct_host(self, client):
        with patch.dict(os.environ, {"PUBLIC_HOST": "my-custom-domain.example.com"}):
            get_config.cache_clear()
            response = client.get("/voice")

        assert "wss://my-custom-domain.example.com/ws" in response.text


class TestStatusEndpoints:
    def test_service_info(self, client):
        data = client.get("/").json()

        assert data["status"] == "running"
        assert data["clinic"] == "Smile Dental"
        assert data["features"]["persistence"] == "disabled"

    def test_health_returns_ok(self, client):
        data = client.get("/health").json()

        assert data["status"] == "healthy"
        assert "timestamp" in data

    def test_status_counts_conversations(self, client, services):
        services.registry.text_conversation("+15551234567")

        data = client.get("/status").json()

        assert data["active_calls"] == 0
        assert data["active_conversations"] == 1
        assert data["uptime"] >= 0

    def test_metrics_returns_json(self, client):
        data = client.get("/metrics").json()

        for key in ("uptime_seconds", "total_calls", "active_calls", "errors", "failures"):
            assert key in data


class TestTextWebhooks:
    def test_sms_reply_is_twiml(self, client, fake_llm):
        fake_llm.complete.return_value = "Mon & Tue are open"

        response = client.post("/sms", data={"From": "+15551234567", "Body": "Hi"})

        assert response.status_code == 200
        root = ET.fromstring(response.text)
        assert root.find("Message").text == "Mon & Tue are open"

    def test_sms_failure_apologizes(self, client, fake_llm):
        fake_llm.complete.side_effect = RuntimeError("groq down")

        response = client.post("/sms", data={"From": "+15551234567", "Body": "Hi"})

        assert ET.fromstring(response.text).find("Message").text == APOLOGY_REPLY

    def test_whatsapp_reply_sent_through_rest(self, client, messenger, services):
        response = client.post(
            "/whatsapp", data={"From": "whatsapp:+15551234567", "Body": "Hi"}
        )

        assert response.status_code == 200
        messenger.send_whatsapp.assert_awaited_once_with(
            "whatsapp:+15551234567", "Sure, what day works for you?"
        )
        assert services.registry.get_text("whatsapp:+15551234567") is not None

    def test_whatsapp_send_failure(self, client, messenger, services):
        messenger.send_whatsapp.side_effect = RuntimeError("twilio down")

        response = client.post(
            "/whatsapp", data={"From": "whatsapp:+15551234567", "Body": "Hi"}
        )

        assert response.status_code == 500
        assert services.metrics.failures["send"] == 1


class TestMediaStream:
    def test_call_lifecycle(
        self, client, services, fake_stt_factory, twilio_start_message,
        twilio_media_message, twilio_stop_message, sample_ulaw_audio,
    ):
        with client.websocket_connect("/ws") as ws:
            ws.send_text(json.dumps({"event": "connected", "protocol": "Call"}))
            ws.send_text(twilio_start_message)
            ws.send_text(twilio_media_message)
            ws.send_text("garbage")
            ws.send_text(twilio_stop_message)

        assert fake_stt_factory.created[0].sent == [sample_ulaw_audio]
        assert fake_stt_factory.created[0].finish_calls == 1
        assert services.registry.active_calls == 0
        assert services.metrics.total_calls == 1
        assert services.metrics.active_calls == 0
