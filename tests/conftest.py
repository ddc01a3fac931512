"""
Pytest configuration and fixtures.
"""

import asyncio
import base64
import json
import os
from unittest.mock import AsyncMock, MagicMock, patch

import pytest


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "TWILIO_ACCOUNT_SID": "ACtest123456789",
        "TWILIO_AUTH_TOKEN": "test_auth_token",
        "TWILIO_WHATSAPP_NUMBER": "whatsapp:+14155238886",
        "DEEPGRAM_API_KEY": "test_deepgram_key",
        "GROQ_API_KEY": "test_groq_key",
        "GROQ_MODEL": "llama-3.3-70b-versatile",
        "CLINIC_NAME": "Smile Dental",
        "CLINIC_TYPE": "dental",
        "SUPABASE_URL": "",
        "SUPABASE_KEY": "",
        "EXTERNAL_CALL_TIMEOUT_SECONDS": "1.0",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.clinic_agent.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    return json.dumps({
        "event": "start",
        "streamSid": "MZ123456",
        "start": {
            "callSid": "CA789012",
            "streamSid": "MZ123456",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {},
        }
    })


@pytest.fixture
def twilio_media_message(sample_ulaw_audio):
    """Sample Twilio media message."""
    return json.dumps({
        "event": "media",
        "streamSid": "MZ123456",
        "media": {
            "track": "inbound",
            "chunk": 1,
            "timestamp": "12345",
            "payload": base64.b64encode(sample_ulaw_audio).decode(),
        }
    })


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    return json.dumps({
        "event": "stop",
        "streamSid": "MZ123456",
    })


class FakeSTT:
    """Stands in for DeepgramSTT; records audio and lets tests push transcripts."""

    def __init__(self, on_transcript, connect_ok: bool = True):
        self.on_transcript = on_transcript
        self.connect_ok = connect_ok
        self.sent = []
        self.finish_calls = 0

    async def connect(self) -> bool:
        return self.connect_ok

    async def send(self, audio_bytes: bytes) -> None:
        self.sent.append(audio_bytes)

    async def finish(self) -> None:
        self.finish_calls += 1

    async def emit(self, text: str) -> None:
        await self.on_transcript(text)


@pytest.fixture
def fake_stt_factory():
    """Factory that remembers every FakeSTT it built."""
    created = []

    def factory(on_transcript):
        stt = FakeSTT(on_transcript, connect_ok=factory.connect_ok)
        created.append(stt)
        return stt

    factory.created = created
    factory.connect_ok = True
    return factory


@pytest.fixture
def fake_llm():
    llm = MagicMock()
    llm.system_prompt = "You are a clinic assistant."
    llm.complete = AsyncMock(return_value="Sure, what day works for you?")
    return llm


@pytest.fixture
def fake_tts():
    tts = MagicMock()
    tts.synthesize = AsyncMock(return_value=b"\xff" * 300)
    return tts


@pytest.fixture
def settle():
    """Let scheduled callbacks run; await `task` first when given."""

    async def _settle(task=None, rounds: int = 5):
        if task is not None:
            await asyncio.wait_for(task, timeout=1.0)
        for _ in range(rounds):
            await asyncio.sleep(0)

    return _settle
