from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
import structlog

from src.clinic_agent.config import get_config
from src.clinic_agent.errors import SynthesisError

logger = structlog.get_logger(__name__)

DEEPGRAM_SPEAK_URL = "https://api.deepgram.com/v1/speak"


class TTSProvider(ABC):
    @abstractmethod
    async def synthesize(self, text: str, *, voice: Optional[str] = None) -> bytes:
        """Return carrier-ready audio (mu-law 8kHz) for `text`."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


class DeepgramAuraTTS(TTSProvider):
    """
    Deepgram Aura text-to-speech (non-streaming).

    Requests raw mu-law 8kHz with no container so the bytes can go straight to
    Twilio without conversion.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config()
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.external_call_timeout_seconds)
        return self._client

    async def synthesize(self, text: str, *, voice: Optional[str] = None) -> bytes:
        if not text or not text.strip():
            raise SynthesisError("Nothing to synthesize")

        params = {
            "model": voice or self.config.tts_voice,
            "encoding": "mulaw",
            "sample_rate": 8000,
            "container": "none",
        }
        headers = {
            "Authorization": f"Token {self.config.deepgram_api_key}",
            "Content-Type": "application/json",
        }

        try:
            response = await self._get_client().post(
                DEEPGRAM_SPEAK_URL,
                params=params,
                headers=headers,
                json={"text": text},
            )
        except httpx.HTTPError as e:
            logger.warning("Deepgram TTS request failed", error=str(e))
            raise SynthesisError(str(e)) from e

        if response.status_code != 200:
            logger.warning(
                "Deepgram TTS failed",
                status_code=response.status_code,
                response=response.text[:200],
            )
            raise SynthesisError(f"Deepgram TTS returned {response.status_code}")

        audio = response.content
        if not audio:
            raise SynthesisError("Deepgram TTS returned no audio")
        return audio

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
