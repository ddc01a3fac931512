"""
Deepgram Speech-to-Text streaming client.

Accepts mu-law 8kHz directly from Twilio (no conversion needed). Final results
are forwarded as plain text using the first alternative. Deepgram may repeat a
final transcript; duplicate suppression happens downstream in the session.
"""

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import structlog
import websockets

from src.clinic_agent.config import get_config

logger = structlog.get_logger(__name__)

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"

TranscriptCallback = Callable[[str], Awaitable[None]]


@dataclass
class STTMetrics:
    """Metrics for STT performance."""
    audio_bytes: int = 0
    total_transcripts: int = 0
    final_transcripts: int = 0

    def record_transcript(self, is_final: bool) -> None:
        self.total_transcripts += 1
        if is_final:
            self.final_transcripts += 1


def build_listen_url(config: Any) -> str:
    """Streaming URL with the stream configuration as query parameters."""
    params = {
        "model": config.deepgram_model,
        "language": config.deepgram_language,
        "encoding": "mulaw",
        "sample_rate": 8000,
        "channels": 1,
        "punctuate": "true",
        "smart_format": "true",
        "interim_results": "true",
        "utterance_end_ms": config.deepgram_utterance_end_ms,
        "endpointing": config.deepgram_endpointing_ms,
    }
    return f"{DEEPGRAM_LISTEN_URL}?{urlencode(params)}"


class DeepgramSTT:
    """
    Deepgram streaming STT client using raw WebSocket.
    """

    def __init__(
        self,
        on_transcript: Optional[TranscriptCallback] = None,
        config: Optional[Any] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self._on_transcript = on_transcript
        self._ws = None
        self._is_connected = False
        self._metrics = STTMetrics()
        self._receive_task: Optional[asyncio.Task] = None
        self._connected_at: float = 0.0

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def metrics(self) -> STTMetrics:
        return self._metrics

    async def connect(self) -> bool:
        """Connect to Deepgram streaming API."""
        if self._is_connected:
            return True

        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}

        try:
            self._ws = await websockets.connect(
                build_listen_url(self.config),
                additional_headers=headers,
                open_timeout=self.config.external_call_timeout_seconds,
            )
        except Exception as e:
            logger.error(
                "Deepgram connection failed",
                error_type=type(e).__name__,
                error=str(e),
            )
            self._ws = None
            return False

        self._is_connected = True
        self._connected_at = time.time()
        logger.info("Deepgram STT connected", model=self.config.deepgram_model)

        # Start receiving messages
        self._receive_task = asyncio.create_task(self._receive_loop())
        return True

    async def send(self, audio_bytes: bytes) -> None:
        """Send audio data to Deepgram."""
        if not self._is_connected or not self._ws or not audio_bytes:
            return

        try:
            self._metrics.audio_bytes += len(audio_bytes)
            await self._ws.send(audio_bytes)
        except Exception as e:
            logger.error("Failed to send audio to Deepgram", error=str(e))

    async def finish(self) -> None:
        """End the stream: send CloseStream, then disconnect."""
        was_connected = self._is_connected
        self._is_connected = False

        if self._ws and was_connected:
            try:
                await self._ws.send(json.dumps({"type": "CloseStream"}))
            except Exception as e:
                logger.debug("CloseStream not delivered", error=str(e))

        if self._receive_task:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
            self._receive_task = None

        if self._ws:
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", error=str(e))

        self._ws = None
        if was_connected:
            logger.info(
                "Deepgram STT disconnected",
                audio_bytes=self._metrics.audio_bytes,
                final_transcripts=self._metrics.final_transcripts,
                duration_s=round(time.time() - self._connected_at, 2),
            )

    async def _receive_loop(self) -> None:
        """Receive and process messages from Deepgram."""
        try:
            async for message in self._ws:
                if not self._is_connected:
                    break

                try:
                    data = json.loads(message)
                    await self._handle_message(data)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from Deepgram")
                except Exception as e:
                    logger.error("Error processing Deepgram message", error=str(e))

        except websockets.exceptions.ConnectionClosed:
            logger.info("Deepgram connection closed")
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Deepgram receive loop error", error=str(e))
        finally:
            self._is_connected = False

    async def _handle_message(self, data: dict) -> None:
        """Handle a message from Deepgram."""
        msg_type = data.get("type", "")
        msg_type_norm = msg_type.lower() if isinstance(msg_type, str) else ""

        if msg_type_norm == "results":
            alternatives = (data.get("channel") or {}).get("alternatives") or []
            if not alternatives:
                return

            transcript = (alternatives[0].get("transcript") or "").strip()
            is_final = bool(data.get("is_final", False))
            if not transcript:
                return

            self._metrics.record_transcript(is_final)
            if not is_final:
                return

            logger.debug("STT transcript", chars=len(transcript))
            if self._on_transcript:
                await self._on_transcript(transcript)

        elif msg_type_norm in ("utteranceend", "utterance_end"):
            logger.debug("Utterance end detected")

        elif msg_type_norm == "error":
            logger.error(
                "Deepgram error",
                error=data.get("message", "Unknown"),
                details=data,
            )

