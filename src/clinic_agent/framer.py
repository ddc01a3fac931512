"""
Outbound audio framing.

Synthesized audio is base64 encoded once and the encoded text is cut into
fixed-size chunks, because Twilio media frames carry text payloads. With a chunk
size that is a multiple of 4 every chunk is independently decodable.

Chunks of one reply are sent in sequence order and the whole reply is drained
before the call returns, so a later reply can never interleave with it.
"""

import base64
from dataclasses import dataclass
from typing import Awaitable, Callable, Generator, List

import structlog

from src.clinic_agent.twilio_protocol import create_media_message

logger = structlog.get_logger(__name__)

DEFAULT_CHUNK_CHARS = 8000


@dataclass(frozen=True)
class AudioChunk:
    """One slice of an encoded reply."""
    sequence: int
    payload: str


def chunk_encoded(encoded: str, chunk_size: int = DEFAULT_CHUNK_CHARS) -> Generator[str, None, None]:
    """
    Chunk encoded audio into fixed-size slices.

    The last slice holds the remainder and is not padded.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    for i in range(0, len(encoded), chunk_size):
        yield encoded[i:i + chunk_size]


class AudioFramer:
    """Turns synthesized audio into ordered Twilio media frames."""

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_CHARS):
        self.chunk_size = chunk_size

    def frame(self, audio_bytes: bytes) -> List[AudioChunk]:
        """Split raw audio into sequenced, base64 encoded chunks."""
        encoded = base64.b64encode(audio_bytes).decode("ascii")
        return [
            AudioChunk(sequence=i, payload=payload)
            for i, payload in enumerate(chunk_encoded(encoded, self.chunk_size))
        ]

    async def drain(
        self,
        stream_sid: str,
        audio_bytes: bytes,
        send: Callable[[str], Awaitable[None]],
    ) -> int:
        """
        Send every chunk of one reply, in order, one at a time.

        Returns the number of frames sent. A send failure propagates to the
        caller and stops the remaining chunks of this reply.
        """
        chunks = self.frame(audio_bytes)
        for chunk in chunks:
            await send(create_media_message(stream_sid, chunk.payload))

        logger.debug(
            "Reply audio sent",
            stream_sid=stream_sid,
            frames=len(chunks),
            audio_bytes=len(audio_bytes),
        )
        return len(chunks)
