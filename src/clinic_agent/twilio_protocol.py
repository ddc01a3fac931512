"""
Twilio Media Streams WebSocket protocol.

Twilio sends JSON messages with events:
- connected: Initial connection (informational)
- start: Stream started, contains callSid and streamSid
- media: Audio data as base64 mu-law 8kHz
- stop: Stream stopped

Outbound messages:
- media: Send audio as base64 mu-law 8kHz

Any other event (mark, dtmf, ...) is reported as unknown and ignored by the
session; the connection stays open.
"""

import base64
import binascii
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Union

import msgspec
import structlog

logger = structlog.get_logger(__name__)

# Create global msgspec encoder/decoder
decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types handled by the agent."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    STOP = "stop"


@dataclass
class TwilioStartEvent:
    """Parsed Twilio start event."""
    call_sid: str
    stream_sid: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        """Parse from Twilio message."""
        start = message.get("start") or {}
        return cls(
            call_sid=start.get("callSid", ""),
            # Twilio repeats streamSid at the top level; prefer the start block.
            stream_sid=start.get("streamSid") or message.get("streamSid", ""),
        )


@dataclass
class TwilioMediaEvent:
    """Parsed Twilio media event."""
    payload: bytes  # Decoded audio bytes (mu-law)
    stream_sid: str = ""

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        """Parse from Twilio message."""
        media = message.get("media") or {}
        payload_b64 = media.get("payload", "")

        try:
            payload = base64.b64decode(payload_b64, validate=True)
        except (binascii.Error, TypeError, ValueError):
            logger.debug("Undecodable media payload dropped")
            payload = b""

        return cls(
            payload=payload,
            stream_sid=message.get("streamSid", ""),
        )


TwilioEvent = Union[TwilioStartEvent, TwilioMediaEvent, Dict[str, Any]]


def parse_twilio_message(raw_message: Union[str, bytes]) -> tuple[TwilioEventType, TwilioEvent]:
    """
    Parse a raw Twilio WebSocket message.

    Args:
        raw_message: Raw JSON string from Twilio

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        ValueError: If message cannot be parsed or the event is not handled
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Invalid frame: expected a JSON object")

    event_type_str = message.get("event", "")

    try:
        event_type = TwilioEventType(event_type_str)
    except ValueError:
        raise ValueError(f"Unknown event type: {event_type_str}")

    if event_type == TwilioEventType.START:
        return event_type, TwilioStartEvent.from_message(message)
    elif event_type == TwilioEventType.MEDIA:
        return event_type, TwilioMediaEvent.from_message(message)
    else:
        return event_type, message


def create_media_message(stream_sid: str, payload_b64: str) -> str:
    """
    Create a Twilio media message.

    Args:
        stream_sid: The stream SID
        payload_b64: Base64 audio payload (already encoded)

    Returns:
        JSON string to send to Twilio
    """
    message = {
        "event": "media",
        "streamSid": stream_sid,
        "media": {
            "payload": payload_b64
        }
    }

    return encoder.encode(message).decode("utf-8")
