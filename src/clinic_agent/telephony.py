"""
Twilio REST helpers.

The Twilio SDK is synchronous, so every call runs in a worker thread to keep
the event loop free for media frames.
"""

import asyncio
from typing import Any, Optional

import structlog
from twilio.rest import Client as TwilioClient

from src.clinic_agent.config import get_config

logger = structlog.get_logger(__name__)


def create_twilio_client(config: Optional[Any] = None) -> Optional[TwilioClient]:
    """Build a REST client, or None when credentials are missing."""
    config = config or get_config()
    if not (config.twilio_account_sid and config.twilio_auth_token):
        logger.warning("Twilio credentials missing, REST features disabled")
        return None
    return TwilioClient(config.twilio_account_sid, config.twilio_auth_token)


class TwilioCallerLookup:
    """Resolves the caller's phone number for a call SID."""

    def __init__(self, client: Optional[TwilioClient]):
        self._client = client

    async def lookup(self, call_sid: str) -> Optional[str]:
        if not self._client or not call_sid:
            return None

        def _fetch() -> Optional[str]:
            call = self._client.calls(call_sid).fetch()
            return getattr(call, "from_", None) or getattr(call, "from_formatted", None)

        return await asyncio.to_thread(_fetch)


class TwilioMessenger:
    """Outbound WhatsApp messages."""

    def __init__(self, client: Optional[TwilioClient], from_number: str):
        self._client = client
        self._from_number = from_number

    @property
    def enabled(self) -> bool:
        return self._client is not None and bool(self._from_number)

    async def send_whatsapp(self, to: str, body: str) -> Optional[str]:
        """Send a message and return its SID."""
        if not self.enabled:
            logger.warning("WhatsApp sender not configured, reply dropped")
            return None

        def _send() -> str:
            message = self._client.messages.create(
                body=body,
                from_=self._from_number,
                to=to,
            )
            return message.sid

        return await asyncio.to_thread(_send)
