"""
SMS and WhatsApp conversations.

Text channels skip audio entirely: inbound text -> registry lookup -> Groq ->
reply text. A per-sender lock keeps one completion in flight per conversation;
a second message from the same sender waits for the first reply.
"""

import asyncio
from typing import Any, Optional

import structlog

from src.clinic_agent.booking import (
    BookingIntentDetector,
    build_appointment_record,
    extract_appointment_data,
)
from src.clinic_agent.metrics import ServerMetrics
from src.clinic_agent.registry import SessionRegistry
from src.clinic_agent.store import AppointmentStore
from src.clinic_agent.turns import redact_for_logs

logger = structlog.get_logger(__name__)

APOLOGY_REPLY = "Sorry, I encountered an error. Please try again or call us directly."

WHATSAPP_PREFIX = "whatsapp:"


def phone_from_sender(sender: str) -> str:
    """Strip the channel prefix Twilio puts on WhatsApp addresses."""
    if sender.startswith(WHATSAPP_PREFIX):
        return sender[len(WHATSAPP_PREFIX):]
    return sender


class TextChannelHandler:
    """Runs one text turn per inbound message."""

    def __init__(
        self,
        registry: SessionRegistry,
        llm: Any,
        *,
        store: Optional[AppointmentStore] = None,
        intent_detector: Optional[BookingIntentDetector] = None,
        metrics: Optional[ServerMetrics] = None,
        timeout: float = 10.0,
    ):
        self._registry = registry
        self._llm = llm
        self._store = store
        self._intent_detector = intent_detector or BookingIntentDetector()
        self._metrics = metrics
        self._timeout = timeout

    async def handle(self, sender: str, body: str, *, channel: str = "sms") -> str:
        """Return the reply to send back to `sender`."""
        if self._metrics:
            self._metrics.text_messages += 1

        text = (body or "").strip()
        if not sender or not text:
            logger.warning("Empty text message ignored", channel=channel)
            return APOLOGY_REPLY

        entry = self._registry.text_conversation(sender)

        async with entry.lock:
            conversation = entry.conversation
            conversation.add_caller_turn(text)
            logger.info(
                "Text message received",
                channel=channel,
                message=redact_for_logs(text),
                conversation_turns=len(conversation),
            )

            messages = conversation.to_messages(getattr(self._llm, "system_prompt", ""))
            try:
                reply = await asyncio.wait_for(self._llm.complete(messages), timeout=self._timeout)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self._metrics:
                    self._metrics.record_failure("completion", channel=channel, error=str(e) or type(e).__name__)
                logger.error("Text reply failed", channel=channel, error_type=type(e).__name__)
                return APOLOGY_REPLY

            conversation.add_assistant_turn(reply)

            if self._intent_detector.detect(reply):
                self._book(conversation, sender, channel)

        return reply

    def _book(self, conversation: Any, sender: str, channel: str) -> None:
        if self._store is None:
            logger.warning("Booking detected but no appointment store configured", channel=channel)
            return
        logger.info("Booking confirmation detected", channel=channel)
        details = extract_appointment_data(conversation)
        record = build_appointment_record(details, phone_from_sender(sender))
        self._store.schedule_insert(record)
