"""
Process-wide collaborators.

Built once at startup and handed to request handlers through `app.state`, so
the registry and clients are explicit objects rather than module globals.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from src.clinic_agent.booking import BookingIntentDetector
from src.clinic_agent.config import Config, get_config
from src.clinic_agent.llm import GroqLLM
from src.clinic_agent.messaging import TextChannelHandler
from src.clinic_agent.metrics import ServerMetrics
from src.clinic_agent.registry import SessionRegistry
from src.clinic_agent.session import CallSession, SendFrame, STTFactory
from src.clinic_agent.store import (
    AppointmentStore,
    NullAppointmentStore,
    SupabaseAppointmentStore,
)
from src.clinic_agent.stt import DeepgramSTT
from src.clinic_agent.telephony import TwilioCallerLookup, TwilioMessenger, create_twilio_client
from src.clinic_agent.tts import DeepgramAuraTTS

logger = structlog.get_logger(__name__)


@dataclass
class AgentServices:
    """Everything a call or text handler needs."""
    config: Config
    registry: SessionRegistry
    metrics: ServerMetrics
    llm: Any
    tts: Any
    store: AppointmentStore
    stt_factory: Optional[STTFactory] = None
    caller_lookup: Optional[Any] = None
    messenger: Optional[Any] = None
    intent_detector: BookingIntentDetector = field(default_factory=BookingIntentDetector)
    text_handler: Optional[TextChannelHandler] = None

    def __post_init__(self) -> None:
        if self.text_handler is None:
            self.text_handler = TextChannelHandler(
                self.registry,
                self.llm,
                store=self.store,
                intent_detector=self.intent_detector,
                metrics=self.metrics,
                timeout=self.config.external_call_timeout_seconds,
            )

    def create_call_session(self, send: SendFrame) -> CallSession:
        return CallSession(
            self.registry,
            send,
            llm=self.llm,
            tts=self.tts,
            stt_factory=self.stt_factory,
            caller_lookup=self.caller_lookup,
            store=self.store,
            intent_detector=self.intent_detector,
            metrics=self.metrics,
            config=self.config,
        )

    async def aclose(self) -> None:
        await self.store.close()
        for client in (self.tts, self.llm):
            close = getattr(client, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.warning("Error closing client", client=type(client).__name__, error=str(e))


def build_services(config: Optional[Config] = None, metrics: Optional[ServerMetrics] = None) -> AgentServices:
    """Create the production collaborators from configuration."""
    config = config or get_config()
    metrics = metrics or ServerMetrics()

    if config.persistence_enabled:
        store: AppointmentStore = SupabaseAppointmentStore(
            config.supabase_url,
            config.supabase_key,
            timeout=config.external_call_timeout_seconds,
            metrics=metrics,
        )
    else:
        logger.warning("SUPABASE_URL/SUPABASE_KEY not set, appointments will not be stored")
        store = NullAppointmentStore(metrics=metrics)

    twilio_client = create_twilio_client(config)

    def stt_factory(on_transcript):
        return DeepgramSTT(on_transcript=on_transcript, config=config)

    return AgentServices(
        config=config,
        registry=SessionRegistry(
            text_ttl_seconds=config.text_conversation_ttl_seconds,
            max_text_conversations=config.max_text_conversations,
        ),
        metrics=metrics,
        llm=GroqLLM(config),
        tts=DeepgramAuraTTS(config),
        store=store,
        stt_factory=stt_factory,
        caller_lookup=TwilioCallerLookup(twilio_client),
        messenger=TwilioMessenger(twilio_client, config.twilio_whatsapp_number),
    )
