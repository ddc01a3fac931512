"""
Voice call session.

One CallSession per Twilio Media Streams connection:

inbound Twilio mu-law -> Deepgram STT -> (final transcript) turn coordinator ->
Groq completion -> Deepgram Aura TTS -> framer -> Twilio outbound

The session owns the call's lifecycle. It registers itself under the call SID
when the `start` frame arrives and removes itself on `stop` or when the
WebSocket goes away, whichever happens first. `close()` may be called from both
paths; the teardown runs once and every caller waits for it.

If STT cannot be started or no synthesizer is available the call stays open
in a degraded mode: frames are still accepted, but no turns are produced.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

import structlog

from src.clinic_agent.booking import (
    BookingIntentDetector,
    build_appointment_record,
    extract_appointment_data,
)
from src.clinic_agent.config import Config, get_config
from src.clinic_agent.conversation import Conversation
from src.clinic_agent.errors import TranscriptionError
from src.clinic_agent.framer import AudioFramer
from src.clinic_agent.metrics import ServerMetrics
from src.clinic_agent.registry import SessionRegistry
from src.clinic_agent.store import AppointmentStore
from src.clinic_agent.stt import TranscriptCallback
from src.clinic_agent.transcript_buffer import TranscriptBuffer
from src.clinic_agent.turns import TurnCoordinator, TurnState
from src.clinic_agent.twilio_protocol import (
    TwilioEventType,
    TwilioMediaEvent,
    TwilioStartEvent,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)

SendFrame = Callable[[str], Awaitable[None]]
STTFactory = Callable[[TranscriptCallback], Any]


class CallSession:
    """Bridges one Twilio call to STT, the LLM and TTS."""

    def __init__(
        self,
        registry: SessionRegistry,
        send: SendFrame,
        *,
        llm: Any,
        tts: Any,
        stt_factory: Optional[STTFactory],
        caller_lookup: Optional[Any] = None,
        store: Optional[AppointmentStore] = None,
        intent_detector: Optional[BookingIntentDetector] = None,
        metrics: Optional[ServerMetrics] = None,
        config: Optional[Config] = None,
    ):
        """
        Args:
            registry: Shared session registry
            send: Async function to send WebSocket messages to Twilio
            llm: Completion client with `complete(messages)` and `system_prompt`
            tts: Synthesizer with `synthesize(text, voice=...)`, or None
            stt_factory: Builds the STT stream given a transcript callback
            caller_lookup: Resolves the caller's number from the call SID
            store: Appointment store for confirmed bookings
        """
        if config is None:
            config = get_config()

        self.config = config
        self._registry = registry
        self._send = send
        self._llm = llm
        self._tts = tts
        self._stt_factory = stt_factory
        self._caller_lookup = caller_lookup
        self._store = store
        self._intent_detector = intent_detector or BookingIntentDetector()
        self._metrics = metrics
        self._framer = AudioFramer(chunk_size=config.audio_chunk_chars)

        self.call_sid: str = ""
        self.stream_sid: str = ""
        self.caller_address: Optional[str] = None
        self.conversation = Conversation()
        self.transcripts = TranscriptBuffer()

        self._coordinator: Optional[TurnCoordinator] = None
        self._stt: Optional[Any] = None
        self._lookup_task: Optional[asyncio.Task] = None
        self._opened = False
        self._closed = False
        self._close_task: Optional[asyncio.Task] = None
        self._degraded_reason: Optional[str] = None
        self._started_at = time.time()
        self._log = logger

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def degraded(self) -> bool:
        return self._degraded_reason is not None

    @property
    def turn_state(self) -> TurnState:
        if self._coordinator is None:
            return TurnState.CLOSED if self._closed else TurnState.IDLE
        return self._coordinator.state

    @property
    def coordinator(self) -> Optional[TurnCoordinator]:
        return self._coordinator

    def open(self, call_sid: str) -> None:
        """
        Register this session under `call_sid`.

        Raises:
            DuplicateSession: if a session for `call_sid` is already registered
        """
        if self._closed:
            raise RuntimeError("Cannot open a closed session")

        self._registry.register_call(call_sid, self)
        self.call_sid = call_sid
        self._opened = True
        self._log = logger.bind(call_sid=call_sid)
        self._coordinator = TurnCoordinator(
            self.conversation,
            complete=self._llm.complete,
            synthesize=self._synthesize,
            play=self._play,
            system_prompt=getattr(self._llm, "system_prompt", ""),
            intent_detector=self._intent_detector,
            on_booking=self._on_booking,
            timeout=self.config.external_call_timeout_seconds,
            buffer=self.transcripts,
            metrics=self._metrics,
            call_sid=call_sid,
        )
        if self._tts is None:
            self._degrade("tts_unavailable")

    async def on_carrier_control_frame(self, raw_message: str) -> None:
        """
        Handle an incoming WebSocket message from Twilio.

        Malformed and unknown frames are logged and ignored.
        """
        if self._closed:
            return

        try:
            event_type, event = parse_twilio_message(raw_message)
        except ValueError as e:
            self._log.debug("Ignoring Twilio frame", error=str(e))
            return

        if event_type == TwilioEventType.START:
            await self._handle_start(event)

        elif event_type == TwilioEventType.MEDIA:
            await self._handle_media(event)

        elif event_type == TwilioEventType.STOP:
            self._log.info("Twilio stop received")
            await self.close(reason="stop")

        elif event_type == TwilioEventType.CONNECTED:
            self._log.debug("Twilio connected")

    async def on_transcript(self, text: str) -> None:
        """STT callback: hand the transcript to the turn coordinator."""
        if self._closed or self._coordinator is None or self.degraded:
            return
        self._coordinator.on_transcript(text)

    async def _handle_start(self, event: TwilioStartEvent) -> None:
        if not event.call_sid:
            self._log.warning("Start frame without callSid ignored")
            return

        if not self._opened:
            self.open(event.call_sid)
        elif event.call_sid != self.call_sid:
            self._log.warning("Start frame for another call ignored", other_call_sid=event.call_sid)
            return

        self.stream_sid = event.stream_sid
        self._log = self._log.bind(stream_sid=event.stream_sid)
        self._log.info("Call started")

        if self._caller_lookup is not None:
            self._lookup_task = asyncio.create_task(self._resolve_caller())

        await self._start_stt()

    async def _start_stt(self) -> None:
        if self._stt_factory is None:
            self._degrade("stt_unavailable")
            return

        try:
            stt = self._stt_factory(self.on_transcript)
            if not await stt.connect():
                raise TranscriptionError("STT connection failed")
        except Exception as e:
            self._log.error("STT start error", error_type=type(e).__name__, error=str(e))
            if self._metrics:
                self._metrics.record_failure("transcription", call_sid=self.call_sid)
            self._degrade("stt_unavailable")
            return

        if self._closed:
            # Call ended while the STT handshake was in flight.
            await stt.finish()
            return

        self._stt = stt
        self._log.info("STT ready")

    async def _handle_media(self, event: TwilioMediaEvent) -> None:
        if self._stt is None or not event.payload:
            return
        await self._stt.send(event.payload)

    async def _resolve_caller(self) -> None:
        try:
            address = await asyncio.wait_for(
                self._caller_lookup.lookup(self.call_sid),
                timeout=self.config.external_call_timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._metrics:
                self._metrics.record_failure("caller_lookup", call_sid=self.call_sid, error=str(e))
            self._log.warning("Caller lookup failed", error_type=type(e).__name__, error=str(e))
            return

        self.caller_address = address
        self._log.debug("Caller resolved", has_address=bool(address))

    async def _synthesize(self, text: str) -> bytes:
        return await self._tts.synthesize(text, voice=self.config.tts_voice)

    async def _play(self, audio: bytes) -> None:
        if self._closed:
            return
        await self._framer.drain(self.stream_sid, audio, self._send_frame)

    async def _send_frame(self, message: str) -> None:
        if self._closed:
            raise ConnectionError("Call session closed")
        await self._send(message)

    def _on_booking(self, conversation: Conversation) -> None:
        if self._store is None:
            self._log.warning("Booking detected but no appointment store configured")
            return
        details = extract_appointment_data(conversation)
        record = build_appointment_record(details, self.caller_address)
        self._store.schedule_insert(record)

    def _degrade(self, reason: str) -> None:
        if self._degraded_reason is None:
            self._degraded_reason = reason
            self._log.error("Call continuing without AI turns", reason=reason)

    async def close(self, reason: str = "closed") -> None:
        """
        Tear the session down. Safe to call repeatedly and concurrently;
        the teardown runs once.
        """
        if self._close_task is None:
            self._closed = True
            self._close_task = asyncio.create_task(self._shutdown(reason))
        await asyncio.shield(self._close_task)

    async def _shutdown(self, reason: str) -> None:
        if self._coordinator is not None:
            self._coordinator.close()

        lookup, self._lookup_task = self._lookup_task, None
        if lookup is not None and not lookup.done():
            lookup.cancel()
            try:
                await lookup
            except asyncio.CancelledError:
                pass

        stt, self._stt = self._stt, None
        if stt is not None:
            try:
                await stt.finish()
            except Exception as e:
                self._log.warning("Error finishing STT stream", error=str(e))

        if self._opened:
            self._registry.remove_call(self.call_sid, self)

        self._send = None

        self._log.info(
            "Call session closed",
            reason=reason,
            duration_seconds=round(time.time() - self._started_at, 2),
            conversation_turns=len(self.conversation),
            degraded=self._degraded_reason,
        )
