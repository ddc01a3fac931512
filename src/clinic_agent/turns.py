"""
Per-call turn-taking.

State machine: IDLE -> AWAITING_COMPLETION -> SPEAKING -> IDLE, plus CLOSED.

- Only IDLE starts a turn, so at most one completion is in flight per call.
- A transcript arriving outside IDLE is parked in a single slot (newest wins)
  and evaluated when the turn returns to IDLE.
- Every turn carries the turn id it was issued with. A continuation whose id
  no longer matches (the session closed meanwhile) is discarded; the external
  call itself is never cancelled.
- Completion and synthesis are bounded by a timeout; a timeout is handled as a
  failure of that step.
"""

import asyncio
import re
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import structlog

from src.clinic_agent.booking import BookingIntentDetector
from src.clinic_agent.conversation import Conversation
from src.clinic_agent.metrics import ServerMetrics
from src.clinic_agent.transcript_buffer import TranscriptBuffer

logger = structlog.get_logger(__name__)

Completer = Callable[[List[Dict[str, str]]], Awaitable[str]]
Synthesizer = Callable[[str], Awaitable[bytes]]
AudioPlayer = Callable[[bytes], Awaitable[Any]]
BookingHandler = Callable[[Conversation], Any]

DEFAULT_TIMEOUT_SECONDS = 10.0

_EMAIL_RE = re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE)
_LOG_PHONE_RE = re.compile(
    r"(?:\+?\d{1,3}[\s\-.]?)?(?:\(?\d{3}\)?[\s\-.]?)\d{3}[\s\-.]?\d{4}"
)


def redact_for_logs(text: str) -> str:
    """
    Best-effort redaction for logs (to reduce accidental PII exposure).

    Masks emails as [EMAIL] and phone numbers as [PHONE-***1234].
    """
    if not text:
        return ""

    redacted = _EMAIL_RE.sub("[EMAIL]", text)

    def _mask_phone(match: re.Match[str]) -> str:
        digits = re.sub(r"\D+", "", match.group(0) or "")
        return f"[PHONE-***{digits[-4:]}]"

    return _LOG_PHONE_RE.sub(_mask_phone, redacted)


class TurnState(str, Enum):
    """Current state of a call's turn-taking."""
    IDLE = "idle"
    AWAITING_COMPLETION = "awaiting_completion"
    SPEAKING = "speaking"
    CLOSED = "closed"


# Pending turns outlive a closed session until the external call returns.
_background_turns: Set[asyncio.Task] = set()


class TurnCoordinator:
    """Drives listen -> think -> speak for one call."""

    def __init__(
        self,
        conversation: Conversation,
        *,
        complete: Completer,
        synthesize: Synthesizer,
        play: AudioPlayer,
        system_prompt: str = "",
        intent_detector: Optional[BookingIntentDetector] = None,
        on_booking: Optional[BookingHandler] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        buffer: Optional[TranscriptBuffer] = None,
        metrics: Optional[ServerMetrics] = None,
        call_sid: str = "",
    ):
        self.conversation = conversation
        self._complete = complete
        self._synthesize = synthesize
        self._play = play
        self._system_prompt = system_prompt
        self._intent_detector = intent_detector or BookingIntentDetector()
        self._on_booking = on_booking
        self._timeout = timeout
        self._buffer = buffer or TranscriptBuffer()
        self._metrics = metrics
        self._log = logger.bind(call_sid=call_sid) if call_sid else logger

        self._state = TurnState.IDLE
        self._turn_id = 0
        self._queued: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def turn_id(self) -> int:
        return self._turn_id

    @property
    def queued_transcript(self) -> Optional[str]:
        return self._queued

    @property
    def pending_turns(self) -> int:
        """Number of turns between transcript and finished reply (0 or 1)."""
        if self._state in (TurnState.AWAITING_COMPLETION, TurnState.SPEAKING):
            return 1
        return 0

    @property
    def current_task(self) -> Optional[asyncio.Task]:
        return self._task

    def on_transcript(self, text: str) -> bool:
        """
        Feed one final transcript.

        Returns True if it started a turn. Outside IDLE the transcript is parked
        (replacing any earlier parked one) and False is returned.
        """
        if self._state == TurnState.CLOSED:
            return False

        if self._state != TurnState.IDLE:
            if self._queued is not None:
                self._log.debug("Queued transcript replaced", turn_id=self._turn_id)
            self._queued = text
            return False

        return self._evaluate(text)

    def close(self) -> None:
        """Stop processing. A turn still in flight finishes as a no-op."""
        if self._state == TurnState.CLOSED:
            return
        previous = self._state
        self._state = TurnState.CLOSED
        self._turn_id += 1
        self._queued = None
        self._buffer.clear()
        self._log.debug("Turn coordinator closed", previous_state=previous.value)

    def _evaluate(self, text: str) -> bool:
        if not self._buffer.accept(text):
            return False
        self._begin_turn(text)
        return True

    def _begin_turn(self, text: str) -> None:
        self.conversation.add_caller_turn(text)
        self._turn_id += 1
        self._state = TurnState.AWAITING_COMPLETION

        self._log.info(
            "Turn started",
            turn_id=self._turn_id,
            transcript=redact_for_logs(text),
            conversation_turns=len(self.conversation),
        )

        task = asyncio.create_task(self._run_turn(self._turn_id))
        self._task = task
        _background_turns.add(task)
        task.add_done_callback(_background_turns.discard)

    def _is_current(self, turn_id: int) -> bool:
        return turn_id == self._turn_id and self._state != TurnState.CLOSED

    async def _run_turn(self, turn_id: int) -> None:
        messages = self.conversation.to_messages(self._system_prompt)

        try:
            reply = await asyncio.wait_for(self._complete(messages), timeout=self._timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not self._is_current(turn_id):
                self._log.debug("Stale completion failure discarded", turn_id=turn_id)
                return
            self._record_failure("completion", turn_id, e)
            self._finish(turn_id)
            return

        if not self._is_current(turn_id):
            self._log.info("Stale completion discarded", turn_id=turn_id)
            return

        self.conversation.add_assistant_turn(reply)
        self._state = TurnState.SPEAKING
        self._maybe_book(reply, turn_id)

        await self._speak(reply, turn_id)
        self._finish(turn_id)

    async def _speak(self, reply: str, turn_id: int) -> None:
        try:
            audio = await asyncio.wait_for(self._synthesize(reply), timeout=self._timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._is_current(turn_id):
                self._record_failure("synthesis", turn_id, e)
            return

        if not self._is_current(turn_id):
            self._log.debug("Stale audio discarded", turn_id=turn_id)
            return

        try:
            await self._play(audio)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._record_failure("send", turn_id, e)

    def _maybe_book(self, reply: str, turn_id: int) -> None:
        if not self._on_booking or not self._intent_detector.detect(reply):
            return
        self._log.info("Booking confirmation detected", turn_id=turn_id)
        try:
            self._on_booking(self.conversation)
        except Exception as e:
            self._record_failure("persistence", turn_id, e)

    def _finish(self, turn_id: int) -> None:
        if not self._is_current(turn_id):
            return

        self._state = TurnState.IDLE
        self._log.debug("Turn finished", turn_id=turn_id)

        queued, self._queued = self._queued, None
        if queued is not None:
            self._evaluate(queued)

    def _record_failure(self, kind: str, turn_id: int, error: BaseException) -> None:
        error_text = str(error) or type(error).__name__
        if self._metrics:
            self._metrics.record_failure(kind, turn_id=turn_id, error=error_text)
        else:
            self._log.warning(
                "Turn step failed",
                kind=kind,
                turn_id=turn_id,
                error_type=type(error).__name__,
                error=error_text,
            )
