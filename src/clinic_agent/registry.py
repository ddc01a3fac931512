"""
Registry of live conversations.

Voice calls are keyed by call SID and live exactly as long as their session:
registered on open, removed on close. Text conversations are keyed by sender
address and are evicted after an idle TTL or when the registry holds more than
`max_text_conversations` (least recently used first).

All access happens on the event loop thread; no locking is needed within one
process.
"""

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

import structlog

from src.clinic_agent.conversation import Conversation
from src.clinic_agent.errors import DuplicateSession

if TYPE_CHECKING:
    from src.clinic_agent.session import CallSession

logger = structlog.get_logger(__name__)


@dataclass
class TextConversation:
    """History of one SMS/WhatsApp sender."""
    sender: str
    conversation: Conversation = field(default_factory=Conversation)
    # Held while an AI call is in flight; one completion per conversation.
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last_active: float = 0.0


class SessionRegistry:
    """Maps call SIDs to call sessions and senders to text conversations."""

    def __init__(
        self,
        *,
        text_ttl_seconds: float = 3600.0,
        max_text_conversations: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._calls: Dict[str, "CallSession"] = {}
        self._texts: "OrderedDict[str, TextConversation]" = OrderedDict()
        self._text_ttl = text_ttl_seconds
        self._max_texts = max_text_conversations
        self._clock = clock

    # Voice

    def register_call(self, call_sid: str, session: "CallSession") -> None:
        if call_sid in self._calls:
            raise DuplicateSession(call_sid)
        self._calls[call_sid] = session
        logger.info("Call session registered", call_sid=call_sid, active_calls=len(self._calls))

    def get_call(self, call_sid: str) -> Optional["CallSession"]:
        return self._calls.get(call_sid)

    def remove_call(self, call_sid: str, session: Optional["CallSession"] = None) -> bool:
        """Drop a call entry; with `session`, only if that session still owns it."""
        current = self._calls.get(call_sid)
        if current is None or (session is not None and current is not session):
            return False
        del self._calls[call_sid]
        logger.info("Call session removed", call_sid=call_sid, active_calls=len(self._calls))
        return True

    @property
    def active_calls(self) -> int:
        return len(self._calls)

    def call_sids(self) -> List[str]:
        return list(self._calls)

    # Text

    def text_conversation(self, sender: str) -> TextConversation:
        """Lookup-or-create the conversation for a sender."""
        now = self._clock()
        self.evict_expired(now)

        entry = self._texts.get(sender)
        if entry is None:
            entry = TextConversation(sender=sender)
            self._texts[sender] = entry
            logger.debug("Text conversation created", text_conversations=len(self._texts))
        else:
            self._texts.move_to_end(sender)
        entry.last_active = now

        self._evict_overflow(keep=sender)
        return entry

    def get_text(self, sender: str) -> Optional[TextConversation]:
        return self._texts.get(sender)

    @property
    def text_conversations(self) -> int:
        return len(self._texts)

    def evict_expired(self, now: Optional[float] = None) -> int:
        """Drop idle text conversations; ones with an AI call in flight stay."""
        now = self._clock() if now is None else now
        expired = [
            sender
            for sender, entry in self._texts.items()
            if now - entry.last_active > self._text_ttl and not entry.lock.locked()
        ]
        for sender in expired:
            del self._texts[sender]
        if expired:
            logger.info("Text conversations expired", count=len(expired))
        return len(expired)

    def _evict_overflow(self, keep: Optional[str] = None) -> None:
        """Drop least recently used conversations over the cap.

        Busy entries and `keep` (the one being handed out) are skipped. If every
        other entry is busy the map stays over the cap until one is released.
        """
        overflow = len(self._texts) - self._max_texts
        if overflow <= 0:
            return

        idle = [
            sender
            for sender, entry in self._texts.items()
            if sender != keep and not entry.lock.locked()
        ]
        for sender in idle[:overflow]:
            del self._texts[sender]
            logger.info("Text conversation evicted", reason="capacity")

        if len(self._texts) > self._max_texts:
            logger.warning(
                "Text conversations over capacity, all remaining entries busy",
                text_conversations=len(self._texts),
                max_text_conversations=self._max_texts,
            )
