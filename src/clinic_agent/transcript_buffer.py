"""
Duplicate suppression for speech-to-text output.

Deepgram can emit the same final transcript more than once for one utterance
(a final result followed by an utterance-end replay, for example). Only the most
recent accepted transcript is held; an exact repeat of it is discarded.
"""

from typing import Optional

import structlog

logger = structlog.get_logger(__name__)


class TranscriptBuffer:
    """Holds the single most recent transcript of one session."""

    def __init__(self) -> None:
        self._latest: Optional[str] = None
        self.dropped = 0

    @property
    def latest(self) -> Optional[str]:
        return self._latest

    def accept(self, text: str) -> bool:
        """
        Decide whether a transcript should start a turn.

        Returns False for empty/whitespace text and for an exact repeat of the
        held transcript. Otherwise the transcript replaces the held value and
        True is returned.
        """
        if not text or not text.strip():
            self.dropped += 1
            return False

        if text == self._latest:
            self.dropped += 1
            logger.debug("Duplicate transcript dropped", dropped=self.dropped)
            return False

        self._latest = text
        return True

    def clear(self) -> None:
        self._latest = None
