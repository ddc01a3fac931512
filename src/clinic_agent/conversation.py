"""
Conversation history shared by the voice and text channels.

A conversation is append-only. Assistant turns must answer a caller turn; the
only place two caller turns may sit next to each other is after a completion
failure, where the earlier caller turn was left without a reply.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from src.clinic_agent.errors import ConversationError


class Role(str, Enum):
    """Who produced a turn."""
    CALLER = "caller"
    ASSISTANT = "assistant"


# Chat completion APIs call the caller "user".
_API_ROLES = {Role.CALLER: "user", Role.ASSISTANT: "assistant"}


@dataclass(frozen=True)
class Turn:
    """A single utterance in the conversation."""
    role: Role
    content: str
    timestamp: float = field(default_factory=time.time)


class Conversation:
    """Ordered, append-only list of caller/assistant turns."""

    def __init__(self) -> None:
        self._turns: List[Turn] = []

    @property
    def turns(self) -> Tuple[Turn, ...]:
        return tuple(self._turns)

    @property
    def last_role(self) -> Optional[Role]:
        return self._turns[-1].role if self._turns else None

    @property
    def awaiting_reply(self) -> bool:
        """True when the newest turn is a caller turn with no assistant answer."""
        return self.last_role is Role.CALLER

    def add_caller_turn(self, content: str) -> Turn:
        if not content or not content.strip():
            raise ConversationError("Caller turn must not be empty")
        turn = Turn(role=Role.CALLER, content=content)
        self._turns.append(turn)
        return turn

    def add_assistant_turn(self, content: str) -> Turn:
        if self.last_role is not Role.CALLER:
            raise ConversationError("Assistant turn must follow a caller turn")
        turn = Turn(role=Role.ASSISTANT, content=content)
        self._turns.append(turn)
        return turn

    def to_messages(self, system_prompt: Optional[str] = None) -> List[Dict[str, str]]:
        """Get messages in OpenAI format, optionally led by a system message."""
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.extend(
            {"role": _API_ROLES[turn.role], "content": turn.content}
            for turn in self._turns
        )
        return messages

    def full_text(self) -> str:
        """All turn contents joined with spaces, oldest first."""
        return " ".join(turn.content for turn in self._turns)

    def __len__(self) -> int:
        return len(self._turns)
