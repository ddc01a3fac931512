"""
Exception types raised by the clinic agent pipeline.

Collaborator clients raise these on failure (including timeouts) so the turn
coordinator and session can log, count and continue without a generic catch.
"""


class ClinicAgentError(Exception):
    """Base class for clinic agent errors."""
    pass


class DuplicateSession(ClinicAgentError):
    """Raised when a session is opened for an identifier that is already active."""

    def __init__(self, identifier: str):
        super().__init__(f"Session already open: {identifier}")
        self.identifier = identifier


class ConversationError(ClinicAgentError):
    """Raised when a turn would break the caller/assistant ordering."""
    pass


class CompletionError(ClinicAgentError):
    """The AI completion service failed or timed out."""
    pass


class SynthesisError(ClinicAgentError):
    """The text-to-speech service failed or timed out."""
    pass


class TranscriptionError(ClinicAgentError):
    """The speech-to-text stream could not be opened or used."""
    pass


class PersistenceError(ClinicAgentError):
    """The appointment store rejected or failed an insert."""
    pass
