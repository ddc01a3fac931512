"""
Server-wide counters.

Fire-and-forget side effects (store inserts, outbound messages, caller lookups)
report failures here in addition to logging, so they show up on /metrics.
"""

import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    total_calls: int = 0
    active_calls: int = 0
    text_messages: int = 0
    appointments_saved: int = 0
    errors: int = 0
    failures: Counter = field(default_factory=Counter)

    def record_failure(self, kind: str, **context: Any) -> None:
        """Count a non-fatal failure of the given kind."""
        self.failures[kind] += 1
        logger.warning("Pipeline failure recorded", kind=kind, total=self.failures[kind], **context)

    @property
    def uptime_seconds(self) -> float:
        return time.time() - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(self.uptime_seconds, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": self.total_calls,
            "active_calls": self.active_calls,
            "text_messages": self.text_messages,
            "appointments_saved": self.appointments_saved,
            "errors": self.errors,
            "failures": dict(self.failures),
        }
