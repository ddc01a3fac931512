"""
Appointment booking: intent detection and keyword extraction.

When an assistant reply reads like a confirmation, the conversation is scanned
for the appointment details and a record is handed to the store.

- name: earliest of "my name is X", "i am X", "this is X", skipping NAME_STOPWORDS
- service: first entry of SERVICE_KEYWORDS found anywhere in the text
- date: "tomorrow" or "today"
- time: "3pm", "3 pm", "3:30 pm", "330pm"

Unmatched fields stay unset; build_appointment_record() fills the defaults.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Tuple

from pydantic import BaseModel, Field

from src.clinic_agent.conversation import Conversation

SERVICE_KEYWORDS: Tuple[str, ...] = (
    "cleaning",
    "whitening",
    "filling",
    "root canal",
    "extraction",
    "checkup",
)

NAME_PATTERNS: Tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\bmy name is ([a-z][a-z'\-]*)",
        r"\bi am ([a-z][a-z'\-]*)",
        r"\bthis is ([a-z][a-z'\-]*)",
    )
)

# Words that follow "i am" / "this is" in ordinary sentences.
NAME_STOPWORDS = frozenset({
    "a", "able", "an", "available", "calling", "fine", "glad", "going", "good",
    "happy", "here", "interested", "just", "looking", "not", "so", "sorry",
    "still", "sure", "the", "trying", "very",
})

TIME_PATTERN = re.compile(r"\b(\d{1,2}):?(\d{2})?\s*(am|pm)\b", re.IGNORECASE)

CONFIRMATION_KEYWORDS: Tuple[str, ...] = ("confirmed", "booked")

DEFAULT_PATIENT_NAME = "Unknown"
DEFAULT_SERVICE = "General Consultation"
DEFAULT_TIME = "10:00 AM"
DEFAULT_PHONE = "unknown"


class BookingIntentDetector:
    """
    Decides whether an assistant reply confirms a booking.

    Keyword based; swap in a structured-output detector by providing any object
    with the same `detect(reply) -> bool` method.
    """

    def __init__(self, keywords: Tuple[str, ...] = CONFIRMATION_KEYWORDS):
        self.keywords = tuple(k.lower() for k in keywords)

    def detect(self, reply: str) -> bool:
        text = (reply or "").lower()
        return any(keyword in text for keyword in self.keywords)


@dataclass
class AppointmentDetails:
    """Fields pulled out of a conversation; None when not found."""
    name: Optional[str] = None
    service: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None


class AppointmentRecord(BaseModel):
    """Row written to the appointments table."""

    patient_name: str = Field(default=DEFAULT_PATIENT_NAME)
    patient_phone: str = Field(default=DEFAULT_PHONE)
    service_type: str = Field(default=DEFAULT_SERVICE)
    appointment_date: str
    appointment_time: str = Field(default=DEFAULT_TIME)
    status: str = Field(default="confirmed")
    notes: Optional[str] = None
    created_at: str


def extract_name(text: str) -> Optional[str]:
    """Earliest name introduction in `text`, whichever pattern it uses."""
    best: Optional[re.Match[str]] = None
    for pattern in NAME_PATTERNS:
        for match in pattern.finditer(text):
            if match.group(1).lower() in NAME_STOPWORDS:
                continue
            if best is None or match.start() < best.start():
                best = match
            break
    return best.group(1) if best else None


def extract_service(text: str) -> Optional[str]:
    lowered = text.lower()
    for service in SERVICE_KEYWORDS:
        if service in lowered:
            return service
    return None


def extract_date(text: str, today: Optional[date] = None) -> Optional[str]:
    """Resolve "tomorrow"/"today" to an ISO date.

    "tomorrow" wins when both appear; "today" shows up in greetings far more
    often than in an actual request.
    """
    lowered = text.lower()
    today = today or date.today()
    if "tomorrow" in lowered:
        return (today + timedelta(days=1)).isoformat()
    if "today" in lowered:
        return today.isoformat()
    return None


def extract_time(text: str) -> Optional[str]:
    match = TIME_PATTERN.search(text)
    if match:
        return match.group(0).lower()
    return None


def extract_appointment_data(
    conversation: Conversation,
    today: Optional[date] = None,
) -> AppointmentDetails:
    """Scan the full conversation text for appointment details."""
    text = conversation.full_text()
    return AppointmentDetails(
        name=extract_name(text),
        service=extract_service(text),
        date=extract_date(text, today=today),
        time=extract_time(text),
    )


def build_appointment_record(
    details: AppointmentDetails,
    phone: Optional[str],
    now: Optional[datetime] = None,
) -> AppointmentRecord:
    """Fill unset fields with the documented defaults."""
    now = now or datetime.now(timezone.utc)
    timestamp = now.isoformat()
    return AppointmentRecord(
        patient_name=details.name or DEFAULT_PATIENT_NAME,
        patient_phone=phone or DEFAULT_PHONE,
        service_type=details.service or DEFAULT_SERVICE,
        appointment_date=details.date or timestamp,
        appointment_time=details.time or DEFAULT_TIME,
        created_at=timestamp,
    )
