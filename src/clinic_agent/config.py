"""
Configuration management for the clinic voice agent.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 7860
    log_level: str = "INFO"

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_whatsapp_number: str = ""

    # Deepgram (STT + Aura TTS)
    deepgram_api_key: str = ""
    deepgram_model: str = "nova-2"
    deepgram_language: str = "en-US"
    deepgram_utterance_end_ms: int = 1000
    deepgram_endpointing_ms: int = 300
    tts_voice: str = "aura-asteria-en"

    # Groq (LLM)
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"
    llm_max_tokens: int = 150
    llm_temperature: float = 0.7

    # Supabase (appointments)
    supabase_url: str = ""
    supabase_key: str = ""

    # Clinic
    clinic_name: str = "Our Clinic"
    clinic_type: str = "dental"
    clinic_address: str = ""
    clinic_phone: str = ""
    clinic_hours: str = ""

    # Pipeline
    audio_chunk_chars: int = 8000
    external_call_timeout_seconds: float = 10.0
    text_conversation_ttl_seconds: float = 3600.0
    max_text_conversations: int = 1000

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL for Twilio."""
        return f"wss://{self.public_host}/ws"

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    @property
    def persistence_enabled(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.twilio_account_sid:
            missing.append("TWILIO_ACCOUNT_SID")
        if not self.twilio_auth_token:
            missing.append("TWILIO_AUTH_TOKEN")
        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")
        if not self.groq_api_key:
            missing.append("GROQ_API_KEY")
        if not self.groq_model:
            missing.append("GROQ_MODEL")

        if self.audio_chunk_chars <= 0 or self.audio_chunk_chars % 4:
            raise ConfigError(
                f"Invalid AUDIO_CHUNK_CHARS '{self.audio_chunk_chars}'. "
                "Expected a positive multiple of 4."
            )

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            clinic_name=self.clinic_name,
            deepgram_model=self.deepgram_model,
            deepgram_language=self.deepgram_language,
            deepgram_utterance_end_ms=self.deepgram_utterance_end_ms,
            tts_voice=self.tts_voice,
            llm_model=self.groq_model,
            llm_max_tokens=self.llm_max_tokens,
            audio_chunk_chars=self.audio_chunk_chars,
            external_call_timeout_seconds=self.external_call_timeout_seconds,
            persistence_enabled=self.persistence_enabled,
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            whatsapp_number_set=bool(self.twilio_whatsapp_number),
            deepgram_key_set=bool(self.deepgram_api_key),
            groq_key_set=bool(self.groq_api_key),
        )


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_whatsapp_number=os.getenv("TWILIO_WHATSAPP_NUMBER", ""),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_model=os.getenv("DEEPGRAM_MODEL", "nova-2"),
        deepgram_language=os.getenv("DEEPGRAM_LANGUAGE", "en-US"),
        deepgram_utterance_end_ms=_get_int("DEEPGRAM_UTTERANCE_END_MS", 1000),
        deepgram_endpointing_ms=_get_int("DEEPGRAM_ENDPOINTING_MS", 300),
        tts_voice=os.getenv("TTS_VOICE", "aura-asteria-en"),

        # Groq
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
        llm_max_tokens=_get_int("LLM_MAX_TOKENS", 150),
        llm_temperature=_get_float("LLM_TEMPERATURE", 0.7),

        # Supabase
        supabase_url=os.getenv("SUPABASE_URL", "").rstrip("/"),
        supabase_key=os.getenv("SUPABASE_KEY", ""),

        # Clinic
        clinic_name=os.getenv("CLINIC_NAME", "Our Clinic"),
        clinic_type=os.getenv("CLINIC_TYPE", "dental"),
        clinic_address=os.getenv("CLINIC_ADDRESS", ""),
        clinic_phone=os.getenv("CLINIC_PHONE", ""),
        clinic_hours=os.getenv("CLINIC_HOURS", ""),

        # Pipeline
        audio_chunk_chars=_get_int("AUDIO_CHUNK_CHARS", 8000),
        external_call_timeout_seconds=_get_float("EXTERNAL_CALL_TIMEOUT_SECONDS", 10.0),
        text_conversation_ttl_seconds=_get_float("TEXT_CONVERSATION_TTL_SECONDS", 3600.0),
        max_text_conversations=_get_int("MAX_TEXT_CONVERSATIONS", 1000),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
