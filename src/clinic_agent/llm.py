"""
Groq LLM wrapper with OpenAI-compatible API.

Provides:
- Startup model validation
- Clinic system prompt
- Single-shot chat completions for voice and text turns
"""

from typing import Any, Dict, List, Optional

import httpx
import structlog
from openai import AsyncOpenAI

from src.clinic_agent.config import get_config
from src.clinic_agent.errors import CompletionError

logger = structlog.get_logger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"

DENTAL_SERVICES = (
    ("General Checkup", "30 min", "PKR 2000"),
    ("Teeth Whitening", "60 min", "PKR 15000"),
    ("Cavity Filling", "45 min", "PKR 3500"),
    ("Root Canal", "90 min", "PKR 12000"),
    ("Tooth Extraction", "30 min", "PKR 2500"),
)


def get_system_prompt(config: Optional[Any] = None) -> str:
    """
    Get the system prompt for the clinic assistant.

    Used for every channel; the reply must stay short because voice replies are
    spoken back to the caller.
    """
    if config is None:
        config = get_config()

    services = "\n".join(
        f"- {name}: {duration}, {price}" for name, duration, price in DENTAL_SERVICES
    )

    return f"""You are a helpful assistant for {config.clinic_name}, a {config.clinic_type} clinic.

CLINIC INFO:
- Name: {config.clinic_name}
- Address: {config.clinic_address}
- Phone: {config.clinic_phone}
- Hours: {config.clinic_hours}

SERVICES:
{services}

YOUR JOB:
1. Greet warmly
2. Ask what service they need
3. Suggest available times
4. Collect: Name, Phone, Preferred Date/Time
5. Confirm appointment, using the word "confirmed" once it is booked
6. Keep responses SHORT (1-2 sentences)
7. Be conversational and friendly

IMPORTANT: Be natural and helpful. Don't use bullet points in conversation."""


async def validate_groq_model(api_key: str, model_name: str) -> bool:
    """
    Validate that the configured Groq model exists.

    Calls GET https://api.groq.com/openai/v1/models to check.

    Raises:
        SystemExit: If model doesn't exist (fail fast)
    """
    logger.info("Validating Groq model", model=model_name)

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(
                f"{GROQ_BASE_URL}/models",
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=10.0,
            )

            if response.status_code != 200:
                logger.error(
                    "Failed to fetch Groq models",
                    status_code=response.status_code,
                    response=response.text[:200],
                )
                raise SystemExit(
                    f"Failed to validate Groq model. API returned status {response.status_code}. "
                    "Check your GROQ_API_KEY."
                )

            model_ids = [m.get("id") for m in response.json().get("data", [])]

            if model_name not in model_ids:
                available = ", ".join(sorted(model_ids)[:10])
                logger.error(
                    "Groq model not found",
                    requested_model=model_name,
                    available_models=available,
                )
                raise SystemExit(
                    f"GROQ_MODEL '{model_name}' not found in available models.\n"
                    f"Available models include: {available}\n"
                    "Please update GROQ_MODEL in your .env file."
                )

            logger.info("Groq model validated successfully", model=model_name)
            return True

        except httpx.RequestError as e:
            logger.error("Failed to connect to Groq API", error=str(e))
            raise SystemExit(
                f"Failed to connect to Groq API: {e}\n"
                "Check your network connection and GROQ_API_KEY."
            )


class GroqLLM:
    """
    Groq chat completion client.

    Stateless: callers own the conversation and pass the full message list.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        if config is None:
            config = get_config()

        self.config = config
        self.model = config.groq_model
        self.system_prompt = get_system_prompt(config)

        # Use OpenAI client with Groq base URL
        self._client = client or AsyncOpenAI(
            api_key=config.groq_api_key,
            base_url=GROQ_BASE_URL,
        )

    async def validate_model(self) -> bool:
        """Validate the configured model exists."""
        return await validate_groq_model(self.config.groq_api_key, self.model)

    async def complete(self, messages: List[Dict[str, str]]) -> str:
        """
        Generate one reply for an ordered message list.

        Raises:
            CompletionError: on any API failure or an empty reply
        """
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=self.config.llm_max_tokens,
                temperature=self.config.llm_temperature,
            )
        except Exception as e:
            logger.error("LLM generation failed", error_type=type(e).__name__, error=str(e))
            raise CompletionError(str(e)) from e

        text = ""
        if response.choices:
            text = (response.choices[0].message.content or "").strip()
        if not text:
            raise CompletionError("Empty completion")
        return text

    async def close(self) -> None:
        await self._client.close()
