"""
Tests for the SMS/WhatsApp text channel.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.clinic_agent.conversation import Role
from src.clinic_agent.messaging import APOLOGY_REPLY, TextChannelHandler, phone_from_sender
from src.clinic_agent.metrics import ServerMetrics
from src.clinic_agent.registry import SessionRegistry


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def store():
    return MagicMock()


@pytest.fixture
def handler(registry, fake_llm, store):
    return TextChannelHandler(
        registry,
        fake_llm,
        store=store,
        metrics=ServerMetrics(),
        timeout=1.0,
    )


def test_phone_from_sender():
    assert phone_from_sender("whatsapp:+15551234567") == "+15551234567"
    assert phone_from_sender("+15551234567") == "+15551234567"


class TestTextChannelHandler:
    @pytest.mark.asyncio
    async def test_reply_and_history(self, handler, registry, fake_llm):
        reply = await handler.handle("+15551234567", "Hi, I need a cleaning")

        assert reply == "Sure, what day works for you?"
        conversation = registry.get_text("+15551234567").conversation
        assert [t.role for t in conversation.turns] == [Role.CALLER, Role.ASSISTANT]
        messages = fake_llm.complete.await_args.args[0]
        assert messages[0]["role"] == "system"
        assert messages[-1] == {"role": "user", "content": "Hi, I need a cleaning"}

    @pytest.mark.asyncio
    async def test_history_carries_over(self, handler, fake_llm):
        await handler.handle("+15551234567", "Hi")
        await handler.handle("+15551234567", "Tomorrow please")

        messages = fake_llm.complete.await_args.args[0]
        assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]

    @pytest.mark.asyncio
    async def test_empty_body(self, handler, fake_llm, registry):
        assert await handler.handle("+15551234567", "   ") == APOLOGY_REPLY
        fake_llm.complete.assert_not_awaited()
        assert registry.text_conversations == 0

    @pytest.mark.asyncio
    async def test_completion_failure_apologizes(self, handler, registry, fake_llm):
        fake_llm.complete.side_effect = RuntimeError("groq down")

        reply = await handler.handle("+15551234567", "Hi")

        assert reply == APOLOGY_REPLY
        conversation = registry.get_text("+15551234567").conversation
        assert len(conversation) == 1
        assert handler._metrics.failures["completion"] == 1

        fake_llm.complete.side_effect = None
        assert await handler.handle("+15551234567", "Hello?") == "Sure, what day works for you?"

    @pytest.mark.asyncio
    async def test_completion_timeout_apologizes(self, registry, fake_llm):
        async def slow(messages):
            await asyncio.sleep(10)

        fake_llm.complete = AsyncMock(side_effect=slow)
        handler = TextChannelHandler(registry, fake_llm, timeout=0.05)

        assert await handler.handle("+15551234567", "Hi") == APOLOGY_REPLY

    @pytest.mark.asyncio
    async def test_one_completion_in_flight_per_sender(self, registry, fake_llm):
        active = 0
        peak = 0

        async def complete(messages):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return "ok"

        fake_llm.complete = AsyncMock(side_effect=complete)
        handler = TextChannelHandler(registry, fake_llm)

        await asyncio.gather(
            handler.handle("+15551234567", "one"),
            handler.handle("+15551234567", "two"),
        )

        assert peak == 1
        assert len(registry.get_text("+15551234567").conversation) == 4

    @pytest.mark.asyncio
    async def test_capacity_eviction_keeps_busy_sender_history(self, fake_llm):
        registry = SessionRegistry(max_text_conversations=1)
        release = asyncio.Event()
        in_flight = {}
        peak = {}
        seen = []

        async def complete(messages):
            sender_text = messages[-1]["content"]
            sender = "a" if sender_text in ("first", "second") else "b"
            seen.append([m["content"] for m in messages[1:]])
            in_flight[sender] = in_flight.get(sender, 0) + 1
            peak[sender] = max(peak.get(sender, 0), in_flight[sender])
            if sender_text == "first":
                await release.wait()
            in_flight[sender] -= 1
            return "ok"

        fake_llm.complete = AsyncMock(side_effect=complete)
        handler = TextChannelHandler(registry, fake_llm)

        first = asyncio.create_task(handler.handle("a", "first"))
        await asyncio.sleep(0)
        await handler.handle("b", "hi")
        second = asyncio.create_task(handler.handle("a", "second"))
        await asyncio.sleep(0)
        release.set()
        await asyncio.gather(first, second)

        assert peak["a"] == 1
        assert seen[-1] == ["first", "ok", "second"]
        assert len(registry.get_text("a").conversation) == 4

    @pytest.mark.asyncio
    async def test_booking_on_whatsapp_strips_prefix(self, handler, fake_llm, store):
        fake_llm.complete.return_value = "Perfect Ali, your checkup is confirmed."

        await handler.handle(
            "whatsapp:+15551234567",
            "checkup tomorrow at 3pm, my name is Ali",
            channel="whatsapp",
        )

        record = store.schedule_insert.call_args.args[0]
        assert record.patient_phone == "+15551234567"
        assert record.patient_name == "Ali"
        assert record.service_type == "checkup"

    @pytest.mark.asyncio
    async def test_counts_messages(self, handler):
        await handler.handle("+15551234567", "Hi")
        await handler.handle("+15551234567", "")

        assert handler._metrics.text_messages == 2
