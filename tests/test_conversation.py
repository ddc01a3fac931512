"""
Tests for conversation history.
"""

import pytest

from src.clinic_agent.conversation import Conversation, Role
from src.clinic_agent.errors import ConversationError


class TestConversation:
    def test_turns_alternate(self):
        conversation = Conversation()
        conversation.add_caller_turn("Hi")
        conversation.add_assistant_turn("Hello! How can I help?")

        assert len(conversation) == 2
        assert [t.role for t in conversation.turns] == [Role.CALLER, Role.ASSISTANT]
        assert conversation.awaiting_reply is False

    def test_assistant_turn_needs_caller_turn(self):
        conversation = Conversation()

        with pytest.raises(ConversationError):
            conversation.add_assistant_turn("Hello")

    def test_assistant_cannot_answer_twice(self):
        conversation = Conversation()
        conversation.add_caller_turn("Hi")
        conversation.add_assistant_turn("Hello")

        with pytest.raises(ConversationError):
            conversation.add_assistant_turn("Hello again")

    def test_unanswered_caller_turn_may_be_followed_by_another(self):
        conversation = Conversation()
        conversation.add_caller_turn("Hi")
        conversation.add_caller_turn("Are you there?")

        assert len(conversation) == 2
        assert conversation.awaiting_reply is True

    def test_empty_caller_turn_rejected(self):
        conversation = Conversation()

        with pytest.raises(ConversationError):
            conversation.add_caller_turn("  ")
        assert len(conversation) == 0

    def test_to_messages_maps_roles(self):
        conversation = Conversation()
        conversation.add_caller_turn("Hi")
        conversation.add_assistant_turn("Hello")

        messages = conversation.to_messages("Be brief.")

        assert messages == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello"},
        ]

    def test_to_messages_without_system_prompt(self):
        conversation = Conversation()
        conversation.add_caller_turn("Hi")

        assert conversation.to_messages() == [{"role": "user", "content": "Hi"}]

    def test_full_text(self):
        conversation = Conversation()
        conversation.add_caller_turn("Hi")
        conversation.add_assistant_turn("Hello")

        assert conversation.full_text() == "Hi Hello"
