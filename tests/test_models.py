"""Tests for the shared data models and prompt construction."""
import pydantic
import pytest

from core.prompts import (
    DEFAULT_PHASE1_PROMPT,
    FAST_FIRST_HINT,
    PLAIN_TEXT_RULE,
    effective_system_prompt,
    phase1_prompt,
    phase2_prompt,
    sentence_budget_rule,
)
from models.schemas import ChatRequest, Msg, PreemptResult, Role, TurnInfo, TurnState


class TestSchemas:

    def test_msg_constructors(self):
        assert Msg.user("hi") == Msg(role=Role.USER, text="hi")
        assert Msg.assistant("hello").role == Role.ASSISTANT

    def test_msg_is_frozen(self):
        msg = Msg.user("hi")
        with pytest.raises(pydantic.ValidationError):
            msg.text = "changed"

    def test_chat_request_defaults(self):
        request = ChatRequest(model="gpt-4o")
        assert request.messages == []
        assert request.temperature is None
        assert request.web_search is False

    def test_turn_info_ids_are_unique(self):
        assert TurnInfo().turn_id != TurnInfo().turn_id
        assert TurnInfo().state == TurnState.IDLE

    def test_preempt_result_defaults(self):
        result = PreemptResult()
        assert not result.aborted
        assert result.user_text is None


class TestPrompts:

    def test_budget_rule_plural(self):
        assert "AT MOST 1 sentence long" in sentence_budget_rule(1)
        assert "AT MOST 3 sentences long" in sentence_budget_rule(3)

    def test_effective_prompt_appends_rules(self):
        prompt = effective_system_prompt("Be friendly.", 2, fast_first=True)
        assert prompt.startswith("Be friendly.\n\n")
        assert PLAIN_TEXT_RULE in prompt
        assert FAST_FIRST_HINT in prompt

    def test_effective_prompt_without_base(self):
        assert effective_system_prompt("", 2).startswith(PLAIN_TEXT_RULE)

    def test_phase1_override(self):
        assert phase1_prompt("") == DEFAULT_PHASE1_PROMPT
        assert phase1_prompt("  Custom opener.  ") == "Custom opener."

    def test_phase2_placeholders(self):
        template = "After '{FIRST_SENTENCE}' add {REMAINING_COUNT} sentence{PLURAL}."
        assert phase2_prompt("Hi there.", 2, template) == "After 'Hi there.' add 1 sentence."
        assert phase2_prompt("Hi there.", 4, template) == "After 'Hi there.' add 3 sentences."
