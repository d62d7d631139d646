"""Tests for the LLM-backed decision source (SDK clients mocked)."""

from unittest.mock import MagicMock, patch

import pytest

from loop_kernel.context import Message, as_ephemeral
from loop_kernel.llm_source import (
    LLMDecisionSource,
    LLMSourceConfig,
    get_llm_client,
    parse_decision,
)

ACTIONS = [{"name": "search", "description": "Search the index", "parameters": {}}]


def openai_client(text, total_tokens=42):
    client = MagicMock()
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = text
    response.usage.total_tokens = total_tokens
    client.chat.completions.create.return_value = response
    return client


def anthropic_client(text, input_tokens=30, output_tokens=12):
    client = MagicMock()
    response = MagicMock()
    response.content = [MagicMock(text=text)]
    response.usage.input_tokens = input_tokens
    response.usage.output_tokens = output_tokens
    client.messages.create.return_value = response
    return client


class TestParseDecision:
    def test_action_in_code_block(self):
        reply = 'Let me look.\n```json\n{"action": {"type": "search", "parameters": {"query": "x"}}}\n```'

        decision = parse_decision(reply, tokens_used=7)

        assert decision.action.action_type == "search"
        assert decision.action.params == {"query": "x"}
        assert decision.tokens_used == 7

    def test_completion(self):
        decision = parse_decision('{"done": true, "result": "42"}')

        assert decision.complete
        assert decision.result == "42"

    def test_bare_action_object(self):
        decision = parse_decision('{"type": "search", "target": "docs"}')

        assert decision.action.action_type == "search"
        assert decision.action.target == "docs"

    def test_json_embedded_in_prose(self):
        decision = parse_decision('Sure: {"action": {"type": "search"}} hope that helps')

        assert decision.action.action_type == "search"

    def test_garbage_is_no_action_not_completion(self):
        decision = parse_decision("I am not sure what to do.")

        assert not decision.has_action
        assert not decision.complete
        assert decision.content == "I am not sure what to do."

    def test_malformed_action_survives_for_the_guard(self):
        decision = parse_decision('{"action": {"parameters": "oops"}}')

        assert decision.has_action
        assert decision.action.action_type is None


class TestLLMDecisionSource:
    def test_openai_call(self):
        client = openai_client('{"action": {"type": "search", "parameters": {"query": "q"}}}')
        source = LLMDecisionSource(LLMSourceConfig(provider="openai", model="gpt-test"), client=client)
        context = [Message(role="user", content="find q"), as_ephemeral("previous output", now=1.0)]

        decision = source.invoke(context, ACTIONS)

        assert decision.action.action_type == "search"
        assert decision.tokens_used == 42
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-test"
        assert kwargs["messages"][0]["role"] == "system"
        assert "search: Search the index" in kwargs["messages"][0]["content"]
        assert kwargs["messages"][1] == {"role": "user", "content": "find q"}
        assert kwargs["messages"][2]["content"].startswith("[action result]")

    def test_anthropic_call(self):
        client = anthropic_client('{"done": true, "result": "finished"}')
        source = LLMDecisionSource(
            LLMSourceConfig(provider="anthropic", model="claude-test", api_key_env="ANTHROPIC_API_KEY"),
            client=client,
        )

        decision = source.invoke([Message(role="user", content="wrap up")], ACTIONS)

        assert decision.complete
        assert decision.tokens_used == 42
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["model"] == "claude-test"
        assert "search" in kwargs["system"]
        assert kwargs["messages"] == [{"role": "user", "content": "wrap up"}]

    def test_sdk_errors_propagate(self):
        client = MagicMock()
        client.chat.completions.create.side_effect = TimeoutError("request timed out")
        source = LLMDecisionSource(LLMSourceConfig(), client=client)

        with pytest.raises(TimeoutError):
            source.invoke([Message(role="user", content="go")], ACTIONS)

    def test_config_for_audit(self):
        source = LLMDecisionSource(LLMSourceConfig(provider="openai", model="gpt-test"), client=MagicMock())

        config = source.get_config()

        assert config["name"] == "LLMDecisionSource(openai/gpt-test)"
        assert config["call_count"] == 0


class TestGetClient:
    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown provider"):
            get_llm_client(LLMSourceConfig(provider="carrier-pigeon"))

    def test_deepseek_uses_openai_sdk(self, monkeypatch):
        monkeypatch.setenv("DEEPSEEK_API_KEY", "sk-test")
        with patch("openai.OpenAI") as openai_cls:
            get_llm_client(LLMSourceConfig(provider="deepseek", api_key_env="DEEPSEEK_API_KEY"))

        kwargs = openai_cls.call_args.kwargs
        assert kwargs["api_key"] == "sk-test"
        assert kwargs["base_url"] == "https://api.deepseek.com"

    def test_anthropic_client(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        with patch("anthropic.Anthropic") as anthropic_cls:
            get_llm_client(LLMSourceConfig(provider="anthropic", api_key_env="ANTHROPIC_API_KEY"))

        assert anthropic_cls.call_args.kwargs["api_key"] == "sk-ant-test"
