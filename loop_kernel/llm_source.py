"""LLM Decision Source - Concrete decision source backed by a language model.

This source wraps provider SDK calls and converts replies to Decisions.
It is ISOLATED from direct system access.

INVARIANTS:
1. The source only produces decisions (never executes)
2. Replies are parsed into structured Decisions
3. Unparseable replies become "no action proposed", never completion
4. SDK errors propagate so the resilience wrapper can classify them
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any

from .action import Decision
from .context import Message
from .decision import DecisionSource

logger = logging.getLogger(__name__)


@dataclass
class LLMSourceConfig:
    """Configuration for LLMDecisionSource."""

    # Model settings
    provider: str = "openai"  # "openai", "anthropic", "deepseek"
    model: str = "gpt-4o-mini"
    temperature: float = 0.2
    max_tokens: int = 4096

    # API settings
    api_key_env: str = "OPENAI_API_KEY"
    base_url: str | None = None

    # Prompt settings
    system_prompt: str = ""


SYSTEM_PROMPT_TEMPLATE = """You are an autonomous agent working toward a goal one step at a time.

Each reply must be a single JSON object, either proposing ONE action or
declaring the task complete.

CONSTRAINTS:
- You can ONLY propose actions, not execute them
- Every action is checked by a guard pipeline before it runs
- Rejected actions come back to you with a reason

AVAILABLE ACTIONS:
{actions}

RESPONSE FORMAT:
```json
{{"action": {{"type": "<action name>", "target": "<optional resource>", "parameters": {{}}}}}}
```
or, when the task is finished:
```json
{{"done": true, "result": "<final answer>"}}
```
"""

_DEFAULT_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}


def get_llm_client(config: LLMSourceConfig):
    """Get appropriate LLM client based on provider.

    Returns:
        An ``openai.OpenAI`` or ``anthropic.Anthropic`` client.
    """
    try:
        api_key = os.environ.get(config.api_key_env) or os.environ.get(
            _DEFAULT_KEY_ENV.get(config.provider, "")
        )
        if config.provider == "deepseek":
            from openai import OpenAI
            return OpenAI(
                api_key=api_key,
                base_url=config.base_url or "https://api.deepseek.com",
            )
        elif config.provider == "openai":
            from openai import OpenAI
            return OpenAI(api_key=api_key, base_url=config.base_url)
        elif config.provider == "anthropic":
            import anthropic
            return anthropic.Anthropic(api_key=api_key)
        else:
            raise ValueError(f"Unknown provider: {config.provider}")
    except ImportError as e:
        logger.error(f"Failed to import LLM client: {e}")
        raise


def extract_json(response: str) -> dict[str, Any] | None:
    """Pull the first JSON object out of a reply."""
    block = re.search(r"```(?:json)?\s*\n?(\{.*?\})\s*\n?```", response, re.DOTALL)
    if block:
        try:
            return json.loads(block.group(1))
        except json.JSONDecodeError:
            pass

    try:
        parsed = json.loads(response.strip())
        return parsed if isinstance(parsed, dict) else None
    except json.JSONDecodeError:
        pass

    start, end = response.find("{"), response.rfind("}")
    if start != -1 and end > start:
        try:
            parsed = json.loads(response[start:end + 1])
            return parsed if isinstance(parsed, dict) else None
        except json.JSONDecodeError:
            pass

    return None


def parse_decision(response: str, tokens_used: int = 0) -> Decision:
    """Parse a model reply into a Decision.

    Args:
        response: Raw reply text.
        tokens_used: Tokens consumed by the call.

    Returns:
        A Decision; an unparseable reply gives a Decision with no action.
    """
    data = extract_json(response or "")
    if data is None:
        logger.warning("Failed to parse LLM response")
        return Decision(tokens_used=tokens_used, content=response or "")

    decision = Decision.from_dict(data, tokens_used=tokens_used)
    if not decision.has_action and not decision.complete:
        return Decision(tokens_used=tokens_used, content=response)
    return decision


class LLMDecisionSource(DecisionSource):
    """LLM-based decision source.

    Usage:
        source = LLMDecisionSource(LLMSourceConfig(
            provider="anthropic",
            model="claude-sonnet-4-5",
            api_key_env="ANTHROPIC_API_KEY",
        ))

        decision = source.invoke(context, catalog.describe())
    """

    def __init__(self, config: LLMSourceConfig | None = None, client: Any = None):
        """Initialize LLM decision source.

        Args:
            config: Source configuration.
            client: Pre-built SDK client (created lazily when omitted).
        """
        self.config = config or LLMSourceConfig()
        self._client = client
        self._call_count = 0

    @property
    def client(self):
        """Lazy-load LLM client."""
        if self._client is None:
            self._client = get_llm_client(self.config)
        return self._client

    def invoke(
        self,
        context: list[Message],
        available_actions: list[dict[str, Any]],
    ) -> Decision:
        """Ask the model for the next decision."""
        system_prompt = self.config.system_prompt or SYSTEM_PROMPT_TEMPLATE.format(
            actions=self._describe_actions(available_actions)
        )
        messages = self._build_messages(context)

        text, tokens = self._call_llm(system_prompt, messages)
        self._call_count += 1

        return parse_decision(text, tokens_used=tokens)

    def _describe_actions(self, available_actions: list[dict[str, Any]]) -> str:
        if not available_actions:
            return "(none)"
        lines = []
        for entry in available_actions:
            params = json.dumps(entry.get("parameters", {}), sort_keys=True)
            lines.append(f"- {entry['name']}: {entry.get('description', '')} parameters={params}")
        return "\n".join(lines)

    def _build_messages(self, context: list[Message]) -> list[dict[str, str]]:
        """Map context to provider chat roles (tool output becomes user text)."""
        messages = []
        for message in context:
            role = message.role if message.role in ("user", "assistant") else "user"
            content = message.content
            if message.role == "tool":
                content = f"[action result] {content}"
            elif message.role == "system":
                content = f"[system] {content}"
            messages.append({"role": role, "content": content})
        if not messages:
            messages.append({"role": "user", "content": "Begin."})
        return messages

    def _call_llm(self, system_prompt: str, messages: list[dict[str, str]]) -> tuple[str, int]:
        """Call the LLM and return (response text, tokens used)."""
        if self.config.provider == "anthropic":
            response = self.client.messages.create(
                model=self.config.model,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                system=system_prompt,
                messages=messages,
            )
            usage = getattr(response, "usage", None)
            tokens = (
                (getattr(usage, "input_tokens", 0) or 0) + (getattr(usage, "output_tokens", 0) or 0)
                if usage is not None
                else 0
            )
            return response.content[0].text, tokens

        # OpenAI-compatible API
        response = self.client.chat.completions.create(
            model=self.config.model,
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
            messages=[{"role": "system", "content": system_prompt}, *messages],
        )
        usage = getattr(response, "usage", None)
        tokens = (getattr(usage, "total_tokens", 0) or 0) if usage is not None else 0
        return response.choices[0].message.content or "", tokens

    def get_name(self) -> str:
        """Get source name."""
        return f"LLMDecisionSource({self.config.provider}/{self.config.model})"

    def get_config(self) -> dict[str, Any]:
        """Get source config for audit."""
        return {
            "name": self.get_name(),
            "provider": self.config.provider,
            "model": self.config.model,
            "temperature": self.config.temperature,
            "call_count": self._call_count,
        }
