"""Shared fixtures for loop kernel tests."""

import pytest

from loop_kernel.action import Decision, create_action
from loop_kernel.controller import ActionCatalog, Capability


class FakeClock:
    """Manually advanced clock (seconds). Doubles as a recording sleep."""

    def __init__(self, start: float = 1_000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def echo(action):
    return f"echo:{action.params.get('text', '')}"


@pytest.fixture
def catalog():
    return ActionCatalog([
        Capability("echo", "Echo the text parameter", echo, {"text": {"type": "string"}}),
        Capability("search", "Search for a query", lambda a: f"results for {a.params.get('query')}"),
    ])


def echo_forever(context, available_actions):
    """Step for ScriptedDecisionSource: always propose a fresh echo."""
    return Decision.propose(create_action("echo", parameters={"text": "again"}), tokens_used=10)
