"""Decision Source Interface - Abstract protocol for decision sources.

Decision sources are NON-TRUSTED components that propose the next action.
They NEVER execute actions directly.

INVARIANTS:
1. A decision source sees a READ-ONLY copy of the context window
2. It returns a Decision: a proposed action, an explicit completion, or nothing
3. invoke() must be safe to retry (no exactly-once assumption)
4. Decision sources are REPLACEABLE (protocol-based)
"""

from __future__ import annotations

import abc
from typing import TYPE_CHECKING, Any, Callable, Union

from .action import Decision

if TYPE_CHECKING:
    from .action import Action
    from .context import Message
    from .gate import GuardResult


class DecisionSource(abc.ABC):
    """Abstract decision source protocol.

    Decision sources are given:
    - The (pruned) context window
    - Descriptions of the actions currently available

    They produce:
    - Decisions (a proposal, a completion signal, or neither)

    They NEVER:
    - Execute actions
    - Mutate loop state
    - Bypass the guard pipeline

    Usage:
        class MySource(DecisionSource):
            def invoke(self, context, available_actions) -> Decision:
                return Decision.propose(create_action("search", parameters={...}))
    """

    @abc.abstractmethod
    def invoke(
        self,
        context: list[Message],
        available_actions: list[dict[str, Any]],
    ) -> Decision:
        """Decide what to do next.

        Args:
            context: Current context window (READ-ONLY).
            available_actions: Capability descriptions (name, description, parameters).

        Returns:
            A Decision. ``Decision()`` means "no action proposed", which is
            never treated as completion.
        """
        ...

    def observe_rejection(self, action: Action, result: GuardResult) -> None:
        """Feedback hook called when a proposal is rejected. Optional."""
        pass

    def get_name(self) -> str:
        """Get the source's name for logging."""
        return self.__class__.__name__

    def get_config(self) -> dict[str, Any]:
        """Get the source's configuration for audit logging."""
        return {"name": self.get_name()}


class NullDecisionSource(DecisionSource):
    """A source that never proposes anything.

    Useful for testing that silence is not mistaken for completion.
    """

    def invoke(
        self,
        context: list[Message],
        available_actions: list[dict[str, Any]],
    ) -> Decision:
        return Decision()


Step = Union[Decision, BaseException, Callable[[list, list], Decision]]


class ScriptedDecisionSource(DecisionSource):
    """A source that replays a predefined script.

    Each step is a Decision (returned), an exception instance (raised), or a
    callable ``(context, available_actions) -> Decision``. After the script
    runs out, ``then`` is used for every further call (default: no action).
    """

    def __init__(self, steps: list[Step], then: Step | None = None):
        self._steps = list(steps)
        self._then = then
        self._index = 0
        self.calls: list[tuple[list[Message], list[dict[str, Any]]]] = []
        self._rejections: list[tuple[Action, GuardResult]] = []

    def invoke(
        self,
        context: list[Message],
        available_actions: list[dict[str, Any]],
    ) -> Decision:
        """Return (or raise) the next scripted step."""
        self.calls.append((list(context), list(available_actions)))

        if self._index < len(self._steps):
            step = self._steps[self._index]
            self._index += 1
        else:
            step = self._then if self._then is not None else Decision()

        if isinstance(step, BaseException):
            raise step
        if callable(step):
            return step(context, available_actions)
        return step

    def observe_rejection(self, action: Action, result: GuardResult) -> None:
        """Record rejection for inspection."""
        self._rejections.append((action, result))

    def get_rejections(self) -> list[tuple[Action, GuardResult]]:
        """Get all recorded rejections."""
        return list(self._rejections)
