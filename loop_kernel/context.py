"""Context Window - messages fed back to the decision source.

Action outputs are valuable when the next decision is made and noise
afterwards, so they are marked ephemeral and pruned before each call.

INVARIANTS:
- Pruning only touches the in-memory context, never the event log
- Permanent messages are never dropped or reordered
- prune_ephemeral(prune_ephemeral(m)) == prune_ephemeral(m)
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Message:
    """One entry in the context window."""

    role: str  # "system" | "user" | "assistant" | "tool"
    content: str
    ephemeral: bool = False
    timestamp: float | None = None  # seconds
    action_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary (provider message shape)."""
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class PruneConfig:
    """How aggressively to prune ephemeral messages."""

    keep_last: int = 5
    max_age_ms: float | None = None


def as_ephemeral(
    content: str,
    now: float | None = None,
    role: str = "tool",
    action_id: str | None = None,
) -> Message:
    """Wrap an action output as a prunable message."""
    return Message(
        role=role,
        content=content,
        ephemeral=True,
        timestamp=time.time() if now is None else now,
        action_id=action_id,
    )


def prune_ephemeral(
    messages: list[Message],
    config: PruneConfig,
    now: float | None = None,
) -> list[Message]:
    """Drop stale ephemeral messages, keeping original relative order.

    Among ephemeral messages, those older than ``max_age_ms`` are dropped
    first, then only the ``keep_last`` most recent survivors are retained.

    Args:
        messages: Current context window.
        config: Pruning limits.
        now: Current time in seconds (defaults to wall clock).

    Returns:
        A new list; the input is not modified.
    """
    ephemeral = [i for i, m in enumerate(messages) if m.ephemeral]

    if config.max_age_ms is not None:
        current = time.time() if now is None else now
        cutoff = current - config.max_age_ms / 1000
        ephemeral = [i for i in ephemeral if (messages[i].timestamp or 0.0) > cutoff]

    keep = set(ephemeral[-config.keep_last:]) if config.keep_last > 0 else set()

    return [m for i, m in enumerate(messages) if not m.ephemeral or i in keep]
