"""State Model - Budget ledger and event-derived state.

The state model provides:
- A mutable Budget ledger owned by exactly one loop session
- Frozen budget snapshots for guards (read-only context)
- DerivedState: a pure projection folded from the event log

INVARIANTS:
- DerivedState is never stored independently of the event log
- derive_state() is pure and idempotent
- Guards only ever see BudgetSnapshot, never the mutable Budget
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Iterable

if TYPE_CHECKING:
    from .events import Event


@dataclass(frozen=True)
class BudgetLimits:
    """Immutable size of a budget (used to create ledgers)."""

    max_tokens: int = 100_000
    max_api_calls: int = 50
    max_time_ms: float | None = None


@dataclass(frozen=True)
class BudgetSnapshot:
    """Read-only view of a Budget at one instant."""

    max_tokens: int
    max_api_calls: int
    max_time_ms: float | None
    used_tokens: int
    used_api_calls: int
    elapsed_ms: float

    def exhausted_reason(self) -> str | None:
        """Return why the budget is exhausted, or None if it is not."""
        if self.used_tokens >= self.max_tokens:
            return f"Token budget exhausted: {self.used_tokens} >= {self.max_tokens}"
        if self.used_api_calls >= self.max_api_calls:
            return f"API call budget exhausted: {self.used_api_calls} >= {self.max_api_calls}"
        if self.max_time_ms is not None and self.elapsed_ms >= self.max_time_ms:
            return f"Time budget exhausted: {self.elapsed_ms:.0f}ms >= {self.max_time_ms:.0f}ms"
        return None


@dataclass
class Budget:
    """Mutable resource ledger scoped to one loop session.

    Only the LoopController that created it mutates it, once per iteration.
    Never share a Budget between concurrent workers.
    """

    max_tokens: int = 100_000
    max_api_calls: int = 50
    max_time_ms: float | None = None
    used_tokens: int = 0
    used_api_calls: int = 0
    start_time: float = 0.0  # seconds, from the owning controller's clock

    @classmethod
    def from_limits(cls, limits: BudgetLimits, start_time: float) -> Budget:
        """Create a fresh ledger sized by ``limits``."""
        return cls(
            max_tokens=limits.max_tokens,
            max_api_calls=limits.max_api_calls,
            max_time_ms=limits.max_time_ms,
            start_time=start_time,
        )

    def record_iteration(self, tokens: int = 0, api_calls: int = 1) -> None:
        """Charge one iteration's usage to the ledger."""
        self.used_tokens += max(0, int(tokens))
        self.used_api_calls += max(0, int(api_calls))

    def elapsed_ms(self, now: float) -> float:
        return max(0.0, (now - self.start_time) * 1000)

    def snapshot(self, now: float) -> BudgetSnapshot:
        """Freeze the current usage for read-only consumers."""
        return BudgetSnapshot(
            max_tokens=self.max_tokens,
            max_api_calls=self.max_api_calls,
            max_time_ms=self.max_time_ms,
            used_tokens=self.used_tokens,
            used_api_calls=self.used_api_calls,
            elapsed_ms=self.elapsed_ms(now),
        )

    def exhausted(self, now: float) -> str | None:
        return self.snapshot(now).exhausted_reason()


@dataclass(frozen=True)
class DerivedState:
    """Immutable projection of the event log.

    INVARIANTS:
    - Computed only by folding events from the empty state
    - Equal event sequences always produce equal states
    """

    invocations: int = 0
    successes: int = 0
    failures: int = 0
    rejections: int = 0
    errors: tuple[str, ...] = field(default_factory=tuple)
    variables: tuple[tuple[str, Any], ...] = field(default_factory=tuple)
    last_activity: float = 0.0

    def get(self, key: str, default: Any = None) -> Any:
        """Look up the last value written to ``key``."""
        return dict(self.variables).get(key, default)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "invocations": self.invocations,
            "successes": self.successes,
            "failures": self.failures,
            "rejections": self.rejections,
            "errors": list(self.errors),
            "variables": dict(self.variables),
            "last_activity": self.last_activity,
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), sort_keys=True, default=str)

    @property
    def state_hash(self) -> str:
        """Deterministic hash of the projection, for replay cross-checks."""
        return hashlib.sha256(self.to_json().encode()).hexdigest()[:16]


def apply_event(state: DerivedState, event: Event) -> DerivedState:
    """Fold a single event into a state. Pure: returns a new state."""
    last_activity = max(state.last_activity, event.timestamp)
    data = dict(event.data)

    if event.event_type == "action_invoked":
        return replace(state, invocations=state.invocations + 1, last_activity=last_activity)

    if event.event_type == "action_result":
        if data.get("success"):
            return replace(state, successes=state.successes + 1, last_activity=last_activity)
        return replace(state, failures=state.failures + 1, last_activity=last_activity)

    if event.event_type == "state_changed":
        variables = dict(state.variables)
        variables[str(data["key"])] = data.get("new_value")
        return replace(
            state,
            variables=tuple(sorted(variables.items())),
            last_activity=last_activity,
        )

    if event.event_type == "error_occurred":
        return replace(
            state,
            errors=state.errors + (str(data.get("error", "")),),
            last_activity=last_activity,
        )

    if event.event_type == "guard_rejected":
        return replace(state, rejections=state.rejections + 1, last_activity=last_activity)

    return replace(state, last_activity=last_activity)


def derive_state(events: Iterable[Event]) -> DerivedState:
    """Derive current state by folding events from the empty state.

    This is a PURE FUNCTION with no side effects.

    Args:
        events: Events in sequence order.

    Returns:
        The DerivedState those events imply.
    """
    state = DerivedState()
    for event in events:
        state = apply_event(state, event)
    return state
