"""Gate - Layered, priority-ordered admission control.

Every proposed action passes through the guard pipeline BEFORE any side
effect occurs. Guards are evaluated in ascending priority order (lower
number = higher authority):

    0. safety     - hard-coded, never configurable (plus structural validation)
    1. budget     - rejects when any Budget ledger is exhausted
    2. policy     - business rules: blocked tools/patterns, confirmation
    3. task       - task-specific constraints

CRITICAL INVARIANTS:
1. Guards are PURE FUNCTIONS of (action, read-only context)
2. The first rejection is returned verbatim; no later guard is consulted
3. An approval with override=True ends evaluation immediately
4. A confirmation request from any guard is carried into the final approval
5. Guards never mutate Budget or Event state
"""

from __future__ import annotations

import fnmatch
import json
import logging
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Iterable, Sequence

from .action import Action, validate_action
from .state import BudgetSnapshot

logger = logging.getLogger(__name__)


class Layer(str, Enum):
    """Canonical guard layers and their priorities."""

    SAFETY = "safety"
    BUDGET = "budget"
    POLICY = "policy"
    TASK = "task"

    @property
    def priority(self) -> int:
        return LAYER_PRIORITY[self]


LAYER_PRIORITY = {
    Layer.SAFETY: 0,
    Layer.BUDGET: 1,
    Layer.POLICY: 2,
    Layer.TASK: 3,
}


@dataclass(frozen=True)
class GuardResult:
    """Immutable outcome of one guard (or of the whole pipeline).

    INVARIANT: Rejections and confirmation requests always carry a reason.
    """

    allowed: bool
    reason: str = ""
    override: bool = False
    requires_confirmation: bool = False
    layer: str = ""
    evidence: tuple[tuple[str, Any], ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "override": self.override,
            "requires_confirmation": self.requires_confirmation,
            "layer": self.layer,
            "evidence": dict(self.evidence),
        }

    @classmethod
    def accept(cls, layer: str = "", reason: str = "") -> GuardResult:
        """Create an approval."""
        return cls(allowed=True, reason=reason, layer=layer)

    @classmethod
    def reject(
        cls,
        reason: str,
        layer: str = "",
        evidence: dict[str, Any] | None = None,
        override: bool = False,
    ) -> GuardResult:
        """Create a rejection."""
        return cls(
            allowed=False,
            reason=reason,
            override=override,
            layer=layer,
            evidence=tuple(sorted((evidence or {}).items())),
        )

    @classmethod
    def confirm(cls, reason: str, layer: str = "") -> GuardResult:
        """Create an approval that is pending human sign-off."""
        return cls(allowed=True, reason=reason, requires_confirmation=True, layer=layer)


GuardCheck = Callable[[Action], GuardResult]


@dataclass(frozen=True)
class LayeredGuard:
    """A guard check tagged with its priority."""

    priority: int
    name: str
    check: GuardCheck


def evaluate(action: Action, guards: Iterable[LayeredGuard]) -> GuardResult:
    """Run guards in ascending priority order with short-circuiting.

    Guards sharing a priority run in the order given.

    Args:
        action: Proposed action.
        guards: Layered guards, in any order.

    Returns:
        The first rejection verbatim, an override approval, a pending
        confirmation, or a default approval.
    """
    confirmation: GuardResult | None = None

    for guard in sorted(guards, key=lambda g: g.priority):
        result = guard.check(action)

        if not result.allowed:
            return result

        if result.requires_confirmation and confirmation is None:
            confirmation = result

        if result.override:
            if confirmation is not None:
                return replace(result, requires_confirmation=True, reason=confirmation.reason)
            return result

    if confirmation is not None:
        return confirmation

    return GuardResult.accept(reason="All guards passed")


# Action types that are never allowed, regardless of any other layer
FORBIDDEN_ACTION_TYPES = (
    "delete_system_files",
    "disable_logging",
    "bypass_auth",
    "exfiltrate_data",
)

# Destructive content patterns (checked in target and parameters)
DESTRUCTIVE_PATTERNS = (
    r"rm\s+-rf\s+/",
    r"DROP\s+DATABASE",
    r"DROP\s+TABLE",
    r"mkfs(\.\w+)?\s",
    r"dd\s+if=.*\s+of=/dev/",
    r":\(\)\s*\{\s*:\|:&\s*\};:",  # Fork bomb
    r"chmod\s+-R\s+777\s+/",
    r"curl\s+.*\|\s*(ba)?sh",
    r"wget\s+.*\|\s*(ba)?sh",
)

# Targets that no action may touch
FORBIDDEN_TARGET_PATTERNS = (
    ".git/*",
    "*/.git/*",
    ".env",
    ".env.*",
    "*.pem",
    "*.key",
    "*credentials*",
    "/etc/shadow",
    "/etc/passwd",
    "/boot/*",
)

_DESTRUCTIVE = tuple(re.compile(p, re.IGNORECASE) for p in DESTRUCTIVE_PATTERNS)


def _action_text(action: Action) -> str:
    """Flatten target and parameters for pattern checks."""
    params = action.params if isinstance(action.parameters, tuple) else action.parameters
    return f"{action.target or ''} {json.dumps(params, sort_keys=True, default=str)}"


def check_structure(action: Action) -> GuardResult:
    """Structural validation: reject malformed actions."""
    errors = validate_action(action)
    if errors:
        return GuardResult.reject(
            reason=f"Invalid action: {'; '.join(errors)}",
            layer=Layer.SAFETY.value,
            evidence={"errors": errors},
        )
    return GuardResult.accept(Layer.SAFETY.value)


def check_safety(action: Action) -> GuardResult:
    """Hard-coded safety rules. Not configurable."""
    if action.action_type in FORBIDDEN_ACTION_TYPES:
        return GuardResult.reject(
            reason=f"Safety violation: {action.action_type} is forbidden",
            layer=Layer.SAFETY.value,
            evidence={"action_type": action.action_type},
        )

    target = action.target or ""
    for pattern in FORBIDDEN_TARGET_PATTERNS:
        if target and fnmatch.fnmatch(target, pattern):
            return GuardResult.reject(
                reason=f"Safety violation: target '{target}' matches forbidden pattern '{pattern}'",
                layer=Layer.SAFETY.value,
                evidence={"target": target, "forbidden_pattern": pattern},
            )

    if ".." in target.replace("\\", "/").split("/"):
        return GuardResult.reject(
            reason="Safety violation: path traversal detected",
            layer=Layer.SAFETY.value,
            evidence={"target": target},
        )

    text = _action_text(action)
    for pattern in _DESTRUCTIVE:
        match = pattern.search(text)
        if match:
            return GuardResult.reject(
                reason="Safety violation: destructive pattern detected",
                layer=Layer.SAFETY.value,
                evidence={"pattern": pattern.pattern, "match": match.group()[:50]},
            )

    return GuardResult.accept(Layer.SAFETY.value)


def budget_guard(budget: BudgetSnapshot) -> LayeredGuard:
    """Layer 1: reject (terminally) when any ledger is exhausted."""

    def check(action: Action) -> GuardResult:
        reason = budget.exhausted_reason()
        if reason:
            return GuardResult.reject(
                reason=reason,
                layer=Layer.BUDGET.value,
                evidence={
                    "used_tokens": budget.used_tokens,
                    "used_api_calls": budget.used_api_calls,
                    "elapsed_ms": budget.elapsed_ms,
                },
                override=True,
            )
        return GuardResult.accept(Layer.BUDGET.value)

    return LayeredGuard(Layer.BUDGET.priority, Layer.BUDGET.value, check)


@dataclass(frozen=True)
class Policy:
    """Immutable business rules for the policy layer."""

    blocked_tools: tuple[str, ...] = ()
    blocked_patterns: tuple[str, ...] = ()  # regular expressions
    requires_confirmation: tuple[str, ...] = ()
    max_operations: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for audit logging."""
        return {
            "blocked_tools": list(self.blocked_tools),
            "blocked_patterns": list(self.blocked_patterns),
            "requires_confirmation": list(self.requires_confirmation),
            "max_operations": self.max_operations,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Policy:
        """Deserialize from dictionary."""
        return cls(
            blocked_tools=tuple(data.get("blocked_tools", ())),
            blocked_patterns=tuple(data.get("blocked_patterns", ())),
            requires_confirmation=tuple(data.get("requires_confirmation", ())),
            max_operations=data.get("max_operations"),
        )


def policy_guard(
    policy: Policy,
    operations: int = 0,
    compiled: Sequence[re.Pattern[str]] | None = None,
) -> LayeredGuard:
    """Layer 2: blocked tools, blocked argument patterns, confirmation."""
    patterns = compiled if compiled is not None else [re.compile(p) for p in policy.blocked_patterns]

    def check(action: Action) -> GuardResult:
        if action.action_type in policy.blocked_tools:
            return GuardResult.reject(
                reason=f"Action {action.action_type} is blocked by policy",
                layer=Layer.POLICY.value,
                evidence={"action_type": action.action_type},
            )

        if policy.max_operations is not None and operations >= policy.max_operations:
            return GuardResult.reject(
                reason=f"Operation limit reached: {operations} >= {policy.max_operations}",
                layer=Layer.POLICY.value,
                evidence={"operations": operations, "max_operations": policy.max_operations},
            )

        text = _action_text(action)
        for pattern in patterns:
            if pattern.search(text):
                return GuardResult.reject(
                    reason=f"Arguments match blocked pattern: {pattern.pattern}",
                    layer=Layer.POLICY.value,
                    evidence={"pattern": pattern.pattern},
                )

        if action.action_type in policy.requires_confirmation:
            return GuardResult.confirm(
                reason=f"Action {action.action_type} requires human approval",
                layer=Layer.POLICY.value,
            )

        return GuardResult.accept(Layer.POLICY.value)

    return LayeredGuard(Layer.POLICY.priority, Layer.POLICY.value, check)


def task_guard(check: GuardCheck, name: str = Layer.TASK.value) -> LayeredGuard:
    """Wrap a task-specific check as a layer-3 guard."""
    return LayeredGuard(Layer.TASK.priority, name, check)


def filter_catalog(names: Iterable[str], policy: Policy) -> list[str]:
    """Remove policy-blocked capabilities from the catalog offered to the decision source."""
    return [name for name in names if name not in policy.blocked_tools]


class GuardPipeline:
    """The canonical four-layer pipeline.

    Usage:
        pipeline = GuardPipeline(Policy(blocked_tools=("delete_file",)))
        result = pipeline.evaluate(action, budget.snapshot(now))

        if not result.allowed:
            # feed result.reason back to the decision source
    """

    def __init__(
        self,
        policy: Policy | None = None,
        task_guards: Sequence[LayeredGuard | GuardCheck] = (),
    ):
        """Initialize the pipeline.

        Args:
            policy: Business rules for layer 2.
            task_guards: Layer-3 guards (plain callables are wrapped).
        """
        self._policy = policy or Policy()
        self._compiled = [re.compile(p) for p in self._policy.blocked_patterns]
        self._task_guards = tuple(
            g if isinstance(g, LayeredGuard) else task_guard(g) for g in task_guards
        )

    @property
    def policy(self) -> Policy:
        return self._policy

    def guards(self, budget: BudgetSnapshot, operations: int = 0) -> list[LayeredGuard]:
        """Build the layered guard list over a read-only context."""
        return [
            LayeredGuard(Layer.SAFETY.priority, "validation", check_structure),
            LayeredGuard(Layer.SAFETY.priority, Layer.SAFETY.value, check_safety),
            budget_guard(budget),
            policy_guard(self._policy, operations, self._compiled),
            *self._task_guards,
        ]

    def evaluate(self, action: Action, budget: BudgetSnapshot, operations: int = 0) -> GuardResult:
        """Evaluate one action. Pure: same inputs give the same result."""
        result = evaluate(action, self.guards(budget, operations))
        if not result.allowed:
            logger.info(f"Guard rejected {action.action_type!r} at {result.layer or 'unknown'}: {result.reason}")
        return result


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    CRITICAL = "critical"


@dataclass(frozen=True)
class TrifectaAssessment:
    """Presence of the three risk factors that together enable exfiltration."""

    has_private_data: bool
    has_untrusted_input: bool
    has_external_actions: bool


def assess_risk(assessment: TrifectaAssessment) -> RiskLevel:
    """0-1 legs: low, 2 legs: medium, all 3: critical."""
    legs = sum(
        (
            assessment.has_private_data,
            assessment.has_untrusted_input,
            assessment.has_external_actions,
        )
    )
    if legs == 3:
        return RiskLevel.CRITICAL
    if legs == 2:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def trifecta_guard(
    has_private_data: bool,
    has_untrusted_input: bool,
    external_action_types: Iterable[str],
) -> LayeredGuard:
    """Task guard that blocks any external action that would complete the trifecta."""
    external = frozenset(external_action_types)

    def check(action: Action) -> GuardResult:
        assessment = TrifectaAssessment(
            has_private_data=has_private_data,
            has_untrusted_input=has_untrusted_input,
            has_external_actions=action.action_type in external,
        )
        if assess_risk(assessment) is RiskLevel.CRITICAL:
            return GuardResult.reject(
                reason=(
                    "Action blocked: lethal trifecta detected "
                    "(private data + untrusted input + external action)"
                ),
                layer=Layer.TASK.value,
                evidence={"action_type": action.action_type},
            )
        return GuardResult.accept(Layer.TASK.value)

    return task_guard(check, name="trifecta")
