"""Controller - Executor for gate-approved actions.

The Controller dispatches approved actions to registered capabilities.

INVARIANTS:
1. Controller ONLY executes actions that passed the guard pipeline
2. Controller CANNOT bypass the pipeline or modify policy
3. Capability errors come back as data (ExecutionResult.success=False)
4. Transient errors propagate so the resilience wrapper can retry them
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator

from .action import Action
from .resilience import is_retryable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionResult:
    """Immutable result of executing an action."""

    success: bool
    action_id: str
    action_type: str
    output: str
    duration_ms: float = 0.0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "success": self.success,
            "action_id": self.action_id,
            "action_type": self.action_type,
            "output": self.output[:5000],  # Truncate for storage
            "duration_ms": self.duration_ms,
            "error": self.error,
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def failure(cls, action: Action, message: str, duration_ms: float = 0.0) -> ExecutionResult:
        """A failed execution reported as data."""
        return cls(
            success=False,
            action_id=action.action_id,
            action_type=str(action.action_type),
            output=message,
            duration_ms=duration_ms,
            error=message,
        )


Handler = Callable[[Action], Any]


@dataclass(frozen=True)
class Capability:
    """A named action the decision source may request.

    ``handler`` receives the Action and returns its output (any value,
    rendered to a string) or an ExecutionResult for explicit failures.
    ``external`` marks capabilities backed by a network dependency; those
    get their own retry/circuit-breaker wrapper in the loop.
    """

    name: str
    description: str
    handler: Handler
    parameters_schema: dict[str, dict[str, Any]] = field(default_factory=dict)
    external: bool = False

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters_schema,
        }


class ControllerError(Exception):
    """Raised when the controller is misused."""

    def __init__(self, message: str, action_id: str | None = None):
        self.action_id = action_id
        super().__init__(f"[Controller] {message}" + (f" (action: {action_id})" if action_id else ""))


class ActionCatalog:
    """Registry of capabilities available to one loop session."""

    def __init__(self, capabilities: Iterable[Capability] = ()):
        self._capabilities: dict[str, Capability] = {}
        for capability in capabilities:
            self.register(capability)

    def register(self, capability: Capability) -> None:
        """Add a capability.

        Raises:
            ControllerError: If a capability with the same name exists.
        """
        if capability.name in self._capabilities:
            raise ControllerError(f"Capability already registered: {capability.name}")
        self._capabilities[capability.name] = capability

    def get(self, name: Any) -> Capability | None:
        if not isinstance(name, str):
            return None
        return self._capabilities.get(name)

    def names(self) -> list[str]:
        return list(self._capabilities)

    def without(self, *names: str) -> ActionCatalog:
        """A copy of this catalog lacking the given capabilities."""
        return ActionCatalog(c for n, c in self._capabilities.items() if n not in names)

    def describe(self, names: Iterable[str] | None = None) -> list[dict[str, Any]]:
        """Describe capabilities (optionally a subset) for a decision source."""
        selected = self.names() if names is None else [n for n in names if n in self._capabilities]
        return [self._capabilities[n].describe() for n in selected]

    def __contains__(self, name: object) -> bool:
        return name in self._capabilities

    def __len__(self) -> int:
        return len(self._capabilities)

    def __iter__(self) -> Iterator[Capability]:
        return iter(list(self._capabilities.values()))


_TYPE_CHECKS: dict[str, Callable[[Any], bool]] = {
    "string": lambda v: isinstance(v, str),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "object": lambda v: isinstance(v, dict),
    "array": lambda v: isinstance(v, list),
}


def validate_parameters(parameters: dict[str, Any], schema: dict[str, dict[str, Any]]) -> list[str]:
    """Validate parameters against a capability schema, return list of errors.

    Each schema entry may set ``type``, ``required``, ``min_length``,
    ``max_length``, ``min``, ``max`` and ``pattern``.

    Args:
        parameters: Action parameters.
        schema: Mapping of parameter name to constraints.

    Returns:
        List of validation error messages (empty if valid).
    """
    errors: list[str] = []

    for name, rules in schema.items():
        if name not in parameters or parameters[name] is None:
            if rules.get("required"):
                errors.append(f"Missing required parameter: {name}")
            continue

        value = parameters[name]
        expected = rules.get("type")
        if expected and expected in _TYPE_CHECKS and not _TYPE_CHECKS[expected](value):
            errors.append(f"{name} must be of type {expected}, got {type(value).__name__}")
            continue

        if isinstance(value, (str, list)):
            if "min_length" in rules and len(value) < rules["min_length"]:
                errors.append(f"{name} must have length >= {rules['min_length']}")
            if "max_length" in rules and len(value) > rules["max_length"]:
                errors.append(f"{name} must have length <= {rules['max_length']}")

        if isinstance(value, (int, float)) and not isinstance(value, bool):
            if "min" in rules and value < rules["min"]:
                errors.append(f"{name} must be >= {rules['min']}")
            if "max" in rules and value > rules["max"]:
                errors.append(f"{name} must be <= {rules['max']}")

        if "pattern" in rules and isinstance(value, str) and not re.search(rules["pattern"], value):
            errors.append(f"{name} does not match pattern {rules['pattern']}")

    return errors


def _render(output: Any) -> str:
    if isinstance(output, str):
        return output
    if output is None:
        return ""
    return json.dumps(output, sort_keys=True, default=str)


class Controller:
    """Executor for approved actions.

    Usage:
        controller = Controller(catalog)
        result = controller.execute(action, gate_approved=verdict.allowed)
    """

    def __init__(self, catalog: ActionCatalog):
        """Initialize controller.

        Args:
            catalog: Capabilities this controller may dispatch to.
        """
        self.catalog = catalog
        self._execution_count = 0

    @property
    def execution_count(self) -> int:
        return self._execution_count

    def execute(self, action: Action, gate_approved: bool = True) -> ExecutionResult:
        """Execute an approved action.

        Args:
            action: The action to execute.
            gate_approved: Whether the guard pipeline approved this action.
                          MUST be True - enforced at runtime.

        Returns:
            ExecutionResult describing the outcome.

        Raises:
            ControllerError: If gate_approved is False.
            Exception: Retryable handler errors, for the resilience wrapper.
        """
        # CRITICAL: Enforce gate approval
        if not gate_approved:
            raise ControllerError(
                "Attempted to execute action without gate approval",
                action.action_id,
            )

        capability = self.catalog.get(action.action_type)
        if capability is None:
            return ExecutionResult.failure(action, f"Unknown action type: {action.action_type}")

        errors = validate_parameters(action.params, capability.parameters_schema)
        if errors:
            return ExecutionResult.failure(action, f"Validation failed: {'; '.join(errors)}")

        start_time = time.perf_counter()
        try:
            output = capability.handler(action)
        except Exception as e:
            if is_retryable(e):
                raise
            duration = (time.perf_counter() - start_time) * 1000
            logger.exception(f"Execution failed for {action.action_id}")
            return ExecutionResult.failure(action, f"{type(e).__name__}: {e}", duration)

        duration = (time.perf_counter() - start_time) * 1000
        self._execution_count += 1

        if isinstance(output, ExecutionResult):
            return output

        return ExecutionResult(
            success=True,
            action_id=action.action_id,
            action_type=capability.name,
            output=_render(output),
            duration_ms=duration,
        )
