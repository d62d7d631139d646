"""Action Schema - Structured actions from the decision source.

Actions are the ONLY way a decision source can request work.
They are DATA, never executable code.

INVARIANTS:
- Actions are immutable once created
- Malformed actions are representable, so the structural guard can reject them
- Completion is an explicit signal, distinct from "no action proposed"
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any


def new_action_id() -> str:
    """Generate a short unique action identifier."""
    return str(uuid.uuid4())[:8]


@dataclass(frozen=True)
class Action:
    """Immutable unit of work proposed by the decision source.

    ``parameters`` holds a sorted tuple of ``(key, value)`` pairs when the
    payload was an object. Anything else is kept as-is so that structural
    validation can reject it with a useful reason instead of crashing.
    """

    action_type: Any
    target: str | None = None
    parameters: Any = ()
    action_id: str = field(default_factory=new_action_id)

    @property
    def params(self) -> dict[str, Any]:
        """Parameters as a dictionary (empty if malformed)."""
        if isinstance(self.parameters, tuple):
            try:
                return dict(self.parameters)
            except (TypeError, ValueError):
                return {}
        return {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        if isinstance(self.parameters, tuple):
            parameters: Any = self.params
        else:
            parameters = self.parameters
        return {
            "action_id": self.action_id,
            "type": self.action_type,
            "target": self.target,
            "parameters": parameters,
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), sort_keys=True, default=str)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Action:
        """Build an action from a raw payload WITHOUT validating it.

        Decision sources hand us whatever they produced; rejecting bad shapes
        is the structural guard's job.
        """
        parameters = data.get("parameters", data.get("arguments"))
        if parameters is None:
            parameters = ()
        elif isinstance(parameters, dict):
            parameters = tuple(sorted(parameters.items()))

        return cls(
            action_type=data.get("type", data.get("action_type")),
            target=data.get("target"),
            parameters=parameters,
            action_id=str(data.get("action_id") or data.get("id") or new_action_id()),
        )

    @classmethod
    def from_json(cls, json_str: str) -> Action:
        """Deserialize from JSON string."""
        return cls.from_dict(json.loads(json_str))


class ActionValidationError(Exception):
    """Raised when an action fails validation."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(f"[ActionValidation] {message}" + (f" (field: {field})" if field else ""))


def validate_action(action: Action) -> list[str]:
    """Validate action structure, return list of errors.

    This is a pure validation function - no side effects.

    Args:
        action: Action to validate.

    Returns:
        List of validation error messages (empty if valid).
    """
    errors: list[str] = []

    if not action.action_type or not isinstance(action.action_type, str):
        errors.append("Missing or invalid action type")

    if not isinstance(action.parameters, tuple):
        errors.append("Parameters must be an object")
    else:
        for pair in action.parameters:
            if not (isinstance(pair, tuple) and len(pair) == 2 and isinstance(pair[0], str)):
                errors.append("Parameters must be an object")
                break

    if action.target is not None and not isinstance(action.target, str):
        errors.append(f"Target must be a string, got: {type(action.target).__name__}")

    return errors


def create_action(
    action_type: str,
    target: str | None = None,
    parameters: dict[str, Any] | None = None,
    action_id: str | None = None,
) -> Action:
    """Create a validated action.

    Args:
        action_type: Capability requested.
        target: Optional resource locator.
        parameters: Opaque key/value payload.
        action_id: Optional identifier (generated if omitted).

    Returns:
        Validated Action.

    Raises:
        ActionValidationError: If validation fails.
    """
    if parameters is not None and not isinstance(parameters, dict):
        raise ActionValidationError("Parameters must be an object", "parameters")

    action = Action(
        action_type=action_type,
        target=target,
        parameters=tuple(sorted((parameters or {}).items())),
        action_id=action_id or new_action_id(),
    )

    errors = validate_action(action)
    if errors:
        raise ActionValidationError("; ".join(errors), "type")

    return action


@dataclass(frozen=True)
class Decision:
    """One response from the decision source.

    INVARIANT: ``complete`` is the only completion signal. A decision with
    no action and ``complete=False`` means "no action proposed".
    """

    action: Action | None = None
    complete: bool = False
    result: str | None = None
    tokens_used: int = 0
    content: str = ""

    @property
    def has_action(self) -> bool:
        return self.action is not None

    @classmethod
    def propose(cls, action: Action, tokens_used: int = 0, content: str = "") -> Decision:
        """A decision that proposes a next action."""
        return cls(action=action, tokens_used=tokens_used, content=content)

    @classmethod
    def finish(cls, result: str, tokens_used: int = 0) -> Decision:
        """An explicit completion signal."""
        return cls(complete=True, result=result, tokens_used=tokens_used)

    @classmethod
    def from_dict(cls, data: dict[str, Any], tokens_used: int = 0) -> Decision:
        """Interpret a parsed decision payload.

        Accepts ``{"done": true, "result": ...}`` for completion and
        ``{"action": {...}}`` (or a bare action object) for a proposal.
        """
        if data.get("done") is True or data.get("complete") is True:
            return cls.finish(str(data.get("result", "")), tokens_used=tokens_used)

        payload = data.get("action")
        if payload is None and ("type" in data or "action_type" in data):
            payload = data
        if isinstance(payload, dict):
            return cls.propose(Action.from_dict(payload), tokens_used=tokens_used)
        if payload is not None:
            # Keep malformed payloads so the structural guard reports them
            return cls.propose(
                Action(action_type=None, parameters=payload), tokens_used=tokens_used
            )
        return cls(tokens_used=tokens_used, content=str(data.get("content", "")))
