"""Loop Kernel - A guarded control loop for goal-seeking agents.

Drives an external decision source through action/observation cycles:
- Priority-ordered guard pipeline (safety > budget > policy > task)
- Retry with backoff and circuit breaking around fallible calls
- Append-only event log from which all state is derived
- Bounded, one-level delegation to parallel workers

Non-Negotiable Invariants:
1. The decision source never executes
2. Guards never mutate state
3. The controller executes only approved actions
4. Every transition is logged as an event
5. Completion is explicit, never inferred from silence
6. Workers can never delegate further
"""

from .action import Action, ActionValidationError, Decision, create_action, validate_action
from .state import Budget, BudgetLimits, BudgetSnapshot, DerivedState, derive_state
from .events import Event, EventLogCorruptionError, EventStore, EventType
from .context import Message, PruneConfig, as_ephemeral, prune_ephemeral
from .gate import (
    GuardPipeline,
    GuardResult,
    LayeredGuard,
    Policy,
    evaluate,
    filter_catalog,
    trifecta_guard,
)
from .resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
    ResilientCall,
    RetryConfig,
    calculate_delay,
    is_retryable,
    with_retry,
)
from .controller import ActionCatalog, Capability, Controller, ControllerError, ExecutionResult
from .decision import DecisionSource, NullDecisionSource, ScriptedDecisionSource
from .llm_source import LLMDecisionSource, LLMSourceConfig
from .kernel import (
    ConfirmationError,
    KernelConfig,
    LoopController,
    LoopResult,
    LoopStatus,
    PendingConfirmation,
)
from .orchestrator import (
    CoordinatorResult,
    Orchestrator,
    OrchestratorConfig,
    Subtask,
    SubtaskType,
    Task,
    WorkerResult,
)

__version__ = "1.0.0"
__all__ = [
    # Action
    "Action",
    "ActionValidationError",
    "Decision",
    "create_action",
    "validate_action",
    # State
    "Budget",
    "BudgetLimits",
    "BudgetSnapshot",
    "DerivedState",
    "derive_state",
    # Events
    "Event",
    "EventLogCorruptionError",
    "EventStore",
    "EventType",
    # Context
    "Message",
    "PruneConfig",
    "as_ephemeral",
    "prune_ephemeral",
    # Gate
    "GuardPipeline",
    "GuardResult",
    "LayeredGuard",
    "Policy",
    "evaluate",
    "filter_catalog",
    "trifecta_guard",
    # Resilience
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitOpenError",
    "CircuitState",
    "ResilientCall",
    "RetryConfig",
    "calculate_delay",
    "is_retryable",
    "with_retry",
    # Controller
    "ActionCatalog",
    "Capability",
    "Controller",
    "ControllerError",
    "ExecutionResult",
    # Decision sources
    "DecisionSource",
    "NullDecisionSource",
    "ScriptedDecisionSource",
    "LLMDecisionSource",
    "LLMSourceConfig",
    # Kernel
    "ConfirmationError",
    "KernelConfig",
    "LoopController",
    "LoopResult",
    "LoopStatus",
    "PendingConfirmation",
    # Orchestrator
    "CoordinatorResult",
    "Orchestrator",
    "OrchestratorConfig",
    "Subtask",
    "SubtaskType",
    "Task",
    "WorkerResult",
]
