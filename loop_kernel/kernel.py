"""Kernel - The loop controller.

The LoopController drives one session:
    decide → guard → (execute → observe) OR (reject → feed back) OR (suspend)

INVARIANTS:
1. The decision source never executes
2. Guards never mutate the Budget or the event log
3. The controller executes only what the pipeline approved
4. Every transition is appended to the event log
5. Completion is explicit; silence is fed back, never treated as done
6. The iteration ceiling is mandatory and terminal
"""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Sequence

from .action import Action, Decision, new_action_id
from .context import Message, PruneConfig, as_ephemeral, prune_ephemeral
from .controller import ActionCatalog, Controller, ExecutionResult
from .decision import DecisionSource
from .events import EventStore, EventType
from .gate import GuardCheck, GuardPipeline, GuardResult, Layer, LayeredGuard, Policy, filter_catalog
from .resilience import CircuitBreakerConfig, ResilientCall, RetryConfig
from .state import Budget, BudgetLimits, BudgetSnapshot, DerivedState

logger = logging.getLogger(__name__)


class LoopStatus(str, Enum):
    RUNNING = "running"
    DONE = "done"
    BUDGET_EXCEEDED = "budget_exceeded"
    MAX_ITERATIONS = "max_iterations"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    DEPENDENCY_FAILED = "dependency_failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (LoopStatus.RUNNING, LoopStatus.AWAITING_CONFIRMATION)


@dataclass
class KernelConfig:
    """Configuration for one loop session."""

    # Execution limits
    max_iterations: int = 50
    budget: BudgetLimits = field(default_factory=BudgetLimits)

    # Guards
    policy: Policy = field(default_factory=Policy)
    task_guards: Sequence[LayeredGuard | GuardCheck] = ()

    # Resilience
    retry: RetryConfig = field(default_factory=RetryConfig)
    breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    terminate_on_dependency_failure: bool = False

    # Context hygiene
    prune: PruneConfig = field(default_factory=PruneConfig)

    # Logging
    verbose: bool = False
    log_level: str = "INFO"


@dataclass(frozen=True)
class PendingConfirmation:
    """An approved action waiting for a human decision."""

    confirmation_id: str
    action: Action
    reason: str
    layer: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "confirmation_id": self.confirmation_id,
            "action": self.action.to_dict(),
            "reason": self.reason,
            "layer": self.layer,
        }


class ConfirmationError(Exception):
    """Raised when resume() does not match the pending confirmation."""

    def __init__(self, message: str, confirmation_id: str | None = None):
        self.confirmation_id = confirmation_id
        super().__init__(
            f"[Confirmation] {message}"
            + (f" (confirmation: {confirmation_id})" if confirmation_id else "")
        )


@dataclass
class LoopResult:
    """Result of running (or resuming) a loop session."""

    status: LoopStatus
    result: str | None
    iterations: int
    actions_executed: int
    budget: BudgetSnapshot
    state: DerivedState
    reason: str = ""
    pending: PendingConfirmation | None = None
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.status is LoopStatus.DONE

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "status": self.status.value,
            "success": self.success,
            "terminal": self.status.terminal,
            "result": self.result,
            "iterations": self.iterations,
            "actions_executed": self.actions_executed,
            "budget": {
                "used_tokens": self.budget.used_tokens,
                "used_api_calls": self.budget.used_api_calls,
                "elapsed_ms": self.budget.elapsed_ms,
            },
            "state_hash": self.state.state_hash,
            "reason": self.reason,
            "pending": self.pending.to_dict() if self.pending else None,
            "duration_ms": self.duration_ms,
        }


class LoopController:
    """Owns one session's iteration, termination and composition.

    Usage:
        loop = LoopController(source, catalog, KernelConfig(budget=BudgetLimits(max_api_calls=10)))
        result = loop.run("Summarize the open incidents")

        if result.status is LoopStatus.AWAITING_CONFIRMATION:
            result = loop.resume(result.pending.confirmation_id, approved=True)
    """

    def __init__(
        self,
        decision_source: DecisionSource,
        catalog: ActionCatalog,
        config: KernelConfig | None = None,
        event_store: EventStore | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        cancel_event: threading.Event | None = None,
        rng: Callable[[], float] = random.random,
    ):
        """Initialize a loop controller.

        Args:
            decision_source: Proposes actions; retried through its own breaker.
            catalog: Capabilities this session may execute.
            config: Session configuration.
            event_store: Log to append to (in-memory when omitted).
            clock: Time source in seconds.
            sleep: Blocking sleep used between retries.
            cancel_event: Checked at the top of every tick.
            rng: Jitter source for retry delays.
        """
        self.config = config or KernelConfig()

        # Setup logging
        if self.config.verbose:
            logging.basicConfig(level=getattr(logging, self.config.log_level))

        self._source = decision_source
        self._catalog = catalog
        self._controller = Controller(catalog)
        self._pipeline = GuardPipeline(self.config.policy, self.config.task_guards)
        self._events = event_store if event_store is not None else EventStore(clock=clock)
        self._clock = clock
        self._sleep = sleep
        self._rng = rng
        self._cancel = cancel_event

        self._source_call = self._resilient(f"source:{decision_source.get_name()}")
        self._capability_calls: dict[str, ResilientCall] = {}

        self._status: LoopStatus | None = None
        self._budget = Budget.from_limits(self.config.budget, clock())
        self._context: list[Message] = []
        self._iterations = 0
        self._actions_executed = 0
        self._pending: PendingConfirmation | None = None
        self._result: str | None = None
        self._reason = ""
        self._started_at = clock()

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def status(self) -> LoopStatus | None:
        return self._status

    @property
    def budget(self) -> BudgetSnapshot:
        return self._budget.snapshot(self._clock())

    @property
    def events(self) -> EventStore:
        return self._events

    @property
    def context(self) -> list[Message]:
        return list(self._context)

    @property
    def pending(self) -> PendingConfirmation | None:
        return self._pending

    def run(self, task: str) -> LoopResult:
        """Start a session on ``task`` and drive it until it stops.

        Args:
            task: Goal description, the first permanent context message.

        Returns:
            LoopResult with a terminal status or AWAITING_CONFIRMATION.
        """
        now = self._clock()
        self._started_at = now
        self._budget = Budget.from_limits(self.config.budget, now)
        self._context = [Message(role="user", content=task, timestamp=now)]
        self._iterations = 0
        self._actions_executed = 0
        self._pending = None
        self._result = None
        self._reason = ""

        logger.info(f"Starting loop with source {self._source.get_name()}")
        self._set_status(LoopStatus.RUNNING, "started")
        return self._loop()

    def resume(self, confirmation_id: str, approved: bool, note: str = "") -> LoopResult:
        """Resolve the pending confirmation and continue the loop.

        Approval re-runs the guard pipeline on the same action with the
        confirmation granted for that action only; any rejection still wins.
        Denial is recorded as a rejection by the operator and fed back.

        Raises:
            ConfirmationError: If nothing is pending or the id does not match.
        """
        pending = self._pending
        if pending is None or self._status is not LoopStatus.AWAITING_CONFIRMATION:
            raise ConfirmationError("No confirmation pending", confirmation_id)
        if confirmation_id != pending.confirmation_id:
            raise ConfirmationError(
                f"Does not match pending confirmation {pending.confirmation_id}",
                confirmation_id,
            )

        self._pending = None
        self._events.append(
            EventType.STATE_CHANGED,
            {
                "key": "pending_confirmation",
                "old_value": pending.confirmation_id,
                "new_value": None,
                "approved": approved,
                "note": note,
            },
        )
        self._set_status(LoopStatus.RUNNING, "approved" if approved else "denied")

        if approved:
            logger.info(f"Confirmation {confirmation_id} approved for {pending.action.action_type}")
            verdict = self._evaluate(pending.action)
            outcome = self._dispatch(pending.action, verdict, confirmed=True)
        else:
            logger.info(f"Confirmation {confirmation_id} denied for {pending.action.action_type}")
            reason = "Operator denied confirmation" + (f": {note}" if note else "")
            outcome = self._reject(pending.action, GuardResult.reject(reason, layer="operator"))

        if outcome is not None:
            return outcome
        return self._loop()

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _loop(self) -> LoopResult:
        while True:
            if self._cancel is not None and self._cancel.is_set():
                return self._finish(LoopStatus.CANCELLED, "Cancelled")

            exhausted = self._budget.exhausted(self._clock())
            if exhausted:
                return self._finish(LoopStatus.BUDGET_EXCEEDED, exhausted)

            if self._iterations >= self.config.max_iterations:
                return self._finish(
                    LoopStatus.MAX_ITERATIONS,
                    f"Max iterations reached: {self.config.max_iterations}",
                )

            self._iterations += 1
            outcome = self._tick()
            if outcome is not None:
                return outcome

    def _tick(self) -> LoopResult | None:
        """One decide/guard/act cycle. Returns a result when the loop stops."""
        self._context = prune_ephemeral(self._context, self.config.prune, now=self._clock())
        available = filter_catalog(self._catalog.names(), self.config.policy)
        descriptions = self._catalog.describe(available)
        context = list(self._context)

        # 1. DECISION SOURCE PROPOSES (never executes)
        try:
            decision: Decision = self._source_call.call(
                lambda: self._source.invoke(context, descriptions)
            )
        except Exception as e:
            self._budget.record_iteration(api_calls=1)
            error = f"Decision source failed: {type(e).__name__}: {e}"
            logger.error(error)
            self._record_error(error, recoverable=False)
            return self._finish(LoopStatus.DEPENDENCY_FAILED, error)

        # 2. EXPLICIT COMPLETION
        if decision.complete:
            self._budget.record_iteration(tokens=decision.tokens_used)
            logger.info(f"Iteration {self._iterations}: completion signalled")
            return self._finish(LoopStatus.DONE, "Completed", result=decision.result or "")

        if not decision.has_action:
            self._budget.record_iteration(tokens=decision.tokens_used)
            logger.info(f"Iteration {self._iterations}: no action proposed")
            if decision.content:
                self._context.append(
                    Message(role="assistant", content=decision.content, timestamp=self._clock())
                )
            self._feedback(
                "No action proposed. Propose an action from the available list "
                "or signal completion explicitly."
            )
            return None

        action = decision.action
        logger.info(f"Iteration {self._iterations}: proposed {action.action_type!r} ({action.action_id})")

        # 3. GUARDS EVALUATE against the budget as it stood before this call
        verdict = self._evaluate(action)
        self._budget.record_iteration(tokens=decision.tokens_used)

        return self._dispatch(action, verdict)

    def _evaluate(self, action: Action) -> GuardResult:
        return self._pipeline.evaluate(
            action,
            self._budget.snapshot(self._clock()),
            operations=self._actions_executed,
        )

    def _dispatch(self, action: Action, verdict: GuardResult, confirmed: bool = False) -> LoopResult | None:
        if not verdict.allowed:
            return self._reject(action, verdict)

        if verdict.requires_confirmation and not confirmed:
            return self._suspend(action, verdict)

        return self._execute(action)

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def _reject(self, action: Action, verdict: GuardResult) -> LoopResult | None:
        """Record a rejection; terminal only for budget exhaustion."""
        layer = verdict.layer or "unknown"
        self._events.append(
            EventType.GUARD_REJECTED,
            {
                "action_id": action.action_id,
                "action_type": action.action_type,
                "reason": verdict.reason,
                "layer": layer,
            },
        )
        self._source.observe_rejection(action, verdict)

        if verdict.override and verdict.layer == Layer.BUDGET.value:
            return self._finish(LoopStatus.BUDGET_EXCEEDED, verdict.reason)

        self._feedback(f"Action {action.action_type} rejected by {layer} guard: {verdict.reason}")
        return None

    def _suspend(self, action: Action, verdict: GuardResult) -> LoopResult:
        pending = PendingConfirmation(
            confirmation_id=new_action_id(),
            action=action,
            reason=verdict.reason,
            layer=verdict.layer,
        )
        self._pending = pending
        self._events.append(
            EventType.STATE_CHANGED,
            {
                "key": "pending_confirmation",
                "old_value": None,
                "new_value": pending.confirmation_id,
                "action_id": action.action_id,
                "reason": verdict.reason,
            },
        )
        self._set_status(LoopStatus.AWAITING_CONFIRMATION, verdict.reason)
        logger.info(f"Awaiting confirmation {pending.confirmation_id} for {action.action_type}")
        return self._make_result()

    def _execute(self, action: Action) -> LoopResult | None:
        # 4. CONTROLLER EXECUTES (never decides)
        self._events.append(
            EventType.ACTION_INVOKED,
            {
                "action_id": action.action_id,
                "action_type": action.action_type,
                "target": action.target,
                "parameters": action.params,
            },
        )

        capability = self._catalog.get(action.action_type)
        try:
            if capability is not None and capability.external:
                result = self._capability_call(capability.name).call(
                    lambda: self._controller.execute(action, gate_approved=True)
                )
            else:
                result = self._controller.execute(action, gate_approved=True)
        except Exception as e:
            message = f"{type(e).__name__}: {e}"
            terminate = self.config.terminate_on_dependency_failure
            logger.warning(f"Action {action.action_type} failed past retries: {message}")
            self._record_error(f"Action {action.action_type} failed: {message}", recoverable=not terminate)
            self._record_result(ExecutionResult.failure(action, message))
            self._actions_executed += 1
            if terminate:
                return self._finish(LoopStatus.DEPENDENCY_FAILED, f"Capability {action.action_type} failed: {message}")
            self._feedback(f"Action {action.action_type} failed and is unavailable: {message}")
            return None

        self._record_result(result)
        self._actions_executed += 1
        logger.info(f"  Execution: {'SUCCESS' if result.success else 'FAILED'}")

        prefix = "Result" if result.success else "Failure"
        self._context.append(
            as_ephemeral(
                f"{prefix} of {action.action_type}: {result.output}",
                now=self._clock(),
                action_id=action.action_id,
            )
        )
        return None

    def _finish(self, status: LoopStatus, reason: str, result: str | None = None) -> LoopResult:
        self._reason = reason
        self._result = result
        if result is not None:
            self._events.append(
                EventType.STATE_CHANGED,
                {"key": "result", "old_value": None, "new_value": result},
            )
        self._set_status(status, reason)
        logger.info(
            f"Loop finished: status={status.value}, reason={reason}, "
            f"iterations={self._iterations}, actions={self._actions_executed}"
        )
        return self._make_result()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _resilient(self, name: str) -> ResilientCall:
        return ResilientCall(
            name,
            retry=self.config.retry,
            breaker=self.config.breaker,
            clock=self._clock,
            sleep=self._sleep,
            rng=self._rng,
        )

    def _capability_call(self, name: str) -> ResilientCall:
        if name not in self._capability_calls:
            self._capability_calls[name] = self._resilient(f"capability:{name}")
        return self._capability_calls[name]

    def _set_status(self, status: LoopStatus, reason: str = "") -> None:
        old = self._status
        if old is status:
            return
        self._status = status
        self._events.append(
            EventType.STATE_CHANGED,
            {
                "key": "status",
                "old_value": old.value if old is not None else None,
                "new_value": status.value,
                "reason": reason,
            },
        )

    def _record_result(self, result: ExecutionResult) -> None:
        self._events.append(
            EventType.ACTION_RESULT,
            {
                "action_id": result.action_id,
                "action_type": result.action_type,
                "success": result.success,
                "output": result.output[:5000],
                "duration_ms": result.duration_ms,
            },
        )

    def _record_error(self, error: str, recoverable: bool) -> None:
        self._events.append(
            EventType.ERROR_OCCURRED,
            {"error": error, "recoverable": recoverable},
        )

    def _feedback(self, content: str) -> None:
        """Permanent feedback message for the next decision."""
        self._context.append(Message(role="user", content=content, timestamp=self._clock()))

    def _make_result(self) -> LoopResult:
        return LoopResult(
            status=self._status,
            result=self._result,
            iterations=self._iterations,
            actions_executed=self._actions_executed,
            budget=self._budget.snapshot(self._clock()),
            state=self._events.state(),
            reason=self._reason,
            pending=self._pending,
            duration_ms=(self._clock() - self._started_at) * 1000,
        )
