"""Orchestrator - Bounded one-level delegation.

The Orchestrator splits a root task into subtasks, runs one LoopController
(a "worker") per subtask, and aggregates terminal results:

    analyze → delegate (phase by phase, workers in parallel) → aggregate

INVARIANTS:
1. Workers never receive the delegation capability (catalog omission)
2. Each worker owns its Budget, EventStore and circuit breakers
3. Only terminal WorkerResults cross back to the orchestrator
4. Every subtask yields exactly one WorkerResult, even if cancelled or skipped
5. Phases run sequentially; workers within a phase run concurrently
"""

from __future__ import annotations

import json
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from .action import Action
from .controller import ActionCatalog, Capability, ExecutionResult
from .decision import DecisionSource
from .events import EventStore
from .kernel import KernelConfig, LoopController, LoopStatus, PendingConfirmation
from .state import BudgetLimits

logger = logging.getLogger(__name__)

DELEGATE = "delegate"


class SubtaskType(str, Enum):
    ANALYSIS = "analysis"
    IMPLEMENTATION = "implementation"
    REVIEW = "review"
    TEST = "test"


DEFAULT_PHASE_ORDER = tuple(t.value for t in SubtaskType)


@dataclass(frozen=True)
class Task:
    id: str
    description: str


@dataclass(frozen=True)
class Subtask:
    id: str
    parent_id: str
    type: str
    description: str = ""


@dataclass(frozen=True)
class WorkerResult:
    """Terminal outcome of one worker."""

    subtask_id: str
    success: bool
    output: str
    metrics: tuple[tuple[str, Any], ...] = field(default_factory=tuple)

    @property
    def duration_ms(self) -> float:
        return float(dict(self.metrics).get("duration_ms", 0.0))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "subtask_id": self.subtask_id,
            "success": self.success,
            "output": self.output,
            "metrics": dict(self.metrics),
        }


@dataclass(frozen=True)
class CoordinatorResult:
    """Aggregate of all worker results for one root task."""

    task_id: str
    success: bool
    summary: str
    subtask_results: tuple[WorkerResult, ...]
    total_duration_ms: float

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "task_id": self.task_id,
            "success": self.success,
            "summary": self.summary,
            "subtask_results": [r.to_dict() for r in self.subtask_results],
            "total_duration_ms": self.total_duration_ms,
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), sort_keys=True)


@dataclass
class OrchestratorConfig:
    """Configuration for the Orchestrator."""

    phase_order: tuple[str, ...] = DEFAULT_PHASE_ORDER
    failure_policy: str = "proceed"  # "proceed" | "abort"

    # Sizing of each worker's session
    worker_budget: BudgetLimits = field(
        default_factory=lambda: BudgetLimits(max_tokens=20_000, max_api_calls=10)
    )
    worker_max_iterations: int = 20
    worker_config: KernelConfig = field(default_factory=KernelConfig)
    max_parallel_workers: int = 4

    # Optional directory for per-worker event logs
    event_dir: Path | str | None = None

    def __post_init__(self):
        if self.failure_policy not in ("proceed", "abort"):
            raise ValueError(f"Unknown failure policy: {self.failure_policy}")


Decomposer = Callable[[Task], "list[Subtask]"]


def default_decomposer(task: Task) -> list[Subtask]:
    """Split a task into analysis, implementation and review subtasks."""
    return [
        Subtask(f"{task.id}-analysis", task.id, SubtaskType.ANALYSIS.value, f"Analyze: {task.description}"),
        Subtask(f"{task.id}-impl", task.id, SubtaskType.IMPLEMENTATION.value, f"Implement: {task.description}"),
        Subtask(f"{task.id}-review", task.id, SubtaskType.REVIEW.value, f"Review: {task.description}"),
    ]


def phase_index(subtask_type: str, phase_order: tuple[str, ...]) -> int:
    """Phase of a subtask type; unknown types run with implementation."""
    if subtask_type in phase_order:
        return phase_order.index(subtask_type)
    if SubtaskType.IMPLEMENTATION.value in phase_order:
        return phase_order.index(SubtaskType.IMPLEMENTATION.value)
    return len(phase_order)


class Orchestrator:
    """Decomposes a task and runs one worker per subtask.

    Usage:
        orchestrator = Orchestrator(lambda subtask: make_source(subtask), catalog)
        result = orchestrator.coordinate(Task("t1", "Audit the billing module"))

        # Or give a root loop the ability to delegate:
        root_catalog = ActionCatalog([*catalog, orchestrator.delegation_capability()])
    """

    def __init__(
        self,
        source_factory: Callable[[Subtask], DecisionSource],
        catalog: ActionCatalog,
        config: OrchestratorConfig | None = None,
        decomposer: Decomposer = default_decomposer,
        confirmation_handler: Callable[[PendingConfirmation], bool] | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize orchestrator.

        Args:
            source_factory: Builds a fresh decision source per worker.
            catalog: Capabilities workers may use (minus delegation).
            config: Orchestrator configuration.
            decomposer: Task → subtasks.
            confirmation_handler: Resolves worker confirmation requests.
            clock: Time source in seconds, shared by workers.
            sleep: Sleep used by workers' retries.
        """
        self.config = config or OrchestratorConfig()
        self._source_factory = source_factory
        self._catalog = catalog
        self._decomposer = decomposer
        self._confirmation_handler = confirmation_handler
        self._clock = clock
        self._sleep = sleep

    def worker_catalog(self) -> ActionCatalog:
        """The catalog handed to workers. Never contains delegation."""
        return self._catalog.without(DELEGATE)

    def delegation_capability(self) -> Capability:
        """A capability that lets a ROOT loop delegate through this orchestrator."""

        def delegate(action: Action) -> Any:
            params = action.params
            task = Task(id=action.action_id, description=str(params["description"]))
            result = self.coordinate(task)
            if not result.success:
                return ExecutionResult.failure(action, result.summary, result.total_duration_ms)
            return result.to_dict()

        return Capability(
            name=DELEGATE,
            description="Split a task into subtasks and run them on parallel workers",
            handler=delegate,
            parameters_schema={"description": {"type": "string", "required": True, "min_length": 1}},
        )

    def analyze(self, task: Task) -> list[Subtask]:
        """Decompose ``task`` into subtasks ordered by phase (stable)."""
        subtasks = self._decomposer(task)
        return sorted(subtasks, key=lambda s: phase_index(s.type, self.config.phase_order))

    def delegate(self, subtasks: list[Subtask]) -> list[WorkerResult]:
        """Run subtasks phase by phase.

        Returns:
            One WorkerResult per subtask, in input order.
        """
        phases: dict[int, list[Subtask]] = {}
        for subtask in subtasks:
            phases.setdefault(phase_index(subtask.type, self.config.phase_order), []).append(subtask)

        results: dict[str, WorkerResult] = {}
        aborted_by: str | None = None

        for index in sorted(phases):
            group = phases[index]
            if aborted_by is not None:
                for subtask in group:
                    results[subtask.id] = WorkerResult(
                        subtask_id=subtask.id,
                        success=False,
                        output=f"skipped: aborted after failure of {aborted_by}",
                    )
                continue

            logger.info(f"Dispatching phase {index} with {len(group)} worker(s)")
            phase_results = self._run_phase(group)
            results.update(phase_results)

            failed = [s.id for s in group if not phase_results[s.id].success]
            if failed and self.config.failure_policy == "abort":
                aborted_by = failed[0]
                logger.warning(f"Phase {index} failed ({', '.join(failed)}); aborting later phases")

        return [results[s.id] for s in subtasks]

    def aggregate(self, task: Task, results: list[WorkerResult]) -> CoordinatorResult:
        """Combine worker results; success only if every subtask succeeded."""
        failed = [r for r in results if not r.success]
        if failed:
            summary = (
                f"Completed {len(results) - len(failed)}/{len(results)} subtasks. "
                f"Failures: {', '.join(r.subtask_id for r in failed)}"
            )
        else:
            summary = f"Successfully completed {len(results)} subtasks"

        return CoordinatorResult(
            task_id=task.id,
            success=not failed,
            summary=summary,
            subtask_results=tuple(results),
            total_duration_ms=sum(r.duration_ms for r in results),
        )

    def coordinate(self, task: Task) -> CoordinatorResult:
        """analyze → delegate → aggregate."""
        logger.info(f"Coordinating task {task.id}")
        subtasks = self.analyze(task)
        results = self.delegate(subtasks)
        result = self.aggregate(task, results)
        logger.info(f"Task {task.id}: {result.summary}")
        return result

    def _run_phase(self, group: list[Subtask]) -> dict[str, WorkerResult]:
        cancel = threading.Event()
        results: dict[str, WorkerResult] = {}
        max_workers = max(1, min(self.config.max_parallel_workers, len(group)))

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="worker") as pool:
            futures: dict[Future, Subtask] = {
                pool.submit(self._run_worker, subtask, cancel): subtask for subtask in group
            }
            for future in as_completed(futures):
                subtask = futures[future]
                if future.cancelled():
                    results[subtask.id] = WorkerResult(
                        subtask_id=subtask.id, success=False, output="cancelled: never started"
                    )
                    continue

                result = future.result()
                results[subtask.id] = result

                if not result.success and self.config.failure_policy == "abort" and not cancel.is_set():
                    cancel.set()
                    for other in futures:
                        other.cancel()

        return results

    def _run_worker(self, subtask: Subtask, cancel: threading.Event) -> WorkerResult:
        if cancel.is_set():
            return WorkerResult(subtask_id=subtask.id, success=False, output="cancelled: never started")

        start = self._clock()
        try:
            loop = LoopController(
                self._source_factory(subtask),
                self.worker_catalog(),
                replace(
                    self.config.worker_config,
                    budget=self.config.worker_budget,
                    max_iterations=self.config.worker_max_iterations,
                ),
                event_store=self._worker_events(subtask),
                clock=self._clock,
                sleep=self._sleep,
                cancel_event=cancel,
            )
            result = loop.run(f"[{subtask.type}] {subtask.description or subtask.id}")

            while result.status is LoopStatus.AWAITING_CONFIRMATION and self._confirmation_handler:
                approved = bool(self._confirmation_handler(result.pending))
                result = loop.resume(result.pending.confirmation_id, approved)
            if not result.status.terminal:
                logger.warning(f"Worker {subtask.id} left unresolved: {result.status.value}")
        except Exception as e:
            logger.exception(f"Worker for {subtask.id} crashed")
            return WorkerResult(
                subtask_id=subtask.id,
                success=False,
                output=f"worker crashed: {type(e).__name__}: {e}",
                metrics=(("duration_ms", (self._clock() - start) * 1000),),
            )

        success = result.status is LoopStatus.DONE
        output = (result.result or "") if success else f"{result.status.value}: {result.reason}"
        metrics = {
            "status": result.status.value,
            "iterations": result.iterations,
            "actions_executed": result.actions_executed,
            "used_tokens": result.budget.used_tokens,
            "used_api_calls": result.budget.used_api_calls,
            "duration_ms": result.duration_ms,
        }
        logger.info(f"Worker {subtask.id} finished: {result.status.value}")
        return WorkerResult(
            subtask_id=subtask.id,
            success=success,
            output=output,
            metrics=tuple(sorted(metrics.items())),
        )

    def _worker_events(self, subtask: Subtask) -> EventStore:
        if self.config.event_dir is None:
            return EventStore(clock=self._clock)
        return EventStore(Path(self.config.event_dir) / f"{subtask.id}.jsonl", clock=self._clock)
