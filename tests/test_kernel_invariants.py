"""Tests for Loop Kernel Invariants.

These tests verify the non-negotiable invariants:
1. The decision source never executes
2. Guards never mutate state
3. The controller executes only approved actions
4. Every transition is logged as an event
5. Completion is explicit, never inferred from silence
6. Workers can never delegate further
"""

import tempfile
from pathlib import Path

import pytest

from loop_kernel import (
    ActionCatalog,
    BudgetLimits,
    Capability,
    Controller,
    ControllerError,
    DecisionSource,
    EventStore,
    EventType,
    GuardPipeline,
    KernelConfig,
    LoopController,
    LoopStatus,
    NullDecisionSource,
    Orchestrator,
    Policy,
    ScriptedDecisionSource,
)
from loop_kernel.action import Action, Decision, create_action
from loop_kernel.state import Budget

from conftest import echo_forever


class TestGateInvariants:
    """Tests for guard pipeline invariants."""

    def test_pipeline_is_pure_function(self, clock):
        """Invariant: Same inputs → same outputs, no side effects."""
        pipeline = GuardPipeline(Policy(blocked_tools=("delete_file",)))
        budget = Budget(max_api_calls=5, start_time=clock())
        snapshot = budget.snapshot(clock())

        actions = [
            create_action("read_file", "notes.txt"),
            create_action("delete_file", "notes.txt"),
            Action(action_type=None),
        ]
        for action in actions:
            results = [pipeline.evaluate(action, snapshot) for _ in range(10)]
            assert all(r == results[0] for r in results)

        # Budget untouched
        assert budget.used_api_calls == 0
        assert budget.used_tokens == 0

    def test_pipeline_never_learns(self):
        """Invariant: The pipeline has no learning methods; policy is frozen."""
        pipeline = GuardPipeline(Policy())

        for method in ["update", "learn", "train", "fit", "adapt"]:
            assert not hasattr(pipeline, method), f"Pipeline should not have {method} method"

        with pytest.raises((AttributeError, TypeError)):
            pipeline.policy.blocked_tools = ("anything",)

    def test_rejection_carries_evidence(self, clock):
        """Invariant: Rejected actions produce evidence."""
        pipeline = GuardPipeline()
        snapshot = Budget(start_time=clock()).snapshot(clock())

        result = pipeline.evaluate(create_action("write_file", ".env"), snapshot)

        assert not result.allowed
        assert result.layer == "safety"
        evidence = dict(result.evidence)
        assert "target" in evidence or "forbidden_pattern" in evidence


class TestControllerInvariants:
    """Tests for controller invariants."""

    def test_controller_requires_gate_approval(self, catalog):
        """Invariant: Controller only executes approved actions."""
        controller = Controller(catalog)

        with pytest.raises(ControllerError) as exc_info:
            controller.execute(create_action("echo"), gate_approved=False)

        assert "gate approval" in str(exc_info.value).lower()
        assert controller.execution_count == 0

    def test_controller_cannot_bypass_gate(self, catalog):
        """Invariant: Controller has no method to bypass the pipeline."""
        controller = Controller(catalog)

        for method in ["bypass", "force", "override", "skip_gate"]:
            assert not hasattr(controller, method), f"Controller should not have {method}"

    def test_controller_never_decides(self, catalog):
        """Invariant: Controller has no decision-making methods."""
        controller = Controller(catalog)

        for method in ["decide", "evaluate", "choose", "select"]:
            assert not hasattr(controller, method), f"Controller should not have {method}"


class TestDecisionSourceInvariants:
    """Tests for decision source invariants."""

    def test_source_never_executes(self):
        """Invariant: The protocol has no execute methods."""
        source_methods = dir(DecisionSource)

        for method in ["execute", "run", "apply", "perform"]:
            assert method not in source_methods, f"DecisionSource should not have {method}"

        assert "invoke" in source_methods
        assert "observe_rejection" in source_methods

    def test_null_source_proposes_nothing(self):
        decision = NullDecisionSource().invoke([], [])

        assert not decision.has_action
        assert not decision.complete

    def test_scripted_source_only_proposes(self):
        steps = [
            Decision.propose(create_action("echo")),
            Decision.propose(create_action("search")),
        ]
        source = ScriptedDecisionSource(steps)

        assert source.invoke([], []).action.action_type == "echo"
        assert source.invoke([], []).action.action_type == "search"

        # Runs out into "no action proposed", not completion
        last = source.invoke([], [])
        assert not last.has_action
        assert not last.complete


class TestEventLogInvariants:
    """Tests for event log invariants."""

    def test_all_side_effects_logged(self, catalog, clock):
        """Invariant: Every execution is invoked-then-result in the log."""
        source = ScriptedDecisionSource([
            Decision.propose(create_action("echo", parameters={"text": "hi"})),
            Decision.finish("done"),
        ])
        loop = LoopController(source, catalog, clock=clock, sleep=clock.sleep)

        result = loop.run("say hi")

        assert result.status is LoopStatus.DONE
        invoked = loop.events.filter(EventType.ACTION_INVOKED)
        results = loop.events.filter(EventType.ACTION_RESULT)
        assert len(invoked) == 1 and len(results) == 1
        assert invoked[0].sequence < results[0].sequence
        assert results[0].get("output") == "echo:hi"

    def test_rejected_actions_produce_evidence(self, catalog, clock):
        """Invariant: Rejections are logged with reason and layer."""
        source = ScriptedDecisionSource([
            Decision.propose(create_action("echo", parameters={"text": "DROP DATABASE prod"})),
            Decision.finish("gave up"),
        ])
        loop = LoopController(source, catalog, clock=clock)

        loop.run("try something")

        rejected = loop.events.filter(EventType.GUARD_REJECTED)
        assert len(rejected) == 1
        assert rejected[0].get("layer") == "safety"
        assert "destructive" in rejected[0].get("reason")
        assert not loop.events.filter(EventType.ACTION_INVOKED)

    def test_persisted_log_replays_to_same_state(self, catalog, clock):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "session.jsonl"
            store = EventStore(path, clock=clock)
            loop = LoopController(
                ScriptedDecisionSource([], then=echo_forever),
                catalog,
                KernelConfig(max_iterations=3),
                event_store=store,
                clock=clock,
            )

            loop.run("echo a few times")

            restored = EventStore.load(path)
            assert restored.all() == store.all()
            assert restored.state() == store.state()


class TestLoopInvariants:
    """Tests for overall loop invariants."""

    def test_silence_is_not_completion(self, catalog, clock):
        loop = LoopController(
            NullDecisionSource(), catalog, KernelConfig(max_iterations=4), clock=clock
        )

        result = loop.run("do nothing")

        assert result.status is LoopStatus.MAX_ITERATIONS
        assert result.iterations == 4
        assert not result.success

    def test_workers_cannot_delegate(self, catalog):
        orchestrator = Orchestrator(lambda subtask: NullDecisionSource(), catalog)
        root_catalog = ActionCatalog([*catalog, orchestrator.delegation_capability()])
        nested = Orchestrator(lambda subtask: NullDecisionSource(), root_catalog)

        assert "delegate" in root_catalog
        assert "delegate" not in nested.worker_catalog()
        assert set(nested.worker_catalog().names()) == {"echo", "search"}

    def test_budgets_are_not_shared(self, catalog, clock):
        limits = BudgetLimits(max_api_calls=3)
        a = LoopController(ScriptedDecisionSource([], then=echo_forever), catalog,
                           KernelConfig(budget=limits), clock=clock)
        b = LoopController(NullDecisionSource(), catalog, KernelConfig(budget=limits), clock=clock)

        a.run("spend")
        b_result = b.run("idle")

        assert a.budget.used_api_calls == 3
        assert b_result.budget.used_api_calls == 3
        assert a.events is not b.events


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
