"""Tests for the event store and state projection."""

import json
import tempfile
from pathlib import Path

import pytest

from loop_kernel.events import Event, EventLogCorruptionError, EventStore, EventType
from loop_kernel.state import DerivedState, derive_state


def populate(store):
    store.append(EventType.ACTION_INVOKED, {
        "action_id": "a1", "action_type": "echo", "target": None, "parameters": {"text": "hi"},
    })
    store.append(EventType.ACTION_RESULT, {
        "action_id": "a1", "action_type": "echo", "success": True, "output": "hi", "duration_ms": 1.5,
    })
    store.append(EventType.STATE_CHANGED, {"key": "status", "old_value": None, "new_value": "running"})
    store.append(EventType.GUARD_REJECTED, {
        "action_id": "a2", "action_type": "bypass_auth", "reason": "forbidden", "layer": "safety",
    })
    store.append(EventType.ACTION_RESULT, {
        "action_id": "a3", "action_type": "echo", "success": False, "output": "boom", "duration_ms": 0,
    })
    store.append(EventType.ERROR_OCCURRED, {"error": "source down", "recoverable": False})


class TestEventStore:
    def test_sequence_is_strictly_increasing(self, clock):
        store = EventStore(clock=clock)
        populate(store)

        sequences = [e.sequence for e in store.all()]

        assert sequences == [1, 2, 3, 4, 5, 6]
        # Same timestamp everywhere: insertion order breaks the tie
        assert len({e.timestamp for e in store.all()}) == 1

    def test_filter_returns_one_variant_in_order(self, clock):
        store = EventStore(clock=clock)
        populate(store)

        results = store.filter(EventType.ACTION_RESULT)

        assert [e.get("action_id") for e in results] == ["a1", "a3"]
        assert all(e.event_type is EventType.ACTION_RESULT for e in results)

    def test_since(self, clock):
        store = EventStore(clock=clock)
        populate(store)

        assert [e.sequence for e in store.since(4)] == [5, 6]

    def test_missing_payload_field_is_rejected(self, clock):
        store = EventStore(clock=clock)

        with pytest.raises(ValueError, match="missing fields"):
            store.append(EventType.GUARD_REJECTED, {"action_id": "a1", "reason": "no"})

        assert len(store) == 0

    def test_events_are_immutable(self, clock):
        store = EventStore(clock=clock)
        populate(store)

        with pytest.raises((AttributeError, TypeError)):
            store.all()[0].sequence = 99


class TestDerivedState:
    def test_projection(self, clock):
        store = EventStore(clock=clock)
        populate(store)

        state = store.state()

        assert state.invocations == 1
        assert state.successes == 1
        assert state.failures == 1
        assert state.rejections == 1
        assert state.errors == ("source down",)
        assert state.get("status") == "running"
        assert state.last_activity == clock()

    def test_derive_state_is_pure(self, clock):
        store = EventStore(clock=clock)
        populate(store)
        events = store.all()

        first = derive_state(events)
        second = derive_state(events)

        assert first == second
        assert first.to_json() == second.to_json()
        assert derive_state([]) == DerivedState()

    def test_cache_matches_full_replay(self, clock):
        store = EventStore(clock=clock)
        populate(store)

        assert store.verify() == store.state()

    def test_verify_detects_drift(self, clock):
        store = EventStore(clock=clock)
        populate(store)
        store._state = DerivedState(invocations=42)

        with pytest.raises(EventLogCorruptionError):
            store.verify()


class TestPersistence:
    def test_replay_reconstructs_identical_state(self, clock):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "events.jsonl"
            store = EventStore(path, clock=clock)
            populate(store)

            restored = EventStore.load(path)

            assert restored.all() == store.all()
            assert restored.state() == store.state()
            assert restored.state().state_hash == store.state().state_hash

    def test_one_line_per_event_in_append_order(self, clock):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "events.jsonl"
            store = EventStore(path, clock=clock)
            populate(store)

            lines = path.read_text().splitlines()

            assert len(lines) == 6
            assert [json.loads(line)["sequence"] for line in lines] == [1, 2, 3, 4, 5, 6]

    def test_appends_continue_after_load(self, clock):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "events.jsonl"
            populate(EventStore(path, clock=clock))

            restored = EventStore.load(path, clock=clock)
            event = restored.append(EventType.ERROR_OCCURRED, {"error": "later", "recoverable": True})

            assert event.sequence == 7
            assert len(EventStore.load(path)) == 7

    def test_reopening_existing_log_continues_sequence(self, clock):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "session.jsonl"
            first = EventStore(path, clock=clock)
            first.append(EventType.ERROR_OCCURRED, {"error": "first", "recoverable": True})

            second = EventStore(path, clock=clock)
            event = second.append(EventType.ERROR_OCCURRED, {"error": "second", "recoverable": True})

            assert event.sequence == 2
            assert second.state().errors == ("first", "second")
            lines = path.read_text().splitlines()
            assert [json.loads(line)["sequence"] for line in lines] == [1, 2]
            assert len(EventStore.load(path)) == 2

    def test_reopening_corrupt_log_fails_loudly(self, clock):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "session.jsonl"
            path.write_text("not json\n")

            with pytest.raises(EventLogCorruptionError):
                EventStore(path, clock=clock)

    def test_invalid_utf8_fails_loudly(self, clock):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "events.jsonl"
            path.write_bytes(b"\xff\xfe garbage\n")

            with pytest.raises(EventLogCorruptionError) as exc_info:
                EventStore.load(path)

            assert exc_info.value.line_number == 1

    def test_unparseable_line_fails_loudly(self, clock):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "events.jsonl"
            populate(EventStore(path, clock=clock))
            lines = path.read_text().splitlines()
            lines[2] = lines[2][:20]
            path.write_text("\n".join(lines) + "\n")

            with pytest.raises(EventLogCorruptionError) as exc_info:
                EventStore.load(path)

            assert exc_info.value.line_number == 3

    def test_unknown_event_type_fails_loudly(self, clock):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "events.jsonl"
            record = {"sequence": 1, "timestamp": 1.0, "type": "mystery", "data": {}}
            path.write_text(json.dumps(record) + "\n")

            with pytest.raises(EventLogCorruptionError):
                EventStore.load(path)

    def test_sequence_gap_fails_loudly(self, clock):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "events.jsonl"
            populate(EventStore(path, clock=clock))
            lines = path.read_text().splitlines()
            del lines[1]
            path.write_text("\n".join(lines) + "\n")

            with pytest.raises(EventLogCorruptionError, match="out of order"):
                EventStore.load(path)

    def test_event_json_roundtrip(self, clock):
        store = EventStore(clock=clock)
        event = store.append(EventType.STATE_CHANGED, {"key": "k", "old_value": 1, "new_value": [1, 2]})

        assert Event.from_json(event.to_json()) == event
