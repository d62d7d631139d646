"""Event Store - Append-only ground truth for a loop session.

The event store records every transition of a session for:
- Replay
- Audit
- State derivation

INVARIANTS:
1. Events are immutable and never deleted
2. Sequence numbers are strictly increasing (insertion order breaks timestamp ties)
3. A persisted append is flushed to disk before append() returns
4. Loading never skips a line it cannot parse
5. The cached DerivedState always equals a full replay
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator

from .state import DerivedState, apply_event, derive_state

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Discriminator for event variants."""

    ACTION_INVOKED = "action_invoked"
    ACTION_RESULT = "action_result"
    STATE_CHANGED = "state_changed"
    ERROR_OCCURRED = "error_occurred"
    GUARD_REJECTED = "guard_rejected"


# Minimal payload each variant must carry to reconstruct its fact
REQUIRED_FIELDS: dict[EventType, tuple[str, ...]] = {
    EventType.ACTION_INVOKED: ("action_id", "action_type", "target", "parameters"),
    EventType.ACTION_RESULT: ("action_id", "action_type", "success", "output", "duration_ms"),
    EventType.STATE_CHANGED: ("key", "old_value", "new_value"),
    EventType.ERROR_OCCURRED: ("error", "recoverable"),
    EventType.GUARD_REJECTED: ("action_id", "action_type", "reason", "layer"),
}


@dataclass(frozen=True)
class Event:
    """Immutable, sequenced record of one thing that happened."""

    sequence: int
    timestamp: float
    event_type: EventType
    data: tuple[tuple[str, Any], ...]

    def get(self, key: str, default: Any = None) -> Any:
        return dict(self.data).get(key, default)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "type": self.event_type.value,
            "data": dict(self.data),
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Event:
        """Deserialize from dictionary.

        Raises:
            ValueError: If the record is not a well-formed event.
        """
        event_type = EventType(data["type"])
        payload = data.get("data", {})
        if not isinstance(payload, dict):
            raise ValueError("Event data must be an object")
        missing = [f for f in REQUIRED_FIELDS[event_type] if f not in payload]
        if missing:
            raise ValueError(f"{event_type.value} event missing fields: {missing}")
        sequence = data["sequence"]
        if not isinstance(sequence, int) or isinstance(sequence, bool):
            raise ValueError(f"Invalid sequence number: {sequence!r}")

        return cls(
            sequence=sequence,
            timestamp=float(data["timestamp"]),
            event_type=event_type,
            data=tuple(sorted(payload.items())),
        )

    @classmethod
    def from_json(cls, json_str: str) -> Event:
        """Deserialize from JSON string."""
        return cls.from_dict(json.loads(json_str))


class EventLogCorruptionError(Exception):
    """Raised when a persisted event log cannot be replayed faithfully."""

    def __init__(self, message: str, path: Path | str | None = None, line_number: int | None = None):
        self.path = path
        self.line_number = line_number
        location = ""
        if path is not None:
            location = f" ({path}" + (f":{line_number}" if line_number is not None else "") + ")"
        super().__init__(f"[EventLog] {message}{location}")


def _normalize(data: dict[str, Any]) -> dict[str, Any]:
    """Round-trip a payload through JSON so in-memory and replayed events are equal."""
    return json.loads(json.dumps(data, sort_keys=True, default=str))


class EventStore:
    """Append-only event log with an incrementally maintained projection.

    Usage:
        store = EventStore("session.jsonl")
        store.append(EventType.ACTION_INVOKED, {...})

        store.state()          # cached DerivedState
        store.verify()         # cache == full replay

        restored = EventStore.load("session.jsonl")
    """

    def __init__(
        self,
        path: Path | str | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize an event store.

        An existing log at ``path`` is replayed first, so new appends
        continue its sequence.

        Args:
            path: Optional JSONL persistence target. Appends are synced to it.
            clock: Source of event timestamps (seconds).

        Raises:
            EventLogCorruptionError: If an existing log cannot be replayed.
        """
        self.path = Path(path) if path is not None else None
        self._clock = clock
        self._events: list[Event] = []
        self._state = DerivedState()

        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            for event in replay_file(self.path):
                self._events.append(event)
                self._state = apply_event(self._state, event)
            if self._events:
                logger.info(f"Loaded {len(self._events)} events from {self.path}")

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[Event]:
        return iter(list(self._events))

    def append(self, event_type: EventType | str, data: dict[str, Any]) -> Event:
        """Sequence, timestamp and append an event.

        Args:
            event_type: Event variant.
            data: Variant payload (without sequence/timestamp).

        Returns:
            The appended Event.

        Raises:
            ValueError: If the payload lacks a field its variant requires.
        """
        event_type = EventType(event_type)
        missing = [f for f in REQUIRED_FIELDS[event_type] if f not in data]
        if missing:
            raise ValueError(f"{event_type.value} event missing fields: {missing}")

        event = Event(
            sequence=len(self._events) + 1,
            timestamp=float(self._clock()),
            event_type=event_type,
            data=tuple(sorted(_normalize(data).items())),
        )

        if self.path is not None:
            self._write_event(event)

        self._events.append(event)
        self._state = apply_event(self._state, event)
        return event

    def _write_event(self, event: Event) -> None:
        """Write event to the JSONL file and sync before returning."""
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(event.to_json() + "\n")
            f.flush()
            os.fsync(f.fileno())

    def all(self) -> list[Event]:
        """All events in sequence order."""
        return list(self._events)

    def filter(self, event_type: EventType | str) -> list[Event]:
        """Events of exactly one variant, in sequence order."""
        event_type = EventType(event_type)
        return [e for e in self._events if e.event_type == event_type]

    def since(self, sequence: int) -> list[Event]:
        """Events appended after ``sequence``."""
        return [e for e in self._events if e.sequence > sequence]

    def state(self) -> DerivedState:
        """Incrementally maintained projection of the log."""
        return self._state

    def verify(self) -> DerivedState:
        """Cross-check the cached projection against a full replay.

        Raises:
            EventLogCorruptionError: If the cache drifted from history.
        """
        replayed = derive_state(self._events)
        if replayed != self._state:
            raise EventLogCorruptionError(
                f"Cached state {self._state.state_hash} != replayed state {replayed.state_hash}",
                self.path,
            )
        return replayed

    @classmethod
    def load(
        cls,
        path: Path | str,
        clock: Callable[[], float] = time.time,
    ) -> EventStore:
        """Rebuild a store by replaying a persisted log in file order.

        New appends continue the sequence and go to the same file.

        Raises:
            EventLogCorruptionError: On any unparseable line or broken sequence.
        """
        return cls(path, clock=clock)


def replay_file(path: Path | str) -> Iterator[Event]:
    """Iterate over a persisted log, failing loudly on corruption.

    Yields:
        Event objects in file order.
    """
    path = Path(path)
    if not path.exists():
        return

    expected = 1
    with open(path, "rb") as f:
        for line_number, raw in enumerate(f, start=1):
            try:
                line = raw.decode("utf-8").strip()
                if not line:
                    continue
                event = Event.from_json(line)
            except (ValueError, KeyError, TypeError) as e:
                logger.error(f"Corrupt event at {path}:{line_number}: {e}")
                raise EventLogCorruptionError(f"Unparseable event: {e}", path, line_number) from e

            if event.sequence != expected:
                raise EventLogCorruptionError(
                    f"Sequence {event.sequence} out of order (expected {expected})",
                    path,
                    line_number,
                )
            expected += 1
            yield event
