"""
Verity — Step Status Tracker

Ordered, monotonic step history for one workflow instance. Every
transition is validated: a completed step is never moved back to
pending or in-progress; only a compensation can reverse its effect.

Usage:
    tracker = StepStatusTracker(["validating", "creating_account", "finalizing"])
    tracker.start("validating")
    tracker.complete("validating")
    tracker.progress   # 33.3
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class StepState(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class IllegalStepTransition(Exception):
    """Raised when a step transition would violate monotonic history."""
    pass


# Valid transitions: {from_state: [valid_to_states]}
VALID_TRANSITIONS = {
    StepState.PENDING: [StepState.IN_PROGRESS, StepState.SKIPPED, StepState.FAILED],
    StepState.IN_PROGRESS: [StepState.COMPLETED, StepState.FAILED, StepState.SKIPPED],
    StepState.FAILED: [StepState.IN_PROGRESS],
    StepState.COMPLETED: [],  # Terminal
    StepState.SKIPPED: [],  # Terminal
}


@dataclass
class StepRecord:
    name: str
    state: StepState = StepState.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.state.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
            "metadata": dict(self.metadata),
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepStatusTracker:
    """Tracks status of each named step, in declaration order."""

    def __init__(self, step_names: list[str] | tuple[str, ...], clock=_utcnow):
        if len(set(step_names)) != len(step_names):
            raise ValueError("Step names must be unique")
        self._clock = clock
        self._steps: dict[str, StepRecord] = {n: StepRecord(n) for n in step_names}
        self._current: str | None = None

    def _transition(self, name: str, to: StepState) -> StepRecord | None:
        try:
            record = self._steps[name]
        except KeyError:
            raise IllegalStepTransition(f"Unknown step '{name}'") from None
        if record.state == to and to in (StepState.COMPLETED, StepState.SKIPPED):
            return None  # idempotent
        if to not in VALID_TRANSITIONS[record.state]:
            raise IllegalStepTransition(
                f"Step '{name}': {record.state.value} → {to.value} not allowed"
            )
        record.state = to
        return record

    def start(self, name: str) -> None:
        record = self._transition(name, StepState.IN_PROGRESS)
        if record is not None:
            record.started_at = self._clock()
            record.error = None
            self._current = name

    def complete(self, name: str, **metadata: Any) -> None:
        record = self._transition(name, StepState.COMPLETED)
        if record is not None:
            record.completed_at = self._clock()
            record.metadata.update(metadata)

    def fail(self, name: str, error: BaseException | str) -> None:
        record = self._transition(name, StepState.FAILED)
        if record is not None:
            record.completed_at = self._clock()
            record.error = str(error)
            self._current = name

    def skip(self, name: str, reason: str = "") -> None:
        record = self._transition(name, StepState.SKIPPED)
        if record is not None:
            record.completed_at = self._clock()
            if reason:
                record.metadata["skip_reason"] = reason

    def state(self, name: str) -> StepState:
        return self._steps[name].state

    def __contains__(self, name: str) -> bool:
        return name in self._steps

    @property
    def current(self) -> str | None:
        return self._current

    @property
    def progress(self) -> float:
        """Percentage of steps completed or skipped."""
        if not self._steps:
            return 100.0
        done = sum(
            1 for r in self._steps.values()
            if r.state in (StepState.COMPLETED, StepState.SKIPPED)
        )
        return round(100.0 * done / len(self._steps), 1)

    def history(self) -> list[dict[str, Any]]:
        return [r.to_dict() for r in self._steps.values()]
