"""
Verity — Coordinator Type Definitions

Data structures shared by the runtime, the store and the workflows:
instance lifecycle, workflow kinds and provider verification results.
"""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


# ─── Instance Management ────────────────────────────────────────────

class InstanceStatus(str, enum.Enum):
    """Lifecycle states for a workflow instance."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    AWAITING_EXTERNAL_ACTION = "awaiting_external_action"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    FAILED = "failed"
    SUSPENDED = "suspended"
    CONTINUED = "continued"    # run closed by continue-as-new; instance lives on

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    InstanceStatus.APPROVED,
    InstanceStatus.REJECTED,
    InstanceStatus.EXPIRED,
    InstanceStatus.CANCELLED,
    InstanceStatus.FAILED,
    InstanceStatus.SUSPENDED,
})

ACTIVE_STATUSES = frozenset({
    InstanceStatus.PENDING,
    InstanceStatus.IN_PROGRESS,
    InstanceStatus.AWAITING_EXTERNAL_ACTION,
    InstanceStatus.UNDER_REVIEW,
    InstanceStatus.CONTINUED,
})


class WorkflowKind(str, enum.Enum):
    ONBOARDING = "onboarding"
    TIER_UPGRADE = "tier_upgrade"
    REVERIFICATION = "reverification"


@dataclass
class InstanceRecord:
    """
    Registry entry for a workflow instance.
    The runtime tracks these; query snapshots are stored separately.
    """
    instance_id: str
    subject_id: str
    kind: str
    status: InstanceStatus
    created_at: float
    updated_at: float
    run_id: str = ""
    chain_length: int = 1          # runs so far, including continue-as-new
    current_step: str = ""
    completed_at: float | None = None
    result: dict[str, Any] | None = None
    error: dict[str, Any] | None = None

    @staticmethod
    def create(kind: str, subject_id: str) -> InstanceRecord:
        now = time.time()
        return InstanceRecord(
            instance_id=f"{kind}_{uuid.uuid4().hex[:12]}",
            subject_id=subject_id,
            kind=kind,
            status=InstanceStatus.PENDING,
            created_at=now,
            updated_at=now,
            run_id=new_run_id(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "subject_id": self.subject_id,
            "kind": self.kind,
            "status": self.status.value,
            "run_id": self.run_id,
            "chain_length": self.chain_length,
            "current_step": self.current_step,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
            "result": self.result,
            "error": self.error,
        }


def new_run_id() -> str:
    return f"run_{uuid.uuid4().hex[:12]}"


# ─── Verification Results ───────────────────────────────────────────

class Outcome(str, enum.Enum):
    PASS = "pass"
    FAIL = "fail"
    NEEDS_REVIEW = "needs_review"
    PENDING = "pending"


@dataclass(frozen=True)
class VerificationResult:
    """One provider's verdict. Immutable once recorded on an instance."""
    provider: str
    reference_id: str
    outcome: Outcome
    reason: str = ""
    completed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    reused: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "reference_id": self.reference_id,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "completed_at": self.completed_at.isoformat(),
            "reused": self.reused,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> VerificationResult:
        completed = data.get("completed_at")
        if isinstance(completed, str):
            completed = datetime.fromisoformat(completed)
        return VerificationResult(
            provider=data["provider"],
            reference_id=data.get("reference_id", ""),
            outcome=Outcome(data["outcome"]),
            reason=data.get("reason", ""),
            completed_at=completed or datetime.now(timezone.utc),
            reused=bool(data.get("reused", False)),
        )
