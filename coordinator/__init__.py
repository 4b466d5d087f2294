"""
Verity — Runtime Coordinator

In-process durable-execution substrate: instance registry with
per-subject uniqueness, signal delivery, queries, cancellation,
continue-as-new and scaled timers over a SQLite store.

Phase 1: in-process. All instances run on one asyncio event loop.

Usage:
    from coordinator.runtime import WorkflowRuntime

    runtime = WorkflowRuntime(activities)
    runtime.register(OnboardingWorkflow)
    instance_id = await runtime.start("onboarding", payload)
    snapshot = runtime.query(instance_id)
"""

from coordinator.types import (
    InstanceRecord,
    InstanceStatus,
    Outcome,
    VerificationResult,
    WorkflowKind,
)
from coordinator.store import DuplicateInstance, InstanceStore
from coordinator.runtime import InstanceNotFound, WorkflowFailed, WorkflowRuntime

__all__ = [
    "WorkflowRuntime",
    "InstanceNotFound",
    "WorkflowFailed",
    "InstanceStore",
    "DuplicateInstance",
    "InstanceRecord",
    "InstanceStatus",
    "Outcome",
    "VerificationResult",
    "WorkflowKind",
]
