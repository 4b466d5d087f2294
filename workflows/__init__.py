"""
Verity — KYC Workflows

Three state machines over the shared VerificationWorkflow base:

  - onboarding:      new subject to an approved tier
  - tier_upgrade:    one tier up, incremental checks only
  - reverification:  periodic monitoring, continue-as-new per cycle

Usage:
    from activities import SimulatedActivities
    from workflows import create_runtime

    runtime = create_runtime(SimulatedActivities(), timer_scale=0.001)
    instance_id = await runtime.start("onboarding", {...})
"""

from __future__ import annotations

from typing import Any

from coordinator.runtime import WorkflowRuntime
from workflows.base import ProviderChecksMixin, StepSkipped, VerificationWorkflow, terminal_status_for
from workflows.onboarding import OnboardingWorkflow
from workflows.reverification import ReverificationWorkflow
from workflows.upgrade import TierUpgradeWorkflow

WORKFLOWS = (OnboardingWorkflow, TierUpgradeWorkflow, ReverificationWorkflow)


def create_runtime(activities: Any, **kwargs: Any) -> WorkflowRuntime:
    """WorkflowRuntime with every KYC workflow kind registered."""
    runtime = WorkflowRuntime(activities, **kwargs)
    for cls in WORKFLOWS:
        runtime.register(cls)
    return runtime


__all__ = [
    "WORKFLOWS",
    "create_runtime",
    "OnboardingWorkflow",
    "TierUpgradeWorkflow",
    "ReverificationWorkflow",
    "VerificationWorkflow",
    "ProviderChecksMixin",
    "StepSkipped",
    "terminal_status_for",
]
