"""
Verity - Engine Package

Orchestration primitives shared by the runtime and the workflows:

  - engine.errors: classified failures, is_retryable, describe
  - engine.retry: named retry policies, compute_backoff, should_retry
  - engine.activities: ActivityInvoker, ActivityOptions, idempotency keys
  - engine.workflow: @signal / @query / @workflow_definition, WorkflowContext
  - engine.compensation: CompensationStack, Deduplicator
  - engine.logging / engine.metrics / engine.status: observability
  - engine.validation / engine.tiers: input schemas and tier configuration
  - engine.config / engine.cache / engine.secrets: ambient configuration

Only the error taxonomy is re-exported here; import the rest from
their modules.
"""

from engine.errors import (
    AuthorizationError,
    CompensationFailedError,
    ComplianceBlockedError,
    ErrorCode,
    ErrorKind,
    ExternalServiceError,
    InsufficientFundsError,
    StepTimeout,
    ValidationError,
    VerityError,
    is_retryable,
)

__all__ = [
    "AuthorizationError",
    "CompensationFailedError",
    "ComplianceBlockedError",
    "ErrorCode",
    "ErrorKind",
    "ExternalServiceError",
    "InsufficientFundsError",
    "StepTimeout",
    "ValidationError",
    "VerityError",
    "is_retryable",
]
