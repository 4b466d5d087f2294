"""
Verity — Shared Workflow Plumbing

VerificationWorkflow is the base every KYC state machine builds on. It
owns the per-instance observability (step tracker, structured logger,
metrics), the compensation stack and deduplicator, and the accumulated
provider results, and it maps any failure onto a terminal status:

    WorkflowCancelled                  → cancelled
    StepTimeout (human-gated wait)     → expired
    validation / authorization         → rejected
    compliance blocked                 → rejected
    anything else                      → failed
    compensation failure               → failed + CompensationFailedError

Compensation runs for every failure; when nothing was committed the
stack is empty and nothing happens. Every terminal state change sends
exactly one notification.

Subclasses implement build_steps() and execute(). ProviderChecksMixin
adds the signals and step bodies shared by the kinds that wait on
asynchronous provider checks (onboarding and tier upgrade).
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from activities.screening import fail_closed
from coordinator.types import InstanceStatus, Outcome, VerificationResult
from engine.activities import ActivityOptions, idempotency_key
from engine.compensation import CompensationStack, Deduplicator
from engine.config import get_config_value
from engine.errors import (
    ErrorCode,
    ErrorKind,
    StepTimeout,
    classify,
    compensation_failed_error,
    compliance_blocked_error,
    describe,
    timeout_error,
)
from engine.logging import WorkflowLogger, timed_step
from engine.status import StepState, StepStatusTracker
from engine.validation import (
    BankLinkedPayload,
    CancelPayload,
    DocumentsSubmittedPayload,
    ProviderCompletedPayload,
)
from engine.workflow import ContinueAsNew, Workflow, WorkflowCancelled, query, signal

logger = logging.getLogger("verity.workflows")

# Fallbacks when the loaded configuration has no `waits:` section.
DEFAULT_WAITS = {
    "email_verification": 24 * 3600,
    "document_submission": 7 * 86400,
    "background_check": 7 * 86400,
    "accreditation": 14 * 86400,
    "agreements_signing": 7 * 86400,
    "bank_link": 3600,
    "manual_override": 30 * 86400,
    "reverification": 30 * 86400,
}

_REJECTING_KINDS = {ErrorKind.VALIDATION, ErrorKind.AUTHORIZATION, ErrorKind.COMPLIANCE_BLOCKED}


class StepSkipped(Exception):
    """Raised inside a step body to mark the step skipped instead of failed."""

    def __init__(self, reason: str = ""):
        super().__init__(reason)
        self.reason = reason


def terminal_status_for(error: BaseException) -> InstanceStatus:
    """Terminal instance status for a failure that ended a run."""
    if isinstance(error, WorkflowCancelled):
        return InstanceStatus.CANCELLED
    if isinstance(error, StepTimeout) and not error.retryable:
        return InstanceStatus.EXPIRED
    if classify(error) in _REJECTING_KINDS:
        return InstanceStatus.REJECTED
    return InstanceStatus.FAILED


# ═══════════════════════════════════════════════════════════════════
# Base State Machine
# ═══════════════════════════════════════════════════════════════════

class VerificationWorkflow(Workflow):
    """Base state machine: steps, waits, compensation and terminal handling."""

    def __init__(self, ctx, input, activities=None):
        super().__init__(ctx, input, activities)
        self.steps: list[str] = list(self.build_steps())
        self.tracker = StepStatusTracker(self.steps, clock=ctx.now)
        if ctx.parent_logger is not None:
            self.log: WorkflowLogger = ctx.parent_logger.child(ctx.run_id)
        else:
            self.log = WorkflowLogger(
                workflow=self.kind,
                instance_id=ctx.instance_id,
                subject_id=ctx.subject_id,
                run_id=ctx.run_id,
            )
        self.metrics = ctx.invoker.metrics
        self.compensations = CompensationStack(on_event=self._on_compensation_event)
        self.dedup = Deduplicator()

        self.status = InstanceStatus.PENDING
        self.current_step = ""
        self.failed_step: str | None = None
        self.failure_reason: str | None = None
        self.results: dict[str, VerificationResult] = {}
        self.errors: list[dict[str, Any]] = []
        self.flags: list[str] = []
        self.started_at = ctx.now()
        self.completed_at = None

        # signal-delivered state
        self.cancel_reason: str | None = None
        self.provider_events: dict[str, ProviderCompletedPayload] = {}

    # ─── Subclass hooks ──────────────────────────────────────────────

    def build_steps(self) -> list[str]:
        raise NotImplementedError

    async def execute(self) -> Any:
        raise NotImplementedError

    async def on_terminal_failure(self, status: InstanceStatus) -> None:
        """Hook for kinds that mirror the terminal status into an external record."""

    # ─── Signals shared by every kind ────────────────────────────────

    @signal("cancel", schema=CancelPayload)
    def on_cancel(self, payload: CancelPayload) -> None:
        if self.cancel_reason is None:
            self.cancel_reason = payload.reason
        self.ctx.request_cancel(payload.reason)

    # ─── Query ───────────────────────────────────────────────────────

    @query
    def status_snapshot(self) -> dict[str, Any]:
        return self.snapshot()

    def snapshot(self) -> dict[str, Any]:
        return {
            "instance_id": self.ctx.instance_id,
            "run_id": self.ctx.run_id,
            "kind": self.kind,
            "subject_id": self.ctx.subject_id,
            "status": self.status.value,
            "step": self.current_step,
            "progress": self.tracker.progress,
            "steps": self.tracker.history(),
            "results": {k: v.to_dict() for k, v in self.results.items()},
            "errors": list(self.errors),
            "flags": list(self.flags),
            "failure_reason": self.failure_reason,
            "failed_step": self.failed_step,
            "compensations": self.compensations.to_list(),
            "side_effects": self.dedup.fired,
            "signals_received": len(self.signal_log),
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    # ─── Run ─────────────────────────────────────────────────────────

    async def run(self) -> Any:
        self.status = InstanceStatus.IN_PROGRESS
        self.log.info("workflow_started", kind=self.kind, steps=self.steps)
        try:
            output = await self.execute()
        except ContinueAsNew:
            self.log.info("workflow_continued_as_new")
            raise
        except Exception as e:
            self.metrics.workflow_completed(terminal_status_for(e).value)
            await self.fail(e)
        self.completed_at = self.ctx.now()
        self.metrics.workflow_completed(self.status.value)
        self.log.info("workflow_finished", status=self.status.value, progress=self.tracker.progress)
        return output

    async def fail(self, error: BaseException) -> None:
        """
        Record `error`, compensate everything committed so far and settle
        the terminal status. Always raises: the original error, or a
        CompensationFailedError embedding it when an undo action failed.
        """
        status = terminal_status_for(error)
        step = self.current_step
        if step in self.tracker and self.tracker.state(step) == StepState.IN_PROGRESS:
            self.tracker.fail(step, error)
        self.failed_step = step or None
        self.failure_reason = getattr(error, "message", "") or str(error)
        self.errors.append({"step": step, **describe(error)})
        self.log.error(
            "workflow_failed", step=step, status=status.value,
            error_type=type(error).__name__, error=self.failure_reason[:500],
        )

        result = await self.compensate()
        self.completed_at = self.ctx.now()
        if not result.ok:
            self.status = InstanceStatus.FAILED
            self.current_step = InstanceStatus.FAILED.value
            comp_error = compensation_failed_error(error, [(f.name, f.error) for f in result.failed])
            self.errors.append({"step": "compensation", **describe(comp_error)})
            self.log.error(
                "compensation_incomplete",
                original=describe(error),
                executed=result.executed,
                failed=[f.to_dict() for f in result.failed],
            )
            await self.on_terminal_failure(self.status)
            await self.audit("workflow_compensation_failed", reason=self.failure_reason)
            await self.notify_terminal(self.status, self.failure_reason)
            raise comp_error from error

        self.status = status
        self.current_step = status.value
        await self.on_terminal_failure(status)
        await self.audit(f"workflow_{status.value}", reason=self.failure_reason, step=step)
        await self.notify_terminal(status, self.failure_reason)
        raise error

    async def compensate(self):
        async with self.ctx.non_cancellable():
            result = await self.compensations.compensate_all()
        if result.executed or result.failed:
            self.log.info(
                "compensation_summary",
                executed=result.executed, failed=[f.name for f in result.failed],
            )
        return result

    def complete(self, status: InstanceStatus = InstanceStatus.APPROVED) -> None:
        self.status = status
        self.current_step = "completed" if status == InstanceStatus.APPROVED else status.value
        self.completed_at = self.ctx.now()

    # ─── Step helpers ────────────────────────────────────────────────

    async def run_step(self, name: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run one tracked step. Cancellation is observed before the step
        starts; StepSkipped marks it skipped; any other error marks it
        failed and propagates.
        """
        self.ctx.check_cancelled()
        self.current_step = name
        self.tracker.start(name)
        try:
            result = await timed_step(self.log, self.metrics, name, fn)
        except StepSkipped as skip:
            self.tracker.skip(name, skip.reason)
            self.log.info("step_skipped", step=name, reason=skip.reason)
            return None
        except Exception as e:
            self.tracker.fail(name, e)
            raise
        self.tracker.complete(name)
        return result

    def wait_seconds(self, key: str) -> float:
        return float(get_config_value(f"waits.{key}", self.ctx.config, DEFAULT_WAITS[key]))

    def _active_status(self) -> InstanceStatus:
        return InstanceStatus.UNDER_REVIEW if self.flags else InstanceStatus.IN_PROGRESS

    async def await_signal(self, step: str, predicate: Callable[[], Any], wait_key: str) -> None:
        """
        Suspend until `predicate` holds. Raises WorkflowCancelled on a
        cancellation request and a non-retryable StepTimeout when the
        configured wait elapses.
        """
        timeout = self.wait_seconds(wait_key)
        self.status = InstanceStatus.AWAITING_EXTERNAL_ACTION
        self.log.info("awaiting_signal", step=step, wait=wait_key, timeout_s=timeout)
        ok = await self.ctx.wait_condition(predicate, timeout=timeout)
        self.ctx.check_cancelled()
        if not ok:
            raise timeout_error(step, timeout, wait=wait_key)
        self.status = self._active_status()

    def flag(self, name: str, **fields: Any) -> None:
        """Mark the instance for manual review and keep going."""
        if name not in self.flags:
            self.flags.append(name)
        self.status = InstanceStatus.UNDER_REVIEW
        self.log.warning("flagged_for_review", flag=name, **fields)

    # ─── Activity helpers ────────────────────────────────────────────

    async def call(
        self,
        fn: Callable[..., Any],
        *args: Any,
        options: ActivityOptions = ActivityOptions.STANDARD,
        key: tuple[Any, ...] | None = None,
        **kwargs: Any,
    ) -> Any:
        """
        Invoke an activity with a deterministic idempotency key. The key
        defaults to the call's arguments, scoped to this instance and run,
        so a repeated identical call is recognised by the provider.
        """
        name = fn.__name__
        parts = key if key is not None else (*args, *sorted(kwargs.items()))
        return await self.ctx.activity(
            fn, *args, name=name, options=options,
            idempotency_key=idempotency_key(self.ctx.instance_id, name, self.ctx.run_id, *parts),
            **kwargs,
        )

    async def screen(self, screen: str, fn: Callable[..., Any], *args: Any):
        """One compliance screen through the critical policy, failing closed."""
        return await fail_closed(screen, self.call(fn, *args, options=ActivityOptions.CRITICAL))

    async def provider_result(
        self,
        provider: str,
        step: str,
        wait_key: str,
        reference_id: str,
        poll: Callable[[], Awaitable[VerificationResult]] | None = None,
    ) -> VerificationResult:
        """
        Outcome of an asynchronous provider check: a webhook-delivered
        `provider_completed` signal if one arrived, otherwise one poll,
        otherwise a signal-gated wait.
        """
        event = self.provider_events.get(provider)
        if event is None and poll is not None:
            polled = await poll()
            if polled.outcome != Outcome.PENDING:
                return polled
            reference_id = polled.reference_id or reference_id
        if event is None:
            await self.await_signal(step, lambda: provider in self.provider_events, wait_key)
            event = self.provider_events[provider]
        return VerificationResult(
            provider=provider,
            reference_id=event.reference or reference_id,
            outcome=Outcome(event.outcome),
            reason=event.reason,
            completed_at=self.ctx.now(),
        )

    def record(self, result: VerificationResult) -> VerificationResult:
        """Results are immutable once recorded."""
        self.results.setdefault(result.provider, result)
        self.log.info(
            "result_recorded", provider=result.provider,
            outcome=result.outcome.value, reference_id=result.reference_id,
        )
        return self.results[result.provider]

    # ─── Collaborators ───────────────────────────────────────────────

    async def audit(self, action: str, **metadata: Any) -> None:
        await self.ctx.fire_and_forget(
            self.activities.log_audit_event,
            self.ctx.subject_id, action,
            {"instance_id": self.ctx.instance_id, "run_id": self.ctx.run_id, "kind": self.kind, **metadata},
            name="log_audit_event",
        )

    async def notify(self, template: str, **data: Any) -> None:
        await self.ctx.fire_and_forget(
            self.activities.send_notification,
            self.ctx.subject_id, template, {"instance_id": self.ctx.instance_id, **data},
            name="send_notification",
        )

    async def notify_terminal(self, status: InstanceStatus, reason: str | None = None) -> None:
        """Exactly one notification per terminal state change."""
        async def send():
            data: dict[str, Any] = {"status": status.value}
            if reason:
                data["reason"] = reason
            await self.notify(f"{self.kind}_{status.value}", **data)
            return status.value

        await self.dedup.execute_once(f"notify_terminal:{status.value}", send)

    def _on_compensation_event(self, action: str, **fields: Any) -> None:
        level = self.log.error if action == "compensation_failed" else self.log.info
        level(action, **fields)


# ═══════════════════════════════════════════════════════════════════
# Provider Checks
# ═══════════════════════════════════════════════════════════════════

class ProviderChecksMixin:
    """
    Signals and step bodies for kinds that wait on asynchronous provider
    checks. Mixed in ahead of VerificationWorkflow; expects `input.email`
    and a `subject_name` property.
    """

    documents_reference: str | None = None
    bank_link_payload: BankLinkedPayload | None = None
    bank_item_id: str | None = None

    @signal("documents_submitted", schema=DocumentsSubmittedPayload)
    def on_documents_submitted(self, payload: DocumentsSubmittedPayload) -> None:
        if self.documents_reference is None:
            self.documents_reference = payload.reference

    @signal("provider_completed", schema=ProviderCompletedPayload)
    def on_provider_completed(self, payload: ProviderCompletedPayload) -> None:
        # Interim statuses are ignored; the first final outcome wins.
        if payload.outcome == Outcome.PENDING.value:
            return
        self.provider_events.setdefault(payload.provider, payload)

    @signal("bank_linked", schema=BankLinkedPayload)
    def on_bank_linked(self, payload: BankLinkedPayload) -> None:
        if self.bank_link_payload is None:
            self.bank_link_payload = payload

    def evaluate(self, result: VerificationResult, code: str, label: str) -> VerificationResult:
        """`fail` blocks the subject; `needs_review` flags and continues."""
        if result.outcome == Outcome.FAIL:
            raise compliance_blocked_error(
                f"{label}: {result.reason or 'declined'}",
                code=code, provider=result.provider,
                reason=result.reason, reference_id=result.reference_id,
            )
        if result.outcome == Outcome.NEEDS_REVIEW:
            self.flag(f"{result.provider}_needs_review", reason=result.reason)
        return result

    def enforce_sanctions(self, sanctions) -> None:
        """
        A screen that errored is treated as a block, never as a pass. A
        critical match blocks; a non-critical match flags for review.
        """
        if sanctions.error is not None:
            raise compliance_blocked_error(
                "Sanctions screening unavailable; failing closed",
                code=ErrorCode.SCREENING_UNAVAILABLE, screen="sanctions", error=sanctions.error,
            )
        if sanctions.critical:
            self.record(VerificationResult(
                provider="sanctions", reference_id=sanctions.screening_id,
                outcome=Outcome.FAIL, reason=sanctions.details, completed_at=self.ctx.now(),
            ))
            raise compliance_blocked_error(
                "Sanctions screening returned a critical match",
                code=ErrorCode.SANCTIONS_MATCH, screen="sanctions", risk_level=sanctions.risk_level,
            )
        outcome = Outcome.NEEDS_REVIEW if sanctions.matched else Outcome.PASS
        self.record(VerificationResult(
            provider="sanctions", reference_id=sanctions.screening_id,
            outcome=outcome, reason=sanctions.details, completed_at=self.ctx.now(),
        ))
        if sanctions.matched:
            self.flag("sanctions_potential_match", risk_level=sanctions.risk_level)

    async def verify_identity(self, step: str, inquiry_id: str) -> VerificationResult:
        await self.await_signal(step, lambda: self.documents_reference is not None, "document_submission")
        result = self.record(await self.provider_result(
            "identity", step, "document_submission", inquiry_id,
            poll=lambda: self.call(self.activities.wait_for_identity_result, inquiry_id,
                                   options=ActivityOptions.LONG_RUNNING),
        ))
        return self.evaluate(result, ErrorCode.IDENTITY_REJECTED, "Identity verification declined")

    async def verify_background(self, step: str, check_id: str) -> VerificationResult:
        result = self.record(await self.provider_result(
            "background_check", step, "background_check", check_id,
            poll=lambda: self.call(self.activities.wait_for_background_result, check_id,
                                   options=ActivityOptions.LONG_RUNNING),
        ))
        return self.evaluate(result, ErrorCode.BACKGROUND_CHECK_ADVERSE, "Background check adverse")

    async def start_background_check(self, package: str, profile: dict[str, Any] | None = None):
        check = await self.call(
            self.activities.create_background_check, self.ctx.subject_id, package, profile,
        )
        self.push_background_cancel(check)
        return check

    def push_background_cancel(self, check) -> None:
        self.compensations.push(
            "cancel_background_check",
            lambda: self.call(self.activities.cancel_background_check, check.check_id,
                              options=ActivityOptions.CRITICAL),
        )

    async def verify_accreditation(self, step: str) -> VerificationResult:
        """Accreditation completes only through a provider_completed signal."""
        request_id = await self.call(
            self.activities.create_accreditation_request,
            self.ctx.subject_id, self.input.email, self.subject_name,
        )
        await self.notify("accreditation_action_required", request_id=request_id)
        result = self.record(await self.provider_result("accreditation", step, "accreditation", request_id))
        return self.evaluate(result, ErrorCode.ACCREDITATION_REJECTED, "Accreditation not verified")

    async def link_bank(self) -> None:
        """Optional bank link. Not linking within the wait skips the step."""
        await self.call(self.activities.create_bank_link_token, self.ctx.subject_id)
        linked = await self.ctx.wait_condition(
            lambda: self.bank_link_payload is not None, timeout=self.wait_seconds("bank_link"),
        )
        self.ctx.check_cancelled()
        if not linked:
            raise StepSkipped("bank account not linked in time")
        payload = self.bank_link_payload
        link = await self.call(
            self.activities.exchange_bank_token, payload.public_token, payload.account_id,
            options=ActivityOptions.CRITICAL,
        )
        self.bank_item_id = link.item_id
        self.compensations.push(
            "unlink_bank_account",
            lambda: self.call(self.activities.unlink_bank_account, link.item_id,
                              options=ActivityOptions.CRITICAL),
        )
        self.record(VerificationResult(
            provider="bank_link", reference_id=link.item_id, outcome=Outcome.PASS,
            reason=payload.institution_name or "", completed_at=self.ctx.now(),
        ))

    async def on_terminal_failure(self, status: InstanceStatus) -> None:
        self.kyc_status = status.value
        await self.ctx.fire_and_forget(
            self.activities.update_kyc_status, self.ctx.subject_id, status.value,
            reason=self.failure_reason or "", name="update_kyc_status",
        )
