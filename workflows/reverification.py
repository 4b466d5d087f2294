"""
Verity — Periodic Re-verification Workflow

Long-lived monitoring of an approved subject. Each cycle is one run:

    loading_profile → checking_documents → screening →
    awaiting_manual_override → reverifying → scheduling_next

then the run sleeps `reverification.cycle_sleep` and continues as new
with only the last check timestamp and the cycle counter (plus the open
issues when `reverification.carry_issues` is on). `max_cycles` ends the
chain with status approved.

A critical sanctions match suspends the account before anything else and
waits for a manual override: approve reinstates and the cycle goes on;
suspend or no decision within the wait ends the chain as suspended.
Sanctions and watchlist matches (including screens that could not run)
and expired documents require re-verification; a PEP match is recorded
for monitoring only. Re-verification that fails or is not completed in
time suspends the account.

Usage:
    instance_id = await runtime.start("reverification", {"subject_id": "user-1"})
    await runtime.signal(instance_id, "reverification_completed",
                         {"success": True, "verification_id": "rv_0001"})
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from coordinator.types import InstanceStatus
from engine.activities import ActivityOptions
from engine.config import get_config_value
from engine.tiers import reverification_interval
from engine.validation import (
    ManualOverridePayload,
    ReverificationCompletedPayload,
    ReverificationInput,
)
from engine.workflow import signal, workflow_definition
from workflows.base import StepSkipped, VerificationWorkflow

DOCUMENT_EXPIRY_WARNING_DAYS = 30


@workflow_definition("reverification", input_schema=ReverificationInput)
class ReverificationWorkflow(VerificationWorkflow):

    def __init__(self, ctx, input: ReverificationInput, activities=None):
        self.manual_override: ManualOverridePayload | None = None
        self.reverification_result: ReverificationCompletedPayload | None = None
        super().__init__(ctx, input, activities)
        self.cycle = input.cycle
        self.tier: str | None = None
        self.email: str | None = None
        self.last_check: datetime | None = input.last_check_timestamp
        self.next_scheduled_check: datetime | None = None
        self.document_status = "valid"
        self.screen_status = {"sanctions": "pending", "watchlist": "pending", "pep": "pending"}
        self.issues: list[str] = list(input.carried_issues)
        self.critical_sanctions = False
        self.reverification_required = False
        self.reverification_in_progress = False
        self.verification_id: str | None = None
        self.account_suspended = False
        self.suspension_reason: str | None = None

    def build_steps(self) -> list[str]:
        return [
            "loading_profile",
            "checking_documents",
            "screening",
            "awaiting_manual_override",
            "reverifying",
            "scheduling_next",
        ]

    # ─── Signals ─────────────────────────────────────────────────────

    @signal("manual_override", schema=ManualOverridePayload)
    def on_manual_override(self, payload: ManualOverridePayload) -> None:
        if self.manual_override is None:
            self.manual_override = payload

    @signal("reverification_completed", schema=ReverificationCompletedPayload)
    def on_reverification_completed(self, payload: ReverificationCompletedPayload) -> None:
        if self.reverification_result is None:
            self.reverification_result = payload

    # ─── Query ───────────────────────────────────────────────────────

    def snapshot(self) -> dict[str, Any]:
        snap = super().snapshot()
        snap.update({
            "cycle": self.cycle,
            "tier": self.tier,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "next_scheduled_check": (
                self.next_scheduled_check.isoformat() if self.next_scheduled_check else None
            ),
            "document_status": self.document_status,
            "sanctions_status": self.screen_status["sanctions"],
            "watchlist_status": self.screen_status["watchlist"],
            "pep_status": self.screen_status["pep"],
            "reverification_required": self.reverification_required,
            "reverification_in_progress": self.reverification_in_progress,
            "verification_id": self.verification_id,
            "account_suspended": self.account_suspended,
            "issues": list(self.issues),
        })
        return snap

    # ─── Execution ───────────────────────────────────────────────────

    async def execute(self) -> dict[str, Any]:
        await self.run_step("loading_profile", self._load_profile)
        await self.run_step("checking_documents", self._check_documents)
        await self.run_step("screening", self._screen)
        await self.run_step("awaiting_manual_override", self._await_manual_override)
        if not self.account_suspended:
            await self.run_step("reverifying", self._reverify)
        else:
            self.tracker.skip("reverifying", "account suspended")
        await self.run_step("scheduling_next", self._schedule_next)

        if self.account_suspended:
            self.complete(InstanceStatus.SUSPENDED)
            await self.audit("reverification_suspended", reason=self.suspension_reason, issues=self.issues)
            await self.notify_terminal(InstanceStatus.SUSPENDED, self.suspension_reason)
            return self.snapshot()

        await self.ctx.sleep(self.config_value("cycle_sleep", 86400))
        self.ctx.check_cancelled()

        max_cycles = self.config_value("max_cycles", None)
        if max_cycles is not None and self.cycle + 1 >= int(max_cycles):
            self.complete(InstanceStatus.APPROVED)
            await self.audit("reverification_chain_completed", cycles=self.cycle + 1)
            await self.notify_terminal(InstanceStatus.APPROVED)
            return self.snapshot()

        carried = list(self.issues) if self.config_value("carry_issues", False) else []
        self.ctx.continue_as_new({
            "subject_id": self.ctx.subject_id,
            "last_check_timestamp": self.last_check.isoformat(),
            "cycle": self.cycle + 1,
            "carried_issues": carried,
        })

    def config_value(self, key: str, default: Any) -> Any:
        return get_config_value(f"reverification.{key}", self.ctx.config, default)

    async def _load_profile(self) -> None:
        profile = await self.call(self.activities.get_kyc_profile, self.ctx.subject_id)
        self.tier, self.email = profile.tier, profile.email
        await self.audit("rekyc_check_started", tier=self.tier, cycle=self.cycle)

        now = self.ctx.now()
        last_verified = profile.last_verified_at or self.last_check
        if last_verified is None or last_verified + reverification_interval(self.tier) <= now:
            days = (now - last_verified).days if last_verified is not None else None
            self.require_reverification(
                f"Periodic re-verification due ({days} days since last verification)"
                if days is not None else "Periodic re-verification due (never verified)"
            )

    async def _check_documents(self) -> None:
        docs = await self.call(self.activities.check_document_expiration, self.ctx.subject_id)
        warning_days = int(get_config_value(
            "screening.document_expiry_warning_days", self.ctx.config, DOCUMENT_EXPIRY_WARNING_DAYS,
        ))
        if docs.any_expired:
            self.document_status = "expired"
            self.require_reverification(f"Expired documents: {', '.join(docs.expired)}")
            return
        expiring = docs.expiring_within(warning_days)
        if expiring:
            self.document_status = "expiring_soon"
            self.issues.append(f"Documents expiring soon: {', '.join(expiring)}")
            await self.notify("document_expiring", documents=expiring, within_days=warning_days)

    async def _screen(self) -> None:
        name = (self.email or self.ctx.subject_id).split("@")[0]
        sanctions, watchlist, pep = await self.ctx.gather(
            self.screen("sanctions", self.activities.screen_sanctions, self.ctx.subject_id, name),
            self.screen("watchlist", self.activities.screen_watchlist, self.ctx.subject_id, name),
            self.screen("pep", self.activities.screen_pep, self.ctx.subject_id, name),
        )
        for result in (sanctions, watchlist, pep):
            self.screen_status[result.screen] = "flagged" if result.flagged else "clear"
            if not result.flagged:
                continue
            detail = result.error or result.details
            self.issues.append(f"{result.screen.capitalize()} match: {detail}")
            if result.screen == "pep":
                self.flag("pep_match", risk_level=result.risk_level)
            else:
                self.reverification_required = True
        self.critical_sanctions = sanctions.critical

    async def _await_manual_override(self) -> None:
        if not self.critical_sanctions:
            raise StepSkipped("no critical sanctions match")
        reason = "Sanctions screening match - pending review"
        await self.call(self.activities.suspend_account, self.ctx.subject_id, reason,
                        options=ActivityOptions.CRITICAL)
        self.account_suspended = True
        await self.audit("account_suspended_sanctions", issues=self.issues)
        await self.notify("account_suspended", reason=reason)

        timeout = self.wait_seconds("manual_override")
        self.status = InstanceStatus.AWAITING_EXTERNAL_ACTION
        decided = await self.ctx.wait_condition(lambda: self.manual_override is not None, timeout=timeout)
        self.ctx.check_cancelled()
        self.status = self._active_status()

        if decided and self.manual_override.action == "approve":
            await self.call(self.activities.reinstate_account, self.ctx.subject_id,
                            self.manual_override.reason, options=ActivityOptions.CRITICAL)
            self.account_suspended = False
            self.issues = [i for i in self.issues if not i.startswith("Sanctions")]
            await self.audit("account_reinstated", reason=self.manual_override.reason)
            return
        self.suspension_reason = (
            f"Suspended by manual review: {self.manual_override.reason}" if decided
            else "No manual review decision within the review window"
        )

    async def _reverify(self) -> None:
        if not self.reverification_required:
            raise StepSkipped("re-verification not required")
        self.reverification_in_progress = True
        await self.notify("reverification_required", reasons=self.issues)
        self.verification_id = await self.call(
            self.activities.initiate_reverification, self.ctx.subject_id, list(self.issues),
        )

        timeout = self.wait_seconds("reverification")
        self.status = InstanceStatus.AWAITING_EXTERNAL_ACTION
        completed = await self.ctx.wait_condition(
            lambda: self.reverification_result is not None, timeout=timeout,
        )
        self.ctx.check_cancelled()
        self.status = self._active_status()
        self.reverification_in_progress = False

        if completed and self.reverification_result.success:
            self.issues = []
            self.document_status = "valid"
            self.reverification_required = False
            await self.audit(
                "rekyc_completed_success", verification_id=self.reverification_result.verification_id,
            )
            return
        reason = "Re-verification failed" if completed else "Re-verification not completed in time"
        await self.call(self.activities.suspend_account, self.ctx.subject_id, reason,
                        options=ActivityOptions.CRITICAL)
        self.account_suspended = True
        self.suspension_reason = reason
        await self.audit(
            "account_suspended_rekyc_failed" if completed else "account_suspended_rekyc_timeout",
            issues=self.issues,
        )

    async def _schedule_next(self) -> None:
        self.last_check = self.ctx.now()
        self.next_scheduled_check = self.last_check + reverification_interval(self.tier or "basic")
        await self.audit(
            "rekyc_check_completed",
            issues=len(self.issues), account_suspended=self.account_suspended,
            next_check=self.next_scheduled_check.isoformat(),
        )

    def require_reverification(self, issue: str) -> None:
        self.reverification_required = True
        self.issues.append(issue)
