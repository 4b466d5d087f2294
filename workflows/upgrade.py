"""
Verity — Tier Upgrade Workflow

Moves an approved subject exactly one tier up, running only the checks
the target tier adds:

    validating → [upgrading_identity] → [screening_sanctions] →
    [running_background_check] → [awaiting_accreditation] →
    [linking_bank] → finalizing

The upgrade path is validated before any provider is contacted; an
invalid path is rejected without side effects. Results the subject
already holds are carried over (marked reused) unless this upgrade
re-runs that check.

Compensations:
    upgrading_identity        → reset_identity_inquiry
    running_background_check  → cancel_background_check
    linking_bank              → unlink_bank_account
"""

from __future__ import annotations

import dataclasses
from datetime import datetime
from typing import Any

from coordinator.types import InstanceStatus, Outcome
from engine.activities import ActivityOptions
from engine.tiers import TIER_CONFIG, VerificationStep, expiration_for, incremental_steps, validate_upgrade_path
from engine.validation import TierUpgradeInput
from engine.workflow import workflow_definition
from workflows.base import ProviderChecksMixin, VerificationWorkflow


@workflow_definition("tier_upgrade", input_schema=TierUpgradeInput)
class TierUpgradeWorkflow(ProviderChecksMixin, VerificationWorkflow):

    def __init__(self, ctx, input: TierUpgradeInput, activities=None):
        super().__init__(ctx, input, activities)
        self.current_tier = input.current_tier
        self.target_tier = input.target_tier
        self.kyc_status = "pending"
        self.inquiry_id: str | None = None
        self.background_check_id: str | None = None
        self.expires_at: datetime | None = None

    def build_steps(self) -> list[str]:
        added = incremental_steps(self.input.current_tier, self.input.target_tier)
        current_cfg = TIER_CONFIG[self.input.current_tier]
        target_cfg = TIER_CONFIG[self.input.target_tier]
        steps = ["validating"]
        if VerificationStep.IDENTITY in added or target_cfg.identity_level != current_cfg.identity_level:
            steps.append("upgrading_identity")
        if VerificationStep.SANCTIONS in added:
            steps.append("screening_sanctions")
        if VerificationStep.BACKGROUND_CHECK in added:
            steps.append("running_background_check")
        if VerificationStep.ACCREDITATION in added:
            steps.append("awaiting_accreditation")
        if self.input.require_bank_link:
            steps.append("linking_bank")
        steps.append("finalizing")
        return steps

    def snapshot(self) -> dict[str, Any]:
        snap = super().snapshot()
        snap.update({
            "current_tier": self.current_tier.value,
            "target_tier": self.target_tier.value,
            "kyc_status": self.kyc_status,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        })
        return snap

    @property
    def subject_name(self) -> str:
        return self.input.email.split("@")[0]

    # ─── Execution ───────────────────────────────────────────────────

    async def execute(self) -> dict[str, Any]:
        await self.run_step("validating", self._validate)
        if "upgrading_identity" in self.steps:
            await self.run_step("upgrading_identity", self._upgrade_identity)
        if "screening_sanctions" in self.steps:
            await self.run_step("screening_sanctions", self._screen_sanctions)
        if "running_background_check" in self.steps:
            await self.run_step("running_background_check", self._background_check)
        if "awaiting_accreditation" in self.steps:
            await self.run_step(
                "awaiting_accreditation", lambda: self.verify_accreditation("awaiting_accreditation"),
            )
        if "linking_bank" in self.steps:
            await self.run_step("linking_bank", self.link_bank)

        self.ctx.check_cancelled()
        async with self.ctx.non_cancellable():
            await self.run_step("finalizing", self._finalize)

        self.complete(InstanceStatus.APPROVED)
        await self.audit(
            "tier_upgrade_approved",
            from_tier=self.current_tier.value, to_tier=self.target_tier.value, flags=self.flags,
        )
        await self.notify_terminal(InstanceStatus.APPROVED)
        return self.snapshot()

    async def _validate(self) -> None:
        validate_upgrade_path(self.current_tier, self.target_tier)
        profile = await self.call(self.activities.get_kyc_profile, self.ctx.subject_id)
        rerun = {"identity"} if "upgrading_identity" in self.steps else set()
        rerun.update(s.value for s in incremental_steps(self.current_tier, self.target_tier))
        for provider, result in profile.results.items():
            if provider in rerun or result.outcome != Outcome.PASS:
                continue
            self.record(dataclasses.replace(result, reused=True))
        await self.audit(
            "tier_upgrade_started",
            from_tier=self.current_tier.value, to_tier=self.target_tier.value,
        )
        await self.call(
            self.activities.update_kyc_status, self.ctx.subject_id, "in_progress",
            tier=self.current_tier.value, target_tier=self.target_tier.value,
        )
        self.kyc_status = "in_progress"

    async def _upgrade_identity(self) -> None:
        level = TIER_CONFIG[self.target_tier].identity_level
        inquiry = await self.call(self.activities.create_identity_inquiry, self.ctx.subject_id, level)
        self.inquiry_id = inquiry.inquiry_id
        self.compensations.push(
            "reset_identity_inquiry",
            lambda: self.call(self.activities.reset_identity_inquiry, inquiry.inquiry_id,
                              options=ActivityOptions.CRITICAL),
        )
        await self.notify("identity_upgrade_required", inquiry_id=inquiry.inquiry_id, level=level)
        await self.verify_identity("upgrading_identity", inquiry.inquiry_id)

    async def _screen_sanctions(self) -> None:
        sanctions = await self.screen(
            "sanctions", self.activities.screen_sanctions, self.ctx.subject_id, self.subject_name,
        )
        self.enforce_sanctions(sanctions)

    async def _background_check(self) -> None:
        check = await self.start_background_check(TIER_CONFIG[self.target_tier].background_package)
        self.background_check_id = check.check_id
        await self.verify_background("running_background_check", check.check_id)

    async def on_terminal_failure(self, status: InstanceStatus) -> None:
        # A failed upgrade leaves the subject approved at the current tier.
        if self.kyc_status != "in_progress":
            return
        self.kyc_status = "approved"
        await self.ctx.fire_and_forget(
            self.activities.update_kyc_status, self.ctx.subject_id, "approved",
            tier=self.current_tier.value, upgrade_status=status.value, name="update_kyc_status",
        )

    async def _finalize(self) -> None:
        expires_at = expiration_for(self.target_tier, self.ctx.now())
        await self.call(
            self.activities.finalize_account, self.ctx.subject_id, self.target_tier.value, expires_at,
            options=ActivityOptions.CRITICAL,
        )
        await self.call(
            self.activities.update_kyc_status, self.ctx.subject_id, "approved",
            tier=self.target_tier.value, expires_at=expires_at.isoformat(),
            options=ActivityOptions.CRITICAL,
        )
        self.kyc_status = "approved"
        self.expires_at = expires_at
