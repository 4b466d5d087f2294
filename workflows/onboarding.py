"""
Verity — Onboarding Workflow

New-subject KYC from email verification to an approved account:

    validating → sending_verification → awaiting_email_verification →
    creating_account → initiating_verification → awaiting_verification →
    running_background_checks → [screening_wallet] → [awaiting_accreditation] →
    awaiting_agreements → [linking_bank] → finalizing → [minting_reward]

Bracketed steps are included only when the target tier or the input asks
for them; the list is fixed before the first step runs. The background
check inside running_background_checks runs only for tiers that require
it, fanned out alongside the sanctions screen.

Compensations (most recent first on failure):
    creating_account            → delete_account_record
    running_background_checks   → cancel_background_check, remove_from_monitoring
    linking_bank                → unlink_bank_account
    finalizing                  → revoke_referral_bonus
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from activities.screening import fail_closed_wallet, risk_from_score
from coordinator.types import InstanceStatus
from engine.activities import ActivityOptions
from engine.config import get_config_value
from engine.errors import ErrorCode, compliance_blocked_error, describe
from engine.tiers import TIER_CONFIG, VerificationStep, expiration_for, steps_for
from engine.validation import (
    AgreementsSignedPayload,
    EmailVerifiedPayload,
    OnboardingInput,
)
from engine.workflow import signal, workflow_definition
from workflows.base import ProviderChecksMixin, StepSkipped, VerificationWorkflow


@workflow_definition("onboarding", input_schema=OnboardingInput)
class OnboardingWorkflow(ProviderChecksMixin, VerificationWorkflow):

    def __init__(self, ctx, input: OnboardingInput, activities=None):
        self.email_token: str | None = None
        self.agreement_ids: list[str] | None = None
        super().__init__(ctx, input, activities)
        self.tier = input.target_tier
        self.tier_config = TIER_CONFIG[self.tier]
        self.referral_code: str | None = None
        self.referrer: str | None = None
        self.account_id: str | None = None
        self.inquiry_id: str | None = None
        self.background_check_id: str | None = None
        self.monitoring_id: str | None = None
        self.screenings: dict[str, dict[str, Any]] = {}
        self.bonus_id: str | None = None
        self.reward_tx: str | None = None
        self.kyc_status = "pending"
        self.expires_at: datetime | None = None

    def build_steps(self) -> list[str]:
        tier_steps = steps_for(self.input.target_tier)
        steps = [
            "validating",
            "sending_verification",
            "awaiting_email_verification",
            "creating_account",
            "initiating_verification",
            "awaiting_verification",
            "running_background_checks",
        ]
        if self.input.wallet_address:
            steps.append("screening_wallet")
        if VerificationStep.ACCREDITATION in tier_steps:
            steps.append("awaiting_accreditation")
        steps.append("awaiting_agreements")
        if self.input.require_bank_link:
            steps.append("linking_bank")
        steps.append("finalizing")
        if self.input.wallet_address:
            steps.append("minting_reward")
        return steps

    # ─── Signals ─────────────────────────────────────────────────────

    @signal("email_verified", schema=EmailVerifiedPayload)
    def on_email_verified(self, payload: EmailVerifiedPayload) -> None:
        if self.email_token is None:
            self.email_token = payload.token

    @signal("agreements_signed", schema=AgreementsSignedPayload)
    def on_agreements_signed(self, payload: AgreementsSignedPayload) -> None:
        if self.agreement_ids is None:
            self.agreement_ids = list(payload.ids)

    # ─── Query ───────────────────────────────────────────────────────

    def snapshot(self) -> dict[str, Any]:
        snap = super().snapshot()
        snap.update({
            "target_tier": self.tier.value,
            "kyc_status": self.kyc_status,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "account_id": self.account_id,
            "screenings": dict(self.screenings),
            "referrer": self.referrer,
            "reward_tx": self.reward_tx,
        })
        return snap

    # ─── Execution ───────────────────────────────────────────────────

    @property
    def subject_name(self) -> str:
        if self.input.user_data is not None:
            return self.input.user_data.full_name
        return self.input.email.split("@")[0]

    @property
    def profile(self) -> dict[str, Any] | None:
        if self.input.user_data is None:
            return None
        return self.input.user_data.model_dump(mode="json")

    async def execute(self) -> dict[str, Any]:
        await self.audit("onboarding_started", target_tier=self.tier.value)
        await self.run_step("validating", self._validate)
        await self.run_step("sending_verification", self._send_verification)
        await self.run_step(
            "awaiting_email_verification",
            lambda: self.await_signal(
                "awaiting_email_verification", lambda: self.email_token is not None, "email_verification",
            ),
        )
        await self.run_step("creating_account", self._create_account)
        await self.run_step("initiating_verification", self._initiate_verification)
        await self.run_step("awaiting_verification", self._await_verification)
        await self.run_step("running_background_checks", self._background_checks)
        if "screening_wallet" in self.steps:
            await self.run_step("screening_wallet", self._screen_wallet)
        if "awaiting_accreditation" in self.steps:
            await self.run_step(
                "awaiting_accreditation", lambda: self.verify_accreditation("awaiting_accreditation"),
            )
        await self.run_step(
            "awaiting_agreements",
            lambda: self.await_signal(
                "awaiting_agreements", lambda: self.agreement_ids is not None, "agreements_signing",
            ),
        )
        if "linking_bank" in self.steps:
            await self.run_step("linking_bank", self.link_bank)

        self.ctx.check_cancelled()
        async with self.ctx.non_cancellable():
            await self.run_step("finalizing", self._finalize)
            if "minting_reward" in self.steps:
                await self.run_step("minting_reward", self._mint_reward)

        self.complete(InstanceStatus.APPROVED)
        await self.audit("onboarding_approved", tier=self.tier.value, flags=self.flags)
        await self.notify_terminal(InstanceStatus.APPROVED)
        return self.snapshot()

    async def _validate(self) -> None:
        code = self.input.referral_code
        if not code:
            return
        referrer = await self.call(self.activities.verify_referral_code, code)
        if referrer is None:
            # An unknown code never blocks onboarding.
            self.log.warning("referral_code_invalid", code=code)
            self.errors.append({"step": "validating", "code": "INVALID_REFERRAL_CODE", "message": code})
            return
        self.referral_code, self.referrer = code, referrer

    async def _send_verification(self) -> None:
        await self.dedup.execute_once(
            "send_verification_email",
            lambda: self.call(self.activities.send_verification_email, self.ctx.subject_id, self.input.email),
        )

    async def _create_account(self) -> None:
        account = await self.call(
            self.activities.create_account_record,
            self.ctx.subject_id, self.input.email, self.tier.value,
            options=ActivityOptions.CRITICAL,
        )
        self.account_id = account.account_id
        self.compensations.push(
            "delete_account_record",
            lambda: self.call(self.activities.delete_account_record, account.account_id,
                              options=ActivityOptions.CRITICAL),
        )
        await self.call(self.activities.update_kyc_status, self.ctx.subject_id, "in_progress",
                        tier=self.tier.value)
        self.kyc_status = "in_progress"

    async def _initiate_verification(self) -> None:
        inquiry = await self.call(
            self.activities.create_identity_inquiry,
            self.ctx.subject_id, self.tier_config.identity_level, self.profile,
        )
        self.inquiry_id = inquiry.inquiry_id
        await self.notify("identity_verification_started", inquiry_id=inquiry.inquiry_id)

    async def _await_verification(self) -> None:
        await self.verify_identity("awaiting_verification", self.inquiry_id or "")

    async def _background_checks(self) -> None:
        needs_background = VerificationStep.BACKGROUND_CHECK in self.tier_config.required_steps
        calls = [self.screen("sanctions", self.activities.screen_sanctions,
                             self.ctx.subject_id, self.subject_name, self.profile)]
        if needs_background:
            calls.append(self.call(
                self.activities.create_background_check,
                self.ctx.subject_id, self.tier_config.background_package, self.profile,
            ))
        sanctions, *rest = await self.ctx.gather(*calls, return_exceptions=True)

        check = rest[0] if rest else None
        if check is not None and not isinstance(check, BaseException):
            self.background_check_id = check.check_id
            self.push_background_cancel(check)

        self.screenings["sanctions"] = sanctions.to_dict()
        self.enforce_sanctions(sanctions)
        if isinstance(check, BaseException):
            raise check

        monitoring_id = await self.call(
            self.activities.add_to_monitoring, self.ctx.subject_id, self.subject_name,
        )
        self.monitoring_id = monitoring_id
        self.compensations.push(
            "remove_from_monitoring",
            lambda: self.call(self.activities.remove_from_monitoring, monitoring_id,
                              options=ActivityOptions.CRITICAL),
        )

        if check is not None:
            await self.verify_background("running_background_checks", check.check_id)

    async def _screen_wallet(self) -> None:
        address = self.input.wallet_address
        screening = await fail_closed_wallet(
            address, self.call(self.activities.screen_wallet, address, options=ActivityOptions.CRITICAL),
        )
        threshold = get_config_value("screening.wallet_block_threshold", self.ctx.config, 75)
        self.screenings["wallet"] = {
            "address": address, "risk_score": screening.risk_score,
            "categories": list(screening.categories), "error": screening.error,
        }
        if screening.error is not None:
            raise compliance_blocked_error(
                "Wallet screening unavailable; failing closed",
                code=ErrorCode.SCREENING_UNAVAILABLE, screen="wallet", error=screening.error,
            )
        if screening.risk_score > threshold:
            raise compliance_blocked_error(
                f"Wallet risk score {screening.risk_score} exceeds threshold {threshold}",
                code=ErrorCode.WALLET_HIGH_RISK, screen="wallet",
                risk_score=screening.risk_score, risk_level=risk_from_score(screening.risk_score),
            )

    async def _finalize(self) -> None:
        if self.referral_code:
            bonus_id = await self.call(
                self.activities.apply_referral_bonus, self.ctx.subject_id, self.referral_code,
                options=ActivityOptions.CRITICAL,
            )
            self.bonus_id = bonus_id
            self.compensations.push(
                "revoke_referral_bonus",
                lambda: self.call(self.activities.revoke_referral_bonus, bonus_id,
                                  options=ActivityOptions.CRITICAL),
            )
        expires_at = expiration_for(self.tier, self.ctx.now())
        await self.call(
            self.activities.finalize_account, self.ctx.subject_id, self.tier.value, expires_at,
            options=ActivityOptions.CRITICAL,
        )
        await self.call(
            self.activities.update_kyc_status, self.ctx.subject_id, "approved",
            tier=self.tier.value, expires_at=expires_at.isoformat(),
            options=ActivityOptions.CRITICAL,
        )
        self.kyc_status = "approved"
        self.expires_at = expires_at

    async def _mint_reward(self) -> None:
        try:
            self.reward_tx = await self.call(
                self.activities.mint_welcome_reward, self.ctx.subject_id, self.input.wallet_address,
            )
        except Exception as e:
            # Reward minting never undoes an approved onboarding.
            self.errors.append({"step": "minting_reward", "fatal": False, **describe(e)})
            raise StepSkipped(f"reward minting failed: {e}") from e
