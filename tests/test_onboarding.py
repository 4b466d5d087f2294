"""
Verity — Onboarding Workflow Tests

End-to-end scenarios over the simulated providers with compressed timers:
  - Happy path per tier, including accreditation and bank link
  - Identity declined: rejected, account compensated, no background check
  - Email never verified: expired, nothing to compensate
  - Adverse background check: rejected with every compensation run
  - Sanctions: critical match blocks, potential match flags, outage fails closed
  - Wallet screening and reward minting
  - Referral codes, cancellation, duplicate start, single terminal notification
  - Configured retry overrides change the attempt count
"""

import asyncio
import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from activities.simulated import Script, SimulatedActivities
from coordinator.types import InstanceStatus
from engine.config import deep_merge, load_config
from engine.errors import ComplianceBlockedError, ErrorCode, StepTimeout, ValidationError
from engine.workflow import WorkflowCancelled
from workflows import create_runtime

WALLET = "0x" + "ab" * 20


def make_runtime(script=None, **config):
    sim = SimulatedActivities(script)
    cfg = deep_merge(load_config(include_env_vars=False), config)
    return sim, create_runtime(sim, config=cfg, timer_scale=1e-8)


class OnboardingTestCase(unittest.IsolatedAsyncioTestCase):
    script = None

    async def asyncSetUp(self):
        self.sim, self.runtime = make_runtime(self.script)

    async def asyncTearDown(self):
        await self.runtime.shutdown()

    async def start(self, email_verified=True, documents=True, agreements=True, **input):
        data = {"subject_id": "user-1", "email": "ada@example.com", **input}
        instance_id = await self.runtime.start("onboarding", data)
        if email_verified:
            await self.runtime.signal(instance_id, "email_verified", {"token": "tok-1"})
        if documents:
            await self.runtime.signal(instance_id, "documents_submitted", {"reference": "doc-1"})
        if agreements:
            await self.runtime.signal(instance_id, "agreements_signed", {"ids": ["tos", "privacy"]})
        return instance_id

    async def finish(self, instance_id):
        record = await self.runtime.join(instance_id)
        return record, self.runtime.query(instance_id)

    def templates(self):
        return [n["template"] for n in self.sim.notifications]


# ═══════════════════════════════════════════════════════════════════
# Happy paths
# ═══════════════════════════════════════════════════════════════════

class TestHappyPath(OnboardingTestCase):

    async def test_basic_tier(self):
        instance_id = await self.start()
        output = await self.runtime.result(instance_id)
        record, snap = await self.finish(instance_id)

        self.assertEqual(record.status, InstanceStatus.APPROVED)
        self.assertEqual(output["status"], "approved")
        self.assertEqual(snap["kyc_status"], "approved")
        self.assertEqual(snap["progress"], 100.0)
        self.assertIsNotNone(snap["expires_at"])
        self.assertEqual(set(snap["results"]), {"identity", "sanctions"})
        self.assertEqual(self.sim.kyc_status["user-1"]["status"], "approved")
        self.assertEqual(self.sim.call_count("create_background_check"), 0)
        self.assertEqual(len(self.sim.accounts), 1)
        self.assertEqual(self.sim.deleted_accounts, [])
        self.assertEqual(self.templates().count("onboarding_approved"), 1)
        self.assertIn("onboarding_started", [e["action"] for e in self.sim.audit_events])

    async def test_step_order(self):
        instance_id = await self.start()
        _, snap = await self.finish(instance_id)
        self.assertEqual([s["name"] for s in snap["steps"]], [
            "validating", "sending_verification", "awaiting_email_verification",
            "creating_account", "initiating_verification", "awaiting_verification",
            "running_background_checks", "awaiting_agreements", "finalizing",
        ])
        self.assertTrue(all(s["status"] == "completed" for s in snap["steps"]))

    async def test_enhanced_runs_background_check(self):
        instance_id = await self.start(target_tier="enhanced")
        record, snap = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.APPROVED)
        self.assertEqual(set(snap["results"]), {"identity", "sanctions", "background_check"})
        self.assertEqual(list(self.sim.background_checks.values())[0].package, "standard")
        self.assertEqual(len(self.sim.monitoring), 1)

    async def test_accredited_waits_for_accreditation(self):
        instance_id = await self.start(target_tier="accredited")
        await self.runtime.signal(instance_id, "provider_completed", {
            "provider": "accreditation", "outcome": "approved", "reference": "accr-ext-1",
        })
        record, snap = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.APPROVED)
        self.assertEqual(snap["results"]["accreditation"]["reference_id"], "accr-ext-1")
        self.assertIn("accreditation_action_required", self.templates())
        self.assertEqual(list(self.sim.background_checks.values())[0].package, "pro")

    async def test_bank_link(self):
        instance_id = await self.start(require_bank_link=True)
        await self.runtime.signal(instance_id, "bank_linked", {
            "public_token": "public-1", "account_id": "bank-acct-1", "institution_name": "First Bank",
        })
        _, snap = await self.finish(instance_id)
        self.assertEqual(snap["results"]["bank_link"]["outcome"], "pass")
        self.assertEqual(len(self.sim.bank_links), 1)

    async def test_bank_link_not_completed_is_skipped(self):
        instance_id = await self.start(require_bank_link=True)
        record, snap = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.APPROVED)
        step = next(s for s in snap["steps"] if s["name"] == "linking_bank")
        self.assertEqual(step["status"], "skipped")

    async def test_verification_email_sent_once(self):
        instance_id = await self.start()
        await self.finish(instance_id)
        self.assertEqual(self.sim.emails_sent, ["ada@example.com"])


# ═══════════════════════════════════════════════════════════════════
# Rejections
# ═══════════════════════════════════════════════════════════════════

class TestIdentityDeclined(OnboardingTestCase):
    script = Script(identity_outcome="fail", identity_reason="document mismatch")

    async def test_rejected_and_account_removed(self):
        instance_id = await self.start(target_tier="enhanced")
        with self.assertRaises(ComplianceBlockedError) as cm:
            await self.runtime.result(instance_id)
        self.assertEqual(cm.exception.code, ErrorCode.IDENTITY_REJECTED)

        record, snap = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.REJECTED)
        self.assertIn("document mismatch", snap["failure_reason"])
        self.assertEqual(snap["failed_step"], "awaiting_verification")
        self.assertEqual(self.sim.call_count("create_background_check"), 0)
        self.assertEqual(self.sim.deleted_accounts, [snap["account_id"]])
        self.assertEqual(self.sim.kyc_status["user-1"]["status"], "rejected")
        self.assertEqual(self.templates().count("onboarding_rejected"), 1)


class TestEmailNeverVerified(OnboardingTestCase):

    async def test_expired_without_compensation(self):
        instance_id = await self.start(email_verified=False)
        with self.assertRaises(StepTimeout):
            await self.runtime.result(instance_id)
        record, snap = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.EXPIRED)
        self.assertIn("email_verification", snap["failure_reason"])
        self.assertEqual(snap["compensations"], [])
        self.assertEqual(self.sim.accounts, {})
        self.assertEqual(self.sim.call_count("delete_account_record"), 0)


class TestAdverseBackground(OnboardingTestCase):
    script = Script(background_outcome="fail", background_reason="criminal record")

    async def test_rejected_with_all_compensations(self):
        instance_id = await self.start(target_tier="enhanced")
        record, snap = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.REJECTED)
        self.assertEqual(record.error["code"], "BACKGROUND_CHECK_ADVERSE")
        executed = [c["name"] for c in snap["compensations"] if c["executed"]]
        self.assertEqual(executed, ["remove_from_monitoring", "cancel_background_check", "delete_account_record"])
        self.assertEqual(len(self.sim.cancelled_checks), 1)
        self.assertEqual(self.sim.monitoring, {})
        self.assertEqual(len(self.sim.deleted_accounts), 1)


class TestCriticalSanctions(OnboardingTestCase):
    script = Script(sanctions="critical")

    async def test_blocked(self):
        instance_id = await self.start(target_tier="enhanced")
        record, snap = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.REJECTED)
        self.assertEqual(record.error["code"], "SANCTIONS_MATCH")
        self.assertEqual(snap["results"]["sanctions"]["outcome"], "fail")
        self.assertEqual(len(self.sim.cancelled_checks), 1)
        self.assertEqual(self.sim.call_count("add_to_monitoring"), 0)


class TestPotentialSanctionsMatch(OnboardingTestCase):
    script = Script(sanctions="match")

    async def test_flagged_and_approved(self):
        instance_id = await self.start()
        record, snap = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.APPROVED)
        self.assertIn("sanctions_potential_match", snap["flags"])
        self.assertEqual(snap["results"]["sanctions"]["outcome"], "needs_review")


class TestScreeningOutage(OnboardingTestCase):

    async def test_fails_closed(self):
        self.sim.fail("screen_sanctions", times=None)
        instance_id = await self.start()
        record, snap = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.REJECTED)
        self.assertEqual(record.error["code"], "SCREENING_UNAVAILABLE")
        self.assertEqual(self.sim.call_count("screen_sanctions"), 5)
        self.assertEqual(len(self.sim.deleted_accounts), 1)


class TestConfiguredRetry(OnboardingTestCase):

    async def test_critical_override_limits_attempts(self):
        await self.runtime.shutdown()
        self.sim, self.runtime = make_runtime(retry={"critical": {"maximum_attempts": 1}})
        self.sim.fail("create_account_record", times=3)
        instance_id = await self.start()
        record, _ = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.FAILED)
        self.assertEqual(self.sim.call_count("create_account_record"), 1)

    async def test_catalog_attempts_without_override(self):
        self.sim.fail("create_account_record", times=3)
        instance_id = await self.start()
        record, _ = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.APPROVED)
        self.assertEqual(self.sim.call_count("create_account_record"), 4)


class TestIdentityNeedsReview(OnboardingTestCase):
    script = Script(identity_outcome="needs_review", identity_reason="blurry selfie")

    async def test_flagged_and_continues(self):
        instance_id = await self.start()
        record, snap = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.APPROVED)
        self.assertEqual(snap["flags"], ["identity_needs_review"])


# ═══════════════════════════════════════════════════════════════════
# Wallet & reward
# ═══════════════════════════════════════════════════════════════════

class TestWallet(OnboardingTestCase):

    async def test_low_risk_mints_reward(self):
        instance_id = await self.start(wallet_address=WALLET)
        record, snap = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.APPROVED)
        self.assertEqual(snap["screenings"]["wallet"]["risk_score"], 10)
        self.assertEqual(snap["reward_tx"], self.sim.rewards[0])

    async def test_high_risk_blocked(self):
        self.sim.script.wallet_risk_score = 90
        instance_id = await self.start(wallet_address=WALLET)
        record, _ = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.REJECTED)
        self.assertEqual(record.error["code"], "WALLET_HIGH_RISK")
        self.assertEqual(self.sim.rewards, [])
        self.assertEqual(len(self.sim.deleted_accounts), 1)

    async def test_threshold_from_config(self):
        self.sim, self.runtime = make_runtime(
            Script(wallet_risk_score=60), screening={"wallet_block_threshold": 50},
        )
        instance_id = await self.start(wallet_address=WALLET)
        record, _ = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.REJECTED)

    async def test_reward_failure_is_not_fatal(self):
        self.sim.fail("mint_welcome_reward", times=None)
        instance_id = await self.start(wallet_address=WALLET)
        record, snap = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.APPROVED)
        self.assertIsNone(snap["reward_tx"])
        step = next(s for s in snap["steps"] if s["name"] == "minting_reward")
        self.assertEqual(step["status"], "skipped")
        self.assertTrue(any(e["step"] == "minting_reward" for e in snap["errors"]))


# ═══════════════════════════════════════════════════════════════════
# Referral, cancellation, concurrency
# ═══════════════════════════════════════════════════════════════════

class TestReferral(OnboardingTestCase):

    async def test_valid_code_applies_bonus(self):
        instance_id = await self.start(referral_code="FRIEND-2024")
        _, snap = await self.finish(instance_id)
        self.assertEqual(snap["referrer"], "user-referrer")
        self.assertEqual(list(self.sim.bonuses.values()), ["user-1"])

    async def test_unknown_code_ignored(self):
        instance_id = await self.start(referral_code="NOPE-0000")
        record, snap = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.APPROVED)
        self.assertEqual(snap["errors"][0]["code"], "INVALID_REFERRAL_CODE")
        self.assertEqual(self.sim.bonuses, {})

    async def test_bonus_revoked_when_finalize_fails(self):
        self.sim.fail("finalize_account", ValidationError("account locked"))
        instance_id = await self.start(referral_code="FRIEND-2024")
        record, _ = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.REJECTED)
        self.assertEqual(len(self.sim.revoked_bonuses), 1)
        self.assertEqual(self.sim.bonuses, {})


class TestCancellation(OnboardingTestCase):

    async def test_cancel_while_waiting_for_email(self):
        instance_id = await self.start(email_verified=False)
        await self.runtime.cancel(instance_id, "user abandoned signup")
        with self.assertRaises(WorkflowCancelled):
            await self.runtime.result(instance_id)
        record, snap = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.CANCELLED)
        self.assertEqual(self.templates().count("onboarding_cancelled"), 1)

    async def test_cancelled_instances_leave_live_registry(self):
        ids = []
        for n in range(5):
            ids.append(await self.runtime.start("onboarding", {"subject_id": f"user-{n}", "email": f"u{n}@example.com"}))
        for instance_id in ids:
            await self.runtime.cancel(instance_id, "load test cleanup")
        records = [await self.runtime.join(instance_id) for instance_id in ids]
        self.assertEqual({r.status for r in records}, {InstanceStatus.CANCELLED})
        self.assertEqual(len(self.runtime._live), 0)
        self.assertEqual(self.runtime.query(ids[0])["status"], "cancelled")

    async def test_cancel_after_account_created_compensates(self):
        self.sim, self.runtime = make_runtime(waits={"document_submission": 10 ** 9})
        instance_id = await self.start(documents=False)
        for _ in range(500):
            await asyncio.sleep(0.001)
            if self.runtime.query(instance_id)["account_id"]:
                break
        await self.runtime.cancel(instance_id)
        record, snap = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.CANCELLED)
        self.assertEqual(self.sim.deleted_accounts, [snap["account_id"]])


class TestConcurrency(OnboardingTestCase):

    async def test_one_onboarding_per_subject(self):
        await self.start(email_verified=False)
        with self.assertRaises(ValidationError) as cm:
            await self.runtime.start("onboarding", {"subject_id": "user-1", "email": "ada@example.com"})
        self.assertEqual(cm.exception.code, ErrorCode.WORKFLOW_ALREADY_RUNNING)

    async def test_invalid_input_rejected_before_side_effects(self):
        with self.assertRaises(ValidationError):
            await self.runtime.start("onboarding", {"subject_id": "user-1", "email": "nope"})
        self.assertEqual(self.sim.calls, [])


if __name__ == "__main__":
    unittest.main()
