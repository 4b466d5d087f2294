"""
Verity — Periodic Re-verification Workflow Tests

Tests:
  - Clean cycles continue as new until max_cycles, carrying only the timestamp and counter
  - Critical sanctions match suspends; approve override reinstates and continues
  - Suspend override or no decision ends the chain suspended
  - Watchlist match, expired documents and overdue verification require re-verification
  - Re-verification failure or timeout suspends the account
  - PEP match is flagged only; expiring documents notify
  - Screening outage fails closed; carry_issues carries open issues
  - Cancellation during the cycle sleep
"""

import asyncio
import os
import sys
import unittest
from datetime import datetime, timedelta, timezone

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from activities.simulated import Script, SimulatedActivities
from coordinator.types import InstanceStatus
from engine.config import deep_merge, load_config
from workflows import create_runtime


def make_runtime(script=None, **config):
    sim = SimulatedActivities(script)
    cfg = deep_merge(load_config(include_env_vars=False), config)
    return sim, create_runtime(sim, config=cfg, timer_scale=1e-8)


class ReverificationTestCase(unittest.IsolatedAsyncioTestCase):
    script = None
    max_cycles = 1
    last_verified_days_ago = 10

    async def asyncSetUp(self):
        self.sim, self.runtime = make_runtime(self.script, reverification={"max_cycles": self.max_cycles})
        self.seed()

    async def asyncTearDown(self):
        await self.runtime.shutdown()

    async def replace_runtime(self, script=None, **config):
        await self.runtime.shutdown()
        self.sim, self.runtime = make_runtime(script, **config)
        self.seed()

    def seed(self, tier="basic"):
        verified = datetime.now(timezone.utc) - timedelta(days=self.last_verified_days_ago)
        self.sim.seed_profile("user-1", email="ada@example.com", tier=tier, last_verified_at=verified)

    async def start(self, **input):
        return await self.runtime.start("reverification", {"subject_id": "user-1", **input})

    async def finish(self, instance_id):
        record = await self.runtime.join(instance_id)
        return record, self.runtime.query(instance_id)

    def templates(self):
        return [n["template"] for n in self.sim.notifications]


# ═══════════════════════════════════════════════════════════════════
# Clean cycles
# ═══════════════════════════════════════════════════════════════════

class TestCleanCycles(ReverificationTestCase):
    max_cycles = 3

    async def test_continue_as_new_until_max_cycles(self):
        instance_id = await self.start()
        record, snap = await self.finish(instance_id)

        self.assertEqual(record.status, InstanceStatus.APPROVED)
        self.assertEqual(record.chain_length, 3)
        self.assertEqual(snap["cycle"], 2)
        runs = self.runtime.store.get_runs(instance_id)
        self.assertEqual([r["status"] for r in runs], ["continued", "continued", "approved"])
        self.assertEqual([r["input"]["cycle"] for r in runs], [0, 1, 2])
        self.assertIsNone(runs[0]["input"]["last_check_timestamp"])
        self.assertIsNotNone(runs[1]["input"]["last_check_timestamp"])
        self.assertEqual(runs[1]["input"]["carried_issues"], [])

        self.assertEqual(self.sim.call_count("screen_sanctions"), 3)
        self.assertEqual(self.sim.call_count("initiate_reverification"), 0)
        self.assertEqual(self.sim.suspended, {})
        self.assertEqual(snap["sanctions_status"], "clear")
        self.assertIsNotNone(snap["next_scheduled_check"])

    async def test_steps_skipped_when_nothing_to_do(self):
        instance_id = await self.start()
        _, snap = await self.finish(instance_id)
        states = {s["name"]: s["status"] for s in snap["steps"]}
        self.assertEqual(states["awaiting_manual_override"], "skipped")
        self.assertEqual(states["reverifying"], "skipped")
        self.assertEqual(states["scheduling_next"], "completed")


# ═══════════════════════════════════════════════════════════════════
# Critical sanctions
# ═══════════════════════════════════════════════════════════════════

class TestCriticalSanctions(ReverificationTestCase):
    script = Script(sanctions="critical")

    async def test_no_decision_suspends(self):
        instance_id = await self.start()
        record, snap = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.SUSPENDED)
        self.assertTrue(snap["account_suspended"])
        self.assertIn("user-1", self.sim.suspended)
        self.assertEqual(self.sim.call_count("initiate_reverification"), 0)
        self.assertEqual(self.templates().count("reverification_suspended"), 1)
        self.assertIn("account_suspended", self.templates())

    async def test_suspend_decision(self):
        instance_id = await self.start()
        await self.runtime.signal(instance_id, "manual_override", {"action": "suspend", "reason": "confirmed hit"})
        output = await self.runtime.result(instance_id)
        self.assertEqual(output["status"], "suspended")
        terminal = next(n for n in self.sim.notifications if n["template"] == "reverification_suspended")
        self.assertIn("confirmed hit", terminal["data"]["reason"])

    async def test_approve_override_reinstates(self):
        instance_id = await self.start()
        await self.runtime.signal(instance_id, "manual_override", {"action": "approve", "reason": "false positive"})
        await self.runtime.signal(instance_id, "reverification_completed", {"success": True, "verification_id": "rv-1"})
        record, snap = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.APPROVED)
        self.assertEqual(self.sim.reinstated, ["user-1"])
        self.assertEqual(self.sim.suspended, {})
        self.assertFalse(snap["account_suspended"])


class TestPotentialSanctionsMatch(ReverificationTestCase):
    script = Script(sanctions="match")

    async def test_requires_reverification_without_suspension(self):
        instance_id = await self.start()
        await self.runtime.signal(instance_id, "reverification_completed", {"success": True, "verification_id": "rv-1"})
        record, snap = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.APPROVED)
        self.assertEqual(self.sim.call_count("suspend_account"), 0)
        self.assertEqual(self.sim.call_count("initiate_reverification"), 1)
        self.assertEqual(snap["issues"], [])


# ═══════════════════════════════════════════════════════════════════
# Re-verification outcomes
# ═══════════════════════════════════════════════════════════════════

class TestWatchlistMatch(ReverificationTestCase):
    script = Script(watchlist="match")

    async def test_failed_reverification_suspends(self):
        instance_id = await self.start()
        await self.runtime.signal(instance_id, "reverification_completed", {"success": False, "verification_id": "rv-1"})
        record, snap = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.SUSPENDED)
        self.assertEqual(self.sim.suspended["user-1"], "Re-verification failed")
        self.assertEqual(snap["watchlist_status"], "flagged")

    async def test_timeout_suspends(self):
        instance_id = await self.start()
        record, _ = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.SUSPENDED)
        self.assertEqual(self.sim.suspended["user-1"], "Re-verification not completed in time")
        self.assertIn("reverification_required", self.templates())


class TestExpiredDocuments(ReverificationTestCase):
    script = Script(expired_documents=("passport",))

    async def test_reverified(self):
        instance_id = await self.start()
        await self.runtime.signal(instance_id, "reverification_completed", {"success": True, "verification_id": "rv-1"})
        record, snap = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.APPROVED)
        self.assertEqual(snap["document_status"], "valid")
        reasons = self.sim.calls[[c["method"] for c in self.sim.calls].index("initiate_reverification")]["args"][1]
        self.assertTrue(any("passport" in r for r in reasons))


class TestOverdueVerification(ReverificationTestCase):
    last_verified_days_ago = 400

    async def test_due_requires_reverification(self):
        instance_id = await self.start()
        record, snap = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.SUSPENDED)
        self.assertTrue(any("Periodic re-verification due" in i for i in snap["issues"]))

    async def test_interval_follows_tier(self):
        self.last_verified_days_ago = 120
        self.seed(tier="accredited")
        instance_id = await self.start()
        await self.runtime.signal(instance_id, "reverification_completed", {"success": True, "verification_id": "rv-1"})
        record, _ = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.APPROVED)
        self.assertEqual(self.sim.call_count("initiate_reverification"), 1)


# ═══════════════════════════════════════════════════════════════════
# Flags, notifications, config
# ═══════════════════════════════════════════════════════════════════

class TestPepAndExpiring(ReverificationTestCase):
    script = Script(pep=True, expiring_documents={"passport": 12, "utility_bill": 90})

    async def test_flag_only(self):
        instance_id = await self.start()
        record, snap = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.APPROVED)
        self.assertIn("pep_match", snap["flags"])
        self.assertEqual(snap["pep_status"], "flagged")
        self.assertEqual(snap["document_status"], "expiring_soon")
        self.assertEqual(self.sim.call_count("initiate_reverification"), 0)
        expiring = next(n for n in self.sim.notifications if n["template"] == "document_expiring")
        self.assertEqual(expiring["data"]["documents"], ["passport"])


class TestCarryIssues(ReverificationTestCase):
    script = Script(pep=True)

    async def test_open_issues_carried(self):
        await self.replace_runtime(self.script, reverification={"max_cycles": 2, "carry_issues": True})
        instance_id = await self.start()
        await self.finish(instance_id)
        runs = self.runtime.store.get_runs(instance_id)
        self.assertEqual(len(runs), 2)
        self.assertTrue(any("Pep match" in i for i in runs[1]["input"]["carried_issues"]))


class TestScreeningOutage(ReverificationTestCase):

    async def test_fails_closed(self):
        self.sim.fail("screen_watchlist", times=None)
        instance_id = await self.start()
        await self.runtime.signal(instance_id, "reverification_completed", {"success": True, "verification_id": "rv-1"})
        record, _ = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.APPROVED)
        self.assertEqual(self.sim.call_count("initiate_reverification"), 1)


class TestCancellation(ReverificationTestCase):
    max_cycles = None

    async def test_cancel_during_cycle_sleep(self):
        await self.replace_runtime(reverification={"cycle_sleep": 10 ** 9})
        instance_id = await self.start()
        for _ in range(500):
            await asyncio.sleep(0.001)
            if self.runtime.query(instance_id)["progress"] == 100.0:
                break
        await self.runtime.cancel(instance_id, "subject closed account")
        record, _ = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.CANCELLED)
        self.assertEqual(record.chain_length, 1)


class TestMissingProfile(ReverificationTestCase):

    async def test_failed(self):
        instance_id = await self.runtime.start("reverification", {"subject_id": "ghost"})
        record, _ = await self.finish(instance_id)
        self.assertEqual(record.status, InstanceStatus.FAILED)


if __name__ == "__main__":
    unittest.main()
