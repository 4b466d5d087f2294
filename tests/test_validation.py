"""
Verity — Input & Signal Payload Schema Tests

Tests:
  - Onboarding input: defaults, normalization, field-level issues
  - Tier upgrade and re-verification inputs
  - Signal payloads: provider outcome vocabulary, manual override actions
  - validate_input returns a classified, non-retryable error
"""

import os
import sys
import unittest
from datetime import date, timedelta

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from engine.errors import ErrorCode, ValidationError, is_retryable
from engine.tiers import Tier
from engine.validation import (
    AgreementsSignedPayload,
    ManualOverridePayload,
    OnboardingInput,
    ProviderCompletedPayload,
    ReverificationInput,
    TierUpgradeInput,
    normalize_outcome,
    validate_input,
)


def _fields(err):
    return {i["field"] for i in err.issues}


class TestOnboardingInput(unittest.TestCase):

    def test_minimal(self):
        data = validate_input(OnboardingInput, {"subject_id": "user-1", "email": "Ada@Example.com"})
        self.assertEqual(data.email, "ada@example.com")
        self.assertEqual(data.target_tier, Tier.BASIC)
        self.assertFalse(data.require_bank_link)
        self.assertIsNone(data.wallet_address)

    def test_full(self):
        data = validate_input(OnboardingInput, {
            "subject_id": "user-1",
            "email": "ada@example.com",
            "target_tier": "accredited",
            "referral_code": "FRIEND-2024",
            "wallet_address": "0x" + "ab" * 20,
            "require_bank_link": True,
            "user_data": {"first_name": "Ada", "last_name": "Lovelace", "country": "gb"},
        })
        self.assertEqual(data.target_tier, Tier.ACCREDITED)
        self.assertEqual(data.user_data.country, "GB")
        self.assertEqual(data.user_data.full_name, "Ada Lovelace")

    def test_bad_fields_reported_individually(self):
        with self.assertRaises(ValidationError) as cm:
            validate_input(OnboardingInput, {
                "subject_id": "user-1",
                "email": "not-an-email",
                "wallet_address": "0x123",
                "referral_code": "!!",
            })
        err = cm.exception
        self.assertEqual(_fields(err), {"email", "wallet_address", "referral_code"})
        self.assertEqual(err.code, ErrorCode.VALIDATION_FAILED)
        self.assertFalse(is_retryable(err))

    def test_none_tier_rejected(self):
        with self.assertRaises(ValidationError) as cm:
            validate_input(OnboardingInput, {"subject_id": "u", "email": "a@b.co", "target_tier": "none"})
        self.assertEqual(_fields(cm.exception), {"target_tier"})

    def test_unknown_field_rejected(self):
        with self.assertRaises(ValidationError):
            validate_input(OnboardingInput, {"subject_id": "u", "email": "a@b.co", "plan": "gold"})

    def test_future_birth_date(self):
        tomorrow = (date.today() + timedelta(days=1)).isoformat()
        with self.assertRaises(ValidationError) as cm:
            validate_input(OnboardingInput, {
                "subject_id": "u", "email": "a@b.co",
                "user_data": {"first_name": "A", "last_name": "B", "date_of_birth": tomorrow},
            })
        self.assertEqual(_fields(cm.exception), {"user_data.date_of_birth"})

    def test_missing_body(self):
        with self.assertRaises(ValidationError) as cm:
            validate_input(OnboardingInput, None)
        self.assertEqual(_fields(cm.exception), {"subject_id", "email"})

    def test_model_instance_passthrough(self):
        data = OnboardingInput(subject_id="u", email="a@b.co")
        self.assertIs(validate_input(OnboardingInput, data), data)


class TestOtherInputs(unittest.TestCase):

    def test_tier_upgrade(self):
        data = validate_input(TierUpgradeInput, {
            "subject_id": "u", "email": "a@b.co", "current_tier": "basic", "target_tier": "enhanced",
        })
        self.assertEqual((data.current_tier, data.target_tier), (Tier.BASIC, Tier.ENHANCED))

    def test_reverification_defaults(self):
        data = validate_input(ReverificationInput, {"subject_id": "u"})
        self.assertEqual(data.cycle, 0)
        self.assertEqual(data.carried_issues, [])
        self.assertIsNone(data.last_check_timestamp)

    def test_reverification_negative_cycle(self):
        with self.assertRaises(ValidationError):
            validate_input(ReverificationInput, {"subject_id": "u", "cycle": -1})


class TestSignalPayloads(unittest.TestCase):

    def test_outcome_vocabulary(self):
        self.assertEqual(normalize_outcome("Approved"), "pass")
        self.assertEqual(normalize_outcome("declined"), "fail")
        self.assertEqual(normalize_outcome("consider"), "needs_review")
        self.assertEqual(normalize_outcome("processing"), "pending")
        with self.assertRaises(ValueError):
            normalize_outcome("maybe")

    def test_provider_completed(self):
        payload = validate_input(ProviderCompletedPayload, {"provider": "identity", "outcome": "clear"}, "signal")
        self.assertEqual(payload.outcome, "pass")
        with self.assertRaises(ValidationError):
            validate_input(ProviderCompletedPayload, {"provider": "credit_bureau", "outcome": "pass"}, "signal")

    def test_manual_override(self):
        self.assertEqual(validate_input(ManualOverridePayload, {"action": "approve"}).action, "approve")
        with self.assertRaises(ValidationError):
            validate_input(ManualOverridePayload, {"action": "ignore"})

    def test_agreements_need_ids(self):
        with self.assertRaises(ValidationError):
            validate_input(AgreementsSignedPayload, {"ids": []})


if __name__ == "__main__":
    unittest.main()
