"""
Verity — Provider Webhook Tests

Tests:
  - WebhookVerifier: unknown provider, missing secret, bad and good signatures
  - Secret cache sizing comes from config
  - to_signal: document events, final statuses, missing fields
"""

import json
import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from api.webhooks import WebhookVerifier, to_signal
from engine.errors import AuthorizationError, ErrorCode, ValidationError
from engine.secrets import SecretStore, sign


class TestWebhookVerifier(unittest.TestCase):

    def setUp(self):
        secrets = SecretStore(environ={"VERITY_WEBHOOK_SECRET_IDENTITY": "whsec"})
        self.verifier = WebhookVerifier(secrets)
        self.body = json.dumps({"instance_id": "i-1", "status": "approved"}).encode()

    def test_valid_signature(self):
        self.verifier.verify("identity", self.body, sign("whsec", self.body))

    def test_invalid_signature(self):
        with self.assertRaises(AuthorizationError) as cm:
            self.verifier.verify("identity", self.body, sign("wrong", self.body))
        self.assertEqual(cm.exception.code, ErrorCode.UNAUTHORIZED)

    def test_missing_signature(self):
        with self.assertRaises(AuthorizationError):
            self.verifier.verify("identity", self.body, None)

    def test_secret_not_configured(self):
        with self.assertRaises(AuthorizationError) as cm:
            self.verifier.verify("accreditation", self.body, sign("whsec", self.body))
        self.assertIn("not configured", cm.exception.message)

    def test_unknown_provider(self):
        with self.assertRaises(ValidationError):
            self.verifier.verify("sanctions", self.body, "x")

    def test_cache_sized_from_config(self):
        verifier = WebhookVerifier(config={"webhooks": {"secret_cache_size": 2, "secret_cache_ttl": 5}})
        self.assertEqual(verifier.secrets._cache.max_entries, 2)
        self.assertEqual(verifier.secrets._cache.ttl_seconds, 5.0)


class TestToSignal(unittest.TestCase):

    def test_document_event(self):
        instance_id, name, payload = to_signal("identity", {
            "instance_id": "i-1", "event": "inquiry.submitted", "id": "inq_7",
        })
        self.assertEqual((instance_id, name), ("i-1", "documents_submitted"))
        self.assertEqual(payload, {"reference": "inq_7"})

    def test_document_event_without_reference(self):
        _, _, payload = to_signal("identity", {"instance_id": "i-1", "event": "submitted"})
        self.assertEqual(payload["reference"], "i-1")

    def test_final_status(self):
        _, name, payload = to_signal("background_check", {
            "instance_id": "i-2", "status": "consider", "reason": "record found", "reference": "bgc_1",
        })
        self.assertEqual(name, "provider_completed")
        self.assertEqual(payload, {
            "provider": "background_check", "outcome": "consider",
            "reason": "record found", "reference": "bgc_1",
        })

    def test_outcome_alias(self):
        _, _, payload = to_signal("accreditation", {"instance_id": "i-3", "outcome": "pass"})
        self.assertEqual(payload["outcome"], "pass")
        self.assertNotIn("reference", payload)

    def test_missing_instance_id(self):
        with self.assertRaises(ValidationError) as cm:
            to_signal("identity", {"status": "approved"})
        self.assertEqual(cm.exception.issues[0]["field"], "instance_id")

    def test_missing_status(self):
        with self.assertRaises(ValidationError) as cm:
            to_signal("identity", {"instance_id": "i-1"})
        self.assertEqual(cm.exception.issues[0]["field"], "status")

    def test_not_an_object(self):
        with self.assertRaises(ValidationError):
            to_signal("identity", ["i-1"])


if __name__ == "__main__":
    unittest.main()
