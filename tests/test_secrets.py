"""
Verity — Webhook Secrets and TTL Cache Tests

Tests the env-backed SecretStore and the bounded TTLCache behind it.
Verifies expiry, LRU eviction, name mapping, signature checks, and that
secrets never appear in logs.
"""

import logging
import os
import sys
import threading
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from engine.cache import TTLCache
from engine.secrets import SecretStore, sign, verify_signature


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


# ═══════════════════════════════════════════════════════════════════
# TTLCache
# ═══════════════════════════════════════════════════════════════════

class TestTTLCache(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.cache = TTLCache(max_entries=3, ttl_seconds=10, clock=self.clock)

    def test_get_set(self):
        self.cache.set("a", 1)
        self.assertEqual(self.cache.get("a"), 1)
        self.assertIsNone(self.cache.get("b"))
        self.assertEqual(self.cache.get("b", "dflt"), "dflt")
        self.assertEqual((self.cache.hits, self.cache.misses), (1, 2))

    def test_expiry(self):
        self.cache.set("a", 1)
        self.cache.set("b", 2, ttl_seconds=60)
        self.clock.now += 10
        self.assertIsNone(self.cache.get("a"))
        self.assertEqual(self.cache.get("b"), 2)
        self.assertEqual(len(self.cache), 1)

    def test_lru_eviction(self):
        for key in ("a", "b", "c"):
            self.cache.set(key, key)
        self.cache.get("a")
        self.cache.set("d", "d")
        self.assertNotIn("b", self.cache)
        self.assertIn("a", self.cache)
        self.assertIn("d", self.cache)

    def test_get_or_load(self):
        calls = []

        def loader():
            calls.append(1)
            return "loaded"

        self.assertEqual(self.cache.get_or_load("k", loader), "loaded")
        self.assertEqual(self.cache.get_or_load("k", loader), "loaded")
        self.assertEqual(len(calls), 1)

    def test_falsy_values_cached(self):
        self.cache.set("zero", 0)
        self.assertEqual(self.cache.get_or_load("zero", lambda: 99), 0)

    def test_invalidate(self):
        self.cache.set("a", 1)
        self.cache.set("b", 2)
        self.cache.invalidate("a")
        self.assertNotIn("a", self.cache)
        self.cache.invalidate()
        self.assertEqual(len(self.cache), 0)

    def test_invalid_size(self):
        with self.assertRaises(ValueError):
            TTLCache(max_entries=0)

    def test_thread_safety(self):
        cache = TTLCache(max_entries=50)

        def worker(n):
            for i in range(200):
                cache.set(f"{n}-{i % 60}", i)
                cache.get(f"{n}-{(i + 1) % 60}")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertLessEqual(len(cache), 50)


# ═══════════════════════════════════════════════════════════════════
# SecretStore
# ═══════════════════════════════════════════════════════════════════

class TestSecretStore(unittest.TestCase):

    def setUp(self):
        self.env = {"VERITY_WEBHOOK_SECRET_IDENTITY": "id-secret"}
        self.store = SecretStore(environ=self.env)

    def test_env_name(self):
        self.assertEqual(SecretStore.env_name("identity"), "VERITY_WEBHOOK_SECRET_IDENTITY")
        self.assertEqual(SecretStore.env_name("background-check"), "VERITY_WEBHOOK_SECRET_BACKGROUND_CHECK")

    def test_webhook_secret(self):
        self.assertEqual(self.store.webhook_secret("identity"), "id-secret")
        self.assertEqual(self.store.webhook_secret("accreditation"), "")

    def test_default(self):
        self.assertEqual(self.store.get("MISSING", "fallback"), "fallback")
        self.assertEqual(self.store.cache_size, 0)

    def test_cached_until_cleared(self):
        self.store.webhook_secret("identity")
        self.env["VERITY_WEBHOOK_SECRET_IDENTITY"] = "rotated"
        self.assertEqual(self.store.webhook_secret("identity"), "id-secret")
        self.store.clear_cache()
        self.assertEqual(self.store.webhook_secret("identity"), "rotated")

    def test_cache_expiry_picks_up_rotation(self):
        clock = FakeClock()
        store = SecretStore(TTLCache(ttl_seconds=5, clock=clock), environ=self.env)
        store.webhook_secret("identity")
        self.env["VERITY_WEBHOOK_SECRET_IDENTITY"] = "rotated"
        clock.now += 6
        self.assertEqual(store.webhook_secret("identity"), "rotated")

    def test_secret_never_logged(self):
        with self.assertLogs("verity.secrets", level=logging.DEBUG) as logs:
            self.store.webhook_secret("identity")
            self.store.clear_cache()
        self.assertTrue(logs.output)
        self.assertFalse(any("id-secret" in line for line in logs.output))


# ═══════════════════════════════════════════════════════════════════
# Signatures
# ═══════════════════════════════════════════════════════════════════

class TestSignatures(unittest.TestCase):

    def test_round_trip_with_prefix(self):
        body = b'{"instance_id": "i-1"}'
        digest = sign("s3cret", body)
        self.assertEqual(len(digest), 64)
        self.assertTrue(verify_signature("s3cret", body, digest))
        self.assertTrue(verify_signature("s3cret", body, f"sha256={digest.upper()}"))

    def test_rejects_tampering(self):
        digest = sign("s3cret", b"original")
        self.assertFalse(verify_signature("s3cret", b"tampered", digest))
        self.assertFalse(verify_signature("other", b"original", digest))

    def test_missing_inputs(self):
        self.assertFalse(verify_signature("", b"x", sign("", b"x")))
        self.assertFalse(verify_signature("s3cret", b"x", None))


if __name__ == "__main__":
    unittest.main()
