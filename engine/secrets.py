"""
Verity — Webhook Signing Secrets

Resolves the shared secret each verification provider uses to sign its
webhook callbacks, and verifies those signatures.

Secrets come from environment variables named
VERITY_WEBHOOK_SECRET_<PROVIDER> (provider upper-cased, '-' → '_') and are
cached in a TTLCache owned by the store. Secrets are NEVER logged.

Usage:
    from engine.secrets import SecretStore, verify_signature

    store = SecretStore()
    secret = store.webhook_secret("identity")
    if not verify_signature(secret, raw_body, request.headers["X-Signature"]):
        ...
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import os

from engine.cache import TTLCache

logger = logging.getLogger("verity.secrets")

ENV_PREFIX = "VERITY_WEBHOOK_SECRET_"


class SecretStore:
    """
    Env-backed secret lookup with a bounded TTL cache.

    The cache is passed in (or created per store) so rotation in tests
    and in long-running processes is a matter of `clear_cache()`.
    """

    def __init__(self, cache: TTLCache | None = None, environ: dict[str, str] | None = None):
        self._cache = cache or TTLCache(max_entries=64, ttl_seconds=3600)
        self._environ = environ if environ is not None else os.environ

    def get(self, name: str, default: str = "") -> str:
        """
        Resolution order:
          1. Cache (if not expired)
          2. Environment variable
          3. Default value
        """
        cached = self._cache.get(name)
        if cached is not None:
            return cached

        value = self._environ.get(name, "")
        if value:
            self._cache.set(name, value)
            logger.debug("Secret loaded from environment: %s", name)
            return value
        return default

    def webhook_secret(self, provider: str) -> str:
        return self.get(self.env_name(provider))

    @staticmethod
    def env_name(provider: str) -> str:
        """identity-docs → VERITY_WEBHOOK_SECRET_IDENTITY_DOCS"""
        return ENV_PREFIX + provider.upper().replace("-", "_")

    def clear_cache(self):
        self._cache.invalidate()
        logger.info("Secret cache cleared")

    @property
    def cache_size(self) -> int:
        return len(self._cache)


def sign(secret: str, body: bytes) -> str:
    """HMAC-SHA256 hex digest of body."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str | None) -> bool:
    """Constant-time comparison of the provided signature against ours."""
    if not secret or not signature:
        return False
    provided = signature.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    return hmac.compare_digest(sign(secret, body), provided.lower())
