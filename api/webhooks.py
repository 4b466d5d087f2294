"""
Verity — Provider Webhooks

Verifies the HMAC signature on provider callbacks and translates their
bodies into workflow signals.

    identity           documents submitted  → documents_submitted
                       final status         → provider_completed
    background_check   final status         → provider_completed
    accreditation      final status         → provider_completed

Bodies carry the target `instance_id`, a `status` (or `outcome`) in the
provider's vocabulary, and optionally `reason` and `reference`. The
vocabulary is normalized by the provider_completed schema.

Usage:
    verifier = WebhookVerifier()
    verifier.verify("identity", raw_body, request.headers.get("X-Signature"))
    instance_id, name, payload = to_signal("identity", json.loads(raw_body))
"""

from __future__ import annotations

import logging
from typing import Any

from engine.cache import TTLCache
from engine.config import get_config_value
from engine.errors import authorization_error, validation_error
from engine.secrets import SecretStore, verify_signature

logger = logging.getLogger("verity.api.webhooks")

PROVIDERS = ("identity", "background_check", "accreditation")
DOCUMENT_EVENTS = {"documents_submitted", "inquiry.submitted", "submitted"}


class WebhookVerifier:
    """Signature check against the provider's shared secret."""

    def __init__(self, secrets: SecretStore | None = None, config: dict[str, Any] | None = None):
        if secrets is None:
            cache = TTLCache(
                max_entries=int(get_config_value("webhooks.secret_cache_size", config, 64)),
                ttl_seconds=float(get_config_value("webhooks.secret_cache_ttl", config, 3600)),
            )
            secrets = SecretStore(cache)
        self.secrets = secrets

    def verify(self, provider: str, body: bytes, signature: str | None) -> None:
        """
        Raises:
            ValidationError: unknown provider
            AuthorizationError: no secret configured, or signature mismatch
        """
        if provider not in PROVIDERS:
            raise validation_error(f"Unknown webhook provider '{provider}'", provider=provider)
        secret = self.secrets.webhook_secret(provider)
        if not secret:
            logger.error("No webhook secret configured for provider=%s", provider)
            raise authorization_error(f"Webhook secret not configured for {provider}", provider=provider)
        if not verify_signature(secret, body, signature):
            logger.warning("Webhook signature mismatch (provider=%s)", provider)
            raise authorization_error("Invalid webhook signature", provider=provider)


def to_signal(provider: str, body: Any) -> tuple[str, str, dict[str, Any]]:
    """
    Map a verified webhook body to (instance_id, signal name, payload).

    Raises:
        ValidationError: body is not an object, or has no instance_id or status
    """
    if not isinstance(body, dict):
        raise validation_error("Webhook body must be a JSON object", provider=provider)
    instance_id = body.get("instance_id")
    if not instance_id or not isinstance(instance_id, str):
        raise validation_error(
            "Webhook body has no instance_id", provider=provider,
            issues=[{"field": "instance_id", "message": "required"}],
        )
    reference = body.get("reference") or body.get("id")

    if provider == "identity" and body.get("event") in DOCUMENT_EVENTS:
        return instance_id, "documents_submitted", {"reference": str(reference or instance_id)}

    status = body.get("status") or body.get("outcome")
    if not status:
        raise validation_error(
            "Webhook body has no status", provider=provider,
            issues=[{"field": "status", "message": "required"}],
        )
    payload: dict[str, Any] = {"provider": provider, "outcome": str(status), "reason": str(body.get("reason") or "")}
    if reference:
        payload["reference"] = str(reference)
    return instance_id, "provider_completed", payload
