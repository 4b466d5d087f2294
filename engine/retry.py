"""
Verity — Retry Policy Catalog

Named backoff policies consumed by the activity invocation layer:

    default       1s → 30s,   ×2,  3 attempts    pure reads, collaborators
    critical      0.5s → 60s, ×2,  5 attempts    compliance / financial calls;
                                                 never retries validation or
                                                 authorization failures
    external_api  2s → 30s,   ×2,  4 attempts    third-party verification polling
    idempotent    1s → 120s,  ×2, 10 attempts    keyed writes safe to repeat
    no_retry      single attempt

Per-policy overrides come from the `retry:` section of config/verity.yaml
(or VERITY_RETRY__<POLICY>__<FIELD> environment variables).

Usage:
    from engine.retry import get_retry_policy, should_retry, compute_backoff

    policy = get_retry_policy("critical")
    if should_retry(err, attempt, policy):
        await sleep(compute_backoff(attempt, policy))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any

from engine.config import get_config_value
from engine.errors import ErrorKind, classify, is_retryable

logger = logging.getLogger("verity.retry")


# ═══════════════════════════════════════════════════════════════════
# Retry Policy
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters for one call site. Intervals are seconds."""
    name: str = "default"
    initial_interval: float = 1.0
    backoff_coefficient: float = 2.0
    maximum_attempts: int = 3
    maximum_interval: float = 30.0
    non_retryable_kinds: frozenset[ErrorKind] = field(default_factory=frozenset)

    @classmethod
    def from_mapping(cls, name: str, data: dict[str, Any], base: "RetryPolicy | None" = None) -> "RetryPolicy":
        """Build a policy from a config mapping; missing keys fall back to `base`."""
        base = base or cls(name=name)
        kinds = data.get("non_retryable_kinds")
        return replace(
            base,
            name=name,
            initial_interval=float(data.get("initial_interval", base.initial_interval)),
            backoff_coefficient=float(data.get("backoff_coefficient", base.backoff_coefficient)),
            maximum_attempts=int(data.get("maximum_attempts", base.maximum_attempts)),
            maximum_interval=float(data.get("maximum_interval", base.maximum_interval)),
            non_retryable_kinds=(
                frozenset(ErrorKind(k) for k in kinds) if kinds is not None
                else base.non_retryable_kinds
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "initial_interval": self.initial_interval,
            "backoff_coefficient": self.backoff_coefficient,
            "maximum_attempts": self.maximum_attempts,
            "maximum_interval": self.maximum_interval,
            "non_retryable_kinds": sorted(k.value for k in self.non_retryable_kinds),
        }


class RetryPolicies:
    """The named catalog. Call sites pick by idempotency and criticality."""
    DEFAULT = RetryPolicy(
        name="default", initial_interval=1.0, maximum_attempts=3, maximum_interval=30.0,
    )
    CRITICAL = RetryPolicy(
        name="critical", initial_interval=0.5, maximum_attempts=5, maximum_interval=60.0,
        non_retryable_kinds=frozenset({ErrorKind.VALIDATION, ErrorKind.AUTHORIZATION}),
    )
    EXTERNAL_API = RetryPolicy(
        name="external_api", initial_interval=2.0, maximum_attempts=4, maximum_interval=30.0,
    )
    IDEMPOTENT = RetryPolicy(
        name="idempotent", initial_interval=1.0, maximum_attempts=10, maximum_interval=120.0,
    )
    NO_RETRY = RetryPolicy(
        name="no_retry", initial_interval=0.0, maximum_attempts=1, maximum_interval=0.0,
    )


CATALOG: dict[str, RetryPolicy] = {
    p.name: p for p in (
        RetryPolicies.DEFAULT,
        RetryPolicies.CRITICAL,
        RetryPolicies.EXTERNAL_API,
        RetryPolicies.IDEMPOTENT,
        RetryPolicies.NO_RETRY,
    )
}


def get_retry_policy(name: str = "default", config: dict[str, Any] | None = None) -> RetryPolicy:
    """
    Resolve a catalog policy with overrides from config.

    Config format:
        retry:
          critical:
            maximum_attempts: 7
            maximum_interval: 90
    """
    try:
        base = CATALOG[name]
    except KeyError:
        raise ValueError(
            f"Unknown retry policy '{name}'. Available: {sorted(CATALOG)}"
        ) from None

    overrides = get_config_value(f"retry.{name}", config, default=None)
    if not overrides:
        return base
    if not isinstance(overrides, dict):
        logger.warning("Ignoring malformed retry override for %s: %r", name, overrides)
        return base
    return RetryPolicy.from_mapping(name, overrides, base=base)


# ═══════════════════════════════════════════════════════════════════
# Retry Logic
# ═══════════════════════════════════════════════════════════════════

def compute_backoff(attempt: int, policy: RetryPolicy) -> float:
    """
    Delay before the next attempt after the `attempt`-th failure (1-based).

    initial * coefficient ** (attempt - 1), capped at maximum_interval.
    No jitter, so delays are non-decreasing across attempts.
    """
    if attempt < 1:
        raise ValueError("attempt is 1-based")
    delay = policy.initial_interval * (policy.backoff_coefficient ** (attempt - 1))
    return max(0.0, min(delay, policy.maximum_interval))


def should_retry(error: BaseException, attempt: int, policy: RetryPolicy) -> bool:
    """True when another attempt is allowed after `attempt` failures."""
    if attempt >= policy.maximum_attempts:
        return False
    if not is_retryable(error):
        return False
    kind = classify(error)
    if kind is not None and kind in policy.non_retryable_kinds:
        return False
    return True
