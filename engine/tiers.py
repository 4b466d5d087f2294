"""
Verity — Tier Configuration

Static mapping from verification tier to the steps it requires, the
provider packages it uses and how long its approval lasts. Workflows
build their step lists from `steps_for` before execution starts and
never branch on tier inside a step body.

    basic       identity + sanctions                     365 days
    enhanced    + background check (standard package)    180 days
    accredited  + accreditation (pro package)             90 days
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from engine.errors import ErrorCode, authorization_error, validation_error


class Tier(str, Enum):
    NONE = "none"
    BASIC = "basic"
    ENHANCED = "enhanced"
    ACCREDITED = "accredited"

    @property
    def rank(self) -> int:
        return _ORDER.index(self)

    def __lt__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank >= other.rank


_ORDER = [Tier.NONE, Tier.BASIC, Tier.ENHANCED, Tier.ACCREDITED]
MAX_TIER = _ORDER[-1]


class VerificationStep(str, Enum):
    IDENTITY = "identity"
    SANCTIONS = "sanctions"
    WALLET = "wallet"
    BACKGROUND_CHECK = "background_check"
    ACCREDITATION = "accreditation"
    BANK_LINK = "bank_link"


@dataclass(frozen=True)
class TierConfig:
    required_steps: tuple[VerificationStep, ...]
    identity_level: str
    expiration: timedelta
    reverification_interval: timedelta
    background_package: str | None = None


TIER_CONFIG: dict[Tier, TierConfig] = {
    Tier.NONE: TierConfig(
        required_steps=(),
        identity_level="none",
        expiration=timedelta(0),
        reverification_interval=timedelta(days=365),
    ),
    Tier.BASIC: TierConfig(
        required_steps=(VerificationStep.IDENTITY, VerificationStep.SANCTIONS),
        identity_level="basic",
        expiration=timedelta(days=365),
        reverification_interval=timedelta(days=365),
    ),
    Tier.ENHANCED: TierConfig(
        required_steps=(
            VerificationStep.IDENTITY,
            VerificationStep.SANCTIONS,
            VerificationStep.BACKGROUND_CHECK,
        ),
        identity_level="enhanced",
        expiration=timedelta(days=180),
        reverification_interval=timedelta(days=180),
        background_package="standard",
    ),
    Tier.ACCREDITED: TierConfig(
        required_steps=(
            VerificationStep.IDENTITY,
            VerificationStep.SANCTIONS,
            VerificationStep.BACKGROUND_CHECK,
            VerificationStep.ACCREDITATION,
        ),
        identity_level="enhanced",
        expiration=timedelta(days=90),
        reverification_interval=timedelta(days=90),
        background_package="pro",
    ),
}


def steps_for(tier: Tier | str) -> tuple[VerificationStep, ...]:
    """Ordered verification steps a tier requires."""
    return TIER_CONFIG[Tier(tier)].required_steps


def incremental_steps(current: Tier | str, target: Tier | str) -> tuple[VerificationStep, ...]:
    """Steps `target` requires that `current` does not already cover."""
    have = set(steps_for(current))
    return tuple(s for s in steps_for(target) if s not in have)


def validate_upgrade_path(current: Tier | str, target: Tier | str) -> None:
    """
    Upgrades move exactly one tier up.

    Raises:
        ValidationError: target equals current
        AuthorizationError: already at the maximum, downgrade, or a skipped tier
    """
    current, target = Tier(current), Tier(target)
    if current == target:
        raise validation_error(
            f"Already at {target.value} tier",
            code=ErrorCode.ALREADY_AT_TIER,
            current_tier=current.value, target_tier=target.value,
        )
    if current == MAX_TIER:
        raise authorization_error(
            "Already at highest tier",
            code=ErrorCode.INVALID_UPGRADE_PATH,
            current_tier=current.value, target_tier=target.value,
        )
    if target < current:
        raise authorization_error(
            f"Cannot downgrade from {current.value} to {target.value}",
            code=ErrorCode.INVALID_UPGRADE_PATH,
            current_tier=current.value, target_tier=target.value,
        )
    if target.rank > current.rank + 1:
        required = _ORDER[current.rank + 1]
        raise authorization_error(
            f"Must upgrade to {required.value} tier first",
            code=ErrorCode.INVALID_UPGRADE_PATH,
            current_tier=current.value, target_tier=target.value,
            required_tier=required.value,
        )


def reverification_interval(tier: Tier | str) -> timedelta:
    return TIER_CONFIG[Tier(tier)].reverification_interval


def expiration_for(tier: Tier | str, approved_at: datetime) -> datetime:
    return approved_at + TIER_CONFIG[Tier(tier)].expiration
