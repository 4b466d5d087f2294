"""
Verity — Verification Activity Set

The boundary between the workflows and every external collaborator:
identity, background-check, sanctions, accreditation and bank-link
providers, the account store, audit log and notifications.

Every method is a single idempotent request/response call. Provider
adapters implement this interface; workflows only ever call it through
the activity invocation layer (retries, timeouts, heartbeats).
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from coordinator.types import VerificationResult


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─── Result Types ───────────────────────────────────────────────────

@dataclass(frozen=True)
class AccountRecord:
    account_id: str
    subject_id: str
    email: str
    tier: str
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class IdentityInquiry:
    inquiry_id: str
    level: str
    sdk_token: str = ""


@dataclass(frozen=True)
class BackgroundCheck:
    check_id: str
    package: str


@dataclass(frozen=True)
class ScreeningResult:
    """One compliance screen. `error` set means the provider never answered."""
    screen: str
    screening_id: str = ""
    matched: bool = False
    risk_level: str = "low"        # low | medium | high | critical
    details: str = ""
    error: str | None = None

    @property
    def flagged(self) -> bool:
        return self.matched or self.error is not None

    @property
    def critical(self) -> bool:
        return self.matched and self.risk_level == "critical"

    def to_dict(self) -> dict[str, Any]:
        return {
            "screen": self.screen,
            "screening_id": self.screening_id,
            "matched": self.matched,
            "risk_level": self.risk_level,
            "details": self.details,
            "error": self.error,
            "flagged": self.flagged,
        }


@dataclass(frozen=True)
class WalletScreening:
    address: str
    risk_score: int
    matched: bool = False
    categories: tuple[str, ...] = ()
    error: str | None = None


@dataclass(frozen=True)
class DocumentExpiration:
    expired: tuple[str, ...] = ()
    expiring: dict[str, int] = field(default_factory=dict)   # document → days left

    @property
    def any_expired(self) -> bool:
        return bool(self.expired)

    def expiring_within(self, days: int) -> list[str]:
        return sorted(doc for doc, left in self.expiring.items() if left <= days)


@dataclass(frozen=True)
class KycProfile:
    subject_id: str
    email: str
    tier: str
    last_verified_at: datetime | None = None
    identity_inquiry_id: str | None = None
    results: dict[str, VerificationResult] = field(default_factory=dict)


@dataclass(frozen=True)
class BankLink:
    item_id: str
    account_id: str
    institution_name: str | None = None
    account_mask: str | None = None
    linked_at: datetime = field(default_factory=_utcnow)


# ─── Activity Interface ─────────────────────────────────────────────

class VerificationActivities(abc.ABC):
    """Abstract activity set. All methods are coroutines."""

    # account
    @abc.abstractmethod
    async def send_verification_email(self, subject_id: str, email: str) -> str: ...

    @abc.abstractmethod
    async def create_account_record(self, subject_id: str, email: str, tier: str) -> AccountRecord: ...

    @abc.abstractmethod
    async def delete_account_record(self, account_id: str) -> None: ...

    @abc.abstractmethod
    async def finalize_account(self, subject_id: str, tier: str, expires_at: datetime) -> None: ...

    @abc.abstractmethod
    async def suspend_account(self, subject_id: str, reason: str) -> None: ...

    @abc.abstractmethod
    async def reinstate_account(self, subject_id: str, reason: str) -> None: ...

    @abc.abstractmethod
    async def get_kyc_profile(self, subject_id: str) -> KycProfile: ...

    @abc.abstractmethod
    async def update_kyc_status(self, subject_id: str, status: str, **fields: Any) -> None: ...

    # identity documents
    @abc.abstractmethod
    async def create_identity_inquiry(
        self, subject_id: str, level: str, profile: dict[str, Any] | None = None,
    ) -> IdentityInquiry: ...

    @abc.abstractmethod
    async def wait_for_identity_result(self, inquiry_id: str) -> VerificationResult: ...

    @abc.abstractmethod
    async def reset_identity_inquiry(self, inquiry_id: str) -> None: ...

    # background check
    @abc.abstractmethod
    async def create_background_check(
        self, subject_id: str, package: str, profile: dict[str, Any] | None = None,
    ) -> BackgroundCheck: ...

    @abc.abstractmethod
    async def wait_for_background_result(self, check_id: str) -> VerificationResult: ...

    @abc.abstractmethod
    async def cancel_background_check(self, check_id: str) -> None: ...

    # screening
    @abc.abstractmethod
    async def screen_sanctions(self, subject_id: str, name: str, profile: dict[str, Any] | None = None) -> ScreeningResult: ...

    @abc.abstractmethod
    async def screen_watchlist(self, subject_id: str, name: str) -> ScreeningResult: ...

    @abc.abstractmethod
    async def screen_pep(self, subject_id: str, name: str) -> ScreeningResult: ...

    @abc.abstractmethod
    async def screen_wallet(self, address: str) -> WalletScreening: ...

    @abc.abstractmethod
    async def add_to_monitoring(self, subject_id: str, name: str) -> str: ...

    @abc.abstractmethod
    async def remove_from_monitoring(self, monitoring_id: str) -> None: ...

    # accreditation
    @abc.abstractmethod
    async def create_accreditation_request(self, subject_id: str, email: str, name: str) -> str: ...

    # bank link
    @abc.abstractmethod
    async def create_bank_link_token(self, subject_id: str) -> str: ...

    @abc.abstractmethod
    async def exchange_bank_token(self, public_token: str, account_id: str) -> BankLink: ...

    @abc.abstractmethod
    async def unlink_bank_account(self, item_id: str) -> None: ...

    # referral & reward
    @abc.abstractmethod
    async def verify_referral_code(self, code: str) -> str | None: ...

    @abc.abstractmethod
    async def apply_referral_bonus(self, subject_id: str, code: str) -> str: ...

    @abc.abstractmethod
    async def revoke_referral_bonus(self, bonus_id: str) -> None: ...

    @abc.abstractmethod
    async def mint_welcome_reward(self, subject_id: str, wallet_address: str) -> str: ...

    # periodic re-verification
    @abc.abstractmethod
    async def check_document_expiration(self, subject_id: str) -> DocumentExpiration: ...

    @abc.abstractmethod
    async def initiate_reverification(self, subject_id: str, reasons: list[str]) -> str: ...

    # collaborators (fire-and-forget)
    @abc.abstractmethod
    async def log_audit_event(self, subject_id: str, action: str, metadata: dict[str, Any] | None = None) -> None: ...

    @abc.abstractmethod
    async def send_notification(self, subject_id: str, template: str, data: dict[str, Any] | None = None) -> None: ...
