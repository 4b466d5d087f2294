"""
Verity — Simulated Activity Set

Deterministic, in-memory implementation of VerificationActivities used
by tests, demos and local runs. Provider outcomes are scripted, failures
can be injected per method, and every call is logged.

Calls that carry an idempotency key (through the current activity
context) are deduplicated: a second call with the same key returns the
first result without repeating the side effect, the way a keyed provider
API behaves when a retry follows a success whose acknowledgement was lost.

Usage:
    sim = SimulatedActivities()
    sim.script.identity_outcome = "fail"
    sim.script.identity_reason = "document mismatch"
    sim.fail("screen_sanctions", times=2)      # two provider errors, then OK
"""

from __future__ import annotations

import functools
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from activities.base import (
    AccountRecord,
    BackgroundCheck,
    BankLink,
    DocumentExpiration,
    IdentityInquiry,
    KycProfile,
    ScreeningResult,
    VerificationActivities,
    WalletScreening,
)
from activities.screening import risk_from_score
from coordinator.types import Outcome, VerificationResult
from engine.activities import current_activity
from engine.errors import external_service_error

logger = logging.getLogger("verity.activities.simulated")


@dataclass
class Script:
    """Provider outcomes the simulation returns."""
    identity_outcome: str = "pass"
    identity_reason: str = ""
    background_outcome: str = "pass"
    background_reason: str = ""
    sanctions: str = "clear"           # clear | match | critical
    watchlist: str = "clear"           # clear | match
    pep: bool = False
    wallet_risk_score: int = 10
    expired_documents: tuple[str, ...] = ()
    expiring_documents: dict[str, int] = field(default_factory=dict)
    referral_codes: dict[str, str] = field(default_factory=lambda: {"FRIEND-2024": "user-referrer"})


@dataclass
class _Failure:
    error: BaseException | None
    remaining: int | None              # None = every call


def _simulated(fn):
    """Record, inject failures, then dedupe on the activity's idempotency key."""
    method = fn.__name__

    @functools.wraps(fn)
    async def wrapper(self: SimulatedActivities, *args: Any, **kwargs: Any) -> Any:
        ctx = current_activity()
        key = ctx.idempotency_key if ctx is not None else None
        self.calls.append({"method": method, "args": args, "kwargs": kwargs, "idempotency_key": key})
        self._maybe_fail(method)
        if key is not None and (method, key) in self._memo:
            logger.debug("Idempotent replay: %s key=%s", method, key)
            return self._memo[(method, key)]
        result = await fn(self, *args, **kwargs)
        if key is not None:
            self._memo[(method, key)] = result
        return result

    return wrapper


class SimulatedActivities(VerificationActivities):
    """Scriptable in-memory providers, account store and collaborators."""

    def __init__(self, script: Script | None = None):
        self.script = script or Script()
        self.calls: list[dict[str, Any]] = []
        self._memo: dict[tuple[str, str], Any] = {}
        self._failures: dict[str, _Failure] = {}
        self._ids = itertools.count(1)

        # observable side effects
        self.emails_sent: list[str] = []
        self.accounts: dict[str, AccountRecord] = {}
        self.deleted_accounts: list[str] = []
        self.profiles: dict[str, KycProfile] = {}
        self.kyc_status: dict[str, dict[str, Any]] = {}
        self.suspended: dict[str, str] = {}
        self.reinstated: list[str] = []
        self.inquiries: dict[str, IdentityInquiry] = {}
        self.background_checks: dict[str, BackgroundCheck] = {}
        self.cancelled_checks: list[str] = []
        self.monitoring: dict[str, str] = {}
        self.bank_links: dict[str, BankLink] = {}
        self.unlinked: list[str] = []
        self.bonuses: dict[str, str] = {}
        self.revoked_bonuses: list[str] = []
        self.rewards: list[str] = []
        self.reverifications: list[str] = []
        self.audit_events: list[dict[str, Any]] = []
        self.notifications: list[dict[str, Any]] = []

    # ─── Test controls ───────────────────────────────────────────────

    def fail(self, method: str, error: BaseException | None = None, times: int | None = 1) -> None:
        """Make `method` raise `error` (default: retryable provider error) `times` times."""
        self._failures[method] = _Failure(error, times)

    def clear_failures(self) -> None:
        self._failures.clear()

    def call_count(self, method: str) -> int:
        return sum(1 for c in self.calls if c["method"] == method)

    def seed_profile(
        self,
        subject_id: str,
        email: str = "",
        tier: str = "basic",
        last_verified_at: datetime | None = None,
        results: dict[str, VerificationResult] | None = None,
        identity_inquiry_id: str | None = None,
    ) -> KycProfile:
        profile = KycProfile(
            subject_id=subject_id,
            email=email or f"{subject_id}@example.com",
            tier=tier,
            last_verified_at=last_verified_at,
            identity_inquiry_id=identity_inquiry_id,
            results=dict(results or {}),
        )
        self.profiles[subject_id] = profile
        return profile

    def _maybe_fail(self, method: str) -> None:
        failure = self._failures.get(method)
        if failure is None:
            return
        if failure.remaining is not None:
            if failure.remaining <= 0:
                return
            failure.remaining -= 1
        raise failure.error or external_service_error("simulated", f"{method} unavailable", status_code=503)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids):04d}"

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    # ─── Account ─────────────────────────────────────────────────────

    @_simulated
    async def send_verification_email(self, subject_id: str, email: str) -> str:
        self.emails_sent.append(email)
        return self._next_id("email")

    @_simulated
    async def create_account_record(self, subject_id: str, email: str, tier: str) -> AccountRecord:
        record = AccountRecord(self._next_id("acct"), subject_id, email, tier)
        self.accounts[record.account_id] = record
        return record

    @_simulated
    async def delete_account_record(self, account_id: str) -> None:
        self.accounts.pop(account_id, None)
        self.deleted_accounts.append(account_id)

    @_simulated
    async def finalize_account(self, subject_id: str, tier: str, expires_at: datetime) -> None:
        previous = self.profiles.get(subject_id)
        self.profiles[subject_id] = KycProfile(
            subject_id=subject_id,
            email=previous.email if previous else f"{subject_id}@example.com",
            tier=tier,
            last_verified_at=self._now(),
            identity_inquiry_id=previous.identity_inquiry_id if previous else None,
            results=dict(previous.results) if previous else {},
        )

    @_simulated
    async def suspend_account(self, subject_id: str, reason: str) -> None:
        self.suspended[subject_id] = reason

    @_simulated
    async def reinstate_account(self, subject_id: str, reason: str) -> None:
        self.suspended.pop(subject_id, None)
        self.reinstated.append(subject_id)

    @_simulated
    async def get_kyc_profile(self, subject_id: str) -> KycProfile:
        try:
            return self.profiles[subject_id]
        except KeyError:
            raise external_service_error(
                "account_store", f"no KYC profile for {subject_id}", status_code=404,
            ) from None

    @_simulated
    async def update_kyc_status(self, subject_id: str, status: str, **fields: Any) -> None:
        self.kyc_status[subject_id] = {"status": status, **fields}

    # ─── Identity documents ──────────────────────────────────────────

    @_simulated
    async def create_identity_inquiry(
        self, subject_id: str, level: str, profile: dict[str, Any] | None = None,
    ) -> IdentityInquiry:
        inquiry = IdentityInquiry(self._next_id("inq"), level, sdk_token=self._next_id("sdk"))
        self.inquiries[inquiry.inquiry_id] = inquiry
        return inquiry

    @_simulated
    async def wait_for_identity_result(self, inquiry_id: str) -> VerificationResult:
        ctx = current_activity()
        if ctx is not None:
            ctx.heartbeat({"inquiry_id": inquiry_id, "status": "polling"})
        return VerificationResult(
            provider="identity",
            reference_id=inquiry_id,
            outcome=Outcome(self.script.identity_outcome),
            reason=self.script.identity_reason,
        )

    @_simulated
    async def reset_identity_inquiry(self, inquiry_id: str) -> None:
        self.inquiries.pop(inquiry_id, None)

    # ─── Background check ────────────────────────────────────────────

    @_simulated
    async def create_background_check(
        self, subject_id: str, package: str, profile: dict[str, Any] | None = None,
    ) -> BackgroundCheck:
        check = BackgroundCheck(self._next_id("bgc"), package)
        self.background_checks[check.check_id] = check
        return check

    @_simulated
    async def wait_for_background_result(self, check_id: str) -> VerificationResult:
        ctx = current_activity()
        if ctx is not None:
            ctx.heartbeat({"check_id": check_id, "status": "polling"})
        return VerificationResult(
            provider="background_check",
            reference_id=check_id,
            outcome=Outcome(self.script.background_outcome),
            reason=self.script.background_reason,
        )

    @_simulated
    async def cancel_background_check(self, check_id: str) -> None:
        self.cancelled_checks.append(check_id)

    # ─── Screening ───────────────────────────────────────────────────

    def _screen(self, screen: str, verdict: str) -> ScreeningResult:
        matched = verdict in ("match", "critical")
        return ScreeningResult(
            screen=screen,
            screening_id=self._next_id(screen[:3]),
            matched=matched,
            risk_level="critical" if verdict == "critical" else ("high" if matched else "low"),
            details=f"{screen}: {verdict}",
        )

    @_simulated
    async def screen_sanctions(self, subject_id: str, name: str, profile: dict[str, Any] | None = None) -> ScreeningResult:
        return self._screen("sanctions", self.script.sanctions)

    @_simulated
    async def screen_watchlist(self, subject_id: str, name: str) -> ScreeningResult:
        return self._screen("watchlist", self.script.watchlist)

    @_simulated
    async def screen_pep(self, subject_id: str, name: str) -> ScreeningResult:
        return self._screen("pep", "match" if self.script.pep else "clear")

    @_simulated
    async def screen_wallet(self, address: str) -> WalletScreening:
        score = self.script.wallet_risk_score
        return WalletScreening(
            address=address,
            risk_score=score,
            matched=risk_from_score(score) == "critical",
            categories=("mixer",) if score > 75 else (),
        )

    @_simulated
    async def add_to_monitoring(self, subject_id: str, name: str) -> str:
        monitoring_id = self._next_id("mon")
        self.monitoring[monitoring_id] = subject_id
        return monitoring_id

    @_simulated
    async def remove_from_monitoring(self, monitoring_id: str) -> None:
        self.monitoring.pop(monitoring_id, None)

    # ─── Accreditation ───────────────────────────────────────────────

    @_simulated
    async def create_accreditation_request(self, subject_id: str, email: str, name: str) -> str:
        return self._next_id("accr")

    # ─── Bank link ───────────────────────────────────────────────────

    @_simulated
    async def create_bank_link_token(self, subject_id: str) -> str:
        return self._next_id("link-token")

    @_simulated
    async def exchange_bank_token(self, public_token: str, account_id: str) -> BankLink:
        link = BankLink(item_id=self._next_id("item"), account_id=account_id)
        self.bank_links[link.item_id] = link
        return link

    @_simulated
    async def unlink_bank_account(self, item_id: str) -> None:
        self.bank_links.pop(item_id, None)
        self.unlinked.append(item_id)

    # ─── Referral & reward ───────────────────────────────────────────

    @_simulated
    async def verify_referral_code(self, code: str) -> str | None:
        return self.script.referral_codes.get(code)

    @_simulated
    async def apply_referral_bonus(self, subject_id: str, code: str) -> str:
        bonus_id = self._next_id("bonus")
        self.bonuses[bonus_id] = subject_id
        return bonus_id

    @_simulated
    async def revoke_referral_bonus(self, bonus_id: str) -> None:
        self.bonuses.pop(bonus_id, None)
        self.revoked_bonuses.append(bonus_id)

    @_simulated
    async def mint_welcome_reward(self, subject_id: str, wallet_address: str) -> str:
        tx = self._next_id("tx")
        self.rewards.append(tx)
        return tx

    # ─── Periodic re-verification ────────────────────────────────────

    @_simulated
    async def check_document_expiration(self, subject_id: str) -> DocumentExpiration:
        return DocumentExpiration(
            expired=tuple(self.script.expired_documents),
            expiring=dict(self.script.expiring_documents),
        )

    @_simulated
    async def initiate_reverification(self, subject_id: str, reasons: list[str]) -> str:
        verification_id = self._next_id("rv")
        self.reverifications.append(verification_id)
        return verification_id

    # ─── Collaborators ───────────────────────────────────────────────

    @_simulated
    async def log_audit_event(self, subject_id: str, action: str, metadata: dict[str, Any] | None = None) -> None:
        self.audit_events.append({"subject_id": subject_id, "action": action, "metadata": dict(metadata or {})})

    @_simulated
    async def send_notification(self, subject_id: str, template: str, data: dict[str, Any] | None = None) -> None:
        self.notifications.append({"subject_id": subject_id, "template": template, "data": dict(data or {})})
