"""
Verity — Input & Signal Payload Schemas

Pydantic contracts checked before any side effect occurs. Workflow
inputs are validated by the runtime at start(); signal payloads are
validated at signal() before they enter the instance's signal log.

validate_input() converts pydantic's error list into a classified,
non-retryable ValidationError with one issue per failing field.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from engine.errors import ErrorCode, ValidationError, validation_error
from engine.tiers import Tier

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$")
WALLET_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
REFERRAL_RE = re.compile(r"^[A-Za-z0-9-]{4,32}$")
COUNTRY_RE = re.compile(r"^[A-Z]{2}$")

OUTCOMES = ("pass", "fail", "needs_review", "pending")

# Provider vocabularies folded onto the four outcomes.
_OUTCOME_ALIASES = {
    "approved": "pass", "clear": "pass", "green": "pass", "verified": "pass",
    "completed": "pass",
    "declined": "fail", "rejected": "fail", "adverse": "fail",
    "adverse_action": "fail", "red": "fail", "failed": "fail",
    "consider": "needs_review", "review": "needs_review", "manual_review": "needs_review",
    "in_progress": "pending", "processing": "pending",
}


def normalize_outcome(value: str) -> str:
    v = str(value).strip().lower()
    v = _OUTCOME_ALIASES.get(v, v)
    if v not in OUTCOMES:
        raise ValueError(f"outcome must be one of {OUTCOMES}, got '{value}'")
    return v


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


# ---------------------------------------------------------------------------
# Workflow inputs
# ---------------------------------------------------------------------------

class UserProfile(_Strict):
    """Identity attributes passed to screening and background providers."""
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    date_of_birth: Optional[date] = Field(default=None, description="ISO date")
    country: Optional[str] = Field(default=None, description="ISO-3166 alpha-2")
    nationality: Optional[str] = Field(default=None, description="ISO-3166 alpha-2")

    @field_validator("country", "nationality")
    @classmethod
    def _iso_country(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.upper()
        if not COUNTRY_RE.match(v):
            raise ValueError("must be an ISO-3166 alpha-2 code")
        return v

    @field_validator("date_of_birth")
    @classmethod
    def _not_future(cls, v: Optional[date]) -> Optional[date]:
        if v is not None and v > date.today():
            raise ValueError("date of birth cannot be in the future")
        return v

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class _SubjectInput(_Strict):
    subject_id: str = Field(min_length=1, max_length=128)
    email: str = Field(min_length=3, max_length=254)

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        if not EMAIL_RE.match(v):
            raise ValueError("invalid email address")
        return v.lower()


class OnboardingInput(_SubjectInput):
    target_tier: Tier = Tier.BASIC
    referral_code: Optional[str] = None
    wallet_address: Optional[str] = None
    require_bank_link: bool = False
    user_data: Optional[UserProfile] = None

    @field_validator("target_tier")
    @classmethod
    def _real_tier(cls, v: Tier) -> Tier:
        if v == Tier.NONE:
            raise ValueError("target tier must be basic, enhanced or accredited")
        return v

    @field_validator("referral_code")
    @classmethod
    def _referral(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not REFERRAL_RE.match(v):
            raise ValueError("referral code must be 4-32 letters, digits or '-'")
        return v

    @field_validator("wallet_address")
    @classmethod
    def _wallet(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not WALLET_RE.match(v):
            raise ValueError("wallet address must be 0x followed by 40 hex characters")
        return v


class TierUpgradeInput(_SubjectInput):
    current_tier: Tier
    target_tier: Tier
    require_bank_link: bool = False


class ReverificationInput(_Strict):
    subject_id: str = Field(min_length=1, max_length=128)
    last_check_timestamp: Optional[datetime] = None
    cycle: int = Field(default=0, ge=0)
    carried_issues: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Signal payloads
# ---------------------------------------------------------------------------

class EmailVerifiedPayload(_Strict):
    token: str = Field(min_length=1)


class DocumentsSubmittedPayload(_Strict):
    reference: str = Field(min_length=1)


class AgreementsSignedPayload(_Strict):
    ids: list[str] = Field(min_length=1)


class ProviderCompletedPayload(_Strict):
    """Webhook-delivered completion of an asynchronous provider check."""
    provider: Literal["identity", "background_check", "accreditation"]
    outcome: str
    reason: str = ""
    reference: Optional[str] = None

    @field_validator("outcome")
    @classmethod
    def _outcome(cls, v: str) -> str:
        return normalize_outcome(v)


class CancelPayload(_Strict):
    reason: str = "cancelled by request"


class BankLinkedPayload(_Strict):
    public_token: str = Field(min_length=1)
    account_id: str = Field(min_length=1)
    institution_name: Optional[str] = None
    account_mask: Optional[str] = None


class ManualOverridePayload(_Strict):
    action: Literal["approve", "suspend"]
    reason: str = ""


class ReverificationCompletedPayload(_Strict):
    success: bool
    verification_id: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Validation entry point
# ---------------------------------------------------------------------------

def validate_input(schema: type[BaseModel], data: Any, label: str = "input") -> BaseModel:
    """
    Validate `data` against `schema`.

    Returns the model instance. Raises a non-retryable ValidationError whose
    `issues` list carries one {field, message} per failure.
    """
    if isinstance(data, schema):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump()
    try:
        return schema.model_validate(data if data is not None else {})
    except PydanticValidationError as e:
        issues = [
            {
                "field": ".".join(str(p) for p in err["loc"]) or label,
                "message": err["msg"],
            }
            for err in e.errors()
        ]
        summary = "; ".join(f"{i['field']}: {i['message']}" for i in issues)
        raise validation_error(
            f"Invalid {label}: {summary}",
            code=ErrorCode.VALIDATION_FAILED, issues=issues, schema=schema.__name__,
        ) from None


__all__ = [
    "OnboardingInput", "TierUpgradeInput", "ReverificationInput", "UserProfile",
    "EmailVerifiedPayload", "DocumentsSubmittedPayload", "AgreementsSignedPayload",
    "ProviderCompletedPayload", "CancelPayload", "BankLinkedPayload",
    "ManualOverridePayload", "ReverificationCompletedPayload",
    "validate_input", "normalize_outcome", "ValidationError",
]
