"""
Verity — Structured Error Taxonomy

Typed failures so the activity layer and workflow code can distinguish:
- Business / validation / compliance failures → terminal, never retried
- Provider and timeout failures → retried per policy, then terminal
- Compensation failures → terminal, manual remediation

Every error carries: kind, retryable flag, code, structured context and
a UTC timestamp.

Usage:
    from engine.errors import compliance_blocked_error, is_retryable

    raise compliance_blocked_error(
        "Sanctions screening: critical match",
        code=ErrorCode.SANCTIONS_MATCH,
        screen="sanctions", risk_level="critical",
    )
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    COMPLIANCE_BLOCKED = "compliance_blocked"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    EXTERNAL_SERVICE = "external_service"
    TIMEOUT = "timeout"
    COMPENSATION_FAILED = "compensation_failed"


class ErrorCode:
    """Machine-readable error codes surfaced in snapshots and audit events."""
    VALIDATION_FAILED = "VALIDATION_FAILED"
    INVALID_UPGRADE_PATH = "INVALID_UPGRADE_PATH"
    ALREADY_AT_TIER = "ALREADY_AT_TIER"
    WORKFLOW_ALREADY_RUNNING = "WORKFLOW_ALREADY_RUNNING"
    UNAUTHORIZED = "UNAUTHORIZED"
    SANCTIONS_MATCH = "SANCTIONS_MATCH"
    WALLET_HIGH_RISK = "WALLET_HIGH_RISK"
    IDENTITY_REJECTED = "IDENTITY_REJECTED"
    BACKGROUND_CHECK_ADVERSE = "BACKGROUND_CHECK_ADVERSE"
    ACCREDITATION_REJECTED = "ACCREDITATION_REJECTED"
    SCREENING_UNAVAILABLE = "SCREENING_UNAVAILABLE"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    STEP_TIMEOUT = "STEP_TIMEOUT"
    WAIT_EXPIRED = "WAIT_EXPIRED"
    CANCELLED = "CANCELLED"
    COMPENSATION_FAILED = "COMPENSATION_FAILED"
    INSTANCE_ORPHANED = "INSTANCE_ORPHANED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════
# Base
# ═══════════════════════════════════════════════════════════════

class VerityError(Exception):
    """Base exception for every classified failure."""
    kind: ErrorKind = ErrorKind.VALIDATION
    retryable: bool = False
    default_code: str = ErrorCode.VALIDATION_FAILED

    def __init__(
        self,
        message: str = "",
        *,
        code: str | None = None,
        retryable: bool | None = None,
        **context: Any,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        if retryable is not None:
            self.retryable = retryable
        self.context: dict[str, Any] = dict(context)
        self.timestamp = _utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "context": {k: _plain(v) for k, v in self.context.items()},
            "timestamp": self.timestamp.isoformat(),
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


def _plain(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


# ═══════════════════════════════════════════════════════════════
# Business errors — never retried
# ═══════════════════════════════════════════════════════════════

class ValidationError(VerityError):
    """Input failed schema or business-rule validation."""
    kind = ErrorKind.VALIDATION
    default_code = ErrorCode.VALIDATION_FAILED

    def __init__(self, message: str = "", *, issues: list[dict[str, Any]] | None = None, **kwargs: Any):
        self.issues = list(issues or [])
        super().__init__(message, **kwargs)
        self.retryable = False
        if self.issues:
            self.context.setdefault("issues", self.issues)


class AuthorizationError(VerityError):
    """Subject is not permitted to perform the requested transition."""
    kind = ErrorKind.AUTHORIZATION
    default_code = ErrorCode.UNAUTHORIZED

    def __init__(self, message: str = "", **kwargs: Any):
        super().__init__(message, **kwargs)
        self.retryable = False


class ComplianceBlockedError(VerityError):
    """A compliance screen or review actively blocked the subject."""
    kind = ErrorKind.COMPLIANCE_BLOCKED
    default_code = ErrorCode.SANCTIONS_MATCH

    def __init__(self, message: str = "", **kwargs: Any):
        super().__init__(message, **kwargs)
        self.retryable = False


class InsufficientFundsError(VerityError):
    kind = ErrorKind.INSUFFICIENT_FUNDS
    default_code = ErrorCode.INSUFFICIENT_FUNDS

    def __init__(self, message: str = "", **kwargs: Any):
        super().__init__(message, **kwargs)
        self.retryable = False


# ═══════════════════════════════════════════════════════════════
# Transient errors — retried per policy unless marked otherwise
# ═══════════════════════════════════════════════════════════════

class ExternalServiceError(VerityError):
    """A provider call failed (network, 5xx, rate limit, bad response)."""
    kind = ErrorKind.EXTERNAL_SERVICE
    retryable = True
    default_code = ErrorCode.PROVIDER_ERROR

    def __init__(
        self,
        message: str = "",
        *,
        provider: str = "unknown",
        status_code: int | None = None,
        retryable: bool | None = None,
        **kwargs: Any,
    ):
        if retryable is None and status_code is not None:
            # 4xx other than timeout / rate limit won't fix on retry
            retryable = not (400 <= status_code < 500 and status_code not in (408, 429))
        super().__init__(message, retryable=retryable, provider=provider,
                         status_code=status_code, **kwargs)
        self.provider = provider
        self.status_code = status_code


class StepTimeout(VerityError):
    """An activity attempt or a signal-gated wait exceeded its deadline."""
    kind = ErrorKind.TIMEOUT
    retryable = True
    default_code = ErrorCode.STEP_TIMEOUT

    def __init__(self, message: str = "", *, step: str = "", timeout_seconds: float = 0.0, **kwargs: Any):
        super().__init__(message, step=step, timeout_seconds=timeout_seconds, **kwargs)
        self.step = step
        self.timeout_seconds = timeout_seconds


# ═══════════════════════════════════════════════════════════════
# Compensation failure — the most severe outcome
# ═══════════════════════════════════════════════════════════════

class CompensationFailedError(VerityError):
    """One or more undo actions failed; requires manual reconciliation."""
    kind = ErrorKind.COMPENSATION_FAILED
    default_code = ErrorCode.COMPENSATION_FAILED

    def __init__(
        self,
        message: str = "",
        *,
        original: BaseException | None = None,
        failures: list[tuple[str, BaseException]] | None = None,
        **kwargs: Any,
    ):
        self.original = original
        self.failures = list(failures or [])
        super().__init__(
            message,
            original_error=describe(original) if original is not None else None,
            compensation_failures=[
                {"name": name, "error": describe(err)} for name, err in self.failures
            ],
            **kwargs,
        )
        self.retryable = False


# ═══════════════════════════════════════════════════════════════
# Construction helpers
# ═══════════════════════════════════════════════════════════════

def validation_error(message: str, *, code: str = ErrorCode.VALIDATION_FAILED,
                     issues: list[dict[str, Any]] | None = None, **context: Any) -> ValidationError:
    return ValidationError(message, code=code, issues=issues, **context)


def authorization_error(message: str, *, code: str = ErrorCode.UNAUTHORIZED,
                        **context: Any) -> AuthorizationError:
    return AuthorizationError(message, code=code, **context)


def compliance_blocked_error(message: str, *, code: str = ErrorCode.SANCTIONS_MATCH,
                             **context: Any) -> ComplianceBlockedError:
    return ComplianceBlockedError(message, code=code, **context)


def insufficient_funds_error(message: str, *, required: float, available: float,
                             **context: Any) -> InsufficientFundsError:
    return InsufficientFundsError(message, required=required, available=available, **context)


def external_service_error(provider: str, message: str, *, status_code: int | None = None,
                           retryable: bool | None = None, **context: Any) -> ExternalServiceError:
    return ExternalServiceError(
        f"{provider}: {message}", provider=provider, status_code=status_code,
        retryable=retryable, **context,
    )


def timeout_error(step: str, timeout_seconds: float, *, retryable: bool = False,
                  code: str = ErrorCode.WAIT_EXPIRED, **context: Any) -> StepTimeout:
    """Timeout for a human-gated wait. Non-retryable unless stated otherwise."""
    return StepTimeout(
        f"{step} timed out after {_human_duration(timeout_seconds)}",
        step=step, timeout_seconds=timeout_seconds,
        retryable=retryable, code=code, **context,
    )


def compensation_failed_error(original: BaseException | None,
                              failures: list[tuple[str, BaseException]]) -> CompensationFailedError:
    names = ", ".join(name for name, _ in failures)
    return CompensationFailedError(
        f"Compensation failed for: {names}", original=original, failures=failures,
    )


# ═══════════════════════════════════════════════════════════════
# Classification
# ═══════════════════════════════════════════════════════════════

_RETRYABLE_BUILTINS: tuple[type[BaseException], ...] = (TimeoutError, ConnectionError)


def classify(error: BaseException) -> ErrorKind | None:
    """Return the taxonomy kind of an error, or None for unclassified errors."""
    if isinstance(error, VerityError):
        return error.kind
    if isinstance(error, TimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(error, ConnectionError):
        return ErrorKind.EXTERNAL_SERVICE
    return None


def is_retryable(error: BaseException) -> bool:
    """
    Decide whether an error may be retried.

    Taxonomy errors answer from their own flag. Builtin timeouts and
    connection errors are transient. Anything else is a programming
    or data error and is not retried.
    """
    if isinstance(error, VerityError):
        return error.retryable
    return isinstance(error, _RETRYABLE_BUILTINS)


def describe(error: BaseException | None) -> dict[str, Any]:
    """Serializable description of any exception."""
    if error is None:
        return {}
    if isinstance(error, VerityError):
        return error.to_dict()
    kind = classify(error)
    return {
        "kind": kind.value if kind else "unclassified",
        "code": type(error).__name__,
        "message": str(error),
        "retryable": is_retryable(error),
        "context": {},
    }


def _human_duration(seconds: float) -> str:
    if seconds >= 86400 and seconds % 86400 == 0:
        days = int(seconds // 86400)
        return f"{days} day{'s' if days != 1 else ''}"
    if seconds >= 3600 and seconds % 3600 == 0:
        hours = int(seconds // 3600)
        return f"{hours} hour{'s' if hours != 1 else ''}"
    return f"{seconds:g}s"
