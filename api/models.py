"""
Verity — API Models

Request/response dataclasses for the API server.
No FastAPI dependency — used by server, webhooks, and tests.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass
class StartRequest:
    """POST /v1/workflows/{kind} path + body."""
    kind: str
    input: dict[str, Any]

    def validate(self, known_kinds: list[str]) -> list[str]:
        """Return list of validation errors (empty = valid)."""
        errors = []
        if self.kind not in known_kinds:
            errors.append(f"unknown workflow kind '{self.kind}' (known: {', '.join(known_kinds)})")
        if not isinstance(self.input, dict):
            errors.append("body must be a JSON object")
        return errors


@dataclass
class StartResponse:
    """POST /v1/workflows/{kind} response — returned immediately on start."""
    instance_id: str
    kind: str
    status: str = "accepted"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SignalRequest:
    """POST /v1/workflows/{id}/signals/{name} body."""
    name: str
    payload: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> list[str]:
        errors = []
        if not self.name or not isinstance(self.name, str):
            errors.append("signal name is required")
        if not isinstance(self.payload, dict):
            errors.append("payload must be a JSON object")
        return errors


@dataclass
class CancelRequest:
    """POST /v1/workflows/{id}/cancel body."""
    reason: str = ""

    def validate(self) -> list[str]:
        if not isinstance(self.reason, str):
            return ["reason must be a string"]
        return []


@dataclass
class SignalAccepted:
    instance_id: str
    signal: str
    sequence: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ErrorBody:
    """Error response body; `code` is the taxonomy code when one applies."""
    error: str
    code: str = ""
    details: list[Any] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
