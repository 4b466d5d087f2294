"""
Verity — Compensation Stack (Saga)

Per-instance undo registry for partially committed external effects.

Flow:
  1. After a committing step succeeds: push(name, undo_action)
  2. On workflow failure: compensate_all()
     - Walks entries head-to-tail (LIFO: most recent first)
     - Runs inside a non-cancellable region
     - Each undo failure is collected, never aborts the rest
  3. raise_if_failed(result, original) → CompensationFailedError
     embedding both the original failure and every undo failure

The Deduplicator companion records at-most-once side effects (e.g. the
verification email) so workflow-level retries do not repeat them.

Usage:
    stack = CompensationStack()
    account = await create_account(...)
    stack.push("delete_account_record", lambda: delete_account(account.id))
    ...
    result = await stack.compensate_all()
    stack.raise_if_failed(result, original=err)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from engine.errors import compensation_failed_error, describe

logger = logging.getLogger("verity.compensation")

UndoAction = Callable[[], Any]


async def _call(fn: Callable[[], Any]) -> Any:
    result = fn()
    if inspect.isawaitable(result):
        result = await result
    return result


async def non_cancellable(aw: Awaitable[Any]) -> Any:
    """
    Await `aw` to completion even if the caller is cancelled meanwhile.

    The caller's cancellation is re-raised once the shielded work is done.
    """
    task = asyncio.ensure_future(aw)
    cancelled = False
    while True:
        try:
            result = await asyncio.shield(task)
            break
        except asyncio.CancelledError:
            if task.done():
                raise
            cancelled = True
    if cancelled:
        raise asyncio.CancelledError()
    return result


# ═══════════════════════════════════════════════════════════════════
# Entries and Results
# ═══════════════════════════════════════════════════════════════════

@dataclass
class CompensationEntry:
    name: str
    action: UndoAction
    executed: bool = False
    error: str | None = None
    registered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "executed": self.executed,
            "error": self.error,
            "registered_at": self.registered_at.isoformat(),
        }


@dataclass
class CompensationFailure:
    name: str
    error: BaseException

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "error": describe(self.error)}


@dataclass
class CompensationResult:
    executed: list[str] = field(default_factory=list)
    failed: list[CompensationFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "executed": list(self.executed),
            "failed": [f.to_dict() for f in self.failed],
        }


# ═══════════════════════════════════════════════════════════════════
# Compensation Stack
# ═══════════════════════════════════════════════════════════════════

class CompensationStack:
    """LIFO undo registry owned by exactly one workflow instance."""

    def __init__(self, on_event: Callable[..., None] | None = None):
        self._entries: list[CompensationEntry] = []  # head = most recent
        self._on_event = on_event

    def push(self, name: str, action: UndoAction) -> CompensationEntry:
        entry = CompensationEntry(name=name, action=action)
        self._entries.insert(0, entry)
        logger.debug("Compensation registered: %s (depth=%d)", name, len(self._entries))
        self._emit("compensation_registered", name=name, depth=len(self._entries))
        return entry

    @property
    def entries(self) -> list[CompensationEntry]:
        return list(self._entries)

    @property
    def pending(self) -> list[str]:
        return [e.name for e in self._entries if not e.executed]

    def __len__(self) -> int:
        return len(self._entries)

    async def compensate_all(self) -> CompensationResult:
        """Run every not-yet-executed undo action, most recent first."""
        return await non_cancellable(self._drain())

    async def _drain(self) -> CompensationResult:
        result = CompensationResult()
        for entry in list(self._entries):
            if entry.executed:
                continue
            try:
                await _call(entry.action)
            except Exception as e:
                entry.error = str(e)
                result.failed.append(CompensationFailure(entry.name, e))
                logger.error("Compensation FAILED: %s error=%s", entry.name, e)
                self._emit("compensation_failed", name=entry.name, error=str(e)[:500])
                continue
            entry.executed = True
            entry.error = None
            result.executed.append(entry.name)
            logger.info("Compensation SUCCESS: %s", entry.name)
            self._emit("compensation_executed", name=entry.name)
        return result

    @staticmethod
    def raise_if_failed(result: CompensationResult, original: BaseException | None = None) -> None:
        if result.failed:
            raise compensation_failed_error(
                original, [(f.name, f.error) for f in result.failed],
            ) from original

    def to_list(self) -> list[dict[str, Any]]:
        return [e.to_dict() for e in self._entries]

    def _emit(self, action: str, **fields: Any):
        if self._on_event is not None:
            self._on_event(action, **fields)


# ═══════════════════════════════════════════════════════════════════
# Deduplicator
# ═══════════════════════════════════════════════════════════════════

class Deduplicator:
    """
    At-most-once guard for externally visible side effects within one
    instance lifetime. A key is recorded only once its action succeeds;
    later calls return the memoised value without running the action.
    """

    def __init__(self):
        self._fired: dict[str, Any] = {}

    async def execute_once(self, key: str, fn: Callable[[], Any], default: Any = None) -> Any:
        if key in self._fired:
            logger.debug("Deduplicated side effect: %s", key)
            memo = self._fired[key]
            return default if memo is None else memo
        value = await _call(fn)
        self._fired[key] = value
        return value

    def has_fired(self, key: str) -> bool:
        return key in self._fired

    @property
    def fired(self) -> list[str]:
        return list(self._fired)
