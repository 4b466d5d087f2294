"""
Verity — Signal / Query Plumbing

What a workflow definition needs from the durable-execution substrate:

  @signal(name, schema)   synchronous state mutation on an incoming event
  @query                  the single side-effect-free snapshot method
  @workflow_definition    binds a Workflow subclass to a kind and input schema
  WorkflowContext         suspension points (wait_condition, sleep, activity,
                          gather), cancellation, non-cancellable regions and
                          continue-as-new

Execution inside one instance is single-threaded and cooperative.
Signals are buffered and applied in delivery order; every application
wakes the instance so pending wait conditions re-check their predicate.

Usage:
    @workflow_definition("onboarding", input_schema=OnboardingInput)
    class OnboardingWorkflow(Workflow):

        @signal("email_verified", schema=EmailVerifiedPayload)
        def on_email_verified(self, payload):
            self.email_token = payload.token

        @query
        def status(self):
            return {"step": self.step}

        async def run(self):
            ok = await self.ctx.wait_condition(lambda: self.email_token, timeout=86400)
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from engine.activities import ActivityInvoker, ActivityOptions
from engine.errors import ErrorCode, validation_error

logger = logging.getLogger("verity.workflow")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════
# Control-flow exceptions
# ═══════════════════════════════════════════════════════════════════

class ContinueAsNew(Exception):
    """Raised by a run to restart the instance with only `input` carried over."""

    def __init__(self, input: Any):
        super().__init__("continue as new")
        self.input = input


class WorkflowCancelled(Exception):
    """Raised inside a run once an external cancellation has been observed."""

    def __init__(self, reason: str = ""):
        super().__init__(reason or "cancelled")
        self.reason = reason


# ═══════════════════════════════════════════════════════════════════
# Decorators
# ═══════════════════════════════════════════════════════════════════

def signal(name: str | None = None, schema: type | None = None):
    """Mark a method as the handler for signal `name` (default: method name)."""
    def decorator(fn: Callable) -> Callable:
        if inspect.iscoroutinefunction(fn):
            raise TypeError(f"Signal handler {fn.__name__} must be synchronous")
        fn._signal_name = name or fn.__name__
        fn._signal_schema = schema
        return fn
    return decorator


def query(fn: Callable) -> Callable:
    """Mark the instance's query method."""
    fn._is_query = True
    return fn


def workflow_definition(kind: str, input_schema: type | None = None):
    """Bind a Workflow subclass to a kind name and its input schema."""
    def decorator(cls: type) -> type:
        cls.kind = kind
        cls.input_schema = input_schema
        handlers, queries = _discover(cls)
        if len(queries) != 1:
            raise TypeError(f"Workflow {cls.__name__} must define exactly one @query, found {len(queries)}")
        cls._signal_handlers = handlers
        cls._query_name = queries[0]
        return cls
    return decorator


def _discover(cls: type) -> tuple[dict[str, str], list[str]]:
    handlers: dict[str, str] = {}
    queries: list[str] = []
    for attr_name in dir(cls):
        attr = getattr(cls, attr_name, None)
        if not callable(attr):
            continue
        if hasattr(attr, "_signal_name"):
            handlers[attr._signal_name] = attr_name
        if getattr(attr, "_is_query", False):
            queries.append(attr_name)
    return handlers, queries


# ═══════════════════════════════════════════════════════════════════
# Signal Record
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SignalRecord:
    name: str
    payload: Any
    delivered_at: datetime = field(default_factory=_utcnow)
    sequence: int = 0

    def to_dict(self) -> dict[str, Any]:
        payload = self.payload
        if hasattr(payload, "model_dump"):
            payload = payload.model_dump(mode="json")
        return {
            "name": self.name,
            "payload": payload,
            "delivered_at": self.delivered_at.isoformat(),
            "sequence": self.sequence,
        }


# ═══════════════════════════════════════════════════════════════════
# Workflow Context
# ═══════════════════════════════════════════════════════════════════

class WorkflowContext:
    """
    Substrate-provided handle for one run of one instance.

    Every timer (wait timeouts and sleeps) is multiplied by `timer_scale`,
    which lets tests compress a 30-day wait into milliseconds.
    """

    def __init__(
        self,
        instance_id: str,
        subject_id: str,
        kind: str,
        invoker: ActivityInvoker,
        run_id: str = "",
        timer_scale: float = 1.0,
        clock: Callable[[], datetime] = _utcnow,
        config: dict[str, Any] | None = None,
        parent_logger: Any = None,
    ):
        self.instance_id = instance_id
        self.subject_id = subject_id
        self.kind = kind
        self.run_id = run_id
        self.invoker = invoker
        self.timer_scale = timer_scale
        self.config = config if config is not None else {}
        self.parent_logger = parent_logger   # previous run's WorkflowLogger after continue-as-new
        self._clock = clock
        self._waiters: set[asyncio.Future] = set()
        self._cancel_reason: str | None = None
        self._shield_depth = 0

    def now(self) -> datetime:
        return self._clock()

    # ── wake-ups ───────────────────────────────────────────────────

    def notify(self) -> None:
        """Wake every pending wait so predicates are re-evaluated."""
        for fut in list(self._waiters):
            if not fut.done():
                fut.set_result(None)

    async def wait_condition(self, predicate: Callable[[], Any], timeout: float | None = None) -> bool:
        """
        Suspend until `predicate()` is truthy or `timeout` seconds elapse.

        Returns True when the predicate held, False on timeout. A
        cancellation request outside a non-cancellable region also ends
        the wait; the caller checks `is_cancel_requested`.
        """
        if predicate():
            return True
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout * self.timer_scale
        while True:
            if self._cancel_interrupts():
                return bool(predicate())
            fut = loop.create_future()
            self._waiters.add(fut)
            try:
                if deadline is None:
                    await fut
                else:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        return bool(predicate())
                    await asyncio.wait_for(fut, remaining)
            except asyncio.TimeoutError:
                return bool(predicate())
            finally:
                self._waiters.discard(fut)
            if predicate():
                return True

    async def sleep(self, duration: float) -> None:
        """Durable timer. Interrupted early by a cancellation request."""
        await self.wait_condition(self._cancel_interrupts, timeout=duration)

    # ── cancellation ───────────────────────────────────────────────

    def request_cancel(self, reason: str = "") -> None:
        if self._cancel_reason is None:
            self._cancel_reason = reason or "cancelled"
        self.notify()

    @property
    def is_cancel_requested(self) -> bool:
        return self._cancel_reason is not None

    @property
    def cancel_reason(self) -> str | None:
        return self._cancel_reason

    def _cancel_interrupts(self) -> bool:
        return self._cancel_reason is not None and self._shield_depth == 0

    def check_cancelled(self) -> None:
        """Raise WorkflowCancelled if cancellation was requested (outside shielded regions)."""
        if self._cancel_interrupts():
            raise WorkflowCancelled(self._cancel_reason or "")

    @contextlib.asynccontextmanager
    async def non_cancellable(self):
        """Region that runs to completion even when cancellation is requested."""
        self._shield_depth += 1
        try:
            yield
        finally:
            self._shield_depth -= 1

    # ── activities & fan-out ───────────────────────────────────────

    async def activity(
        self,
        fn: Callable[..., Any],
        *args: Any,
        name: str | None = None,
        options: ActivityOptions = ActivityOptions.STANDARD,
        idempotency_key: str | None = None,
        **kwargs: Any,
    ) -> Any:
        return await self.invoker.invoke(
            fn, *args, name=name, options=options, idempotency_key=idempotency_key, **kwargs,
        )

    async def fire_and_forget(self, fn: Callable[..., Any], *args: Any, name: str | None = None, **kwargs: Any) -> Any:
        return await self.invoker.fire_and_forget(fn, *args, name=name, **kwargs)

    async def gather(self, *aws: Awaitable[Any], return_exceptions: bool = False) -> list[Any]:
        """Fan-out / fan-in: await independent calls as a set."""
        return list(await asyncio.gather(*aws, return_exceptions=return_exceptions))

    def continue_as_new(self, input: Any) -> None:
        raise ContinueAsNew(input)


# ═══════════════════════════════════════════════════════════════════
# Workflow Base
# ═══════════════════════════════════════════════════════════════════

class Workflow:
    """
    Base for every state machine. Subclasses are decorated with
    @workflow_definition and implement `async run()`.
    """
    kind: str = ""
    input_schema: type | None = None
    _signal_handlers: dict[str, str] = {}
    _query_name: str = ""

    def __init__(self, ctx: WorkflowContext, input: Any, activities: Any = None):
        self.ctx = ctx
        self.input = input
        self.activities = activities
        self.signal_log: list[SignalRecord] = []

    @classmethod
    def signal_names(cls) -> list[str]:
        return sorted(cls._signal_handlers)

    @classmethod
    def signal_schema(cls, name: str) -> type | None:
        attr = cls._signal_handlers.get(name)
        if attr is None:
            raise validation_error(
                f"Workflow '{cls.kind}' has no signal '{name}'",
                code=ErrorCode.VALIDATION_FAILED, signal=name, known=cls.signal_names(),
            )
        return getattr(cls, attr)._signal_schema

    def handle_signal(self, record: SignalRecord) -> None:
        """Apply one signal. Handlers are pure state mutations."""
        self.signal_schema(record.name)
        handler = getattr(self, self._signal_handlers[record.name])
        handler(record.payload)
        self.signal_log.append(record)
        logger.debug(
            "Signal applied: instance=%s signal=%s seq=%d",
            self.ctx.instance_id, record.name, record.sequence,
        )

    def run_query(self) -> dict[str, Any]:
        """Snapshot of current state. Deep-copied so callers cannot mutate it."""
        return copy.deepcopy(getattr(self, self._query_name)())

    async def run(self) -> Any:
        raise NotImplementedError
