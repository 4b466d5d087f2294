"""
Verity — Activity Invocation Layer

Every externally visible side effect (provider call, record write,
notification) goes through ActivityInvoker.invoke, which adds:
  - A hard start-to-close timeout per attempt
  - An optional heartbeat watchdog for long-running calls
  - Retry with exponential backoff per the call site's RetryPolicy
  - A per-attempt ActivityContext (attempt number, idempotency key,
    heartbeat, shared bounded cache)
  - An attempt log and metrics for every attempt

Non-retryable errors propagate after the first attempt. Retryable errors
sleep compute_backoff(attempt) and retry until the policy's attempt cap,
then the last error propagates unchanged.

Usage:
    invoker = ActivityInvoker(sleep=asyncio.sleep)
    result = await invoker.invoke(
        activities.screen_sanctions, subject_id,
        name="screen_sanctions",
        options=ActivityOptions.CRITICAL,
        idempotency_key=idempotency_key(instance_id, "screen_sanctions"),
    )
"""

from __future__ import annotations

import asyncio
import contextvars
import functools
import hashlib
import inspect
import logging
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable

from engine.cache import TTLCache
from engine.errors import StepTimeout, classify, is_retryable
from engine.config import get_config_value
from engine.metrics import MetricsEmitter
from engine.retry import CATALOG, RetryPolicies, RetryPolicy, compute_backoff, get_retry_policy, should_retry

logger = logging.getLogger("verity.activities")

MAX_ATTEMPT_LOG = 1000


# ═══════════════════════════════════════════════════════════════════
# Options
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ActivityOptions:
    start_to_close_timeout: float = 30.0
    retry_policy: RetryPolicy = RetryPolicies.DEFAULT
    heartbeat_timeout: float | None = None
    preset: str = ""                   # names the `activities.<preset>_timeout` config key

    def with_policy(self, policy: RetryPolicy) -> ActivityOptions:
        return replace(self, retry_policy=policy)


ActivityOptions.STANDARD = ActivityOptions(30.0, RetryPolicies.DEFAULT, preset="standard")
ActivityOptions.LONG_RUNNING = ActivityOptions(
    300.0, RetryPolicies.EXTERNAL_API, heartbeat_timeout=30.0, preset="long_running",
)
ActivityOptions.CRITICAL = ActivityOptions(600.0, RetryPolicies.CRITICAL, preset="critical")
ActivityOptions.FIRE_AND_FORGET = ActivityOptions(30.0, RetryPolicies.DEFAULT, preset="standard")


# ═══════════════════════════════════════════════════════════════════
# Per-attempt Context
# ═══════════════════════════════════════════════════════════════════

@dataclass
class ActivityContext:
    """Handle an activity implementation can reach via current_activity()."""
    activity_name: str
    attempt: int
    idempotency_key: str | None = None
    cache: TTLCache | None = None
    last_heartbeat_details: Any = None
    _last_beat: float = field(default_factory=time.monotonic)

    def heartbeat(self, details: Any = None) -> None:
        self._last_beat = time.monotonic()
        if details is not None:
            self.last_heartbeat_details = details


_current: contextvars.ContextVar[ActivityContext | None] = contextvars.ContextVar(
    "verity_activity", default=None,
)


def current_activity() -> ActivityContext | None:
    """The ActivityContext of the attempt running in this task, if any."""
    return _current.get()


def idempotency_key(instance_id: str, step: str, *parts: Any) -> str:
    """Deterministic provider idempotency key for one step of one instance."""
    raw = "|".join([instance_id, step, *(str(p) for p in parts)])
    return f"{step}-{hashlib.sha256(raw.encode()).hexdigest()[:24]}"


# ═══════════════════════════════════════════════════════════════════
# Invoker
# ═══════════════════════════════════════════════════════════════════

class ActivityInvoker:
    """
    Retrying, timed, heartbeat-watched activity executor.

    Owns the bounded cache handed to activities through their context.
    `sleep` is injectable so tests can record backoff delays instead of
    waiting them out. With a `config`, catalog policies pick up their
    `retry.<policy>` overrides and presets their `activities.*_timeout`
    values; without one the options are used as given.
    """

    def __init__(
        self,
        metrics: MetricsEmitter | None = None,
        cache: TTLCache | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        config: dict[str, Any] | None = None,
    ):
        self.metrics = metrics or MetricsEmitter()
        self.cache = cache or TTLCache(max_entries=512, ttl_seconds=3600)
        self._sleep = sleep
        self.config = config
        self._resolved: dict[ActivityOptions, ActivityOptions] = {}
        self.attempt_log: deque[dict[str, Any]] = deque(maxlen=MAX_ATTEMPT_LOG)

    def resolve(self, options: ActivityOptions) -> ActivityOptions:
        """Apply configured timeouts and retry overrides to `options`."""
        if self.config is None:
            return options
        resolved = self._resolved.get(options)
        if resolved is not None:
            return resolved

        policy = options.retry_policy
        if CATALOG.get(policy.name) == policy:
            policy = get_retry_policy(policy.name, self.config)
        timeout, heartbeat = options.start_to_close_timeout, options.heartbeat_timeout
        if options.preset:
            timeout = float(get_config_value(f"activities.{options.preset}_timeout", self.config, timeout))
            if heartbeat is not None:
                heartbeat = float(get_config_value("activities.heartbeat_timeout", self.config, heartbeat))

        resolved = replace(options, start_to_close_timeout=timeout, retry_policy=policy, heartbeat_timeout=heartbeat)
        self._resolved[options] = resolved
        return resolved

    async def invoke(
        self,
        fn: Callable[..., Any],
        *args: Any,
        name: str | None = None,
        options: ActivityOptions = ActivityOptions.STANDARD,
        idempotency_key: str | None = None,
        **kwargs: Any,
    ) -> Any:
        """
        Run `fn(*args, **kwargs)` under `options`.

        Raises:
            The last attempt's exception once retries are exhausted, or the
            first non-retryable exception.
        """
        name = name or getattr(fn, "__name__", "activity")
        options = self.resolve(options)
        policy = options.retry_policy
        attempt = 0

        while True:
            attempt += 1
            ctx = ActivityContext(
                activity_name=name, attempt=attempt,
                idempotency_key=idempotency_key, cache=self.cache,
            )
            entry: dict[str, Any] = {
                "activity": name, "attempt": attempt, "policy": policy.name,
            }
            t0 = time.perf_counter()
            try:
                result = await self._attempt(fn, args, kwargs, options, ctx)
            except Exception as e:
                entry["latency_s"] = round(time.perf_counter() - t0, 4)
                entry["error"] = str(e)[:200]
                kind = classify(e)
                entry["kind"] = kind.value if kind else "unclassified"
                self.metrics.counter(
                    "activity_attempts_total", labels={"activity": name, "outcome": "error"},
                )

                if not should_retry(e, attempt, policy):
                    entry["status"] = "retries_exhausted" if is_retryable(e) else "non_retryable"
                    self.attempt_log.append(entry)
                    logger.error(
                        "Activity failed (activity=%s, attempt=%d/%d, status=%s): %s",
                        name, attempt, policy.maximum_attempts, entry["status"], str(e)[:200],
                    )
                    raise

                delay = compute_backoff(attempt, policy)
                entry["status"] = "retryable_error"
                entry["backoff_s"] = delay
                self.attempt_log.append(entry)
                logger.warning(
                    "Activity retryable error (activity=%s, attempt=%d/%d, backoff=%.2fs): %s",
                    name, attempt, policy.maximum_attempts, delay, str(e)[:200],
                )
                await self._sleep(delay)
                continue

            elapsed = time.perf_counter() - t0
            entry["latency_s"] = round(elapsed, 4)
            entry["status"] = "success"
            self.attempt_log.append(entry)
            self.metrics.counter(
                "activity_attempts_total", labels={"activity": name, "outcome": "success"},
            )
            self.metrics.histogram("activity_duration_seconds", elapsed, labels={"activity": name})
            logger.debug("Activity succeeded (activity=%s, attempt=%d, %.3fs)", name, attempt, elapsed)
            return result

    async def fire_and_forget(
        self,
        fn: Callable[..., Any],
        *args: Any,
        name: str | None = None,
        **kwargs: Any,
    ) -> Any:
        """
        Invoke a non-critical collaborator (audit log, notification).
        A final failure is logged and swallowed; returns None in that case.
        """
        name = name or getattr(fn, "__name__", "activity")
        try:
            return await self.invoke(fn, *args, name=name, options=ActivityOptions.FIRE_AND_FORGET, **kwargs)
        except Exception as e:
            self.metrics.counter("fire_and_forget_failures_total", labels={"activity": name})
            logger.warning("Non-critical activity failed (activity=%s): %s", name, str(e)[:200])
            return None

    def attempts_for(self, name: str) -> list[dict[str, Any]]:
        return [e for e in self.attempt_log if e["activity"] == name]

    # ── internals ──────────────────────────────────────────────────

    async def _attempt(
        self,
        fn: Callable[..., Any],
        args: tuple,
        kwargs: dict[str, Any],
        options: ActivityOptions,
        ctx: ActivityContext,
    ) -> Any:
        token = _current.set(ctx)
        try:
            if inspect.iscoroutinefunction(fn):
                aw = fn(*args, **kwargs)
            else:
                aw = asyncio.to_thread(functools.partial(fn, *args, **kwargs))
            if options.heartbeat_timeout:
                return await self._watch_heartbeat(aw, options, ctx)
            try:
                return await asyncio.wait_for(aw, options.start_to_close_timeout)
            except asyncio.TimeoutError:
                raise StepTimeout(
                    f"{ctx.activity_name} exceeded start-to-close timeout "
                    f"of {options.start_to_close_timeout:g}s",
                    step=ctx.activity_name, timeout_seconds=options.start_to_close_timeout,
                ) from None
        finally:
            _current.reset(token)

    async def _watch_heartbeat(self, aw: Awaitable[Any], options: ActivityOptions, ctx: ActivityContext) -> Any:
        task = asyncio.ensure_future(aw)
        loop_deadline = time.monotonic() + options.start_to_close_timeout
        hb_timeout = float(options.heartbeat_timeout or 0)
        try:
            while True:
                now = time.monotonic()
                remaining = loop_deadline - now
                if remaining <= 0:
                    raise StepTimeout(
                        f"{ctx.activity_name} exceeded start-to-close timeout "
                        f"of {options.start_to_close_timeout:g}s",
                        step=ctx.activity_name, timeout_seconds=options.start_to_close_timeout,
                    )
                beat_remaining = ctx._last_beat + hb_timeout - now
                if beat_remaining <= 0:
                    raise StepTimeout(
                        f"{ctx.activity_name} missed heartbeat (timeout {hb_timeout:g}s)",
                        step=ctx.activity_name, timeout_seconds=hb_timeout,
                        heartbeat_details=ctx.last_heartbeat_details,
                    )
                done, _ = await asyncio.wait({task}, timeout=min(remaining, beat_remaining))
                if done:
                    return task.result()
        finally:
            if not task.done():
                task.cancel()
