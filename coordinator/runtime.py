"""
Verity — Workflow Runtime

The in-process durable-execution substrate. Manages instance lifecycle
for every registered workflow kind:

    start(kind, input)             → instance_id
    signal(instance_id, name, p)   → SignalRecord (buffered, in delivery order)
    query(instance_id)             → snapshot
    cancel(instance_id, reason)    → cooperative cancellation
    result(instance_id)            → terminal output, or the workflow's error

Each instance runs as one asyncio task. A run that raises ContinueAsNew
is closed as `continued` and a fresh workflow object for the same
instance id starts with only the carried input.

Phase 1: in-process, SQLite-backed. No replay; a restarted process can
read finished instances but does not resume live ones.

Usage:
    runtime = WorkflowRuntime(SimulatedActivities(), timer_scale=1e-6)
    runtime.register(OnboardingWorkflow)
    instance_id = await runtime.start("onboarding", {"subject_id": "u1", "email": "u1@x.io"})
    await runtime.signal(instance_id, "email_verified", {"token": "t"})
    record = await runtime.join(instance_id)
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from pydantic import BaseModel

from coordinator.store import DuplicateInstance, InstanceStore
from coordinator.types import InstanceRecord, InstanceStatus, new_run_id
from engine.activities import ActivityInvoker
from engine.cache import TTLCache
from engine.config import get_config, get_config_value
from engine.errors import ErrorCode, describe, validation_error
from engine.logging import bind_workflow_context
from engine.metrics import MetricsEmitter, MetricsRegistry
from engine.validation import validate_input
from engine.workflow import ContinueAsNew, SignalRecord, Workflow, WorkflowContext

logger = logging.getLogger("verity.runtime")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


# ─── Runtime Exceptions ──────────────────────────────────────────────

class InstanceNotFound(Exception):
    """No instance with this id exists in memory or in the store."""
    pass


class WorkflowFailed(Exception):
    """A finished instance (loaded from the store) ended with an error."""

    def __init__(self, record: InstanceRecord):
        message = (record.error or {}).get("message", record.status.value)
        super().__init__(f"{record.instance_id} {record.status.value}: {message}")
        self.record = record
        self.error = record.error
        self.code = (record.error or {}).get("code")


@dataclass
class _Live:
    """In-memory state of an instance whose task is running."""
    record: InstanceRecord
    workflow: Workflow
    ctx: WorkflowContext
    invoker: ActivityInvoker
    task: asyncio.Task | None = None
    sequence: int = 0
    started: float = field(default_factory=time.perf_counter)
    finished: asyncio.Event = field(default_factory=asyncio.Event)
    output: Any = None
    error: BaseException | None = None


class WorkflowRuntime:
    """
    Instance registry, signal router and task driver.

    Timers (workflow waits, sleeps and activity retry backoff) are all
    multiplied by `timer_scale`.
    """

    def __init__(
        self,
        activities: Any,
        store: InstanceStore | None = None,
        config: dict[str, Any] | None = None,
        timer_scale: float | None = None,
        sleep: Callable[[float], Any] | None = None,
        metrics_registry: MetricsRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.activities = activities
        self.config = config if config is not None else get_config()
        self.store = store or InstanceStore(get_config_value("runtime.db_path", self.config, ":memory:"))
        if timer_scale is None:
            timer_scale = get_config_value("runtime.timer_scale", self.config, 1.0)
        self.timer_scale = float(timer_scale)
        self.metrics_registry = metrics_registry or MetricsRegistry()
        self.metrics = MetricsEmitter(registry=self.metrics_registry)
        # Shared by every invoker; activities reach it through their context.
        self.cache = TTLCache(max_entries=1024, ttl_seconds=3600)
        self._sleep = sleep or self._scaled_sleep
        self._clock = clock or _utcnow
        self._definitions: dict[str, type[Workflow]] = {}
        self._live: dict[str, _Live] = {}
        if get_config_value("runtime.fail_orphaned_on_start", self.config, True):
            self._fail_orphaned()

    def _fail_orphaned(self) -> None:
        orphaned = self.store.fail_orphaned({
            "kind": "unclassified",
            "code": ErrorCode.INSTANCE_ORPHANED,
            "message": "Runtime restarted while the instance was in flight",
            "retryable": True,
            "context": {},
        })
        for instance_id in orphaned:
            logger.warning("✗ FAILED %s: orphaned by runtime restart", instance_id)

    async def _scaled_sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds * self.timer_scale)

    # ─── Registration ────────────────────────────────────────────────

    def register(self, workflow_cls: type[Workflow]) -> type[Workflow]:
        kind = getattr(workflow_cls, "kind", "")
        if not kind:
            raise TypeError(f"{workflow_cls.__name__} is not decorated with @workflow_definition")
        self._definitions[kind] = workflow_cls
        logger.debug("Registered workflow kind=%s (%s)", kind, workflow_cls.__name__)
        return workflow_cls

    @property
    def kinds(self) -> list[str]:
        return sorted(self._definitions)

    def _definition(self, kind: str) -> type[Workflow]:
        try:
            return self._definitions[kind]
        except KeyError:
            raise validation_error(
                f"Unknown workflow kind '{kind}'",
                code=ErrorCode.VALIDATION_FAILED, kind=kind, known=self.kinds,
            ) from None

    # ─── Start ───────────────────────────────────────────────────────

    async def start(self, kind: str, input: Any) -> str:
        """
        Validate input, enforce one in-flight instance per (subject, kind),
        persist the instance and schedule its first run.

        Raises:
            ValidationError: unknown kind, invalid input, or an instance
                for this subject and kind is already in flight
                (code WORKFLOW_ALREADY_RUNNING).
        """
        cls = self._definition(kind)
        model = self._validate(cls, input, f"{kind} input")
        subject_id = getattr(model, "subject_id", None)
        if subject_id is None and isinstance(model, dict):
            subject_id = model.get("subject_id")
        if not subject_id:
            raise validation_error(
                "subject_id is required",
                issues=[{"field": "subject_id", "message": "required"}],
            )

        existing = self.store.find_active(subject_id, kind)
        if existing is not None:
            raise self._already_running(kind, subject_id, existing.instance_id)

        record = InstanceRecord.create(kind, subject_id)
        record.status = InstanceStatus.IN_PROGRESS
        try:
            self.store.save_instance(record)
        except DuplicateInstance as e:
            raise self._already_running(kind, subject_id, "") from e
        self.store.start_run(record.instance_id, record.run_id, _plain(model))

        live = self._spawn(cls, record, model)
        live.task = asyncio.create_task(self._drive(live), name=f"verity:{record.instance_id}")
        self.metrics.counter("workflows_started_total", labels={"kind": kind})
        logger.info("▶ START %s (%s) subject=%s", record.instance_id, kind, subject_id)
        return record.instance_id

    @staticmethod
    def _already_running(kind: str, subject_id: str, instance_id: str):
        return validation_error(
            f"A {kind} workflow is already running for {subject_id}",
            code=ErrorCode.WORKFLOW_ALREADY_RUNNING,
            kind=kind, subject_id=subject_id, instance_id=instance_id,
        )

    @staticmethod
    def _validate(cls: type[Workflow], data: Any, label: str) -> Any:
        if cls.input_schema is None:
            return data
        return validate_input(cls.input_schema, data, label)

    def _spawn(
        self,
        cls: type[Workflow],
        record: InstanceRecord,
        model: Any,
        invoker: ActivityInvoker | None = None,
        parent_logger: Any = None,
    ) -> _Live:
        invoker = invoker or ActivityInvoker(
            metrics=self.metrics.child(workflow=record.kind),
            cache=self.cache,
            sleep=self._sleep,
            config=self.config,
        )
        ctx = WorkflowContext(
            instance_id=record.instance_id,
            subject_id=record.subject_id,
            kind=record.kind,
            invoker=invoker,
            run_id=record.run_id,
            timer_scale=self.timer_scale,
            clock=self._clock,
            config=self.config,
            parent_logger=parent_logger,
        )
        workflow = cls(ctx, model, activities=self.activities)
        live = _Live(record=record, workflow=workflow, ctx=ctx, invoker=invoker)
        self._live[record.instance_id] = live
        return live

    # ─── Driver ──────────────────────────────────────────────────────

    async def _drive(self, live: _Live) -> None:
        record = live.record
        bind_workflow_context(
            workflow=record.kind, instance_id=record.instance_id,
            subject_id=record.subject_id, run_id=record.run_id, step=None,
        )
        try:
            while True:
                try:
                    output = await live.workflow.run()
                except ContinueAsNew as cont:
                    try:
                        self._continue(live, cont.input)
                    except Exception as e:
                        self._on_finished(live, error=e)
                        return
                    continue
                except Exception as e:
                    self._on_finished(live, error=e)
                    return
                self._on_finished(live, output=output)
                return
        finally:
            live.finished.set()
            self._live.pop(live.record.instance_id, None)

    def _continue(self, live: _Live, carried: Any) -> None:
        """Close the current run and start a fresh one with only `carried`."""
        cls = type(live.workflow)
        model = self._validate(cls, carried, f"{cls.kind} continued input")
        record = live.record
        previous_run = record.run_id
        cancel_reason = live.ctx.cancel_reason

        self.store.end_run(previous_run, InstanceStatus.CONTINUED)
        record.run_id = new_run_id()
        bind_workflow_context(run_id=record.run_id)
        record.chain_length += 1
        record.status = InstanceStatus.IN_PROGRESS
        record.current_step = ""
        self.store.save_instance(record)
        self.store.start_run(record.instance_id, record.run_id, _plain(model))

        fresh = self._spawn(
            cls, record, model,
            invoker=live.invoker,
            parent_logger=getattr(live.workflow, "log", None),
        )
        live.workflow, live.ctx = fresh.workflow, fresh.ctx
        self._live[record.instance_id] = live
        if cancel_reason is not None:
            live.ctx.request_cancel(cancel_reason)

        self.metrics.counter("workflows_continued_total", labels={"kind": record.kind})
        logger.info(
            "↻ CONTINUE %s run %s → %s (chain=%d)",
            record.instance_id, previous_run, record.run_id, record.chain_length,
        )

    def _on_finished(self, live: _Live, output: Any = None, error: BaseException | None = None) -> None:
        """Persist the terminal status, error and final snapshot atomically."""
        record, workflow = live.record, live.workflow
        status = getattr(workflow, "status", None)
        if isinstance(status, InstanceStatus) and status.is_terminal:
            final = status
        else:
            final = InstanceStatus.FAILED if error is not None else InstanceStatus.APPROVED

        snapshot = workflow.run_query()
        record.status = final
        record.current_step = str(getattr(workflow, "current_step", "") or "")
        record.completed_at = time.time()
        record.result = output if isinstance(output, dict) else snapshot
        record.error = describe(error) if error is not None else None

        with self.store.transaction():
            self.store.save_instance(record)
            self.store.end_run(record.run_id, final)
            self.store.save_snapshot(record.instance_id, record.run_id, snapshot)

        live.output, live.error = output, error
        duration = time.perf_counter() - live.started
        self.metrics.counter("workflows_finished_total", labels={"kind": record.kind, "status": final.value})
        self.metrics.histogram(
            "workflow_duration_seconds", duration, labels={"kind": record.kind, "outcome": final.value},
        )

        if error is not None:
            logger.warning("✗ %s %s: %s", final.value.upper(), record.instance_id, str(error)[:200])
        else:
            logger.info("■ %s %s", final.value.upper(), record.instance_id)

    # ─── Signals / Queries / Cancellation ────────────────────────────

    def _require_live(self, instance_id: str) -> _Live:
        live = self._live.get(instance_id)
        if live is not None and not live.finished.is_set():
            return live
        record = self.store.get_instance(instance_id)
        if record is None:
            raise InstanceNotFound(f"Instance not found: {instance_id}")
        raise validation_error(
            f"Instance {instance_id} is {record.status.value} and no longer accepts signals",
            code=ErrorCode.VALIDATION_FAILED, instance_id=instance_id, status=record.status,
        )

    async def signal(self, instance_id: str, name: str, payload: Any = None) -> SignalRecord:
        """
        Deliver one signal. The payload is validated against the handler's
        schema, appended to the instance's signal log, applied, and every
        pending wait is woken to re-check its predicate.
        """
        live = self._require_live(instance_id)
        cls = type(live.workflow)
        schema = cls.signal_schema(name)
        value = validate_input(schema, payload, f"signal '{name}'") if schema is not None else payload

        live.sequence += 1
        record = SignalRecord(name=name, payload=value, delivered_at=self._clock(), sequence=live.sequence)
        self.store.append_signal(
            instance_id, live.record.run_id, record.sequence, name,
            _plain(value) if value is not None else {}, record.delivered_at.isoformat(),
        )
        live.workflow.handle_signal(record)
        live.ctx.notify()
        self.metrics.counter("signals_delivered_total", labels={"kind": live.record.kind, "signal": name})
        return record

    def query(self, instance_id: str) -> dict[str, Any]:
        """Live snapshot for running instances, stored snapshot otherwise."""
        live = self._live.get(instance_id)
        if live is not None and not live.finished.is_set():
            return live.workflow.run_query()
        snapshot = self.store.get_snapshot(instance_id)
        if snapshot is not None:
            return snapshot
        record = self.store.get_instance(instance_id)
        if record is None:
            raise InstanceNotFound(f"Instance not found: {instance_id}")
        return record.to_dict()

    async def cancel(self, instance_id: str, reason: str = "") -> None:
        """
        Request cooperative cancellation. Workflows that declare a
        `cancel` signal receive it through the signal log; otherwise the
        context's cancel flag is set directly.
        """
        live = self._require_live(instance_id)
        reason = reason or "cancelled by request"
        if "cancel" in type(live.workflow).signal_names():
            await self.signal(instance_id, "cancel", {"reason": reason})
        else:
            live.ctx.request_cancel(reason)
        logger.info("⊘ CANCEL requested %s: %s", instance_id, reason)

    # ─── Results ─────────────────────────────────────────────────────

    async def join(self, instance_id: str) -> InstanceRecord:
        """Wait for the instance to finish and return its record. Never raises the workflow error."""
        live = self._live.get(instance_id)
        if live is not None:
            await live.finished.wait()
            return live.record
        record = self.store.get_instance(instance_id)
        if record is None:
            raise InstanceNotFound(f"Instance not found: {instance_id}")
        return record

    async def result(self, instance_id: str) -> Any:
        """Await the terminal outcome, re-raising the workflow's failure."""
        live = self._live.get(instance_id)
        if live is not None:
            await live.finished.wait()
            if live.error is not None:
                raise live.error
            return live.output
        record = await self.join(instance_id)
        if record.error:
            raise WorkflowFailed(record)
        return record.result

    def describe_instance(self, instance_id: str) -> dict[str, Any]:
        """Instance record plus live status and step for running instances."""
        live = self._live.get(instance_id)
        if live is not None:
            data = live.record.to_dict()
            if not live.finished.is_set():
                status = getattr(live.workflow, "status", None)
                if isinstance(status, InstanceStatus):
                    data["status"] = status.value
                data["current_step"] = getattr(live.workflow, "current_step", "") or ""
            return data
        record = self.store.get_instance(instance_id)
        if record is None:
            raise InstanceNotFound(f"Instance not found: {instance_id}")
        return record.to_dict()

    def list_instances(self, status: InstanceStatus | None = None, subject_id: str | None = None) -> list[dict[str, Any]]:
        return [r.to_dict() for r in self.store.list_instances(status=status, subject_id=subject_id)]

    def stats(self) -> dict[str, Any]:
        stats = self.store.stats()
        stats["live"] = sum(1 for l in self._live.values() if not l.finished.is_set())
        return stats

    async def shutdown(self) -> None:
        """Cancel every running task. Instances stay in the store as they were."""
        tasks = [l.task for l in self._live.values() if l.task is not None and not l.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        # A task cancelled before its first step never reaches _drive's finally.
        for live in self._live.values():
            live.finished.set()
        self._live.clear()
        logger.info("Runtime shut down (%d tasks cancelled)", len(tasks))
