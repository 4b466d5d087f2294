"""
Verity — Structured Logging with Correlation IDs

JSON-lines logging for every workflow event. Each workflow instance gets a
WorkflowLogger carrying instance_id / subject_id / run_id on every entry,
so a subject's whole history can be followed across continue-as-new runs.

The runtime binds the instance it is driving into a context variable
(bind_workflow_context); timed_step adds the current step. The formatter
reads that binding, so plain module loggers (verity.activities,
verity.retry, ...) called from inside an instance carry the same
correlation fields as WorkflowLogger entries.

Usage:
    from engine.logging import WorkflowLogger, configure_logging, timed_step

    configure_logging(level="INFO")
    log = WorkflowLogger(workflow="onboarding", instance_id="wf-1", subject_id="user-1")
    log.info("email_sent", email="a@b.co")

    account = await timed_step(log, metrics, "creating_account", create_account)
"""

from __future__ import annotations

import contextvars
import json
import logging
import os
import sys
import time
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")

MAX_EVENTS = 500

CONTEXT_FIELDS = ("workflow", "instance_id", "subject_id", "run_id", "step")

_workflow_context: contextvars.ContextVar[dict[str, str]] = contextvars.ContextVar(
    "verity_workflow_context", default={},
)


# ═══════════════════════════════════════════════════════════════════
# Workflow Context
# ═══════════════════════════════════════════════════════════════════

def bind_workflow_context(**fields: Any) -> contextvars.Token:
    """
    Merge `fields` into the current workflow context.

    Each asyncio task starts from a copy of its creator's context, so a
    binding made inside an instance's task stays with that instance.
    Empty values remove the field.
    """
    unknown = set(fields) - set(CONTEXT_FIELDS)
    if unknown:
        raise ValueError(f"Unknown workflow context fields: {sorted(unknown)}")
    merged = dict(_workflow_context.get())
    for key, value in fields.items():
        if value:
            merged[key] = str(value)
        else:
            merged.pop(key, None)
    return _workflow_context.set(merged)


def reset_workflow_context(token: contextvars.Token) -> None:
    _workflow_context.reset(token)


def workflow_context() -> dict[str, str]:
    return dict(_workflow_context.get())


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter
# ═══════════════════════════════════════════════════════════════════

class WorkflowContextFilter(logging.Filter):
    """Stamps the bound workflow context onto each record as attributes."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _workflow_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record.

    Field order: timestamp, level, logger, message, service fields, then
    the workflow correlation fields (record attributes set by
    WorkflowContextFilter or `extra=`), then WorkflowLogger's structured
    payload, which wins on conflicts.
    """

    def __init__(self, service_name: str = "verity", service_version: str | None = None):
        super().__init__()
        self.service_name = service_name
        self.service_version = service_version or os.environ.get("VERITY_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value:
                entry[key] = value
        entry.update(getattr(record, "structured", None) or {})

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str | None = None,
    stream: Any = None,
    service_name: str = "verity",
    config: dict[str, Any] | None = None,
) -> logging.Logger:
    """
    Route the `verity` logger tree to one JSON handler.

    `level` wins over `logging.level` from `config`. Reconfiguring
    replaces the previous handler.
    """
    if level is None:
        level = str((config or {}).get("logging", {}).get("level", "INFO"))
    numeric = getattr(logging, level.upper(), logging.INFO)

    logger = logging.getLogger("verity")
    logger.setLevel(numeric)
    logger.handlers.clear()
    for name in list(logging.Logger.manager.loggerDict):
        if name.startswith("verity."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(numeric)
    handler.addFilter(WorkflowContextFilter())
    handler.setFormatter(JSONFormatter(service_name=service_name))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the verity namespace."""
    if name:
        return logging.getLogger(f"verity.{name}")
    return logging.getLogger("verity")


def generate_trace_id() -> str:
    """OTel-compatible trace ID (32 hex chars)."""
    return uuid.uuid4().hex


# ═══════════════════════════════════════════════════════════════════
# Workflow Logger
# ═══════════════════════════════════════════════════════════════════

class WorkflowLogger:
    """
    Instance-scoped structured logger.

    Every entry carries the instance correlation fields. The last
    MAX_EVENTS entries are kept in `events` regardless of log level.
    """

    def __init__(
        self,
        workflow: str,
        instance_id: str,
        subject_id: str = "",
        run_id: str = "",
        trace_id: str | None = None,
        parent_trace_id: str | None = None,
        max_events: int = MAX_EVENTS,
    ):
        self.workflow = workflow
        self.instance_id = instance_id
        self.subject_id = subject_id
        self.run_id = run_id
        self.trace_id = trace_id or generate_trace_id()
        self.parent_trace_id = parent_trace_id
        self.events: deque[dict[str, Any]] = deque(maxlen=max_events)
        self._logger = get_logger("workflow")

    def child(self, run_id: str = "") -> WorkflowLogger:
        """Logger for the next run of a continued-as-new instance."""
        return WorkflowLogger(
            workflow=self.workflow,
            instance_id=self.instance_id,
            subject_id=self.subject_id,
            run_id=run_id,
            parent_trace_id=self.trace_id,
            max_events=self.events.maxlen or MAX_EVENTS,
        )

    def _base_fields(self) -> dict[str, Any]:
        fields = {
            "trace_id": self.trace_id,
            "workflow": self.workflow,
            "instance_id": self.instance_id,
            "subject_id": self.subject_id,
        }
        if self.run_id:
            fields["run_id"] = self.run_id
        if self.parent_trace_id:
            fields["parent_trace_id"] = self.parent_trace_id
        return fields

    def _emit(self, level: int, action: str, fields: dict[str, Any]):
        self.events.append({
            "level": logging.getLevelName(level),
            "action": action,
            "at": time.time(),
            **fields,
        })
        if not self._logger.isEnabledFor(level):
            return
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=action,
            args=(), exc_info=None,
        )
        record.structured = {**self._base_fields(), "action": action, **fields}
        self._logger.handle(record)

    def debug(self, action: str, **fields: Any):
        self._emit(logging.DEBUG, action, fields)

    def info(self, action: str, **fields: Any):
        self._emit(logging.INFO, action, fields)

    def warning(self, action: str, **fields: Any):
        self._emit(logging.WARNING, action, fields)

    def error(self, action: str, **fields: Any):
        self._emit(logging.ERROR, action, fields)

    def actions(self) -> list[str]:
        return [e["action"] for e in self.events]


# ═══════════════════════════════════════════════════════════════════
# Step Timing
# ═══════════════════════════════════════════════════════════════════

async def timed_step(
    log: WorkflowLogger,
    metrics: Any,
    name: str,
    fn: Callable[[], Awaitable[T]],
) -> T:
    """
    Run one workflow step, logging start/end with latency and recording
    `step_duration_seconds`. Failures are logged and re-raised.
    """
    log.info("step_start", step=name)
    token = bind_workflow_context(step=name)
    t0 = time.perf_counter()
    try:
        result = await fn()
    except BaseException as e:
        elapsed = time.perf_counter() - t0
        log.error(
            "step_failed", step=name,
            latency_ms=round(elapsed * 1000, 1),
            error_type=type(e).__name__, error=str(e)[:500],
        )
        if metrics is not None:
            metrics.histogram("step_duration_seconds", elapsed, labels={"step": name, "status": "failed"})
        raise
    finally:
        reset_workflow_context(token)
    elapsed = time.perf_counter() - t0
    log.info("step_end", step=name, latency_ms=round(elapsed * 1000, 1))
    if metrics is not None:
        metrics.histogram("step_duration_seconds", elapsed, labels={"step": name, "status": "ok"})
    return result
