"""
Verity — Counter / Gauge / Histogram Emitter

Prometheus metrics on prometheus_client. A MetricsRegistry owns one
CollectorRegistry per runtime and creates its Counter / Gauge / Histogram
collectors on first use; a MetricsEmitter is the instance-scoped handle
workflows and the activity layer write through, adding scope labels
(workflow kind) to every point.

Usage:
    from engine.metrics import MetricsRegistry, MetricsEmitter

    registry = MetricsRegistry()
    metrics = MetricsEmitter({"workflow": "onboarding"}, registry=registry)
    metrics.counter("activity_attempts_total", labels={"activity": "screen_sanctions"})
    metrics.histogram("step_duration_seconds", 0.42, labels={"step": "creating_account"})
    print(registry.render_text())
"""

from __future__ import annotations

import threading
from typing import Any

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
from prometheus_client.utils import floatToGoString

DEFAULT_BUCKETS = (0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0, 60.0, 300.0, float("inf"))

DESCRIPTIONS = {
    "workflows_started_total": "Workflow instances started",
    "workflows_continued_total": "Runs closed by continue-as-new",
    "workflows_finished_total": "Workflow instances reaching a terminal status",
    "workflows_completed_total": "Workflow runs completed, by outcome",
    "workflow_duration_seconds": "Wall time from start to terminal status",
    "signals_delivered_total": "Signals accepted into an instance queue",
    "activity_attempts_total": "Activity attempts, by outcome",
    "activity_duration_seconds": "Activity wall time including retries",
    "fire_and_forget_failures_total": "Best-effort activities that exhausted retries",
    "step_duration_seconds": "Workflow step wall time",
}

_KINDS = {"counter": Counter, "gauge": Gauge, "histogram": Histogram}


class MetricsRegistry:
    """
    Named collectors over one prometheus CollectorRegistry.

    A collector's label names are fixed by its first use. Later points
    that omit one of them record it as an empty string; unknown label
    names raise ValueError from prometheus_client.
    """

    def __init__(self, prefix: str = "verity", buckets: tuple[float, ...] = DEFAULT_BUCKETS):
        self.prefix = prefix
        self.buckets = buckets
        self.registry = CollectorRegistry()
        self._metrics: dict[str, tuple[str, Any, tuple[str, ...]]] = {}
        self._lock = threading.Lock()

    def _full_name(self, name: str) -> str:
        return f"{self.prefix}_{name}" if self.prefix else name

    def _get(self, name: str, kind: str, labels: dict[str, Any] | None) -> tuple[Any, dict[str, str]]:
        with self._lock:
            entry = self._metrics.get(name)
            if entry is None:
                labelnames = sorted(labels or {})
                kwargs: dict[str, Any] = {"registry": self.registry}
                if kind == "histogram":
                    kwargs["buckets"] = self.buckets
                metric = _KINDS[kind](
                    self._full_name(name),
                    DESCRIPTIONS.get(name, name.replace("_", " ")),
                    labelnames,
                    **kwargs,
                )
                entry = self._metrics[name] = (kind, metric, tuple(labelnames))
            elif entry[0] != kind:
                raise ValueError(f"Metric {name} already registered as {entry[0]}")
        return entry[1], self._label_values(entry[2], labels)

    @staticmethod
    def _label_values(labelnames: tuple[str, ...], labels: dict[str, Any] | None) -> dict[str, str]:
        values = dict.fromkeys(labelnames, "")
        values.update({str(k): str(v) for k, v in (labels or {}).items()})
        return values

    @staticmethod
    def _child(metric: Any, values: dict[str, str]) -> Any:
        return metric.labels(**values) if values else metric

    def inc(self, name: str, value: float = 1.0, labels: dict[str, Any] | None = None) -> None:
        if value < 0:
            raise ValueError("Counter can only increase")
        metric, values = self._get(name, "counter", labels)
        self._child(metric, values).inc(value)

    def set(self, name: str, value: float, labels: dict[str, Any] | None = None) -> None:
        metric, values = self._get(name, "gauge", labels)
        self._child(metric, values).set(float(value))

    def observe(self, name: str, value: float, labels: dict[str, Any] | None = None) -> None:
        metric, values = self._get(name, "histogram", labels)
        self._child(metric, values).observe(value)

    def value(self, name: str, labels: dict[str, Any] | None = None) -> Any:
        """Current value of one series (histograms return their data dict)."""
        entry = self._metrics.get(name)
        if entry is None:
            return None
        kind, _, labelnames = entry
        values = self._label_values(labelnames, labels)
        full = self._full_name(name)

        if kind == "counter":
            base = full[: -len("_total")] if full.endswith("_total") else full
            return self.registry.get_sample_value(f"{base}_total", values)
        if kind == "gauge":
            return self.registry.get_sample_value(full, values)

        count = self.registry.get_sample_value(f"{full}_count", values)
        if count is None:
            return None
        buckets = {
            bound: self.registry.get_sample_value(f"{full}_bucket", {**values, "le": floatToGoString(bound)})
            for bound in self.buckets
        }
        return {"buckets": buckets, "sum": self.registry.get_sample_value(f"{full}_sum", values), "count": count}

    def collect(self) -> list[dict[str, Any]]:
        return [
            {"name": sample.name, "type": family.type, "labels": dict(sample.labels), "value": sample.value}
            for family in self.registry.collect()
            for sample in family.samples
        ]

    def render_text(self) -> str:
        """Prometheus text exposition format."""
        return generate_latest(self.registry).decode("utf-8")

    def reset(self) -> None:
        with self._lock:
            for _, metric, _ in self._metrics.values():
                self.registry.unregister(metric)
            self._metrics.clear()


class MetricsEmitter:
    """
    Scoped writer over a registry.

    Keeps a local tally of what this scope emitted so an instance's query
    snapshot can include its own numbers without scanning the registry.
    """

    def __init__(self, scope_labels: dict[str, Any] | None = None, registry: MetricsRegistry | None = None):
        self.scope_labels = dict(scope_labels or {})
        self.registry = registry if registry is not None else MetricsRegistry()
        self._local: dict[str, float] = {}

    def _labels(self, labels: dict[str, Any] | None) -> dict[str, Any]:
        return {**self.scope_labels, **(labels or {})}

    def counter(self, name: str, value: float = 1, labels: dict[str, Any] | None = None) -> None:
        self.registry.inc(name, value, self._labels(labels))
        self._local[name] = self._local.get(name, 0) + value

    def gauge(self, name: str, value: float, labels: dict[str, Any] | None = None) -> None:
        self.registry.set(name, value, self._labels(labels))
        self._local[name] = value

    def histogram(self, name: str, value: float, labels: dict[str, Any] | None = None) -> None:
        self.registry.observe(name, value, self._labels(labels))
        self._local[f"{name}_count"] = self._local.get(f"{name}_count", 0) + 1

    def workflow_completed(self, outcome: str) -> None:
        # Duration is recorded once per instance by the runtime.
        self.counter("workflows_completed_total", labels={"outcome": outcome})

    def child(self, **labels: Any) -> "MetricsEmitter":
        return MetricsEmitter({**self.scope_labels, **labels}, registry=self.registry)

    def snapshot(self) -> dict[str, float]:
        return dict(self._local)
