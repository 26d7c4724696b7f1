"""Metrics for the ingestion pipeline, logged and optionally exported to Prometheus."""

from __future__ import annotations

import logging
import re
import threading
import time
from contextlib import contextmanager
from typing import Any, Tuple

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter as PromCounter,
    Gauge as PromGauge,
    Histogram as PromHistogram,
    generate_latest,
)

_PROM_NAME_RE = re.compile(r"[^a-zA-Z0-9_]")

_PROM_TYPES = {
    "counter": PromCounter,
    "gauge": PromGauge,
    "histogram": PromHistogram,
}


class MetricsRecorder:
    """Emit structured metric lines via logging and (optionally) Prometheus.

    Counter and gauge values are also kept in memory so the ``/metrics``
    endpoint can report them when Prometheus export is disabled.
    """

    def __init__(
        self,
        *,
        enabled: bool = True,
        namespace: str = "wellspring",
        logger: logging.Logger | None = None,
        prometheus_enabled: bool = False,
        registry: CollectorRegistry | None = None,
    ) -> None:
        self._enabled = enabled
        self._namespace = namespace.strip() or "wellspring"
        self._logger = logger or logging.getLogger("wellspring.metrics")
        self._prometheus_enabled = bool(prometheus_enabled)
        if registry is None and self._prometheus_enabled:
            registry = CollectorRegistry()
        self._prom_registry = registry if self._prometheus_enabled else None
        self._prom_metrics: dict[Tuple[str, str, Tuple[str, ...]], Any] = {}
        self._counters: dict[str, int] = {}
        self._gauges: dict[str, float] = {}
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def prometheus_enabled(self) -> bool:
        return self._prom_registry is not None

    @property
    def prometheus_content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    def render_prometheus(self) -> bytes:
        if self._prom_registry is None:
            raise RuntimeError("Prometheus export is disabled")
        return generate_latest(self._prom_registry)

    def snapshot(self) -> dict[str, dict[str, float]]:
        """Return untagged totals for every counter and the latest gauge values."""

        with self._lock:
            return {"counters": dict(self._counters), "gauges": dict(self._gauges)}

    def counter_value(self, metric: str) -> int:
        with self._lock:
            return self._counters.get(metric, 0)

    def increment(self, metric: str, *, value: int = 1, **tags: Any) -> None:
        if not self._enabled:
            return
        value = int(value)
        clean_tags = self._clean(tags)
        with self._lock:
            self._counters[metric] = self._counters.get(metric, 0) + value
        self._emit(metric, fields={"value": value}, tags=clean_tags)
        if self.prometheus_enabled:
            self._prom("counter", metric, clean_tags).inc(float(max(value, 0)))

    def set_gauge(self, metric: str, value: float, **tags: Any) -> None:
        if not self._enabled:
            return
        clean_tags = self._clean(tags)
        with self._lock:
            self._gauges[metric] = float(value)
        self._emit(metric, fields={"value": value}, tags=clean_tags)
        if self.prometheus_enabled:
            self._prom("gauge", metric, clean_tags).set(float(value))

    def record_timing(self, metric: str, duration_seconds: float, **tags: Any) -> None:
        """Log the duration in milliseconds; Prometheus observes seconds."""

        if not self._enabled:
            return
        duration_ms = max(duration_seconds * 1000.0, 0.0)
        clean_tags = self._clean(tags)
        self._emit(metric, fields={"duration_ms": round(duration_ms, 4)}, tags=clean_tags)
        if self.prometheus_enabled:
            self._prom("histogram", metric, clean_tags).observe(max(duration_seconds, 0.0))

    @contextmanager
    def track_timing(self, metric: str, **tags: Any):
        if not self._enabled:
            yield
            return
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record_timing(metric, time.perf_counter() - start, **tags)

    @staticmethod
    def _clean(tags: dict[str, Any]) -> dict[str, Any]:
        return {key: val for key, val in tags.items() if val is not None}

    def _emit(self, metric: str, *, fields: dict[str, Any], tags: dict[str, Any]) -> None:
        segments = [f"{key}={self._stringify(value)}" for key, value in sorted(fields.items())]
        segments += [f"{key}={self._stringify(value)}" for key, value in sorted(tags.items())]
        message = f"{self._namespace}.{metric}"
        if segments:
            message = f"{message} {' '.join(segments)}"
        self._logger.info(message)

    def _prom(self, kind: str, metric: str, tags: dict[str, Any]):
        label_keys = tuple(sorted(tags))
        label_names = tuple(self._sanitize_label(name) for name in label_keys)
        key = (kind, metric, label_names)
        with self._lock:
            collector = self._prom_metrics.get(key)
            if collector is None:
                collector = _PROM_TYPES[kind](
                    self._prom_metric_name(metric),
                    f"{metric} {kind}",
                    labelnames=list(label_names),
                    registry=self._prom_registry,
                )
                self._prom_metrics[key] = collector
        if not label_names:
            return collector
        return collector.labels(
            **{name: self._stringify(tags[tag]) for name, tag in zip(label_names, label_keys)}
        )

    def _prom_metric_name(self, metric: str) -> str:
        cleaned = _PROM_NAME_RE.sub("_", metric)
        return f"{_PROM_NAME_RE.sub('_', self._namespace)}_{cleaned}".strip("_")

    @staticmethod
    def _sanitize_label(label: str) -> str:
        return _PROM_NAME_RE.sub("_", label) or "label"

    @staticmethod
    def _stringify(value: Any) -> str:
        if isinstance(value, float):
            return f"{value:.4f}" if not value.is_integer() else f"{int(value)}"
        if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
            return value.value
        return str(value)


__all__ = ["MetricsRecorder"]
