# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Metrics collector backing both dict snapshots and Prometheus metrics.

Every component of the pipeline receives a ``UnifiedMetricsCollector`` at
construction time; there is no module-level collector. Each collector owns a
Prometheus ``CollectorRegistry`` (its own unless one is injected), so several
pipelines can live in one process, and tests never collide on metric names.

Features:
    1. Counters, gauges and histograms guarded by one reentrant lock
    2. Prometheus metrics created lazily from METRIC_DEFINITIONS
    3. Dict snapshots for JSON health and stats endpoints
    4. A cap on label combinations per metric
    5. A scrape endpoint via prometheus_client.start_http_server

Usage:
    >>> collector = UnifiedMetricsCollector()
    >>> collector.inc_counter(FETCH_ATTEMPTS_TOTAL,
    ...                       labels={'source': 'google', 'outcome': 'success'})
    >>> collector.get_metrics()["counters"]
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, ClassVar

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from .constants import (
    ACTIVE_REQUESTS,
    CACHE_HITS_TOTAL,
    CACHE_MISSES_TOTAL,
    CIRCUIT_BREAKER_REJECTIONS_TOTAL,
    COALESCED_REQUESTS_TOTAL,
    DOMAINS_BLOCKED_TOTAL,
    EMERGENCY_CLEANUPS_TOTAL,
    FETCH_ATTEMPTS_TOTAL,
    FETCH_LATENCY_SECONDS,
    LATENCY_BUCKETS,
    MEMORY_PRESSURE_ACTIVATIONS_TOTAL,
    MEMORY_RSS_BYTES,
    MEMORY_STATUS,
    MEMORY_STATUS_CHANGES_TOTAL,
    OPERATION_DURATION_BUCKETS,
    OPERATION_DURATION_SECONDS,
    OPERATION_TIMEOUTS_TOTAL,
    QUEUE_DEPTH,
    QUEUE_OVERFLOWS_TOTAL,
    QUEUE_WAIT_SECONDS,
    RATE_LIMIT_DENIALS_TOTAL,
    REQUESTS_CANCELLED_TOTAL,
    REQUESTS_COMPLETED_TOTAL,
    REQUESTS_FAILED_TOTAL,
    REQUESTS_RETRIED_TOTAL,
    REQUESTS_SCHEDULED_TOTAL,
    STORAGE_ERRORS_TOTAL,
    STORAGE_WRITES_TOTAL,
    STREAMED_BYTES_TOTAL,
    STREAMING_FAILURES_TOTAL,
    UPLOAD_RETRIES_TOTAL,
    UPLOAD_RETRY_QUEUE_SIZE,
)

logger = logging.getLogger(__name__)


@dataclass
class MetricDefinition:
    """
    Schema of one pipeline metric.

    Type, help text, label names and (for histograms) bucket bounds; the
    Prometheus instrument is created from it on first use.
    """

    name: str
    metric_type: str  # counter | gauge | histogram
    description: str
    label_names: tuple[str, ...] = ()
    buckets: list[float] | None = None


def _counter(name: str, description: str, *labels: str) -> MetricDefinition:
    return MetricDefinition(name, "counter", description, labels)


def _gauge(name: str, description: str, *labels: str) -> MetricDefinition:
    return MetricDefinition(name, "gauge", description, labels)


def _histogram(
    name: str, description: str, *labels: str, buckets: list[float] = LATENCY_BUCKETS
) -> MetricDefinition:
    return MetricDefinition(name, "histogram", description, labels, buckets)


METRIC_DEFINITIONS: dict[str, MetricDefinition] = {
    d.name: d
    for d in (
        # === Scheduler ===
        _counter(REQUESTS_SCHEDULED_TOTAL, "Total requests queued", "priority"),
        _counter(REQUESTS_COMPLETED_TOTAL, "Total scheduled requests completed", "priority"),
        _counter(REQUESTS_FAILED_TOTAL, "Total scheduled requests failed", "priority"),
        _counter(REQUESTS_RETRIED_TOTAL, "Total scheduled requests re-queued", "priority"),
        _counter(REQUESTS_CANCELLED_TOTAL, "Total queued requests cancelled", "reason"),
        _counter(QUEUE_OVERFLOWS_TOTAL, "Total queue overflow events"),
        _counter(MEMORY_PRESSURE_ACTIVATIONS_TOTAL, "Total scheduler pressure backoffs"),
        _gauge(ACTIVE_REQUESTS, "Currently running scheduled requests"),
        _gauge(QUEUE_DEPTH, "Current scheduler queue depth"),
        _histogram(QUEUE_WAIT_SECONDS, "Time spent queued before running"),
        # === Memory ===
        _gauge(MEMORY_RSS_BYTES, "Process resident set size in bytes"),
        _gauge(MEMORY_STATUS, "Memory status (0 healthy, 1 warning, 2 critical)"),
        _counter(MEMORY_STATUS_CHANGES_TOTAL, "Total memory status transitions", "status"),
        _counter(EMERGENCY_CLEANUPS_TOTAL, "Total emergency memory cleanups"),
        # === Admission ===
        _counter(RATE_LIMIT_DENIALS_TOTAL, "Total rate limiter denials", "store"),
        _counter(CIRCUIT_BREAKER_REJECTIONS_TOTAL, "Total circuit breaker rejections", "store"),
        _counter(DOMAINS_BLOCKED_TOTAL, "Total permanently blocked keys", "tracker"),
        # === Fetch ===
        _counter(FETCH_ATTEMPTS_TOTAL, "Total origin fetch attempts", "source", "outcome"),
        _histogram(FETCH_LATENCY_SECONDS, "Origin fetch latency", "source"),
        _counter(CACHE_HITS_TOTAL, "Total cache hits", "layer"),
        _counter(CACHE_MISSES_TOTAL, "Total cache misses", "layer"),
        _counter(COALESCED_REQUESTS_TOTAL, "Total requests joined to an in-flight fetch"),
        # === Storage ===
        _counter(STORAGE_WRITES_TOTAL, "Total objects written", "mode"),
        _counter(STORAGE_ERRORS_TOTAL, "Total failed storage operations", "operation"),
        _counter(STREAMED_BYTES_TOTAL, "Total bytes streamed to storage"),
        _counter(STREAMING_FAILURES_TOTAL, "Total failed streamed uploads", "reason"),
        _gauge(UPLOAD_RETRY_QUEUE_SIZE, "Uploads waiting for a retry"),
        _counter(UPLOAD_RETRIES_TOTAL, "Total upload retry attempts", "outcome"),
        # === Operations ===
        _counter(OPERATION_TIMEOUTS_TOTAL, "Total monitored operation timeouts", "operation"),
        _histogram(
            OPERATION_DURATION_SECONDS,
            "Duration of monitored operations",
            "operation",
            buckets=OPERATION_DURATION_BUCKETS,
        ),
    )
}


class UnifiedMetricsCollector:
    """
    Records pipeline metrics in plain dicts and mirrors them into Prometheus.

    Locking:
        Dict updates happen under an RLock; status listeners may record
        metrics while another update holds it.

    Label limits:
        At most MAX_LABEL_COMBINATIONS unique label combinations are tracked
        per metric; further combinations are dropped with a warning.

    Example:
        >>> collector = UnifiedMetricsCollector(registry=CollectorRegistry())
        >>> collector.inc_counter(CACHE_HITS_TOTAL, labels={'layer': 'storage'})
        >>> collector.get_flat_metrics()
        {'image_pipeline_cache_hits_total{layer=storage}': 1}
    """

    MAX_LABEL_COMBINATIONS: ClassVar[int] = 1000
    MAX_HISTOGRAM_OBSERVATIONS: ClassVar[int] = 10000

    def __init__(
        self,
        enable_prometheus: bool = True,
        registry: CollectorRegistry | None = None,
    ) -> None:
        """
        Create a collector.

        Args:
            enable_prometheus: Whether to mirror metrics into Prometheus
            registry: Prometheus registry to register into. A private registry
                is created when omitted.
        """
        self._enable_prometheus = enable_prometheus
        self._registry = registry if registry is not None else CollectorRegistry()

        self._counters: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: dict[str, dict[str, float]] = defaultdict(lambda: defaultdict(float))
        self._histograms: dict[str, dict[str, list[float]]] = defaultdict(
            lambda: defaultdict(list)
        )

        self._lock = threading.RLock()

        # Prometheus metric instances (lazy initialized)
        self._prom_metrics: dict[str, Any] = {}

        self._label_combinations: dict[str, set[str]] = defaultdict(set)
        self._server_running = False

        logger.debug(
            f"Metrics collector ready "
            f"(prometheus={'enabled' if self._enable_prometheus else 'disabled'})"
        )

    @property
    def registry(self) -> CollectorRegistry:
        """Prometheus registry backing this collector."""
        return self._registry

    def _labels_to_key(self, labels: dict[str, str] | None) -> str:
        """Sorted ``k=v`` pairs joined by commas ("" without labels)."""
        if not labels:
            return ""
        return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))

    def _check_cardinality(self, name: str, label_key: str) -> bool:
        """Return True if this label combination may be recorded."""
        seen = self._label_combinations[name]
        if label_key in seen:
            return True
        if len(seen) >= self.MAX_LABEL_COMBINATIONS:
            logger.warning(
                f"{name} already has {self.MAX_LABEL_COMBINATIONS} label combinations, "
                f"not recording {label_key!r}"
            )
            return False
        seen.add(label_key)
        return True

    def _get_or_create_prom(
        self, name: str, metric_type: str, labels: dict[str, str] | None
    ) -> Any | None:
        """Get or lazily create the Prometheus metric for ``name``."""
        if not self._enable_prometheus:
            return None

        with self._lock:
            if name in self._prom_metrics:
                return self._prom_metrics[name]

            defn = METRIC_DEFINITIONS.get(name)
            if defn is None or defn.metric_type != metric_type:
                # Dynamic metric; label names come from the first observation
                defn = MetricDefinition(
                    name,
                    metric_type,
                    f"Dynamic {metric_type}: {name}",
                    tuple(sorted(labels)) if labels else (),
                )

            try:
                if metric_type == "counter":
                    metric: Any = Counter(
                        name, defn.description, list(defn.label_names), registry=self._registry
                    )
                elif metric_type == "gauge":
                    metric = Gauge(
                        name, defn.description, list(defn.label_names), registry=self._registry
                    )
                else:
                    metric = Histogram(
                        name,
                        defn.description,
                        list(defn.label_names),
                        buckets=defn.buckets or LATENCY_BUCKETS,
                        registry=self._registry,
                    )
            except ValueError as e:
                logger.warning(f"Failed to create Prometheus {metric_type} {name}: {e}")
                return None

            self._prom_metrics[name] = metric
            return metric

    # === Counter Operations ===

    def inc_counter(
        self,
        name: str,
        value: int = 1,
        labels: dict[str, str] | None = None,
    ) -> None:
        """
        Add ``value`` to one counter series.

        Args:
            name: Metric name, usually one of the constants module names
            value: Value to increment by (must be non-negative)
            labels: Label values of the series

        Raises:
            ValueError: On a negative increment
        """
        if value < 0:
            raise ValueError("Counter increments must be non-negative")

        label_key = self._labels_to_key(labels)
        with self._lock:
            if not self._check_cardinality(name, label_key):
                return
            self._counters[name][label_key] += value

        prom_counter = self._get_or_create_prom(name, "counter", labels)
        if prom_counter is not None:
            try:
                (prom_counter.labels(**labels) if labels else prom_counter).inc(value)
            except ValueError as e:
                logger.debug(f"Could not mirror counter {name} to Prometheus: {e}")

    # === Gauge Operations ===

    def set_gauge(
        self,
        name: str,
        value: float,
        labels: dict[str, str] | None = None,
    ) -> None:
        """Overwrite one gauge series."""
        label_key = self._labels_to_key(labels)
        with self._lock:
            if not self._check_cardinality(name, label_key):
                return
            self._gauges[name][label_key] = value

        prom_gauge = self._get_or_create_prom(name, "gauge", labels)
        if prom_gauge is not None:
            try:
                (prom_gauge.labels(**labels) if labels else prom_gauge).set(value)
            except ValueError as e:
                logger.debug(f"Could not mirror gauge {name} to Prometheus: {e}")

    # === Histogram Operations ===

    def observe_histogram(
        self,
        name: str,
        value: float,
        labels: dict[str, str] | None = None,
    ) -> None:
        """Append an observation; the oldest half is dropped past MAX_HISTOGRAM_OBSERVATIONS."""
        label_key = self._labels_to_key(labels)
        with self._lock:
            if not self._check_cardinality(name, label_key):
                return
            observations = self._histograms[name][label_key]
            observations.append(value)
            if len(observations) > self.MAX_HISTOGRAM_OBSERVATIONS:
                del observations[: len(observations) // 2]

        prom_histogram = self._get_or_create_prom(name, "histogram", labels)
        if prom_histogram is not None:
            try:
                (prom_histogram.labels(**labels) if labels else prom_histogram).observe(value)
            except ValueError as e:
                logger.debug(f"Could not mirror histogram {name} to Prometheus: {e}")

    # === Snapshot Operations ===

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        """Return the current value of one counter series (0 if unseen)."""
        with self._lock:
            return self._counters.get(name, {}).get(self._labels_to_key(labels), 0)

    def get_gauge(self, name: str, labels: dict[str, str] | None = None) -> float:
        """Return the current value of one gauge series (0.0 if unseen)."""
        with self._lock:
            return self._gauges.get(name, {}).get(self._labels_to_key(labels), 0.0)

    def get_metrics(self) -> dict[str, Any]:
        """
        Copy of every series, for JSON stats endpoints.

        Histograms are summarised as count, sum, avg, min and max per label key:
        {
            "counters": {"metric_name": {"label_key": value, ...}, ...},
            "gauges": {"metric_name": {"label_key": value, ...}, ...},
            "histograms": {"metric_name": {"label_key": {...}, ...}, ...}
        }
        """
        with self._lock:
            counters = {name: dict(values) for name, values in self._counters.items()}
            gauges = {name: dict(values) for name, values in self._gauges.items()}

            histograms: dict[str, dict[str, dict[str, Any]]] = {}
            for name, label_values in self._histograms.items():
                histograms[name] = {
                    label_key: {
                        "count": len(observations),
                        "sum": sum(observations),
                        "avg": sum(observations) / len(observations),
                        "min": min(observations),
                        "max": max(observations),
                    }
                    for label_key, observations in label_values.items()
                    if observations
                }

        return {"counters": counters, "gauges": gauges, "histograms": histograms}

    def get_flat_metrics(self) -> dict[str, Any]:
        """
        Get counters and gauges as a flat dict.

        Labeled series use the format ``metric_name{label=value,...}``.
        """
        result: dict[str, Any] = {}
        with self._lock:
            for series in (self._counters, self._gauges):
                for name, label_values in series.items():
                    for label_key, value in label_values.items():
                        result[f"{name}{{{label_key}}}" if label_key else name] = value
        return result

    # === Lifecycle ===

    def reset(self) -> None:
        """Forget every recorded series. Prometheus instruments are kept."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._label_combinations.clear()

        logger.debug("Pipeline metrics cleared")

    def start_http_server(self, host: str = "127.0.0.1", port: int = 9090) -> bool:
        """
        Start the Prometheus HTTP server for this collector's registry.

        Binds to localhost by default. Pass ``host="0.0.0.0"`` for container
        deployments where network-level controls are in place.

        Returns:
            True if the server is running, False if it failed to start
        """
        if self._server_running:
            logger.warning("Metrics endpoint is already being served")
            return True

        try:
            start_http_server(port, addr=host, registry=self._registry)
        except OSError as e:
            logger.error(f"Could not serve metrics on {host}:{port}: {e}")
            return False

        self._server_running = True
        logger.info(f"Serving pipeline metrics on http://{host}:{port}/metrics")
        return True

    @property
    def prometheus_enabled(self) -> bool:
        """Whether updates are mirrored into the registry."""
        return self._enable_prometheus

    @property
    def server_running(self) -> bool:
        """True once ``start_http_server`` succeeded."""
        return self._server_running


__all__ = [
    "METRIC_DEFINITIONS",
    "MetricDefinition",
    "UnifiedMetricsCollector",
]
