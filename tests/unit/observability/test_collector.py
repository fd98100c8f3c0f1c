# SPDX-License-Identifier: Apache-2.0
"""
Unit tests for the observability collector module.

Tests cover:
- MetricDefinition and the predefined metric table
- Counter, Gauge, and Histogram operations
- Snapshots (nested and flat)
- Label cardinality protection
- Prometheus mirroring into a private registry
"""

from __future__ import annotations

import threading
from unittest.mock import patch

import pytest
from prometheus_client import CollectorRegistry

from image_pipeline.observability.collector import (
    METRIC_DEFINITIONS,
    MetricDefinition,
    UnifiedMetricsCollector,
)
from image_pipeline.observability.constants import (
    CACHE_HITS_TOTAL,
    FETCH_ATTEMPTS_TOTAL,
    FETCH_LATENCY_SECONDS,
    METRIC_PREFIX,
    QUEUE_DEPTH,
)

# =============================================================================
# MetricDefinition Tests
# =============================================================================


class TestMetricDefinition:
    """Test MetricDefinition dataclass and the predefined table."""

    def test_counter_definition(self) -> None:
        defn = MetricDefinition(
            name="test_counter_total",
            metric_type="counter",
            description="A test counter",
            label_names=("source", "outcome"),
        )
        assert defn.label_names == ("source", "outcome")
        assert defn.buckets is None

    def test_predefined_metrics_exist(self) -> None:
        assert FETCH_ATTEMPTS_TOTAL in METRIC_DEFINITIONS
        assert METRIC_DEFINITIONS[FETCH_ATTEMPTS_TOTAL].label_names == ("source", "outcome")
        assert METRIC_DEFINITIONS[QUEUE_DEPTH].metric_type == "gauge"
        assert METRIC_DEFINITIONS[FETCH_LATENCY_SECONDS].buckets

    def test_all_names_prefixed(self) -> None:
        assert all(name.startswith(f"{METRIC_PREFIX}_") for name in METRIC_DEFINITIONS)

    def test_counters_end_with_total(self) -> None:
        for name, defn in METRIC_DEFINITIONS.items():
            if defn.metric_type == "counter":
                assert name.endswith("_total"), name


# =============================================================================
# Counter / Gauge / Histogram Tests
# =============================================================================


class TestCollectorOperations:
    """Test the dict-backed metric operations."""

    @pytest.fixture
    def collector(self) -> UnifiedMetricsCollector:
        return UnifiedMetricsCollector(enable_prometheus=False)

    def test_counter_increments(self, collector: UnifiedMetricsCollector) -> None:
        labels = {"source": "google", "outcome": "success"}
        collector.inc_counter(FETCH_ATTEMPTS_TOTAL, labels=labels)
        collector.inc_counter(FETCH_ATTEMPTS_TOTAL, 2, labels=labels)
        assert collector.get_counter(FETCH_ATTEMPTS_TOTAL, labels) == 3
        assert collector.get_counter(FETCH_ATTEMPTS_TOTAL, {"source": "direct", "outcome": "error"}) == 0

    def test_label_order_does_not_matter(self, collector: UnifiedMetricsCollector) -> None:
        collector.inc_counter(FETCH_ATTEMPTS_TOTAL, labels={"outcome": "error", "source": "origin"})
        assert collector.get_counter(FETCH_ATTEMPTS_TOTAL, {"source": "origin", "outcome": "error"}) == 1

    def test_negative_counter_rejected(self, collector: UnifiedMetricsCollector) -> None:
        with pytest.raises(ValueError, match="non-negative"):
            collector.inc_counter(CACHE_HITS_TOTAL, -1)

    def test_gauge_set(self, collector: UnifiedMetricsCollector) -> None:
        collector.set_gauge(QUEUE_DEPTH, 4)
        collector.set_gauge(QUEUE_DEPTH, 2)
        assert collector.get_gauge(QUEUE_DEPTH) == 2
        assert collector.get_gauge("unknown_gauge") == 0.0

    def test_histogram_summary(self, collector: UnifiedMetricsCollector) -> None:
        for value in (0.1, 0.3, 0.2):
            collector.observe_histogram(FETCH_LATENCY_SECONDS, value, labels={"source": "direct"})
        summary = collector.get_metrics()["histograms"][FETCH_LATENCY_SECONDS]["source=direct"]
        assert summary["count"] == 3
        assert summary["min"] == 0.1
        assert summary["max"] == 0.3
        assert summary["avg"] == pytest.approx(0.2)

    def test_histogram_observations_bounded(self, collector: UnifiedMetricsCollector) -> None:
        with patch.object(UnifiedMetricsCollector, "MAX_HISTOGRAM_OBSERVATIONS", 10):
            for i in range(11):
                collector.observe_histogram(FETCH_LATENCY_SECONDS, float(i))
        assert collector.get_metrics()["histograms"][FETCH_LATENCY_SECONDS][""]["count"] == 6

    def test_flat_metrics(self, collector: UnifiedMetricsCollector) -> None:
        collector.inc_counter(CACHE_HITS_TOTAL, labels={"layer": "storage"})
        collector.set_gauge(QUEUE_DEPTH, 3)
        assert collector.get_flat_metrics() == {
            f"{CACHE_HITS_TOTAL}{{layer=storage}}": 1,
            QUEUE_DEPTH: 3,
        }

    def test_reset(self, collector: UnifiedMetricsCollector) -> None:
        collector.inc_counter(CACHE_HITS_TOTAL)
        collector.reset()
        assert collector.get_metrics() == {"counters": {}, "gauges": {}, "histograms": {}}

    def test_concurrent_increments(self, collector: UnifiedMetricsCollector) -> None:
        def worker() -> None:
            for _ in range(500):
                collector.inc_counter(CACHE_HITS_TOTAL)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert collector.get_counter(CACHE_HITS_TOTAL) == 2000


# =============================================================================
# Cardinality Protection Tests
# =============================================================================


class TestCardinalityProtection:
    def test_new_combinations_dropped_past_limit(self) -> None:
        collector = UnifiedMetricsCollector(enable_prometheus=False)
        with patch.object(UnifiedMetricsCollector, "MAX_LABEL_COMBINATIONS", 2):
            collector.inc_counter(CACHE_HITS_TOTAL, labels={"layer": "a"})
            collector.inc_counter(CACHE_HITS_TOTAL, labels={"layer": "b"})
            collector.inc_counter(CACHE_HITS_TOTAL, labels={"layer": "c"})
            collector.inc_counter(CACHE_HITS_TOTAL, labels={"layer": "a"})

        assert collector.get_counter(CACHE_HITS_TOTAL, {"layer": "a"}) == 2
        assert collector.get_counter(CACHE_HITS_TOTAL, {"layer": "c"}) == 0


# =============================================================================
# Prometheus Integration Tests
# =============================================================================


class TestPrometheusIntegration:
    def test_private_registry_per_collector(self) -> None:
        first = UnifiedMetricsCollector()
        second = UnifiedMetricsCollector()
        assert first.registry is not second.registry

        # Same metric name in two collectors must not collide
        first.inc_counter(CACHE_HITS_TOTAL, labels={"layer": "result"})
        second.inc_counter(CACHE_HITS_TOTAL, labels={"layer": "result"})
        assert first.registry.get_sample_value(CACHE_HITS_TOTAL, {"layer": "result"}) == 1.0

    def test_mirrors_counters_and_gauges(self) -> None:
        registry = CollectorRegistry()
        collector = UnifiedMetricsCollector(registry=registry)
        collector.inc_counter(FETCH_ATTEMPTS_TOTAL, 3, labels={"source": "google", "outcome": "success"})
        collector.set_gauge(QUEUE_DEPTH, 7)

        assert registry.get_sample_value(
            FETCH_ATTEMPTS_TOTAL, {"source": "google", "outcome": "success"}
        ) == 3.0
        assert registry.get_sample_value(QUEUE_DEPTH) == 7.0

    def test_mirrors_histograms(self) -> None:
        registry = CollectorRegistry()
        collector = UnifiedMetricsCollector(registry=registry)
        collector.observe_histogram(FETCH_LATENCY_SECONDS, 0.2, labels={"source": "direct"})
        assert registry.get_sample_value(
            f"{FETCH_LATENCY_SECONDS}_count", {"source": "direct"}
        ) == 1.0

    def test_dynamic_metric(self) -> None:
        registry = CollectorRegistry()
        collector = UnifiedMetricsCollector(registry=registry)
        collector.inc_counter("custom_events_total", labels={"kind": "x"})
        assert registry.get_sample_value("custom_events_total", {"kind": "x"}) == 1.0

    def test_disabled_prometheus_leaves_registry_empty(self) -> None:
        registry = CollectorRegistry()
        collector = UnifiedMetricsCollector(enable_prometheus=False, registry=registry)
        collector.inc_counter(CACHE_HITS_TOTAL, labels={"layer": "storage"})
        assert registry.get_sample_value(CACHE_HITS_TOTAL, {"layer": "storage"}) is None
        assert collector.prometheus_enabled is False

    def test_start_http_server(self) -> None:
        collector = UnifiedMetricsCollector()
        with patch("image_pipeline.observability.collector.start_http_server") as mock_start:
            assert collector.start_http_server(port=9999) is True
            assert collector.start_http_server(port=9999) is True
        mock_start.assert_called_once_with(9999, addr="127.0.0.1", registry=collector.registry)
        assert collector.server_running

    def test_start_http_server_failure(self) -> None:
        collector = UnifiedMetricsCollector()
        with patch(
            "image_pipeline.observability.collector.start_http_server",
            side_effect=OSError("address in use"),
        ):
            assert collector.start_http_server() is False
        assert not collector.server_running
