# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Observability and metrics for the image pipeline.

Classes:
    UnifiedMetricsCollector: Metrics collector supporting dict snapshots and Prometheus.
    MetricDefinition: Schema of a pre-defined metric.

Constants:
    All metric name constants from the constants module.
"""

from .collector import METRIC_DEFINITIONS, MetricDefinition, UnifiedMetricsCollector
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
    METRIC_PREFIX,
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

__all__ = [
    "ACTIVE_REQUESTS",
    "CACHE_HITS_TOTAL",
    "CACHE_MISSES_TOTAL",
    "CIRCUIT_BREAKER_REJECTIONS_TOTAL",
    "COALESCED_REQUESTS_TOTAL",
    "DOMAINS_BLOCKED_TOTAL",
    "EMERGENCY_CLEANUPS_TOTAL",
    "FETCH_ATTEMPTS_TOTAL",
    "FETCH_LATENCY_SECONDS",
    "LATENCY_BUCKETS",
    "MEMORY_PRESSURE_ACTIVATIONS_TOTAL",
    "MEMORY_RSS_BYTES",
    "MEMORY_STATUS",
    "MEMORY_STATUS_CHANGES_TOTAL",
    "METRIC_DEFINITIONS",
    "METRIC_PREFIX",
    "OPERATION_DURATION_SECONDS",
    "OPERATION_TIMEOUTS_TOTAL",
    "QUEUE_DEPTH",
    "QUEUE_OVERFLOWS_TOTAL",
    "QUEUE_WAIT_SECONDS",
    "RATE_LIMIT_DENIALS_TOTAL",
    "REQUESTS_CANCELLED_TOTAL",
    "REQUESTS_COMPLETED_TOTAL",
    "REQUESTS_FAILED_TOTAL",
    "REQUESTS_RETRIED_TOTAL",
    "REQUESTS_SCHEDULED_TOTAL",
    "STORAGE_ERRORS_TOTAL",
    "STORAGE_WRITES_TOTAL",
    "STREAMED_BYTES_TOTAL",
    "STREAMING_FAILURES_TOTAL",
    "UPLOAD_RETRIES_TOTAL",
    "UPLOAD_RETRY_QUEUE_SIZE",
    "MetricDefinition",
    "UnifiedMetricsCollector",
]
