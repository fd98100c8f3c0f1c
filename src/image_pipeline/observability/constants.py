# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Metric name constants following Prometheus naming conventions.

This module provides standardized metric names for all observability in the
image pipeline. All metric names use the `image_pipeline_` prefix for
Prometheus compatibility.

Naming Conventions:
    - Counter metrics end with `_total`
    - Histogram metrics for time end with `_seconds`
    - Gauges use present-tense descriptive names

Labels:
    Keep label values bounded. Allowed labels:
    - `source` - Logo/image origin (enum: direct, google, duckduckgo, origin)
    - `outcome` - Attempt outcome (enum: success, invalid, error, timeout)
    - `priority` - Scheduler priority name (enum: CRITICAL, HIGH, NORMAL, LOW)
    - `operation` - Operation name (categorical: get_image, get_logo)
    - `store` - Rate limit store name (categorical: domain-failures)
    - `layer` - Cache layer (enum: result, storage)
    - `mode` - Storage write mode (enum: buffered, stream)
    - `reason` - Failure or cancellation reason (small fixed set)
    - `status` - Memory status (enum: healthy, warning, critical)
    - `tracker` - Failure tracker name

    NEVER use:
    - `domain` - One per site (unbounded!)
    - `url` - One per asset (unbounded!)
    - `request_id` - Unique per request (unbounded!)

Usage:
    >>> from image_pipeline.observability.constants import FETCH_ATTEMPTS_TOTAL
    >>> FETCH_ATTEMPTS_TOTAL
    'image_pipeline_fetch_attempts_total'
"""


# =============================================================================
# Global Prefix
# =============================================================================

METRIC_PREFIX = "image_pipeline"
"""Prefix for all Prometheus metrics in this package."""


# =============================================================================
# Scheduler Metrics (scheduler/memory_aware.py)
# =============================================================================

REQUESTS_SCHEDULED_TOTAL = f"{METRIC_PREFIX}_requests_scheduled_total"
"""Total requests accepted into the scheduler queue."""

REQUESTS_COMPLETED_TOTAL = f"{METRIC_PREFIX}_requests_completed_total"
"""Total scheduled requests that completed successfully."""

REQUESTS_FAILED_TOTAL = f"{METRIC_PREFIX}_requests_failed_total"
"""Total scheduled requests rejected after exhausting retries."""

REQUESTS_RETRIED_TOTAL = f"{METRIC_PREFIX}_requests_retried_total"
"""Total scheduled requests re-queued after a failure."""

REQUESTS_CANCELLED_TOTAL = f"{METRIC_PREFIX}_requests_cancelled_total"
"""Total queued requests cancelled (memory critical or shutdown)."""

QUEUE_OVERFLOWS_TOTAL = f"{METRIC_PREFIX}_queue_overflows_total"
"""Total queue overflow events (request rejected due to full queue)."""

MEMORY_PRESSURE_ACTIVATIONS_TOTAL = f"{METRIC_PREFIX}_memory_pressure_activations_total"
"""Total scheduler ticks skipped because of memory pressure."""

ACTIVE_REQUESTS = f"{METRIC_PREFIX}_active_requests"
"""Number of scheduled requests currently running."""

QUEUE_DEPTH = f"{METRIC_PREFIX}_queue_depth"
"""Current number of queued requests."""

QUEUE_WAIT_SECONDS = f"{METRIC_PREFIX}_queue_wait_seconds"
"""Time a request spent queued before it started (histogram)."""


# =============================================================================
# Memory Metrics (health/memory.py)
# =============================================================================

MEMORY_RSS_BYTES = f"{METRIC_PREFIX}_memory_rss_bytes"
"""Resident set size of the process at the last sample."""

MEMORY_STATUS = f"{METRIC_PREFIX}_memory_status"
"""Memory status as a number (0 healthy, 1 warning, 2 critical)."""

MEMORY_STATUS_CHANGES_TOTAL = f"{METRIC_PREFIX}_memory_status_changes_total"
"""Total memory status transitions, labelled by the new status."""

EMERGENCY_CLEANUPS_TOTAL = f"{METRIC_PREFIX}_emergency_cleanups_total"
"""Total emergency memory cleanups."""


# =============================================================================
# Admission Metrics (limits/)
# =============================================================================

RATE_LIMIT_DENIALS_TOTAL = f"{METRIC_PREFIX}_rate_limit_denials_total"
"""Total operations denied by a fixed-window rate limiter."""

CIRCUIT_BREAKER_REJECTIONS_TOTAL = f"{METRIC_PREFIX}_circuit_breaker_rejections_total"
"""Total operations rejected because a circuit was open."""

DOMAINS_BLOCKED_TOTAL = f"{METRIC_PREFIX}_domains_blocked_total"
"""Total keys that reached the permanent block threshold."""


# =============================================================================
# Fetch Metrics (service/fetcher.py, service/unified.py)
# =============================================================================

FETCH_ATTEMPTS_TOTAL = f"{METRIC_PREFIX}_fetch_attempts_total"
"""Total origin fetch attempts, by source and outcome."""

FETCH_LATENCY_SECONDS = f"{METRIC_PREFIX}_fetch_latency_seconds"
"""Origin fetch latency (histogram)."""

CACHE_HITS_TOTAL = f"{METRIC_PREFIX}_cache_hits_total"
"""Total lookups answered by a cache layer (result cache or storage)."""

CACHE_MISSES_TOTAL = f"{METRIC_PREFIX}_cache_misses_total"
"""Total lookups that missed a cache layer."""

COALESCED_REQUESTS_TOTAL = f"{METRIC_PREFIX}_coalesced_requests_total"
"""Total logo requests served by joining an in-flight fetch."""


# =============================================================================
# Storage Metrics (storage/, streaming/)
# =============================================================================

STORAGE_WRITES_TOTAL = f"{METRIC_PREFIX}_storage_writes_total"
"""Total objects written, by mode (buffered, streamed)."""

STORAGE_ERRORS_TOTAL = f"{METRIC_PREFIX}_storage_errors_total"
"""Total failed storage operations."""

STREAMED_BYTES_TOTAL = f"{METRIC_PREFIX}_streamed_bytes_total"
"""Total bytes piped straight from origin to storage."""

STREAMING_FAILURES_TOTAL = f"{METRIC_PREFIX}_streaming_failures_total"
"""Total streamed uploads that failed and fell back to buffering."""

UPLOAD_RETRY_QUEUE_SIZE = f"{METRIC_PREFIX}_upload_retry_queue_size"
"""Current number of uploads waiting for a retry."""

UPLOAD_RETRIES_TOTAL = f"{METRIC_PREFIX}_upload_retries_total"
"""Total upload retry attempts, by outcome."""


# =============================================================================
# Operation Metrics (monitoring/operations.py)
# =============================================================================

OPERATION_TIMEOUTS_TOTAL = f"{METRIC_PREFIX}_operation_timeouts_total"
"""Total monitored operations that exceeded their deadline."""

OPERATION_DURATION_SECONDS = f"{METRIC_PREFIX}_operation_duration_seconds"
"""Duration of monitored operations (histogram)."""


# =============================================================================
# Histogram Buckets
# =============================================================================

LATENCY_BUCKETS: list[float] = [
    0.005,
    0.01,
    0.025,
    0.05,
    0.1,
    0.25,
    0.5,
    1.0,
    2.5,
    5.0,
    10.0,
]
"""Default latency buckets for duration histograms (in seconds)."""

OPERATION_DURATION_BUCKETS: list[float] = [
    0.1,
    0.5,
    1.0,
    5.0,
    10.0,
    30.0,
    60.0,
    120.0,
    300.0,
]
"""Operation duration buckets (in seconds, up to the stream timeout)."""


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
    "METRIC_PREFIX",
    "OPERATION_DURATION_BUCKETS",
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
]
