# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Admission primitives: fixed-window rate limiting, circuit breaking and durable failure tracking."""

from .failure_tracker import DomainFailureRecord, FailureTracker
from .rate_limiter import (
    CircuitBreakerConfig,
    RateLimitConfig,
    RateLimiter,
    RateLimitRecord,
)

__all__ = [
    "CircuitBreakerConfig",
    "DomainFailureRecord",
    "FailureTracker",
    "RateLimitConfig",
    "RateLimitRecord",
    "RateLimiter",
]
