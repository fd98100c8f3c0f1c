# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Process memory health monitoring and admission."""

from .memory import (
    TREND_DECREASING,
    TREND_INCREASING,
    TREND_STABLE,
    DisableableCache,
    MemoryMonitor,
    StatusListener,
    memory_health_response,
    sample_process_memory,
)

__all__ = [
    "TREND_DECREASING",
    "TREND_INCREASING",
    "TREND_STABLE",
    "DisableableCache",
    "MemoryMonitor",
    "StatusListener",
    "memory_health_response",
    "sample_process_memory",
]
