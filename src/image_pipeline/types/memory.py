# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Memory health types.

Defines the memory status enum, the snapshot recorded on every sample and the
health report served to load balancers.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class MemoryStatus(str, Enum):
    """Process memory health derived from RSS against two thresholds."""

    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def level(self) -> int:
        """Numeric severity (0 healthy, 1 warning, 2 critical)."""
        return _LEVELS[self]


_LEVELS = {MemoryStatus.HEALTHY: 0, MemoryStatus.WARNING: 1, MemoryStatus.CRITICAL: 2}


@dataclass(frozen=True)
class MemorySnapshot:
    """
    One memory sample of the current process.

    Attributes:
        rss_bytes: Resident set size
        heap_used_bytes: Memory unique to the process (psutil ``uss`` when
            available, otherwise ``rss``)
        heap_total_bytes: Virtual memory size (psutil ``vms``)
        external_bytes: Shared memory (psutil ``shared`` where reported)
        array_buffer_bytes: Always 0; kept for dashboards that chart it
        timestamp: Wall-clock time of the sample
    """

    rss_bytes: int
    heap_used_bytes: int = 0
    heap_total_bytes: int = 0
    external_bytes: int = 0
    array_buffer_bytes: int = 0
    timestamp: float = field(default_factory=time.time)


@dataclass
class MemoryHealthReport:
    """
    Health report returned by the memory monitor.

    Attributes:
        status: Current memory status
        status_code: HTTP status code a health endpoint should serve
            (503 when critical, otherwise 200)
        message: Human-readable summary
        details: RSS, thresholds, budget and trend
    """

    status: MemoryStatus
    status_code: int
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        return {
            "status": self.status.value,
            "status_code": self.status_code,
            "message": self.message,
            "details": dict(self.details),
        }


__all__ = ["MemoryHealthReport", "MemorySnapshot", "MemoryStatus"]
