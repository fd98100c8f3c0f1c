# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Types recorded by the async operation tracker."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class OperationStatus(str, Enum):
    """Lifecycle state of a tracked operation."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


@dataclass
class TrackedOperation:
    """
    One async unit of work as seen by the operation tracker.

    ``start_time`` and ``end_time`` are monotonic seconds; ``duration`` is
    only known once the operation leaves PENDING.
    """

    id: str
    name: str
    start_time: float = field(default_factory=time.monotonic)
    end_time: float | None = None
    status: OperationStatus = OperationStatus.PENDING
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def duration(self) -> float | None:
        """Seconds between start and end, or None while pending."""
        if self.end_time is None:
            return None
        return self.end_time - self.start_time

    @property
    def is_finished(self) -> bool:
        return self.status is not OperationStatus.PENDING


@dataclass
class OperationSummary:
    """Aggregate counts over the tracked operations."""

    total: int = 0
    pending: int = 0
    completed: int = 0
    failed: int = 0
    timeout: int = 0
    average_duration: float = 0.0


__all__ = ["OperationStatus", "OperationSummary", "TrackedOperation"]
