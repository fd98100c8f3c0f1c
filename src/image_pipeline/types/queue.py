# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Queue types for the memory-aware scheduler.

This module defines the request priorities and the queued request wrapper
used by the scheduler.
"""

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


class RequestPriority(IntEnum):
    """
    Scheduler priority. Lower values are more urgent.

    Only CRITICAL requests survive a transition to critical memory; every
    other queued request is cancelled.
    """

    CRITICAL = 0
    HIGH = 1
    NORMAL = 2
    LOW = 3


@dataclass
class ScheduledRequest:
    """
    A request waiting in the scheduler queue.

    Wraps the operation to run along with the future resolved when it
    completes or is rejected.

    Attributes:
        operation: Zero-argument async callable that performs the work
        future: Future resolved with the operation's result
        priority: Scheduling priority
        max_retries: Retries allowed after the first failure
        retries: Retries consumed so far
        enqueued_at: Monotonic time when the request was first queued
        id: Unique request identifier
    """

    operation: Callable[[], Awaitable[Any]]
    future: "asyncio.Future[Any]"
    priority: RequestPriority = RequestPriority.NORMAL
    max_retries: int = 3
    retries: int = 0
    enqueued_at: float = field(default_factory=time.monotonic)
    id: str = field(default_factory=lambda: f"req-{uuid.uuid4().hex[:12]}")

    @property
    def can_retry(self) -> bool:
        """Whether another retry is allowed."""
        return self.retries < self.max_retries


__all__ = ["RequestPriority", "ScheduledRequest"]
