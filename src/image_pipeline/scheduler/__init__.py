# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Priority scheduling of pipeline work under memory pressure."""

from ..types.queue import RequestPriority, ScheduledRequest
from .memory_aware import MemoryAwareScheduler

__all__ = ["MemoryAwareScheduler", "RequestPriority", "ScheduledRequest"]
