# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Core types for the image pipeline.

This module exports the data types shared across components: memory status
and snapshots, scheduler queue entries, tracked operations and service
results.
"""

from .memory import MemoryHealthReport, MemorySnapshot, MemoryStatus
from .operations import OperationStatus, OperationSummary, TrackedOperation
from .queue import RequestPriority, ScheduledRequest
from .results import (
    ImageResult,
    LogoFetchResult,
    LogoSource,
    StreamingResult,
    UploadRetryEntry,
)

__all__ = [
    "ImageResult",
    "LogoFetchResult",
    "LogoSource",
    "MemoryHealthReport",
    "MemorySnapshot",
    "MemoryStatus",
    "OperationStatus",
    "OperationSummary",
    "RequestPriority",
    "ScheduledRequest",
    "StreamingResult",
    "TrackedOperation",
    "UploadRetryEntry",
]
