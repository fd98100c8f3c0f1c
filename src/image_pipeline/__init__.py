# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Image Pipeline - Memory-aware logo and image acquisition with CDN caching.

This library fetches logos and images from origin servers, validates and
optionally transforms them, stores them under deterministic keys in a blob
store and returns CDN-facing URLs, while keeping the process inside a memory
budget.

Key Features:
    - Per-domain request coalescing and an in-process result cache
    - Ordered logo candidate walk with placeholder ("globe") detection
    - Durable cross-session failure tracking with permanent blocklisting
    - Memory health monitoring with status observers and emergency cleanup
    - Memory-aware priority scheduler with backoff under pressure
    - Streaming of large bodies straight into storage
    - Upload retry queue for writes refused under memory pressure
    - Memory, Redis and S3 blob stores

Quick Start:
    >>> from image_pipeline import PipelineConfig, create_pipeline
    >>>
    >>> pipeline = create_pipeline(PipelineConfig.from_env())
    >>> async with pipeline:
    ...     logo = await pipeline.service.get_logo("example.com")
    ...     image = await pipeline.service.get_image("https://example.com/hero.jpg")

Main Exports:
    - create_pipeline, ImagePipeline: Assembly and lifecycle
    - UnifiedImageService: get_logo / get_image
    - MemoryMonitor, MemoryAwareScheduler: Memory-aware admission
    - RateLimiter, FailureTracker: Admission primitives
    - MemoryStore, RedisStore, S3Store: Blob stores
    - PipelineConfig: Configuration

Note: RedisStore and S3Store are imported lazily.

Version: 1.0.0
"""

__version__ = "1.0.0"

from typing import TYPE_CHECKING

from .config import (
    CdnConfig,
    FailureConfig,
    FetchConfig,
    MemoryConfig,
    PipelineConfig,
    RetryConfig,
    SchedulerConfig,
    ServiceConfig,
    StreamingConfig,
)
from .exceptions import (
    CircuitOpenError,
    ConfigurationError,
    ImagePipelineError,
    ImageValidationError,
    MemoryPressureError,
    OperationTimeoutError,
    QueueOverflowError,
    ReadOnlyStorageError,
    RequestCancelledError,
    StorageConnectionError,
    StorageError,
    StorageOperationError,
    StreamTooLargeError,
)
from .factory import ImagePipeline, create_pipeline
from .health import MemoryMonitor, memory_health_response
from .limits import FailureTracker, RateLimiter
from .monitoring import OperationTracker
from .scheduler import MemoryAwareScheduler
from .service import UnifiedImageService
from .storage import BaseStore, MemoryStore
from .types import (
    ImageResult,
    LogoFetchResult,
    LogoSource,
    MemoryStatus,
    RequestPriority,
)

# Lazy import for the networked stores
if TYPE_CHECKING:
    from .storage import RedisStore, S3Store

__all__ = [
    # Stores
    "BaseStore",
    # Config
    "CdnConfig",
    "CircuitOpenError",
    "ConfigurationError",
    "FailureConfig",
    "FailureTracker",
    "FetchConfig",
    # Factory
    "ImagePipeline",
    # Exceptions
    "ImagePipelineError",
    # Results
    "ImageResult",
    "ImageValidationError",
    "LogoFetchResult",
    "LogoSource",
    "MemoryAwareScheduler",
    "MemoryConfig",
    # Health
    "MemoryMonitor",
    "MemoryPressureError",
    "MemoryStatus",
    "MemoryStore",
    "OperationTimeoutError",
    "OperationTracker",
    "PipelineConfig",
    "QueueOverflowError",
    "RateLimiter",
    "ReadOnlyStorageError",
    "RedisStore",  # Lazy loaded
    "RequestCancelledError",
    "RequestPriority",
    "RetryConfig",
    "S3Store",  # Lazy loaded
    "SchedulerConfig",
    "ServiceConfig",
    "StorageConnectionError",
    "StorageError",
    "StorageOperationError",
    "StreamTooLargeError",
    "StreamingConfig",
    # Service
    "UnifiedImageService",
    "create_pipeline",
    "memory_health_response",
]


def __getattr__(name: str) -> type:
    """Lazy import for the networked stores."""
    if name == "RedisStore":
        from .storage.redis import RedisStore

        return RedisStore
    if name == "S3Store":
        from .storage.s3 import S3Store

        return S3Store
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
