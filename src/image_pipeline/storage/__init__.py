# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Blob store implementations for the image pipeline.

Available stores:
- BaseStore: Abstract base class defining the store interface
- MemoryStore: In-memory store for tests and single-process use
- RedisStore: Redis-backed store shared between processes
- S3Store: S3-compatible object storage

Note: RedisStore and S3Store are lazily imported so that importing the
package does not open client libraries that are not used.
"""

from typing import TYPE_CHECKING, cast

from .base import MEMORY_HEADROOM_ERROR, BaseStore, HealthCheckResult, MemoryGuard
from .memory import MemoryStore

if TYPE_CHECKING:
    from .redis import RedisStore
    from .s3 import S3Store

__all__ = [
    "MEMORY_HEADROOM_ERROR",
    "BaseStore",
    "HealthCheckResult",
    "MemoryGuard",
    "MemoryStore",
    "RedisStore",
    "S3Store",
]


def __getattr__(name: str) -> type:
    """Lazy import for the networked stores."""
    if name == "RedisStore":
        from . import redis as redis_module

        return cast(type, redis_module.RedisStore)
    if name == "S3Store":
        from . import s3 as s3_module

        return cast(type, s3_module.S3Store)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
