# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
MemoryStore for the Image Pipeline

This module provides an in-memory blob store. It is meant for tests,
development and single-process deployments that do not need objects to
survive a restart.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from .base import BaseStore, HealthCheckResult, MemoryGuard, iter_parts

logger = logging.getLogger(__name__)


@dataclass
class StoredObject:
    """One object held by the MemoryStore."""

    data: bytes
    content_type: str
    stored_at: float = field(default_factory=time.time)


class MemoryStore(BaseStore):
    """
    Dict-backed blob store.

    Key Features:
    - Async-safe operations using asyncio.Lock
    - Multipart writes assembled in a side buffer and committed atomically
    - Operation counters (``write_count``, ``stream_count``) for assertions

    Note:
        Objects live only as long as the process. Not suitable for
        multi-process deployments.
    """

    store_type = "memory"

    def __init__(
        self, namespace: str = "images-memory", memory_guard: MemoryGuard | None = None
    ) -> None:
        super().__init__(namespace, memory_guard)
        self._objects: dict[str, StoredObject] = {}
        self._lock = asyncio.Lock()

        self.write_count = 0
        self.stream_count = 0
        self.parts_uploaded = 0

        logger.debug(f"Initialized MemoryStore with namespace '{namespace}'")

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return key in self._objects

    async def read(self, key: str) -> bytes | None:
        async with self._lock:
            obj = self._objects.get(key)
            return obj.data if obj else None

    async def get_content_type(self, key: str) -> str | None:
        async with self._lock:
            obj = self._objects.get(key)
            return obj.content_type if obj else None

    async def write(self, key: str, data: bytes, content_type: str) -> None:
        self._check_headroom(key, len(data))
        async with self._lock:
            self._objects[key] = StoredObject(bytes(data), content_type)
            self.write_count += 1
        logger.debug(f"Stored {len(data)} bytes at {key}")

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._objects.pop(key, None) is not None

    async def list_keys(self, prefix: str = "") -> list[str]:
        async with self._lock:
            return sorted(k for k in self._objects if k.startswith(prefix))

    async def write_stream(
        self,
        key: str,
        chunks: AsyncIterator[bytes],
        content_type: str,
        part_size: int = 5 * 1024 * 1024,
    ) -> int:
        # Parts stay out of the object map until the stream completes
        parts: list[bytes] = []
        async for part in iter_parts(chunks, part_size):
            parts.append(part)
            self.parts_uploaded += 1

        data = b"".join(parts)
        async with self._lock:
            self._objects[key] = StoredObject(data, content_type)
            self.stream_count += 1
        return len(data)

    async def health_check(self) -> HealthCheckResult:
        async with self._lock:
            return HealthCheckResult(
                healthy=True,
                store_type=self.store_type,
                namespace=self.namespace,
                metadata={
                    "objects": len(self._objects),
                    "bytes": sum(len(o.data) for o in self._objects.values()),
                },
            )

    async def clear(self) -> None:
        """Remove every object."""
        async with self._lock:
            self._objects.clear()


__all__ = ["MemoryStore", "StoredObject"]
