# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Base Store for the Image Pipeline

This module provides the BaseStore abstract class, the interface of the
durable blob store behind the pipeline: listing, existence checks, binary
read/write, delete and streamed (multipart) writes. JSON helpers are built on
top of the binary primitives.

Writes consult an optional memory guard before buffering a body. When the
guard refuses, the write fails with a StorageOperationError whose message
starts with MEMORY_HEADROOM_ERROR; the image service uses that signature to
queue the upload for a later retry.
"""

import abc
import json
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any, ClassVar

from ..exceptions import StorageOperationError

logger = logging.getLogger(__name__)

MEMORY_HEADROOM_ERROR = "Insufficient memory headroom"
"""Message prefix of writes refused by the memory guard."""

MemoryGuard = Callable[[int], bool]
"""Returns True if ``nbytes`` more can be buffered without exhausting memory."""


@dataclass
class HealthCheckResult:
    """
    Structured health check result for store monitoring.

    Attributes:
        healthy: Whether the store is operational
        store_type: Type of store (e.g., 's3', 'redis', 'memory')
        namespace: Bucket or key namespace
        error: Error message if unhealthy
        metadata: Additional store-specific information
    """

    healthy: bool
    store_type: str
    namespace: str
    error: str | None = None
    metadata: dict[str, Any] | None = None


class BaseStore(abc.ABC):
    """
    Abstract durable blob store.

    Keys are ``/``-separated paths such as ``images/logos/foo_com_google_1a2b3c4d.png``.
    Implementations must be safe to share between coroutines of one loop.
    """

    store_type: ClassVar[str] = "base"

    def __init__(self, namespace: str = "images", memory_guard: MemoryGuard | None = None):
        """
        Args:
            namespace: Bucket name or key namespace, used in logs and health checks
            memory_guard: Optional admission check run before buffered writes
        """
        self.namespace = namespace
        self.memory_guard = memory_guard

    # ==========================================================================
    # Binary Operations
    # ==========================================================================

    @abc.abstractmethod
    async def exists(self, key: str) -> bool:
        """Check whether an object exists at ``key``."""

    @abc.abstractmethod
    async def read(self, key: str) -> bytes | None:
        """Return the object's bytes, or None if it does not exist."""

    @abc.abstractmethod
    async def write(self, key: str, data: bytes, content_type: str) -> None:
        """
        Store ``data`` at ``key``, replacing any existing object.

        Raises:
            StorageOperationError: If the write fails or the memory guard refuses it
        """

    @abc.abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete ``key``. Returns True if an object was removed."""

    @abc.abstractmethod
    async def list_keys(self, prefix: str = "") -> list[str]:
        """Return every key starting with ``prefix``."""

    @abc.abstractmethod
    async def write_stream(
        self,
        key: str,
        chunks: AsyncIterator[bytes],
        content_type: str,
        part_size: int = 5 * 1024 * 1024,
    ) -> int:
        """
        Store an object from an async byte stream without holding it whole.

        Chunks are gathered into parts of ``part_size`` bytes and uploaded one
        at a time. A failure aborts the upload and leaves no object behind.

        Returns:
            Number of bytes written
        """

    @abc.abstractmethod
    async def health_check(self) -> HealthCheckResult:
        """Probe the store."""

    async def close(self) -> None:  # noqa: B027
        """Release connections. Default implementation does nothing."""

    # ==========================================================================
    # JSON Helpers
    # ==========================================================================

    async def read_json(self, key: str) -> Any | None:
        """Read and decode a JSON object; None if missing."""
        raw = await self.read(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise StorageOperationError(f"Invalid JSON at {key}: {e}", key=key) from e

    async def write_json(self, key: str, value: Any) -> None:
        """Encode ``value`` as JSON and write it."""
        payload = json.dumps(value, separators=(",", ":")).encode("utf-8")
        await self.write(key, payload, "application/json")

    # ==========================================================================
    # Helpers
    # ==========================================================================

    def _check_headroom(self, key: str, nbytes: int) -> None:
        """Raise the memory-headroom error if the guard refuses ``nbytes``."""
        if self.memory_guard is not None and not self.memory_guard(nbytes):
            logger.warning(f"Refusing {nbytes} byte write to {key}: memory guard declined")
            raise StorageOperationError(
                f"{MEMORY_HEADROOM_ERROR} for {nbytes} byte write to {key}", key=key
            )


async def iter_parts(chunks: AsyncIterator[bytes], part_size: int) -> AsyncIterator[bytes]:
    """Regroup an async byte stream into parts of ``part_size`` (last part may be short)."""
    buffer = bytearray()
    async for chunk in chunks:
        buffer.extend(chunk)
        while len(buffer) >= part_size:
            yield bytes(buffer[:part_size])
            del buffer[:part_size]
    if buffer:
        yield bytes(buffer)


__all__ = [
    "MEMORY_HEADROOM_ERROR",
    "BaseStore",
    "HealthCheckResult",
    "MemoryGuard",
    "iter_parts",
]
