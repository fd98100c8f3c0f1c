# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
RedisStore for the Image Pipeline

This module provides a blob store on top of Redis, for deployments that
already run Redis and want stored images shared between processes.

Layout:
    ``{prefix}:data:{key}``  raw object bytes
    ``{prefix}:meta:{key}``  content type
    ``{prefix}:tmp:{uuid}``  in-progress streamed upload

Streamed writes APPEND each part to a temporary key and RENAME it into place
once the stream completes, so readers never see a partial object.
"""

import logging
import os
import time
import uuid
from collections.abc import AsyncIterator
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import (
    ConnectionError,
    RedisError,
    ResponseError,
    TimeoutError,
)

from ..exceptions import StorageConnectionError, StorageOperationError
from .base import BaseStore, HealthCheckResult, MemoryGuard, iter_parts

logger = logging.getLogger(__name__)

_GLOB_SPECIALS = str.maketrans({c: f"\\{c}" for c in "*?[]\\"})


class RedisStore(BaseStore):
    """
    Redis-backed blob store.

    Reads that fail because Redis is unreachable are logged and reported as
    misses, so the pipeline falls through to the origin. Failed writes are
    logged and raised as StorageOperationError.
    """

    store_type = "redis"

    def __init__(
        self,
        redis_url: str | None = None,
        redis_client: Any | None = None,
        namespace: str = "images",
        key_prefix: str = "img",
        key_ttl: int | None = None,
        memory_guard: MemoryGuard | None = None,
    ) -> None:
        """
        Initialize the Redis store.

        Args:
            redis_url: Redis connection URL. If not provided, falls back to the
                REDIS_URL environment variable, then to "redis://localhost:6379".
            redis_client: Optional pre-configured ``redis.asyncio`` client
                (must not decode responses)
            namespace: Logical namespace reported by health checks
            key_prefix: Prefix of every Redis key written by this store
            key_ttl: Optional expiry in seconds applied to stored objects
            memory_guard: Optional admission check run before buffered writes
        """
        super().__init__(namespace, memory_guard)
        self.redis_url = redis_url or os.environ.get("REDIS_URL") or "redis://localhost:6379"
        self.key_prefix = key_prefix
        self.key_ttl = key_ttl

        self._redis: Any | None = redis_client
        self._owned_redis = redis_client is None

    def _data_key(self, key: str) -> str:
        return f"{self.key_prefix}:data:{key}"

    def _meta_key(self, key: str) -> str:
        return f"{self.key_prefix}:meta:{key}"

    async def _ensure_connected(self) -> Any:
        """Create the client on first use."""
        if self._redis is None:
            try:
                self._redis = Redis.from_url(self.redis_url, decode_responses=False)
            except (ValueError, RedisError) as e:
                raise StorageConnectionError(f"Cannot connect to {self.redis_url}: {e}") from e
        return self._redis

    async def exists(self, key: str) -> bool:
        try:
            client = await self._ensure_connected()
            return bool(await client.exists(self._data_key(key)))
        except (ConnectionError, TimeoutError, ResponseError, RedisError) as e:
            logger.error(f"Redis error checking {key}: {e}")
            return False

    async def read(self, key: str) -> bytes | None:
        try:
            client = await self._ensure_connected()
            data = await client.get(self._data_key(key))
        except (ConnectionError, TimeoutError, ResponseError, RedisError) as e:
            logger.error(f"Redis error reading {key}: {e}")
            return None
        return bytes(data) if data is not None else None

    async def get_content_type(self, key: str) -> str | None:
        try:
            client = await self._ensure_connected()
            raw = await client.get(self._meta_key(key))
        except (ConnectionError, TimeoutError, ResponseError, RedisError) as e:
            logger.error(f"Redis error reading content type of {key}: {e}")
            return None
        if raw is None:
            return None
        return raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)

    async def write(self, key: str, data: bytes, content_type: str) -> None:
        self._check_headroom(key, len(data))
        try:
            client = await self._ensure_connected()
            async with client.pipeline(transaction=True) as pipe:
                pipe.set(self._data_key(key), data, ex=self.key_ttl)
                pipe.set(self._meta_key(key), content_type, ex=self.key_ttl)
                await pipe.execute()
        except (ConnectionError, TimeoutError, ResponseError, RedisError) as e:
            logger.error(f"Redis error writing {key}: {e}")
            raise StorageOperationError(f"Redis write to {key} failed: {e}", key=key) from e

    async def delete(self, key: str) -> bool:
        try:
            client = await self._ensure_connected()
            removed = await client.delete(self._data_key(key), self._meta_key(key))
        except (ConnectionError, TimeoutError, ResponseError, RedisError) as e:
            logger.error(f"Redis error deleting {key}: {e}")
            raise StorageOperationError(f"Redis delete of {key} failed: {e}", key=key) from e
        return bool(removed)

    async def list_keys(self, prefix: str = "") -> list[str]:
        """List keys under ``prefix``. Uses SCAN, never KEYS."""
        data_prefix = self._data_key("")
        pattern = f"{data_prefix.translate(_GLOB_SPECIALS)}{prefix.translate(_GLOB_SPECIALS)}*"
        keys: list[str] = []
        try:
            client = await self._ensure_connected()
            async for raw in client.scan_iter(match=pattern, count=100):
                name = raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)
                keys.append(name[len(data_prefix) :])
        except (ConnectionError, TimeoutError, ResponseError, RedisError) as e:
            logger.error(f"Redis error listing {prefix!r}: {e}")
            return []
        return sorted(keys)

    async def write_stream(
        self,
        key: str,
        chunks: AsyncIterator[bytes],
        content_type: str,
        part_size: int = 5 * 1024 * 1024,
    ) -> int:
        client = await self._ensure_connected()
        tmp_key = f"{self.key_prefix}:tmp:{uuid.uuid4().hex}"
        total = 0
        try:
            async for part in iter_parts(chunks, part_size):
                await client.append(tmp_key, part)
                total += len(part)
            if total == 0:
                await client.set(tmp_key, b"")
            async with client.pipeline(transaction=True) as pipe:
                pipe.rename(tmp_key, self._data_key(key))
                pipe.set(self._meta_key(key), content_type, ex=self.key_ttl)
                if self.key_ttl:
                    pipe.expire(self._data_key(key), self.key_ttl)
                await pipe.execute()
        except (ConnectionError, TimeoutError, ResponseError, RedisError) as e:
            logger.error(f"Redis error streaming {key}: {e}")
            await self._discard(client, tmp_key)
            raise StorageOperationError(f"Redis streamed write to {key} failed: {e}", key=key) from e
        except BaseException:
            await self._discard(client, tmp_key)
            raise
        return total

    async def _discard(self, client: Any, tmp_key: str) -> None:
        try:
            await client.delete(tmp_key)
        except (ConnectionError, TimeoutError, ResponseError, RedisError) as e:
            logger.warning(f"Could not remove partial upload {tmp_key}: {e}")

    async def health_check(self) -> HealthCheckResult:
        try:
            client = await self._ensure_connected()
            test_key = f"{self.key_prefix}:health_check_{int(time.time())}"
            await client.set(test_key, b"test", ex=60)
            result = await client.get(test_key)
            await client.delete(test_key)
            return HealthCheckResult(
                healthy=result == b"test",
                store_type=self.store_type,
                namespace=self.namespace,
                metadata={"redis_url": self.redis_url, "key_prefix": self.key_prefix},
            )
        except (StorageConnectionError, ConnectionError, TimeoutError, ResponseError, RedisError) as e:
            return HealthCheckResult(
                healthy=False,
                store_type=self.store_type,
                namespace=self.namespace,
                error=str(e),
            )

    async def close(self) -> None:
        if self._redis is not None and self._owned_redis:
            try:
                await self._redis.aclose()
            except (ConnectionError, RedisError) as e:
                logger.error(f"Error closing Redis client: {e}")
            finally:
                self._redis = None


__all__ = ["RedisStore"]
