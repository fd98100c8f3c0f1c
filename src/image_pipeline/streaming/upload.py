# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Streaming-to-storage helper.

Responses whose declared ``Content-Length`` exceeds the stream threshold are
piped chunk by chunk into the store's multipart write instead of being read
into memory. The stream is wrapped in SizeCappedStream so a body larger than
``max_stream_bytes`` aborts the upload, and the whole upload runs under a
deadline.

Streaming never raises to the caller: every failure is reported as
``StreamingResult(success=False)`` with a ``reason``. The caller falls back to
the buffered path, except after ``too_large`` where a second download
cannot succeed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

import httpx

from ..config import StreamingConfig
from ..exceptions import StorageError, StreamTooLargeError
from ..observability.collector import UnifiedMetricsCollector
from ..observability.constants import (
    STORAGE_WRITES_TOTAL,
    STREAMED_BYTES_TOTAL,
    STREAMING_FAILURES_TOTAL,
)
from ..storage.base import BaseStore
from ..types.results import StreamingResult

logger = logging.getLogger(__name__)


def parse_content_length(value: str | int | None) -> int | None:
    """Parse a Content-Length header value. Missing or malformed values give None."""
    if value is None:
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    try:
        parsed = int(value.strip())
    except ValueError:
        return None
    return parsed if parsed >= 0 else None


def should_stream(content_length: str | int | None, threshold: int) -> bool:
    """True if the declared length is known and larger than ``threshold``."""
    length = parse_content_length(content_length)
    return length is not None and length > threshold


class SizeCappedStream(AsyncIterator[bytes]):
    """
    Async byte iterator that raises once more than ``max_bytes`` have passed.

    Usage:
        capped = SizeCappedStream(response.aiter_bytes(), max_bytes=100 * MIB)
        await store.write_stream(key, capped, "image/png")
    """

    __slots__ = ("_inner", "bytes_read", "max_bytes")

    def __init__(self, inner: AsyncIterator[bytes], max_bytes: int) -> None:
        self._inner = inner
        self.max_bytes = max_bytes
        self.bytes_read = 0

    def __aiter__(self) -> SizeCappedStream:
        return self

    async def __anext__(self) -> bytes:
        chunk = await self._inner.__anext__()
        self.bytes_read += len(chunk)
        if self.bytes_read > self.max_bytes:
            raise StreamTooLargeError(
                f"Stream exceeded {self.max_bytes} bytes",
                bytes_read=self.bytes_read,
                max_bytes=self.max_bytes,
            )
        return chunk


class StreamingUploader:
    """Streams large bodies into a store with a size cap and a deadline."""

    def __init__(
        self,
        store: BaseStore,
        config: StreamingConfig | None = None,
        metrics: UnifiedMetricsCollector | None = None,
    ):
        self.store = store
        self.config = config or StreamingConfig()
        self._metrics = metrics

    def should_stream(self, content_length: str | int | None) -> bool:
        return should_stream(content_length, self.config.stream_threshold_bytes)

    async def stream_to_storage(
        self,
        key: str,
        chunks: AsyncIterator[bytes],
        content_type: str,
    ) -> StreamingResult:
        """
        Pipe ``chunks`` into ``store.write_stream`` under the size cap and deadline.

        Returns:
            StreamingResult; ``success`` is False on any failure
        """
        capped = SizeCappedStream(chunks, self.config.max_stream_bytes)
        try:
            written = await asyncio.wait_for(
                self.store.write_stream(key, capped, content_type, part_size=self.config.part_size),
                timeout=self.config.stream_timeout,
            )
        except StreamTooLargeError as e:
            return self._failed(key, "too_large", str(e), capped.bytes_read)
        except asyncio.TimeoutError:
            return self._failed(
                key, "timeout", f"Stream to {key} timed out after {self.config.stream_timeout}s", capped.bytes_read
            )
        except StorageError as e:
            return self._failed(key, "storage", str(e), capped.bytes_read)
        except httpx.HTTPError as e:
            return self._failed(key, "network", f"{type(e).__name__}: {e}", capped.bytes_read)

        if self._metrics:
            self._metrics.inc_counter(STREAMED_BYTES_TOTAL, written)
            self._metrics.inc_counter(STORAGE_WRITES_TOTAL, labels={"mode": "stream"})
        logger.info(f"Streamed {written} bytes to {key}")
        return StreamingResult(success=True, bytes_streamed=written)

    async def maybe_stream_response(
        self, response: httpx.Response, key: str, content_type: str
    ) -> bool:
        """
        Stream ``response`` into storage if its declared length qualifies.

        ``response`` must have been opened with ``client.stream(...)`` and
        not yet read.

        Returns:
            True if the body was streamed and stored. False if the response
            is not eligible or streaming failed; in the latter case the body
            has been consumed and the caller must fetch it again.
        """
        if not self.should_stream(response.headers.get("content-length")):
            return False
        result = await self.stream_to_storage(key, response.aiter_bytes(), content_type)
        return result.success

    def _failed(self, key: str, reason: str, error: str, bytes_read: int) -> StreamingResult:
        logger.warning(f"Streaming to {key} failed after {bytes_read} bytes ({reason}): {error}")
        if self._metrics:
            self._metrics.inc_counter(STREAMING_FAILURES_TOTAL, labels={"reason": reason})
        return StreamingResult(success=False, bytes_streamed=bytes_read, error=error, reason=reason)


__all__ = [
    "SizeCappedStream",
    "StreamingUploader",
    "parse_content_length",
    "should_stream",
]
