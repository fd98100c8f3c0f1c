# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Result types returned by the image service and its helpers.

LogoFetchResult is a pydantic model because it is cached and served as JSON;
the remaining results are plain dataclasses.
"""

import random
import time
from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, Field


class LogoSource(str, Enum):
    """Where a logo came from."""

    DIRECT = "direct"
    GOOGLE = "google"
    DUCKDUCKGO = "duckduckgo"
    CLEARBIT = "clearbit"

    @property
    def key_segment(self) -> str:
        """Short form used inside storage keys."""
        return "ddg" if self is LogoSource.DUCKDUCKGO else self.value


class LogoFetchResult(BaseModel):
    """
    Outcome of a logo lookup, cached both on success and on failure.

    ``is_valid`` is False for every failure; ``error`` then explains why and
    ``source`` is None when no candidate was ever accepted.
    """

    domain: str
    source: LogoSource | None = None
    content_type: str | None = None
    storage_key: str | None = None
    cdn_url: str | None = None
    url: str | None = None
    timestamp: float = Field(default_factory=time.time)
    is_valid: bool = False
    is_globe_icon: bool = False
    inverted: bool = False
    error: str | None = None

    @classmethod
    def failure(cls, domain: str, error: str) -> "LogoFetchResult":
        """Build an invalid result carrying an error message."""
        return cls(domain=domain, is_valid=False, error=error)


@dataclass
class ImageResult:
    """
    Outcome of ``UnifiedImageService.get_image``.

    Attributes:
        storage_key: Deterministic key of the stored object
        cdn_url: CDN-facing URL of the stored object
        content_type: MIME type of the object
        source: ``"storage"`` when already stored, ``"origin"`` when fetched
        streamed: True when the body was piped straight to storage
        size_bytes: Bytes written, or None when served from storage
    """

    storage_key: str
    cdn_url: str
    content_type: str
    source: str
    streamed: bool = False
    size_bytes: int | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class StreamingResult:
    """Outcome of a streamed upload. ``error`` is set when ``success`` is False."""

    success: bool
    bytes_streamed: int = 0
    error: str | None = None
    reason: str | None = None
    """Failure category: too_large, timeout, storage or network."""


@dataclass
class UploadRetryEntry:
    """
    A storage write queued for retry after a memory-pressure failure.

    Attributes:
        source_key: Storage key that failed to write
        source_url: Domain (or URL) to refetch when retrying
        content_type: MIME type of the failed object
        attempts: Attempts made so far
        last_attempt: Wall-clock time of the last attempt
        next_retry: Wall-clock time when the next attempt is due
    """

    source_key: str
    source_url: str
    content_type: str
    attempts: int = 0
    last_attempt: float = field(default_factory=time.time)
    next_retry: float = 0.0

    def get_backoff_delay(
        self, base_delay: float = 1.0, max_delay: float = 60.0, jitter_factor: float = 0.2
    ) -> float:
        """Exponential backoff with jitter: min(base * 2^attempts, max) + jitter."""
        delay = min(base_delay * (2**self.attempts), max_delay)
        jitter: float = delay * jitter_factor * random.random()  # noqa: S311  # nosec B311
        return float(delay + jitter)

    def is_due(self, now: float) -> bool:
        """Whether the entry should be retried at ``now``."""
        return now >= self.next_retry


__all__ = [
    "ImageResult",
    "LogoFetchResult",
    "LogoSource",
    "StreamingResult",
    "UploadRetryEntry",
]
