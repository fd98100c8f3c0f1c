# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Bounded retry queue for uploads refused under memory pressure.

Only writes that failed with the memory-headroom signature are queued; any
other storage failure is logged by the caller and dropped. Entries are
retried with exponential backoff plus jitter until ``max_upload_retries``
attempts have been made. When the queue is full the oldest 20% are evicted
to make room.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from ..config import RetryConfig
from ..observability.collector import UnifiedMetricsCollector
from ..observability.constants import UPLOAD_RETRIES_TOTAL, UPLOAD_RETRY_QUEUE_SIZE
from ..storage.base import MEMORY_HEADROOM_ERROR
from ..types.results import UploadRetryEntry

logger = logging.getLogger(__name__)

EVICTION_FRACTION = 0.2


def is_memory_pressure_failure(error: BaseException) -> bool:
    return MEMORY_HEADROOM_ERROR in str(error)


class UploadRetryQueue:
    """
    Storage keys awaiting a retry, keyed by key.

    Example:
        queue = UploadRetryQueue(RetryConfig())
        queue.enqueue("images/logos/example_com_google_a379a6f6.png", "example.com", "image/png")
        retried = await queue.drain(retry_upload)
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        metrics: UnifiedMetricsCollector | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or RetryConfig()
        self._metrics = metrics
        self._clock = clock
        self._entries: dict[str, UploadRetryEntry] = {}
        self._dropped = 0
        self._evicted = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get(self, key: str) -> UploadRetryEntry | None:
        return self._entries.get(key)

    # === Scheduling ===

    def enqueue(self, key: str, source_url: str, content_type: str) -> UploadRetryEntry | None:
        """
        Queue (or requeue) a failed upload and schedule its next attempt.

        Returns:
            The scheduled entry, or None if it ran out of attempts
        """
        entry = self._entries.get(key)
        if entry is None:
            if len(self._entries) >= self.config.max_retry_queue_size:
                self._evict_oldest()
            entry = UploadRetryEntry(source_key=key, source_url=source_url, content_type=content_type)
            self._entries[key] = entry
        return self._schedule(entry)

    def reschedule(self, key: str) -> UploadRetryEntry | None:
        """Count a failed retry of ``key``; None if it was dropped or is unknown."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        return self._schedule(entry)

    def _schedule(self, entry: UploadRetryEntry) -> UploadRetryEntry | None:
        now = self._clock()
        entry.attempts += 1
        entry.last_attempt = now
        if entry.attempts > self.config.max_upload_retries:
            del self._entries[entry.source_key]
            self._dropped += 1
            logger.error(
                f"Dropping upload of {entry.source_key} after {entry.attempts - 1} retries"
            )
            self._record("dropped")
            return None

        delay = entry.get_backoff_delay(
            self.config.retry_base_delay,
            self.config.retry_max_delay,
            self.config.retry_jitter_factor,
        )
        entry.next_retry = now + delay
        logger.warning(
            f"Upload of {entry.source_key} queued for retry {entry.attempts}/"
            f"{self.config.max_upload_retries} in {delay:.1f}s"
        )
        self._update_gauge()
        return entry

    def remove(self, key: str) -> bool:
        removed = self._entries.pop(key, None) is not None
        if removed:
            self._update_gauge()
        return removed

    def due(self, now: float | None = None) -> list[UploadRetryEntry]:
        """Entries whose next attempt is due, oldest schedule first."""
        now = self._clock() if now is None else now
        return sorted(
            (e for e in self._entries.values() if e.is_due(now)), key=lambda e: e.next_retry
        )

    # === Draining ===

    async def drain(self, retry: Callable[[UploadRetryEntry], Awaitable[bool]]) -> int:
        """
        Run ``retry`` for every due entry.

        A True result removes the entry. A False result counts as one more
        attempt unless ``retry`` already requeued the key itself. Exceptions
        from ``retry`` are logged and count as a failed attempt.

        Returns:
            Number of uploads that succeeded
        """
        succeeded = 0
        for entry in self.due():
            attempts_before = entry.attempts
            try:
                ok = await retry(entry)
            except Exception as e:
                logger.error(f"Upload retry of {entry.source_key} raised: {e}", exc_info=True)
                ok = False

            if ok:
                self.remove(entry.source_key)
                succeeded += 1
                self._record("success")
                logger.info(f"Retried upload of {entry.source_key} succeeded")
                continue

            self._record("failure")
            current = self._entries.get(entry.source_key)
            if current is not None and current.attempts == attempts_before:
                self._schedule(current)
        return succeeded

    # === Maintenance ===

    def cleanup_expired(self) -> int:
        """Drop entries whose last attempt is older than ``retry_entry_ttl``."""
        cutoff = self._clock() - self.config.retry_entry_ttl
        stale = [k for k, e in self._entries.items() if e.last_attempt < cutoff]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.info(f"Discarded {len(stale)} stale upload retries")
            self._update_gauge()
        return len(stale)

    def _evict_oldest(self) -> None:
        count = max(1, int(self.config.max_retry_queue_size * EVICTION_FRACTION))
        oldest = sorted(self._entries.values(), key=lambda e: e.last_attempt)[:count]
        for entry in oldest:
            del self._entries[entry.source_key]
        self._evicted += len(oldest)
        logger.warning(f"Upload retry queue full, evicted {len(oldest)} oldest entries")

    def clear(self) -> None:
        self._entries.clear()
        self._update_gauge()

    def get_stats(self) -> dict[str, Any]:
        return {
            "size": len(self._entries),
            "max_size": self.config.max_retry_queue_size,
            "due": len(self.due()),
            "dropped": self._dropped,
            "evicted": self._evicted,
        }

    def _record(self, outcome: str) -> None:
        if self._metrics:
            self._metrics.inc_counter(UPLOAD_RETRIES_TOTAL, labels={"outcome": outcome})
        self._update_gauge()

    def _update_gauge(self) -> None:
        if self._metrics:
            self._metrics.set_gauge(UPLOAD_RETRY_QUEUE_SIZE, len(self._entries))


__all__ = ["UploadRetryQueue", "is_memory_pressure_failure"]
