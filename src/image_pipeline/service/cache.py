# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
In-process cache of logo results.

Valid results live for ``ttl`` seconds, invalid ones for ``negative_ttl``.
The cache is an LRU bounded to ``max_size`` entries. The memory monitor may
disable it during an emergency cleanup; while disabled it stores nothing and
every lookup misses.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

from ..observability.collector import UnifiedMetricsCollector
from ..observability.constants import CACHE_HITS_TOTAL, CACHE_MISSES_TOTAL
from ..types.results import LogoFetchResult

logger = logging.getLogger(__name__)

CACHE_LAYER = "result_cache"


class ResultCache:
    """TTL + LRU map of domain key to LogoFetchResult."""

    def __init__(
        self,
        max_size: int = 5000,
        ttl: float = 30 * 24 * 60 * 60.0,
        negative_ttl: float = 60 * 60.0,
        metrics: UnifiedMetricsCollector | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.ttl = ttl
        self.negative_ttl = negative_ttl
        self._metrics = metrics
        self._clock = clock
        self._entries: OrderedDict[str, tuple[LogoFetchResult, float]] = OrderedDict()
        self._enabled = True
        self._hits = 0
        self._misses = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> LogoFetchResult | None:
        entry = self._entries.get(key)
        if entry is not None and entry[1] <= self._clock():
            del self._entries[key]
            entry = None

        if entry is None:
            self._misses += 1
            if self._metrics:
                self._metrics.inc_counter(CACHE_MISSES_TOTAL, labels={"layer": CACHE_LAYER})
            return None

        self._entries.move_to_end(key)
        self._hits += 1
        if self._metrics:
            self._metrics.inc_counter(CACHE_HITS_TOTAL, labels={"layer": CACHE_LAYER})
        return entry[0]

    def set(self, key: str, result: LogoFetchResult) -> None:
        if not self._enabled:
            return
        ttl = self.ttl if result.is_valid else self.negative_ttl
        self._entries[key] = (result, self._clock() + ttl)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def prune_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def disable(self) -> None:
        """Drop every entry and stop caching until ``enable()``."""
        dropped = len(self._entries)
        self._entries.clear()
        self._enabled = False
        logger.warning(f"Result cache disabled, dropped {dropped} entries")

    def enable(self) -> None:
        if not self._enabled:
            self._enabled = True
            logger.info("Result cache re-enabled")

    def get_stats(self) -> dict[str, Any]:
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "enabled": self._enabled,
            "hits": self._hits,
            "misses": self._misses,
        }


__all__ = ["ResultCache"]
