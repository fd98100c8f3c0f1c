# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Durable failure tracking (the domain blocklist).

FailureTracker counts failures per key across process restarts. After
``max_retries`` failures a key is permanently blocked until
``remove_failure`` is called for it. Between failures a key is skipped for
``cooldown`` seconds, so durable failures are spaced at least one cooldown
apart.

The tracker is generic over the tracked item: a ``key_fn`` maps items to the
string keys persisted in the store. The whole map is kept in memory, bounded
by ``max_items``, and written back as one JSON object by ``save()``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field, ValidationError

from ..exceptions import StorageError
from ..observability.collector import UnifiedMetricsCollector
from ..observability.constants import DOMAINS_BLOCKED_TOTAL
from ..storage.base import BaseStore

logger = logging.getLogger(__name__)

K = TypeVar("K")


class DomainFailureRecord(BaseModel):
    """Failure history of one key. Persisted as JSON."""

    key: str
    failure_count: int = 0
    first_failure_at: float = Field(default_factory=time.time)
    last_failure_at: float = Field(default_factory=time.time)
    permanently_blocked: bool = False
    reason: str | None = None


class BlocklistDocument(BaseModel):
    """On-disk form of a tracker."""

    name: str
    updated_at: float = Field(default_factory=time.time)
    records: list[DomainFailureRecord] = Field(default_factory=list)


class FailureTracker(Generic[K]):
    """
    Bounded, durable map of failure records.

    Example:
        tracker = FailureTracker(lambda domain: domain.lower(), store, max_retries=5)
        if not await tracker.should_skip("example.com"):
            ...
            await tracker.record_failure("example.com", "no valid logo")
            await tracker.save()
    """

    def __init__(
        self,
        key_fn: Callable[[K], str],
        store: BaseStore,
        storage_key: str,
        max_retries: int = 5,
        cooldown: float = 24 * 60 * 60.0,
        max_items: int = 10000,
        name: str = "failure-tracker",
        metrics: UnifiedMetricsCollector | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if max_items < 1:
            raise ValueError("max_items must be at least 1")
        if cooldown < 0:
            raise ValueError("cooldown must be non-negative")

        self.key_fn = key_fn
        self.store = store
        self.storage_key = storage_key
        self.max_retries = max_retries
        self.cooldown = cooldown
        self.max_items = max_items
        self.name = name
        self._metrics = metrics
        self._clock = clock

        self._records: dict[str, DomainFailureRecord] = {}
        self._loaded = False
        self._dirty = False
        self._load_lock = asyncio.Lock()

    # === Persistence ===

    async def load(self) -> None:
        """
        Replace in-memory state with the persisted blocklist.

        A missing, unreadable or malformed object yields an empty tracker;
        it never raises.
        """
        async with self._load_lock:
            records: dict[str, DomainFailureRecord] = {}
            try:
                raw = await self.store.read_json(self.storage_key)
                if raw is not None:
                    document = _parse_document(raw, self.name)
                    records = {r.key: r for r in document.records}
            except (StorageError, ValidationError, TypeError, ValueError) as e:
                logger.warning(f"[{self.name}] Could not load {self.storage_key}, starting empty: {e}")
                records = {}

            self._records = records
            self._loaded = True
            self._dirty = False
            self._evict_overflow()
            logger.info(
                f"[{self.name}] Loaded {len(self._records)} failure records "
                f"({sum(r.permanently_blocked for r in self._records.values())} blocked)"
            )

    async def save(self) -> bool:
        """
        Persist the map if it changed since the last load or save.

        Returns:
            True if a write happened and succeeded
        """
        if not self._dirty:
            return False
        document = BlocklistDocument(
            name=self.name,
            updated_at=self._clock(),
            records=list(self._records.values()),
        )
        try:
            await self.store.write_json(self.storage_key, document.model_dump(mode="json"))
        except StorageError as e:
            logger.error(f"[{self.name}] Failed to save {self.storage_key}: {e}")
            return False
        self._dirty = False
        logger.debug(f"[{self.name}] Saved {len(self._records)} failure records")
        return True

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            await self.load()

    # === Queries ===

    async def should_skip(self, item: K) -> bool:
        """True if the item is permanently blocked or still cooling down."""
        await self._ensure_loaded()
        record = self._records.get(self.key_fn(item))
        if record is None:
            return False
        if record.permanently_blocked:
            return True
        return self._clock() - record.last_failure_at < self.cooldown

    async def is_blocked(self, item: K) -> bool:
        await self._ensure_loaded()
        record = self._records.get(self.key_fn(item))
        return bool(record and record.permanently_blocked)

    def get_record(self, item: K) -> DomainFailureRecord | None:
        return self._records.get(self.key_fn(item))

    def get_blocked_keys(self) -> list[str]:
        return sorted(k for k, r in self._records.items() if r.permanently_blocked)

    def get_stats(self) -> dict[str, Any]:
        blocked = sum(r.permanently_blocked for r in self._records.values())
        return {
            "name": self.name,
            "loaded": self._loaded,
            "total": len(self._records),
            "permanently_blocked": blocked,
            "cooling_down": len(self._records) - blocked,
            "max_items": self.max_items,
            "dirty": self._dirty,
        }

    def __len__(self) -> int:
        return len(self._records)

    # === Mutations ===

    async def record_failure(self, item: K, reason: str | None = None) -> DomainFailureRecord:
        """
        Count one failure for ``item``.

        Reaching ``max_retries`` blocks the key permanently. Blocking is
        one-way; only ``remove_failure`` clears it.
        """
        await self._ensure_loaded()
        key = self.key_fn(item)
        now = self._clock()

        record = self._records.get(key)
        if record is None:
            record = DomainFailureRecord(key=key, first_failure_at=now, last_failure_at=now)
            self._records[key] = record

        record.failure_count += 1
        record.last_failure_at = now
        if reason:
            record.reason = reason

        if not record.permanently_blocked and record.failure_count >= self.max_retries:
            record.permanently_blocked = True
            logger.warning(
                f"[{self.name}] {key} permanently blocked after {record.failure_count} failures"
            )
            if self._metrics:
                self._metrics.inc_counter(DOMAINS_BLOCKED_TOTAL, labels={"tracker": self.name})
        else:
            logger.info(f"[{self.name}] Failure {record.failure_count}/{self.max_retries} for {key}")

        self._dirty = True
        self._evict_overflow()
        return record

    async def remove_failure(self, item: K) -> bool:
        """Forget every failure of ``item``. Returns True if a record existed."""
        await self._ensure_loaded()
        removed = self._records.pop(self.key_fn(item), None) is not None
        if removed:
            self._dirty = True
            logger.debug(f"[{self.name}] Cleared failure record for {self.key_fn(item)}")
        return removed

    def clear(self) -> None:
        """Drop all records (marks the tracker dirty)."""
        if self._records:
            self._dirty = True
        self._records.clear()

    def _evict_overflow(self) -> None:
        """Evict the oldest records beyond ``max_items``; cooling-down keys go before blocked ones."""
        overflow = len(self._records) - self.max_items
        if overflow <= 0:
            return
        victims = sorted(
            self._records.values(),
            key=lambda r: (r.permanently_blocked, r.last_failure_at),
        )[:overflow]
        for record in victims:
            del self._records[record.key]
        self._dirty = True
        logger.warning(f"[{self.name}] Evicted {overflow} oldest failure records (max {self.max_items})")


def _parse_document(raw: Any, name: str) -> BlocklistDocument:
    # Older blocklists were stored as a bare list of records
    if isinstance(raw, list):
        return BlocklistDocument(name=name, records=[DomainFailureRecord.model_validate(r) for r in raw])
    return BlocklistDocument.model_validate(raw)


__all__ = ["BlocklistDocument", "DomainFailureRecord", "FailureTracker"]
