# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Memory Health Monitor for the Image Pipeline

Samples the resident set size of the current process with psutil, classifies
it against a warning and a critical threshold, and exposes the result as an
admission predicate for the scheduler and the image service.

Status is derived from the latest sample only:

    rss > critical_threshold  -> critical
    rss > warning_threshold   -> warning
    otherwise                 -> healthy

Status transitions are pushed to subscribers registered with ``subscribe()``.
The last ``history_size`` samples are kept for trend analysis.
"""

from __future__ import annotations

import asyncio
import contextlib
import gc
import logging
from collections import deque
from collections.abc import Callable
from types import TracebackType
from typing import Any, Protocol, cast

import psutil
from typing_extensions import Self

from ..config import MemoryConfig
from ..observability.collector import UnifiedMetricsCollector
from ..observability.constants import (
    EMERGENCY_CLEANUPS_TOTAL,
    MEMORY_RSS_BYTES,
    MEMORY_STATUS,
    MEMORY_STATUS_CHANGES_TOTAL,
)
from ..types.memory import MemoryHealthReport, MemorySnapshot, MemoryStatus

logger = logging.getLogger(__name__)

StatusListener = Callable[[MemoryStatus, MemoryStatus], None]
"""Called with ``(previous, current)`` on every status transition."""

TREND_INCREASING = "increasing"
TREND_DECREASING = "decreasing"
TREND_STABLE = "stable"

_TREND_BAND = 0.1


class DisableableCache(Protocol):
    """Anything the monitor can switch off during emergency cleanup."""

    def disable(self) -> None: ...


def sample_process_memory(process: psutil.Process | None = None) -> MemorySnapshot:
    """
    Take one memory sample of ``process`` (default: the current process).

    ``uss`` needs elevated privileges on some platforms; when it is not
    available the unique-memory figure falls back to ``rss``.
    """
    process = process or psutil.Process()
    info = process.memory_info()
    try:
        unique = int(process.memory_full_info().uss)
    except (psutil.AccessDenied, AttributeError):
        unique = int(info.rss)
    return MemorySnapshot(
        rss_bytes=int(info.rss),
        heap_used_bytes=unique,
        heap_total_bytes=int(info.vms),
        external_bytes=int(getattr(info, "shared", 0)),
    )


class MemoryMonitor:
    """
    Periodic process memory monitor with status-change observers.

    Example:
        monitor = MemoryMonitor(MemoryConfig(total_budget_bytes=2 * GIB))
        unsubscribe = monitor.subscribe(lambda old, new: print(old, "->", new))
        async with monitor:
            if monitor.should_accept_new_requests():
                ...
    """

    def __init__(
        self,
        config: MemoryConfig | None = None,
        metrics: UnifiedMetricsCollector | None = None,
        sampler: Callable[[], MemorySnapshot] | None = None,
    ):
        """
        Args:
            config: Thresholds and sampling settings
            metrics: Optional metrics collector
            sampler: Callable returning a snapshot. Defaults to psutil
                sampling of the current process; tests inject fixed values.
        """
        self.config = config or MemoryConfig()
        self._metrics = metrics
        self._sampler = sampler or sample_process_memory

        self._history: deque[MemorySnapshot] = deque(maxlen=self.config.history_size)
        self._status = MemoryStatus.HEALTHY
        self._listeners: list[StatusListener] = []
        self._caches: list[DisableableCache] = []
        self._emergency_cleanups = 0

        self._task: asyncio.Task[None] | None = None
        self._running = False

    # === Thresholds ===

    @property
    def warning_threshold(self) -> int:
        return cast(int, self.config.warning_threshold)

    @property
    def critical_threshold(self) -> int:
        return cast(int, self.config.critical_threshold)

    @property
    def status(self) -> MemoryStatus:
        return self._status

    def classify(self, rss_bytes: int) -> MemoryStatus:
        """Map an RSS value to a status. Comparisons are strict."""
        if rss_bytes > self.critical_threshold:
            return MemoryStatus.CRITICAL
        if rss_bytes > self.warning_threshold:
            return MemoryStatus.WARNING
        return MemoryStatus.HEALTHY

    # === Observers ===

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """
        Register a status-change listener.

        Returns:
            A callable that removes the listener. Calling it twice is harmless.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return unsubscribe

    def register_cache(self, cache: DisableableCache) -> None:
        """Register a cache to be disabled by ``emergency_cleanup()``."""
        if cache not in self._caches:
            self._caches.append(cache)

    def _notify(self, previous: MemoryStatus, current: MemoryStatus) -> None:
        for listener in list(self._listeners):
            try:
                listener(previous, current)
            except Exception as e:
                logger.error(f"Memory status listener failed: {e}", exc_info=True)

    # === Sampling ===

    def check_memory(self) -> MemorySnapshot:
        """
        Sample memory, record it and re-classify status.

        Listeners are notified when the status changes. A transition to
        critical runs ``emergency_cleanup()`` when ``cleanup_on_critical``
        is set.
        """
        snapshot = self._sampler()
        self._history.append(snapshot)

        previous = self._status
        current = self.classify(snapshot.rss_bytes)
        self._status = current

        if self._metrics:
            self._metrics.set_gauge(MEMORY_RSS_BYTES, snapshot.rss_bytes)
            self._metrics.set_gauge(MEMORY_STATUS, current.level)

        if current is not previous:
            log = logger.warning if current.level > previous.level else logger.info
            log(
                f"Memory status {previous.value} -> {current.value} "
                f"(rss={snapshot.rss_bytes / 1024 / 1024:.1f} MiB)"
            )
            if self._metrics:
                self._metrics.inc_counter(MEMORY_STATUS_CHANGES_TOTAL, labels={"status": current.value})
            self._notify(previous, current)
            if current is MemoryStatus.CRITICAL and self.config.cleanup_on_critical:
                self.emergency_cleanup()
        elif current is MemoryStatus.WARNING and self.get_memory_trend() == TREND_INCREASING:
            logger.warning(
                f"Memory usage in warning range and increasing "
                f"(rss={snapshot.rss_bytes / 1024 / 1024:.1f} MiB)"
            )

        return snapshot

    def latest(self) -> MemorySnapshot | None:
        return self._history[-1] if self._history else None

    def get_metrics_history(self) -> list[MemorySnapshot]:
        return list(self._history)

    def get_memory_trend(self) -> str:
        """Compare the oldest and newest retained samples (±10% band)."""
        if len(self._history) < 2:
            return TREND_STABLE
        first = self._history[0].rss_bytes
        last = self._history[-1].rss_bytes
        if last > first * (1 + _TREND_BAND):
            return TREND_INCREASING
        if last < first * (1 - _TREND_BAND):
            return TREND_DECREASING
        return TREND_STABLE

    def get_memory_usage_percent(self) -> float:
        """Latest RSS as a percentage of the total budget (0.0 before any sample)."""
        snapshot = self.latest()
        if snapshot is None:
            return 0.0
        return snapshot.rss_bytes / self.config.total_budget_bytes * 100

    # === Admission ===

    def should_accept_new_requests(self) -> bool:
        """False only while status is critical."""
        return self._status is not MemoryStatus.CRITICAL

    def should_allow_image_operations(self) -> bool:
        """True only while status is healthy."""
        return self._status is MemoryStatus.HEALTHY

    def has_headroom(self, nbytes: int) -> bool:
        """True if buffering ``nbytes`` more keeps RSS at or below the critical threshold."""
        snapshot = self.latest()
        rss = snapshot.rss_bytes if snapshot else self._sampler().rss_bytes
        return rss + nbytes <= self.critical_threshold

    def get_health_status(self) -> MemoryHealthReport:
        """Health report for load balancers: 503 while critical, otherwise 200."""
        snapshot = self.latest() or self.check_memory()
        status = self._status
        rss_mib = snapshot.rss_bytes / 1024 / 1024
        if status is MemoryStatus.CRITICAL:
            message = f"Memory critical: {rss_mib:.1f} MiB RSS"
        elif status is MemoryStatus.WARNING:
            message = f"Memory elevated: {rss_mib:.1f} MiB RSS"
        else:
            message = f"Memory healthy: {rss_mib:.1f} MiB RSS"
        return MemoryHealthReport(
            status=status,
            status_code=503 if status is MemoryStatus.CRITICAL else 200,
            message=message,
            details={
                "rss_bytes": snapshot.rss_bytes,
                "heap_used_bytes": snapshot.heap_used_bytes,
                "heap_total_bytes": snapshot.heap_total_bytes,
                "external_bytes": snapshot.external_bytes,
                "warning_threshold": self.warning_threshold,
                "critical_threshold": self.critical_threshold,
                "total_budget_bytes": self.config.total_budget_bytes,
                "usage_percent": round(self.get_memory_usage_percent(), 2),
                "trend": self.get_memory_trend(),
                "samples": len(self._history),
                "emergency_cleanups": self._emergency_cleanups,
            },
        )

    # === Cleanup ===

    def emergency_cleanup(self) -> int:
        """
        Disable every registered cache and force a garbage collection.

        Caches are disabled rather than cleared so entries already handed
        out stay valid while no new ones are retained.

        Returns:
            Number of objects collected by ``gc.collect()``
        """
        for cache in self._caches:
            try:
                cache.disable()
            except Exception as e:
                logger.error(f"Failed to disable cache during emergency cleanup: {e}", exc_info=True)
        collected = gc.collect()
        self._emergency_cleanups += 1
        if self._metrics:
            self._metrics.inc_counter(EMERGENCY_CLEANUPS_TOTAL)
        logger.warning(
            f"Emergency memory cleanup: disabled {len(self._caches)} caches, "
            f"collected {collected} objects"
        )
        return collected

    # === Lifecycle ===

    def start(self) -> None:
        """Start periodic sampling. Takes one sample immediately."""
        if self._task is None or self._task.done():
            self.check_memory()
            self._running = True
            self._task = asyncio.create_task(self._monitor_loop(), name="memory_monitor")
            logger.info(
                f"Memory monitor started (warning={self.warning_threshold}, "
                f"critical={self.critical_threshold}, interval={self.config.check_interval}s)"
            )

    async def stop(self) -> None:
        """Stop periodic sampling."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None

    async def _monitor_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.config.check_interval)
                self.check_memory()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Memory monitor error: {e}", exc_info=True)

    async def __aenter__(self) -> Self:
        self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()

    def get_stats(self) -> dict[str, Any]:
        snapshot = self.latest()
        return {
            "status": self._status.value,
            "rss_bytes": snapshot.rss_bytes if snapshot else None,
            "usage_percent": round(self.get_memory_usage_percent(), 2),
            "trend": self.get_memory_trend(),
            "listeners": len(self._listeners),
            "registered_caches": len(self._caches),
            "emergency_cleanups": self._emergency_cleanups,
        }


def memory_health_response(monitor: MemoryMonitor) -> tuple[int, dict[str, str], dict[str, Any]]:
    """
    Build a health endpoint response from the monitor's current report.

    Returns:
        ``(status_code, headers, body)``; headers carry ``X-Memory-Status``
    """
    report = monitor.get_health_status()
    headers = {"X-Memory-Status": report.status.value}
    if report.status is MemoryStatus.CRITICAL:
        headers["Retry-After"] = str(int(monitor.config.check_interval))
    return report.status_code, headers, report.to_dict()


__all__ = [
    "TREND_DECREASING",
    "TREND_INCREASING",
    "TREND_STABLE",
    "DisableableCache",
    "MemoryMonitor",
    "StatusListener",
    "memory_health_response",
    "sample_process_memory",
]
