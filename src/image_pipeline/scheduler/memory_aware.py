# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Memory-aware request scheduler.

Queues async operations by priority and dispatches them from a periodic tick,
one per tick, while:

- fewer than ``max_concurrent_requests`` operations are running, and
- memory usage is below ``memory_threshold_percent`` of the budget and the
  monitor does not report critical.

Under memory pressure the tick backs off exponentially instead of
dequeuing. When the monitor transitions to critical, every queued request
below the CRITICAL tier is cancelled. Running operations are never preempted.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from types import TracebackType
from typing import TYPE_CHECKING, Any

from typing_extensions import Self

from ..config import SchedulerConfig
from ..exceptions import QueueOverflowError, RequestCancelledError
from ..observability.collector import UnifiedMetricsCollector
from ..observability.constants import (
    ACTIVE_REQUESTS,
    MEMORY_PRESSURE_ACTIVATIONS_TOTAL,
    QUEUE_DEPTH,
    QUEUE_OVERFLOWS_TOTAL,
    QUEUE_WAIT_SECONDS,
    REQUESTS_CANCELLED_TOTAL,
    REQUESTS_COMPLETED_TOTAL,
    REQUESTS_FAILED_TOTAL,
    REQUESTS_RETRIED_TOTAL,
    REQUESTS_SCHEDULED_TOTAL,
)
from ..types.memory import MemoryStatus
from ..types.queue import RequestPriority, ScheduledRequest

if TYPE_CHECKING:
    from ..health.memory import MemoryMonitor

logger = logging.getLogger(__name__)

WAIT_TIME_SAMPLES = 100
"""Number of recent queue wait times kept for averages."""

ACCEPT_QUEUE_FRACTION = 0.9
"""Queue fill ratio above which ``should_accept_requests`` turns False."""


class MemoryAwareScheduler:
    """
    Priority queue of async operations gated on memory health.

    Example:
        scheduler = MemoryAwareScheduler(SchedulerConfig(), monitor=monitor)
        async with scheduler:
            future = scheduler.schedule_request(fetch_thumbnail, RequestPriority.HIGH)
            thumbnail = await future
    """

    def __init__(
        self,
        config: SchedulerConfig | None = None,
        monitor: MemoryMonitor | None = None,
        metrics: UnifiedMetricsCollector | None = None,
        memory_usage_provider: Callable[[], float] | None = None,
    ):
        """
        Args:
            config: Queue bounds, concurrency and backoff settings
            monitor: Memory monitor consulted for critical status. The
                scheduler subscribes to it to cancel queued work on critical.
            metrics: Optional metrics collector
            memory_usage_provider: Returns memory usage as a percent of the
                budget. Defaults to the monitor's usage, or 0 without one.
        """
        self.config = config or SchedulerConfig()
        self._monitor = monitor
        self._metrics = metrics
        if memory_usage_provider is None:
            memory_usage_provider = monitor.get_memory_usage_percent if monitor else (lambda: 0.0)
        self._memory_usage = memory_usage_provider

        self._queue: list[ScheduledRequest] = []
        self._active = 0
        self._active_tasks: set[asyncio.Task[None]] = set()
        self._retry_tasks: set[asyncio.Task[None]] = set()
        self._wait_times: deque[float] = deque(maxlen=WAIT_TIME_SAMPLES)

        self._pressure_activations = 0
        self._pending_backoff: float | None = None

        self._total_scheduled = 0
        self._total_completed = 0
        self._total_failed = 0
        self._total_retried = 0
        self._total_cancelled = 0
        self._total_overflows = 0

        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._unsubscribe: Callable[[], None] | None = None
        if monitor is not None:
            self._unsubscribe = monitor.subscribe(self._on_memory_status_change)

    # === Submission ===

    def schedule_request(
        self,
        operation: Callable[[], Awaitable[Any]],
        priority: RequestPriority = RequestPriority.NORMAL,
        max_retries: int | None = None,
    ) -> asyncio.Future[Any]:
        """
        Queue ``operation`` and return a future for its result.

        The request is inserted before the first queued request with a
        numerically greater priority, so equal priorities stay FIFO.

        Raises:
            QueueOverflowError: If the queue already holds ``max_queue_size`` requests
        """
        if len(self._queue) >= self.config.max_queue_size:
            self._total_overflows += 1
            if self._metrics:
                self._metrics.inc_counter(QUEUE_OVERFLOWS_TOTAL)
            raise QueueOverflowError(
                f"Scheduler queue full ({len(self._queue)}/{self.config.max_queue_size})",
                queue_size=len(self._queue),
                max_queue_size=self.config.max_queue_size,
            )

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        request = ScheduledRequest(
            operation=operation,
            future=future,
            priority=RequestPriority(priority),
            max_retries=self.config.default_max_retries if max_retries is None else max_retries,
        )
        self._insert(request)
        self._total_scheduled += 1
        if self._metrics:
            self._metrics.inc_counter(REQUESTS_SCHEDULED_TOTAL, labels={"priority": request.priority.name})
        logger.debug(f"Scheduled {request.id} ({request.priority.name}), queue={len(self._queue)}")
        return future

    def _insert(self, request: ScheduledRequest) -> None:
        index = len(self._queue)
        for i, queued in enumerate(self._queue):
            if queued.priority > request.priority:
                index = i
                break
        self._queue.insert(index, request)
        self._update_gauges()

    # === Dispatch ===

    def _under_pressure(self) -> bool:
        if self._monitor is not None and self._monitor.status is MemoryStatus.CRITICAL:
            return True
        return self._memory_usage() > self.config.memory_threshold_percent

    async def process_once(self) -> bool:
        """
        Run one scheduler tick.

        Returns:
            True if a request was dispatched
        """
        if self._active >= self.config.max_concurrent_requests or not self._queue:
            return False

        if self._under_pressure():
            self._pressure_activations += 1
            self._pending_backoff = min(
                self.config.backoff_base * 2 ** (self._pressure_activations % 10),
                self.config.max_backoff,
            )
            if self._metrics:
                self._metrics.inc_counter(MEMORY_PRESSURE_ACTIVATIONS_TOTAL)
            logger.warning(
                f"Memory pressure ({self._memory_usage():.1f}% of budget), "
                f"backing off {self._pending_backoff:.2f}s with {len(self._queue)} queued"
            )
            return False

        request = self._queue.pop(0)
        if request.future.done():
            # Caller gave up on it
            self._update_gauges()
            return False

        wait = time.monotonic() - request.enqueued_at
        self._wait_times.append(wait)
        if self._metrics:
            self._metrics.observe_histogram(QUEUE_WAIT_SECONDS, wait)

        self._active += 1
        self._update_gauges()
        task = asyncio.create_task(self._run(request), name=f"scheduled_{request.id}")
        self._active_tasks.add(task)
        task.add_done_callback(self._active_tasks.discard)
        return True

    async def _run(self, request: ScheduledRequest) -> None:
        try:
            result = await request.operation()
        except asyncio.CancelledError:
            if not request.future.done():
                request.future.cancel()
            raise
        except Exception as e:
            self._handle_failure(request, e)
        else:
            if not request.future.done():
                request.future.set_result(result)
            self._total_completed += 1
            if self._metrics:
                self._metrics.inc_counter(REQUESTS_COMPLETED_TOTAL, labels={"priority": request.priority.name})
        finally:
            self._active -= 1
            self._update_gauges()

    def _handle_failure(self, request: ScheduledRequest, error: Exception) -> None:
        if request.can_retry and self._running_or_driven():
            delay = self.config.backoff_base * 2**request.retries
            request.retries += 1
            self._total_retried += 1
            if self._metrics:
                self._metrics.inc_counter(REQUESTS_RETRIED_TOTAL, labels={"priority": request.priority.name})
            logger.info(
                f"Request {request.id} failed ({error}); retry {request.retries}/"
                f"{request.max_retries} in {delay:.2f}s"
            )
            task = asyncio.create_task(self._requeue_later(request, delay), name=f"requeue_{request.id}")
            self._retry_tasks.add(task)
            task.add_done_callback(self._retry_tasks.discard)
            return

        self._total_failed += 1
        if self._metrics:
            self._metrics.inc_counter(REQUESTS_FAILED_TOTAL, labels={"priority": request.priority.name})
        logger.warning(f"Request {request.id} failed after {request.retries} retries: {error}")
        if not request.future.done():
            request.future.set_exception(error)

    def _running_or_driven(self) -> bool:
        # process_once() may drive the scheduler without start()
        return self._running or self._task is None

    async def _requeue_later(self, request: ScheduledRequest, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            if not request.future.done():
                request.future.set_exception(
                    RequestCancelledError(
                        f"Request {request.id} cancelled: shutdown",
                        request_id=request.id,
                        reason="shutdown",
                    )
                )
                self._total_cancelled += 1
                if self._metrics:
                    self._metrics.inc_counter(REQUESTS_CANCELLED_TOTAL, labels={"reason": "shutdown"})
            raise
        if request.future.done():
            return
        self._insert(request)

    # === Cancellation ===

    def _on_memory_status_change(self, previous: MemoryStatus, current: MemoryStatus) -> None:
        if current is MemoryStatus.CRITICAL:
            self.cancel_queued(reason="memory_critical", keep_priority=RequestPriority.CRITICAL)

    def cancel_queued(self, reason: str, keep_priority: RequestPriority | None = None) -> int:
        """
        Reject queued requests with RequestCancelledError.

        Args:
            reason: Reason recorded on the error and in metrics
            keep_priority: Requests at this priority or more urgent stay
                queued. None cancels everything.

        Returns:
            Number of requests cancelled
        """
        kept: list[ScheduledRequest] = []
        cancelled = 0
        for request in self._queue:
            if keep_priority is not None and request.priority <= keep_priority:
                kept.append(request)
                continue
            if not request.future.done():
                request.future.set_exception(
                    RequestCancelledError(
                        f"Request {request.id} cancelled: {reason}",
                        request_id=request.id,
                        reason=reason,
                    )
                )
            cancelled += 1
        self._queue = kept

        if cancelled:
            self._total_cancelled += cancelled
            if self._metrics:
                self._metrics.inc_counter(REQUESTS_CANCELLED_TOTAL, cancelled, labels={"reason": reason})
            logger.warning(f"Cancelled {cancelled} queued requests ({reason}), {len(kept)} kept")
        self._update_gauges()
        return cancelled

    # === Queries ===

    def should_accept_requests(self) -> bool:
        """False while memory is critical or the queue is at least 90% full."""
        if self._monitor is not None and self._monitor.status is MemoryStatus.CRITICAL:
            return False
        return len(self._queue) < self.config.max_queue_size * ACCEPT_QUEUE_FRACTION

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    @property
    def active_requests(self) -> int:
        return self._active

    @property
    def is_running(self) -> bool:
        return self._running

    def get_metrics(self) -> dict[str, Any]:
        waits = list(self._wait_times)
        by_priority = {p.name: 0 for p in RequestPriority}
        for request in self._queue:
            by_priority[request.priority.name] += 1
        return {
            "queue_size": len(self._queue),
            "max_queue_size": self.config.max_queue_size,
            "active_requests": self._active,
            "max_concurrent_requests": self.config.max_concurrent_requests,
            "queued_by_priority": by_priority,
            "total_scheduled": self._total_scheduled,
            "total_completed": self._total_completed,
            "total_failed": self._total_failed,
            "total_retried": self._total_retried,
            "total_cancelled": self._total_cancelled,
            "total_overflows": self._total_overflows,
            "memory_pressure_activations": self._pressure_activations,
            "average_wait_time": sum(waits) / len(waits) if waits else 0.0,
            "max_wait_time": max(waits) if waits else 0.0,
            "running": self._running,
        }

    def _update_gauges(self) -> None:
        if self._metrics:
            self._metrics.set_gauge(QUEUE_DEPTH, len(self._queue))
            self._metrics.set_gauge(ACTIVE_REQUESTS, self._active)

    # === Lifecycle ===

    def start(self) -> None:
        """Start the tick loop."""
        if self._task is None or self._task.done():
            self._running = True
            self._task = asyncio.create_task(self._scheduler_loop(), name="memory_aware_scheduler")
            logger.info(
                f"Scheduler started (max_concurrent={self.config.max_concurrent_requests}, "
                f"max_queue={self.config.max_queue_size})"
            )

    async def stop(self) -> None:
        """
        Stop ticking, reject every queued request and wait for running ones.
        """
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

        for task in list(self._retry_tasks):
            task.cancel()
        if self._retry_tasks:
            await asyncio.gather(*self._retry_tasks, return_exceptions=True)

        self.cancel_queued(reason="shutdown")
        if self._active_tasks:
            await asyncio.gather(*self._active_tasks, return_exceptions=True)

        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        logger.info("Scheduler stopped")

    async def _scheduler_loop(self) -> None:
        while self._running:
            try:
                await self.process_once()
                delay = self._pending_backoff or self.config.tick_interval
                self._pending_backoff = None
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Scheduler tick error: {e}", exc_info=True)
                await asyncio.sleep(self.config.tick_interval)

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


__all__ = ["MemoryAwareScheduler"]
