# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Async operation tracking.

The OperationTracker records the start, completion, failure and timeout of
async units of work so slow origins and stuck work show up in health
endpoints. ``monitored`` wraps a coroutine factory with tracking and an
optional deadline; a missed deadline raises OperationTimeoutError, never the
operation's own exception type.

Example:
    tracker = OperationTracker(metrics=collector)
    async with tracker:
        logo = await tracker.monitored(
            "get_logo", lambda: service.fetch(domain), timeout=10.0
        )
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from typing_extensions import Self

from ..exceptions import OperationTimeoutError
from ..observability.collector import UnifiedMetricsCollector
from ..observability.constants import (
    OPERATION_DURATION_SECONDS,
    OPERATION_TIMEOUTS_TOTAL,
)
from ..types.operations import OperationStatus, OperationSummary, TrackedOperation

logger = logging.getLogger(__name__)

T = TypeVar("T")

_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_DIGITS[remainder])
    return "".join(reversed(digits))


class OperationTracker:
    """
    Records async operations in a bounded in-memory map.

    When the map grows past ``max_operations`` the newest 80% by start time
    are kept. A background loop started with ``start()`` drops completed
    operations every ``cleanup_interval`` seconds.
    """

    def __init__(
        self,
        max_operations: int = 1000,
        cleanup_interval: float = 300.0,
        metrics: UnifiedMetricsCollector | None = None,
    ) -> None:
        if max_operations < 1:
            raise ValueError("max_operations must be at least 1")
        if cleanup_interval <= 0:
            raise ValueError("cleanup_interval must be positive")

        self.max_operations = max_operations
        self.cleanup_interval = cleanup_interval
        self._metrics = metrics
        self._operations: dict[str, TrackedOperation] = {}
        self._sequence = 0

        self._cleanup_task: asyncio.Task[None] | None = None
        self._running = False

    # === Recording ===

    def generate_id(self) -> str:
        """Return a unique id of the form ``op-<monotonic ms>-<base36 counter>``."""
        self._sequence += 1
        return f"op-{int(time.monotonic() * 1000)}-{_to_base36(self._sequence)}"

    def start_operation(
        self, operation_id: str, name: str, metadata: dict[str, Any] | None = None
    ) -> TrackedOperation:
        """Begin tracking an operation as PENDING."""
        operation = TrackedOperation(id=operation_id, name=name, metadata=dict(metadata or {}))
        self._operations[operation_id] = operation
        if len(self._operations) > self.max_operations:
            self._prune_old_operations()
        return operation

    def complete_operation(self, operation_id: str) -> None:
        """Mark an operation COMPLETED. Unknown ids are ignored."""
        operation = self._operations.get(operation_id)
        if operation is None:
            return
        operation.end_time = time.monotonic()
        operation.status = OperationStatus.COMPLETED
        logger.debug(f"Operation {operation.name!r} completed in {operation.duration:.3f}s")
        self._observe_duration(operation)

    def fail_operation(
        self,
        operation_id: str,
        error: BaseException | str,
        status: OperationStatus = OperationStatus.FAILED,
    ) -> None:
        """Mark an operation FAILED or TIMEOUT. Unknown ids are ignored."""
        if status not in (OperationStatus.FAILED, OperationStatus.TIMEOUT):
            raise ValueError("status must be FAILED or TIMEOUT")
        operation = self._operations.get(operation_id)
        if operation is None:
            return
        operation.end_time = time.monotonic()
        operation.status = status
        operation.error = str(error)
        verb = "timed out" if status is OperationStatus.TIMEOUT else "failed"
        logger.warning(
            f"Operation {operation.name!r} {verb} after {operation.duration:.3f}s: {operation.error}"
        )
        self._observe_duration(operation)

    async def monitored(
        self,
        name: str,
        operation: Callable[[], Awaitable[T]],
        timeout: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> T:
        """
        Run ``operation()`` under tracking, optionally bounded by ``timeout``.

        Args:
            name: Categorical operation name (also used as a metric label)
            operation: Zero-argument callable returning an awaitable
            timeout: Deadline in seconds, or None for no deadline
            metadata: Extra context stored with the operation

        Returns:
            The operation's result

        Raises:
            OperationTimeoutError: If the deadline passed first
            Exception: Whatever the operation itself raised
        """
        operation_id = self.generate_id()
        self.start_operation(operation_id, name, metadata)
        try:
            if timeout is None:
                result = await operation()
            else:
                result = await asyncio.wait_for(operation(), timeout)
        except asyncio.TimeoutError:
            self.fail_operation(
                operation_id, f"timed out after {timeout}s", status=OperationStatus.TIMEOUT
            )
            if self._metrics:
                self._metrics.inc_counter(OPERATION_TIMEOUTS_TOTAL, labels={"operation": name})
            raise OperationTimeoutError(
                f"Operation {name!r} timed out after {timeout}s",
                operation_id=operation_id,
                operation_name=name,
                timeout=timeout,
            ) from None
        except asyncio.CancelledError:
            self.fail_operation(operation_id, "cancelled")
            raise
        except Exception as e:
            self.fail_operation(operation_id, e)
            raise

        self.complete_operation(operation_id)
        return result

    # === Queries ===

    def get_operation(self, operation_id: str) -> TrackedOperation | None:
        return self._operations.get(operation_id)

    def get_operations(self, status: OperationStatus | None = None) -> list[TrackedOperation]:
        """Return tracked operations, optionally filtered by status."""
        if status is None:
            return list(self._operations.values())
        return [op for op in self._operations.values() if op.status is status]

    def get_summary(self) -> OperationSummary:
        """Count operations by status and average completed durations."""
        summary = OperationSummary(total=len(self._operations))
        completed_durations: list[float] = []
        for op in self._operations.values():
            if op.status is OperationStatus.PENDING:
                summary.pending += 1
            elif op.status is OperationStatus.COMPLETED:
                summary.completed += 1
                if op.duration is not None:
                    completed_durations.append(op.duration)
            elif op.status is OperationStatus.FAILED:
                summary.failed += 1
            else:
                summary.timeout += 1
        if completed_durations:
            summary.average_duration = sum(completed_durations) / len(completed_durations)
        return summary

    def get_health_status(self) -> dict[str, int]:
        """Compact view for health endpoints."""
        summary = self.get_summary()
        return {
            "active_operations": summary.pending,
            "completed_operations": summary.completed,
            "failed_operations": summary.failed + summary.timeout,
            "total_operations": summary.total,
        }

    def log_status(self) -> None:
        """Log the summary and any operations still pending."""
        summary = self.get_summary()
        logger.info(
            f"Operations: total={summary.total} pending={summary.pending} "
            f"completed={summary.completed} failed={summary.failed} "
            f"timeout={summary.timeout} avg={summary.average_duration:.3f}s"
        )
        now = time.monotonic()
        for op in self.get_operations(OperationStatus.PENDING):
            logger.info(f"  pending {op.name!r} for {now - op.start_time:.1f}s")

    # === Maintenance ===

    def clear_completed(self) -> int:
        """Drop COMPLETED operations. Returns the number removed."""
        completed = [
            op_id
            for op_id, op in self._operations.items()
            if op.status is OperationStatus.COMPLETED
        ]
        for op_id in completed:
            del self._operations[op_id]
        return len(completed)

    def _prune_old_operations(self) -> None:
        keep = int(self.max_operations * 0.8)
        newest = sorted(
            self._operations.values(), key=lambda op: op.start_time, reverse=True
        )[:keep]
        self._operations = {op.id: op for op in newest}
        logger.warning(
            f"Pruned operation map to the {len(self._operations)} most recent operations"
        )

    def _observe_duration(self, operation: TrackedOperation) -> None:
        if self._metrics and operation.duration is not None:
            self._metrics.observe_histogram(
                OPERATION_DURATION_SECONDS,
                operation.duration,
                labels={"operation": operation.name},
            )

    # === Lifecycle ===

    async def start(self) -> None:
        """Start the periodic cleanup task."""
        if self._running:
            return
        self._running = True
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.debug("OperationTracker cleanup task started")

    async def stop(self) -> None:
        """Stop the cleanup task and forget every tracked operation."""
        self._running = False
        if self._cleanup_task:
            self._cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._cleanup_task
            self._cleanup_task = None
        self._operations.clear()
        logger.debug("OperationTracker stopped")

    async def _cleanup_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.cleanup_interval)
                removed = self.clear_completed()
                if len(self._operations) > self.max_operations:
                    self._prune_old_operations()
                if removed:
                    logger.debug(f"Cleared {removed} completed operations")
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in operation cleanup loop: {e}", exc_info=True)

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()


__all__ = ["OperationTracker"]
