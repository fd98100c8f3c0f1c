"""Tests for the async operation tracker."""

import asyncio

import pytest

from image_pipeline.exceptions import OperationTimeoutError
from image_pipeline.monitoring.operations import OperationTracker
from image_pipeline.observability.collector import UnifiedMetricsCollector
from image_pipeline.observability.constants import OPERATION_TIMEOUTS_TOTAL
from image_pipeline.types.operations import OperationStatus


class TestOperationTracker:
    @pytest.fixture
    def metrics(self):
        return UnifiedMetricsCollector()

    @pytest.fixture
    def tracker(self, metrics):
        return OperationTracker(max_operations=100, metrics=metrics)

    def test_validates_arguments(self):
        with pytest.raises(ValueError):
            OperationTracker(max_operations=0)
        with pytest.raises(ValueError):
            OperationTracker(cleanup_interval=0)

    def test_generate_id_is_unique(self, tracker):
        ids = {tracker.generate_id() for _ in range(50)}
        assert len(ids) == 50
        assert all(op_id.startswith("op-") for op_id in ids)

    def test_manual_lifecycle(self, tracker):
        op = tracker.start_operation("op-1", "get_logo", {"domain": "example.com"})
        assert op.status is OperationStatus.PENDING
        assert op.duration is None
        assert not op.is_finished

        tracker.complete_operation("op-1")
        assert op.status is OperationStatus.COMPLETED
        assert op.duration >= 0
        assert op.metadata == {"domain": "example.com"}

    def test_unknown_ids_ignored(self, tracker):
        tracker.complete_operation("missing")
        tracker.fail_operation("missing", "boom")
        assert tracker.get_operations() == []

    def test_fail_rejects_non_terminal_status(self, tracker):
        tracker.start_operation("op-1", "x")
        with pytest.raises(ValueError):
            tracker.fail_operation("op-1", "boom", status=OperationStatus.COMPLETED)

    @pytest.mark.asyncio
    async def test_monitored_success(self, tracker):
        async def work():
            return "logo"

        assert await tracker.monitored("get_logo", work) == "logo"
        [op] = tracker.get_operations()
        assert op.status is OperationStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_monitored_failure_propagates(self, tracker):
        async def work():
            raise RuntimeError("origin down")

        with pytest.raises(RuntimeError, match="origin down"):
            await tracker.monitored("get_logo", work)
        [op] = tracker.get_operations(OperationStatus.FAILED)
        assert op.error == "origin down"

    @pytest.mark.asyncio
    async def test_monitored_timeout(self, tracker, metrics):
        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(OperationTimeoutError) as exc_info:
            await tracker.monitored("get_image", slow, timeout=0.01)

        assert exc_info.value.operation_name == "get_image"
        assert exc_info.value.timeout == 0.01
        [op] = tracker.get_operations(OperationStatus.TIMEOUT)
        assert op.id == exc_info.value.operation_id
        assert metrics.get_counter(OPERATION_TIMEOUTS_TOTAL, {"operation": "get_image"}) == 1

    @pytest.mark.asyncio
    async def test_summary_and_health(self, tracker):
        async def ok():
            return 1

        async def bad():
            raise ValueError("bad")

        async def slow():
            await asyncio.sleep(1)

        await tracker.monitored("a", ok)
        await tracker.monitored("a", ok)
        with pytest.raises(ValueError):
            await tracker.monitored("b", bad)
        with pytest.raises(OperationTimeoutError):
            await tracker.monitored("c", slow, timeout=0.01)
        tracker.start_operation("pending-1", "d")

        summary = tracker.get_summary()
        assert summary.total == 5
        assert summary.completed == 2
        assert summary.failed == 1
        assert summary.timeout == 1
        assert summary.pending == 1
        assert summary.average_duration >= 0

        assert tracker.get_health_status() == {
            "active_operations": 1,
            "completed_operations": 2,
            "failed_operations": 2,
            "total_operations": 5,
        }
        tracker.log_status()

    def test_clear_completed(self, tracker):
        tracker.start_operation("a", "x")
        tracker.start_operation("b", "x")
        tracker.complete_operation("a")
        assert tracker.clear_completed() == 1
        assert [op.id for op in tracker.get_operations()] == ["b"]

    def test_prunes_past_capacity(self):
        tracker = OperationTracker(max_operations=5)
        for i in range(6):
            tracker.start_operation(f"op-{i}", "x")
        assert len(tracker.get_operations()) == 4

    @pytest.mark.asyncio
    async def test_lifecycle(self):
        tracker = OperationTracker(cleanup_interval=0.01)
        async with tracker:
            tracker.start_operation("a", "x")
            tracker.complete_operation("a")
            await asyncio.sleep(0.05)
            assert tracker.get_operation("a") is None
        assert tracker._cleanup_task is None
