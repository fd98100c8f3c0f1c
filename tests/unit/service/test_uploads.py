"""Tests for the upload retry queue."""

from unittest.mock import patch

import pytest

from image_pipeline.config import RetryConfig
from image_pipeline.exceptions import StorageOperationError
from image_pipeline.observability.collector import UnifiedMetricsCollector
from image_pipeline.observability.constants import UPLOAD_RETRIES_TOTAL, UPLOAD_RETRY_QUEUE_SIZE
from image_pipeline.service.uploads import UploadRetryQueue, is_memory_pressure_failure


@pytest.fixture(autouse=True)
def no_jitter():
    with patch("image_pipeline.types.results.random.random", return_value=0.0):
        yield


class TestUploadRetryQueue:
    @pytest.fixture
    def metrics(self):
        return UnifiedMetricsCollector()

    @pytest.fixture
    def queue(self, clock, metrics):
        config = RetryConfig(max_upload_retries=2, max_retry_queue_size=5, retry_entry_ttl=3600.0)
        return UploadRetryQueue(config, metrics=metrics, clock=clock)

    def test_memory_pressure_signature(self):
        assert is_memory_pressure_failure(
            StorageOperationError("Insufficient memory headroom for 10 byte write to k")
        )
        assert not is_memory_pressure_failure(StorageOperationError("Access denied"))

    def test_enqueue_schedules_backoff(self, queue, clock, metrics):
        entry = queue.enqueue("images/a.png", "example.com", "image/png")
        assert entry.attempts == 1
        assert entry.next_retry == clock.now + 2.0
        assert "images/a.png" in queue
        assert queue.due() == []
        assert metrics.get_gauge(UPLOAD_RETRY_QUEUE_SIZE) == 1

    def test_requeue_same_key_counts_attempt(self, queue):
        queue.enqueue("k", "example.com", "image/png")
        entry = queue.enqueue("k", "example.com", "image/png")
        assert entry.attempts == 2
        assert len(queue) == 1

    def test_dropped_after_max_retries(self, queue, metrics):
        queue.enqueue("k", "example.com", "image/png")
        queue.reschedule("k")
        assert queue.reschedule("k") is None
        assert "k" not in queue
        assert queue.get_stats()["dropped"] == 1
        assert metrics.get_counter(UPLOAD_RETRIES_TOTAL, {"outcome": "dropped"}) == 1

    def test_reschedule_unknown(self, queue):
        assert queue.reschedule("missing") is None

    def test_evicts_oldest_when_full(self, queue, clock):
        for i in range(5):
            queue.enqueue(f"k{i}", "example.com", "image/png")
            clock.advance(1)
        queue.enqueue("k5", "example.com", "image/png")
        assert len(queue) == 5
        assert "k0" not in queue
        assert "k5" in queue
        assert queue.get_stats()["evicted"] == 1

    @pytest.mark.asyncio
    async def test_drain_success(self, queue, clock, metrics):
        queue.enqueue("k", "example.com", "image/png")
        clock.advance(3)
        seen = []

        async def retry(entry):
            seen.append(entry.source_key)
            return True

        assert await queue.drain(retry) == 1
        assert seen == ["k"]
        assert len(queue) == 0
        assert metrics.get_counter(UPLOAD_RETRIES_TOTAL, {"outcome": "success"}) == 1

    @pytest.mark.asyncio
    async def test_drain_skips_entries_not_due(self, queue):
        queue.enqueue("k", "example.com", "image/png")

        async def retry(entry):
            raise AssertionError("not due yet")

        assert await queue.drain(retry) == 0
        assert "k" in queue

    @pytest.mark.asyncio
    async def test_drain_failure_counts_attempt(self, queue, clock):
        queue.enqueue("k", "example.com", "image/png")
        clock.advance(3)

        async def retry(entry):
            return False

        assert await queue.drain(retry) == 0
        assert queue.get("k").attempts == 2

        clock.advance(10)
        await queue.drain(retry)
        assert "k" not in queue

    @pytest.mark.asyncio
    async def test_drain_exception_counts_as_failure(self, queue, clock, metrics):
        queue.enqueue("k", "example.com", "image/png")
        clock.advance(3)

        async def retry(entry):
            raise RuntimeError("store offline")

        assert await queue.drain(retry) == 0
        assert queue.get("k").attempts == 2
        assert metrics.get_counter(UPLOAD_RETRIES_TOTAL, {"outcome": "failure"}) == 1

    @pytest.mark.asyncio
    async def test_drain_respects_requeue_by_callback(self, queue, clock):
        queue.enqueue("k", "example.com", "image/png")
        clock.advance(3)

        async def retry(entry):
            queue.enqueue(entry.source_key, entry.source_url, entry.content_type)
            return False

        await queue.drain(retry)
        assert queue.get("k").attempts == 2

    def test_cleanup_expired(self, queue, clock):
        queue.enqueue("k", "example.com", "image/png")
        clock.advance(3601)
        assert queue.cleanup_expired() == 1
        assert len(queue) == 0
