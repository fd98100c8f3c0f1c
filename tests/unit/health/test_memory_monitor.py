"""Tests for the memory health monitor."""

import asyncio
from unittest.mock import Mock

import psutil
import pytest

from image_pipeline.config import MemoryConfig
from image_pipeline.health.memory import (
    TREND_DECREASING,
    TREND_INCREASING,
    TREND_STABLE,
    MemoryMonitor,
    memory_health_response,
    sample_process_memory,
)
from image_pipeline.observability.collector import UnifiedMetricsCollector
from image_pipeline.observability.constants import (
    EMERGENCY_CLEANUPS_TOTAL,
    MEMORY_RSS_BYTES,
    MEMORY_STATUS_CHANGES_TOTAL,
)
from image_pipeline.types.memory import MemorySnapshot, MemoryStatus

WARNING = 700
CRITICAL = 900


class SettableSampler:
    """Returns whatever RSS the test sets."""

    def __init__(self, rss: int = 100):
        self.rss = rss
        self.calls = 0

    def __call__(self) -> MemorySnapshot:
        self.calls += 1
        return MemorySnapshot(rss_bytes=self.rss)


class TestMemoryMonitor:
    @pytest.fixture
    def sampler(self):
        return SettableSampler()

    @pytest.fixture
    def metrics(self):
        return UnifiedMetricsCollector()

    @pytest.fixture
    def monitor(self, sampler, metrics):
        config = MemoryConfig(
            total_budget_bytes=1000,
            warning_threshold=WARNING,
            critical_threshold=CRITICAL,
            check_interval=0.01,
            history_size=5,
        )
        return MemoryMonitor(config, metrics=metrics, sampler=sampler)

    def test_initial_status_healthy(self, monitor):
        assert monitor.status is MemoryStatus.HEALTHY
        assert monitor.latest() is None
        assert monitor.should_accept_new_requests()

    def test_default_thresholds_follow_budget(self, sampler):
        monitor = MemoryMonitor(MemoryConfig(total_budget_bytes=1000), sampler=sampler)
        assert monitor.warning_threshold == 700
        assert monitor.critical_threshold == 900
        assert monitor.classify(701) is MemoryStatus.WARNING
        assert monitor.classify(901) is MemoryStatus.CRITICAL

    @pytest.mark.parametrize(
        "rss, expected",
        [
            (0, MemoryStatus.HEALTHY),
            (WARNING, MemoryStatus.HEALTHY),
            (WARNING + 1, MemoryStatus.WARNING),
            (CRITICAL, MemoryStatus.WARNING),
            (CRITICAL + 1, MemoryStatus.CRITICAL),
        ],
    )
    def test_classify_uses_strict_comparisons(self, monitor, rss, expected):
        assert monitor.classify(rss) is expected

    def test_check_memory_records_history_and_gauge(self, monitor, sampler, metrics):
        sampler.rss = 321
        snapshot = monitor.check_memory()
        assert snapshot.rss_bytes == 321
        assert monitor.latest() is snapshot
        assert metrics.get_gauge(MEMORY_RSS_BYTES) == 321

    def test_history_is_bounded(self, monitor):
        for _ in range(10):
            monitor.check_memory()
        assert len(monitor.get_metrics_history()) == 5

    def test_transitions_notify_listeners(self, monitor, sampler, metrics):
        listener = Mock()
        monitor.subscribe(listener)

        sampler.rss = WARNING + 1
        monitor.check_memory()
        listener.assert_called_once_with(MemoryStatus.HEALTHY, MemoryStatus.WARNING)

        monitor.check_memory()
        assert listener.call_count == 1

        sampler.rss = 10
        monitor.check_memory()
        listener.assert_called_with(MemoryStatus.WARNING, MemoryStatus.HEALTHY)
        assert metrics.get_counter(MEMORY_STATUS_CHANGES_TOTAL, {"status": "warning"}) == 1
        assert metrics.get_counter(MEMORY_STATUS_CHANGES_TOTAL, {"status": "healthy"}) == 1

    def test_unsubscribe(self, monitor, sampler):
        listener = Mock()
        unsubscribe = monitor.subscribe(listener)
        unsubscribe()
        unsubscribe()

        sampler.rss = CRITICAL + 1
        monitor.check_memory()
        listener.assert_not_called()

    def test_failing_listener_does_not_break_others(self, monitor, sampler):
        broken = Mock(side_effect=RuntimeError("boom"))
        healthy = Mock()
        monitor.subscribe(broken)
        monitor.subscribe(healthy)

        sampler.rss = WARNING + 1
        monitor.check_memory()
        healthy.assert_called_once()

    def test_critical_disables_registered_caches(self, monitor, sampler, metrics):
        cache = Mock()
        monitor.register_cache(cache)
        monitor.register_cache(cache)

        sampler.rss = CRITICAL + 1
        monitor.check_memory()

        cache.disable.assert_called_once()
        assert metrics.get_counter(EMERGENCY_CLEANUPS_TOTAL) == 1
        assert monitor.get_stats()["emergency_cleanups"] == 1

    def test_no_cleanup_when_disabled(self, sampler):
        config = MemoryConfig(
            total_budget_bytes=1000,
            warning_threshold=WARNING,
            critical_threshold=CRITICAL,
            cleanup_on_critical=False,
        )
        monitor = MemoryMonitor(config, sampler=sampler)
        cache = Mock()
        monitor.register_cache(cache)

        sampler.rss = CRITICAL + 1
        monitor.check_memory()
        cache.disable.assert_not_called()

    def test_admission_predicates(self, monitor, sampler):
        sampler.rss = WARNING + 1
        monitor.check_memory()
        assert monitor.should_accept_new_requests()
        assert not monitor.should_allow_image_operations()

        sampler.rss = CRITICAL + 1
        monitor.check_memory()
        assert not monitor.should_accept_new_requests()

    def test_has_headroom(self, monitor, sampler):
        sampler.rss = 800
        monitor.check_memory()
        assert monitor.has_headroom(100)
        assert not monitor.has_headroom(101)

    def test_has_headroom_samples_when_no_history(self, monitor, sampler):
        sampler.rss = 850
        assert not monitor.has_headroom(60)
        assert sampler.calls == 1

    def test_usage_percent(self, monitor, sampler):
        assert monitor.get_memory_usage_percent() == 0.0
        sampler.rss = 250
        monitor.check_memory()
        assert monitor.get_memory_usage_percent() == pytest.approx(25.0)

    @pytest.mark.parametrize(
        "first, last, expected",
        [
            (100, 100, TREND_STABLE),
            (100, 105, TREND_STABLE),
            (100, 120, TREND_INCREASING),
            (100, 80, TREND_DECREASING),
        ],
    )
    def test_trend(self, monitor, sampler, first, last, expected):
        sampler.rss = first
        monitor.check_memory()
        sampler.rss = last
        monitor.check_memory()
        assert monitor.get_memory_trend() == expected

    def test_trend_stable_with_one_sample(self, monitor):
        monitor.check_memory()
        assert monitor.get_memory_trend() == TREND_STABLE


class TestHealthReport:
    @pytest.fixture
    def sampler(self):
        return SettableSampler()

    @pytest.fixture
    def monitor(self, sampler):
        config = MemoryConfig(
            total_budget_bytes=1000, warning_threshold=WARNING, critical_threshold=CRITICAL
        )
        return MemoryMonitor(config, sampler=sampler)

    def test_healthy_report(self, monitor, sampler):
        sampler.rss = WARNING
        monitor.check_memory()
        report = monitor.get_health_status()
        assert report.status is MemoryStatus.HEALTHY
        assert report.status_code == 200
        assert report.details["rss_bytes"] == WARNING
        assert report.details["critical_threshold"] == CRITICAL

    def test_warning_report_is_still_200(self, monitor, sampler):
        sampler.rss = WARNING + 1
        monitor.check_memory()
        report = monitor.get_health_status()
        assert report.status is MemoryStatus.WARNING
        assert report.status_code == 200

    def test_critical_report_is_503(self, monitor, sampler):
        sampler.rss = CRITICAL + 1
        monitor.check_memory()
        report = monitor.get_health_status()
        assert report.status is MemoryStatus.CRITICAL
        assert report.status_code == 503
        assert report.to_dict()["status"] == "critical"

    def test_report_samples_when_empty(self, monitor, sampler):
        report = monitor.get_health_status()
        assert sampler.calls == 1
        assert report.details["samples"] == 1

    def test_health_response_headers(self, monitor, sampler):
        sampler.rss = 100
        monitor.check_memory()
        status_code, headers, body = memory_health_response(monitor)
        assert status_code == 200
        assert headers == {"X-Memory-Status": "healthy"}
        assert body["status"] == "healthy"

    def test_health_response_critical_has_retry_after(self, monitor, sampler):
        sampler.rss = CRITICAL + 1
        monitor.check_memory()
        status_code, headers, _ = memory_health_response(monitor)
        assert status_code == 503
        assert headers["X-Memory-Status"] == "critical"
        assert headers["Retry-After"] == "5"


class TestMonitorLifecycle:
    @pytest.mark.asyncio
    async def test_start_samples_and_loop_runs(self):
        sampler = SettableSampler()
        config = MemoryConfig(total_budget_bytes=1000, check_interval=0.01)
        monitor = MemoryMonitor(config, sampler=sampler)

        async with monitor:
            assert sampler.calls >= 1
            await asyncio.sleep(0.05)
        assert sampler.calls >= 2

        calls = sampler.calls
        await asyncio.sleep(0.03)
        assert sampler.calls == calls

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        monitor = MemoryMonitor(MemoryConfig(), sampler=SettableSampler())
        await monitor.stop()


class TestSampleProcessMemory:
    def test_samples_current_process(self):
        snapshot = sample_process_memory()
        assert snapshot.rss_bytes > 0
        assert snapshot.heap_used_bytes > 0

    def test_falls_back_to_rss_without_uss(self):
        process = Mock()
        process.memory_info.return_value = Mock(rss=1000, vms=5000, shared=10)
        process.memory_full_info.side_effect = psutil.AccessDenied()
        snapshot = sample_process_memory(process)
        assert snapshot.rss_bytes == 1000
        assert snapshot.heap_used_bytes == 1000
        assert snapshot.heap_total_bytes == 5000
        assert snapshot.external_bytes == 10
