import asyncio

import pytest

from image_pipeline.exceptions import CircuitOpenError, ConfigurationError, OperationTimeoutError
from image_pipeline.limits.rate_limiter import (
    CircuitBreakerConfig,
    RateLimitConfig,
    RateLimiter,
)
from image_pipeline.observability.collector import UnifiedMetricsCollector
from image_pipeline.observability.constants import (
    CIRCUIT_BREAKER_REJECTIONS_TOTAL,
    RATE_LIMIT_DENIALS_TOTAL,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestRateLimitConfig:
    def test_rejects_non_positive_requests(self):
        with pytest.raises(ConfigurationError):
            RateLimitConfig(max_requests=0, window=1.0)

    def test_rejects_non_positive_window(self):
        with pytest.raises(ConfigurationError):
            RateLimitConfig(max_requests=1, window=0)

    def test_breaker_rejects_bad_values(self):
        with pytest.raises(ConfigurationError):
            CircuitBreakerConfig(failure_threshold=0, reset_timeout=1.0)
        with pytest.raises(ConfigurationError):
            CircuitBreakerConfig(failure_threshold=1, reset_timeout=-1.0)


class TestRateLimiting:
    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def metrics(self):
        return UnifiedMetricsCollector()

    @pytest.fixture
    def limiter(self, clock, metrics):
        return RateLimiter(metrics=metrics, clock=clock)

    def test_allows_up_to_max_then_denies(self, limiter, metrics):
        config = RateLimitConfig(max_requests=3, window=60.0)
        results = [limiter.is_operation_allowed("api", "1.2.3.4", config) for _ in range(4)]
        assert results == [True, True, True, False]
        assert metrics.get_counter(RATE_LIMIT_DENIALS_TOTAL, {"store": "api"}) == 1

    def test_denied_calls_do_not_consume_quota(self, limiter, clock):
        config = RateLimitConfig(max_requests=1, window=10.0)
        assert limiter.is_operation_allowed("api", "a", config)
        for _ in range(5):
            assert not limiter.is_operation_allowed("api", "a", config)
        clock.advance(10.5)
        assert limiter.is_operation_allowed("api", "a", config)

    def test_window_resets_after_expiry(self, limiter, clock):
        config = RateLimitConfig(max_requests=2, window=30.0)
        assert limiter.is_operation_allowed("api", "a", config)
        assert limiter.is_operation_allowed("api", "a", config)
        assert not limiter.is_operation_allowed("api", "a", config)

        clock.advance(30.1)
        assert limiter.is_operation_allowed("api", "a", config)

    def test_contexts_and_stores_are_independent(self, limiter):
        config = RateLimitConfig(max_requests=1, window=60.0)
        assert limiter.is_operation_allowed("api", "a", config)
        assert limiter.is_operation_allowed("api", "b", config)
        assert limiter.is_operation_allowed("other", "a", config)
        assert not limiter.is_operation_allowed("api", "a", config)

    def test_time_until_reset(self, limiter, clock):
        config = RateLimitConfig(max_requests=1, window=60.0)
        assert limiter.time_until_reset("api", "a") == 0.0
        limiter.is_operation_allowed("api", "a", config)
        clock.advance(15)
        assert limiter.time_until_reset("api", "a") == pytest.approx(45.0)

    def test_clear_store(self, limiter):
        config = RateLimitConfig(max_requests=1, window=60.0)
        limiter.is_operation_allowed("api", "a", config)
        limiter.clear_store("api")
        assert limiter.is_operation_allowed("api", "a", config)

    def test_prune_expired(self, limiter, clock):
        config = RateLimitConfig(max_requests=1, window=5.0)
        limiter.is_operation_allowed("api", "a", config)
        limiter.is_operation_allowed("api", "b", config)
        clock.advance(6)
        assert limiter.prune_expired() == 2
        assert limiter.prune_expired() == 0


class TestWaitForPermit:
    @pytest.mark.asyncio
    async def test_returns_immediately_when_allowed(self):
        limiter = RateLimiter()
        config = RateLimitConfig(max_requests=1, window=60.0)
        await asyncio.wait_for(limiter.wait_for_permit("api", "a", config), timeout=1.0)
        assert not limiter.is_operation_allowed("api", "a", config)

    @pytest.mark.asyncio
    async def test_waits_for_short_window(self):
        limiter = RateLimiter()
        config = RateLimitConfig(max_requests=1, window=0.05)
        assert limiter.is_operation_allowed("api", "a", config)
        await asyncio.wait_for(
            limiter.wait_for_permit("api", "a", config, poll_interval=0.01), timeout=2.0
        )

    @pytest.mark.asyncio
    async def test_timeout_raises(self):
        limiter = RateLimiter()
        config = RateLimitConfig(max_requests=1, window=60.0)
        limiter.is_operation_allowed("api", "a", config)
        with pytest.raises(OperationTimeoutError) as exc_info:
            await limiter.wait_for_permit("api", "a", config, timeout=0.05)
        assert exc_info.value.timeout == 0.05


class TestCircuitBreaker:
    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def metrics(self):
        return UnifiedMetricsCollector()

    @pytest.fixture
    def limiter(self, clock, metrics):
        return RateLimiter(metrics=metrics, clock=clock)

    @pytest.fixture
    def breaker(self):
        return CircuitBreakerConfig(failure_threshold=3, reset_timeout=60.0)

    def test_opens_at_threshold(self, limiter, breaker):
        for expected in (1, 2):
            assert limiter.record_operation_failure("s", "a", breaker) == expected
            assert not limiter.is_circuit_open("s", "a", breaker)
        assert limiter.record_operation_failure("s", "a", breaker) == 3
        assert limiter.is_circuit_open("s", "a", breaker)

    def test_closes_after_reset_timeout(self, limiter, clock, breaker):
        for _ in range(3):
            limiter.record_operation_failure("s", "a", breaker)
        assert limiter.is_circuit_open("s", "a", breaker)

        clock.advance(61)
        assert not limiter.is_circuit_open("s", "a", breaker)
        assert limiter.get_circuit_state("s", "a")["failures"] == 0

    def test_failures_outside_window_start_over(self, limiter, clock, breaker):
        limiter.record_operation_failure("s", "a", breaker)
        limiter.record_operation_failure("s", "a", breaker)
        clock.advance(61)
        assert limiter.record_operation_failure("s", "a", breaker) == 1

    def test_success_clears_failures(self, limiter, breaker):
        for _ in range(3):
            limiter.record_operation_failure("s", "a", breaker)
        limiter.record_operation_success("s", "a")
        assert not limiter.is_circuit_open("s", "a", breaker)

    def test_reset_circuit_also_clears_rate_window(self, limiter, breaker):
        config = RateLimitConfig(max_requests=1, window=60.0)
        assert limiter.is_operation_allowed("s", "a", config)
        for _ in range(3):
            limiter.record_operation_failure("s", "a", breaker)

        limiter.reset_circuit("s", "a")
        assert limiter.is_operation_allowed_with_circuit_breaker("s", "a", config, breaker)

    def test_combined_check_denies_while_open(self, limiter, metrics, breaker):
        config = RateLimitConfig(max_requests=100, window=60.0)
        for _ in range(3):
            limiter.record_operation_failure("s", "a", breaker)
        assert not limiter.is_operation_allowed_with_circuit_breaker("s", "a", config, breaker)
        assert metrics.get_counter(CIRCUIT_BREAKER_REJECTIONS_TOTAL, {"store": "s"}) == 1

    def test_combined_check_defers_to_rate_limit(self, limiter, breaker):
        config = RateLimitConfig(max_requests=2, window=60.0)
        results = [
            limiter.is_operation_allowed_with_circuit_breaker("s", "a", config, breaker)
            for _ in range(3)
        ]
        assert results == [True, True, False]

    def test_get_circuit_state_unknown_context(self, limiter):
        assert limiter.get_circuit_state("s", "missing") == {"failures": 0, "window_age": 0.0}

    def test_check_circuit_raises_with_retry_after(self, limiter, clock, metrics, breaker):
        limiter.check_circuit("s", "a", breaker)
        for _ in range(3):
            limiter.record_operation_failure("s", "a", breaker)
        clock.advance(20)

        with pytest.raises(CircuitOpenError) as exc_info:
            limiter.check_circuit("s", "a", breaker)

        assert exc_info.value.store == "s"
        assert exc_info.value.context == "a"
        assert exc_info.value.retry_after == pytest.approx(40.0)
        assert metrics.get_counter(CIRCUIT_BREAKER_REJECTIONS_TOTAL, {"store": "s"}) == 1
