"""Unit tests for the configuration dataclasses."""

import pytest

from image_pipeline.config import (
    DEFAULT_MEMORY_BUDGET_BYTES,
    LOGO_BLOCKLIST_KEY,
    FailureConfig,
    FetchConfig,
    MemoryConfig,
    PipelineConfig,
    RetryConfig,
    SchedulerConfig,
    ServiceConfig,
    StreamingConfig,
)
from image_pipeline.exceptions import ConfigurationError

MIB = 1024 * 1024


class TestMemoryConfig:
    def test_defaults_derive_thresholds_from_budget(self):
        config = MemoryConfig()
        assert config.total_budget_bytes == DEFAULT_MEMORY_BUDGET_BYTES
        assert config.warning_threshold == int(DEFAULT_MEMORY_BUDGET_BYTES * 0.7)
        assert config.critical_threshold == int(DEFAULT_MEMORY_BUDGET_BYTES * 0.9)
        assert config.check_interval == 5.0
        assert config.cleanup_on_critical is True

    def test_explicit_thresholds_kept(self):
        config = MemoryConfig(total_budget_bytes=1000, warning_threshold=100, critical_threshold=200)
        assert config.warning_threshold == 100
        assert config.critical_threshold == 200

    def test_warning_must_be_below_critical(self):
        with pytest.raises(ValueError, match="below critical"):
            MemoryConfig(total_budget_bytes=1000, warning_threshold=500, critical_threshold=500)

    def test_budget_must_be_positive(self):
        with pytest.raises(ValueError):
            MemoryConfig(total_budget_bytes=0)

    def test_history_size_minimum(self):
        with pytest.raises(ValueError):
            MemoryConfig(history_size=1)


class TestSchedulerConfig:
    def test_defaults(self):
        config = SchedulerConfig()
        assert config.max_queue_size == 1000
        assert config.max_concurrent_requests == 10
        assert config.memory_threshold_percent == 60.0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_queue_size": 0},
            {"max_concurrent_requests": 0},
            {"memory_threshold_percent": 0},
            {"memory_threshold_percent": 101},
            {"tick_interval": 0},
            {"default_max_retries": -1},
        ],
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            SchedulerConfig(**kwargs)


class TestStreamingConfig:
    def test_defaults(self):
        config = StreamingConfig()
        assert config.stream_threshold_bytes == 5 * MIB
        assert config.max_stream_bytes == 100 * MIB
        assert config.part_size == 5 * MIB

    def test_max_must_exceed_threshold(self):
        with pytest.raises(ValueError):
            StreamingConfig(stream_threshold_bytes=10, max_stream_bytes=10)


class TestFetchAndFailureConfig:
    def test_fetch_defaults(self):
        config = FetchConfig()
        assert config.logo_fetch_timeout == 5.0
        assert config.min_buffer_size == 100
        assert config.min_logo_size == 64
        assert config.aspect_ratio_tolerance == 0.5

    def test_fetch_timeouts_positive(self):
        with pytest.raises(ValueError):
            FetchConfig(logo_fetch_timeout=0)

    def test_failure_defaults(self):
        config = FailureConfig()
        assert config.permanent_failure_threshold == 5
        assert config.max_retries_per_session == 2
        assert config.session_max_duration == 1800.0
        assert config.blocklist_key == LOGO_BLOCKLIST_KEY

    def test_failure_threshold_positive(self):
        with pytest.raises(ValueError):
            FailureConfig(permanent_failure_threshold=0)


class TestRetryAndServiceConfig:
    def test_retry_defaults(self):
        config = RetryConfig()
        assert config.max_upload_retries == 3
        assert config.max_retry_queue_size == 100
        assert config.retry_jitter_factor == 0.2

    def test_retry_max_delay_not_below_base(self):
        with pytest.raises(ValueError):
            RetryConfig(retry_base_delay=10.0, retry_max_delay=1.0)

    def test_jitter_factor_bounds(self):
        with pytest.raises(ValueError):
            RetryConfig(retry_jitter_factor=1.5)

    def test_service_defaults(self):
        config = ServiceConfig()
        assert config.max_in_flight_requests == 100
        assert config.read_only is False


class TestPipelineConfigFromEnv:
    def test_empty_environment_gives_defaults(self):
        config = PipelineConfig.from_env({})
        assert config.memory.total_budget_bytes == DEFAULT_MEMORY_BUDGET_BYTES
        assert config.redis_url is None
        assert config.cdn.cdn_base_url is None
        assert config.service.read_only is False

    def test_values_read(self):
        config = PipelineConfig.from_env(
            {
                "TOTAL_PROCESS_MEMORY_BUDGET_BYTES": "1000000",
                "MEMORY_WARNING_THRESHOLD": "500000",
                "MEMORY_CRITICAL_THRESHOLD": "800000",
                "IMAGE_STREAM_THRESHOLD_BYTES": "1024",
                "PERMANENT_FAILURE_THRESHOLD": "3",
                "MAX_RETRY_QUEUE_SIZE": "7",
                "S3_READ_ONLY": "true",
                "S3_CDN_URL": "https://cdn.example.com",
                "S3_BUCKET": "logos",
                "REDIS_URL": "redis://cache:6379",
            }
        )
        assert config.memory.total_budget_bytes == 1000000
        assert config.memory.warning_threshold == 500000
        assert config.memory.critical_threshold == 800000
        assert config.streaming.stream_threshold_bytes == 1024
        assert config.failures.permanent_failure_threshold == 3
        assert config.retry.max_retry_queue_size == 7
        assert config.service.read_only is True
        assert config.cdn.cdn_base_url == "https://cdn.example.com"
        assert config.cdn.bucket == "logos"
        assert config.redis_url == "redis://cache:6379"

    def test_malformed_number_names_variable(self):
        with pytest.raises(ConfigurationError, match="SCHEDULER_MAX_QUEUE_SIZE"):
            PipelineConfig.from_env({"SCHEDULER_MAX_QUEUE_SIZE": "lots"})

    def test_invalid_combination_raises_configuration_error(self):
        with pytest.raises(ConfigurationError):
            PipelineConfig.from_env(
                {"MEMORY_WARNING_THRESHOLD": "900", "MEMORY_CRITICAL_THRESHOLD": "100"}
            )

    @pytest.mark.parametrize("value", ["0", "false", "no", ""])
    def test_read_only_false_values(self, value):
        assert PipelineConfig.from_env({"S3_READ_ONLY": value}).service.read_only is False
