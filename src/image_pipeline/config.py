# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Configuration for the Image Pipeline

This module provides the configuration dataclasses for every component of
the pipeline: memory monitoring, scheduling, streaming, origin fetching,
failure tracking, upload retries and CDN URL construction.

Each dataclass validates itself in ``__post_init__`` and raises ``ValueError``
on bad values. ``PipelineConfig.from_env`` builds the aggregate from
environment variables and raises ``ConfigurationError`` on malformed input.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from .exceptions import ConfigurationError

GIB = 1024 * 1024 * 1024
MIB = 1024 * 1024

DEFAULT_MEMORY_BUDGET_BYTES = int(3.75 * GIB)
"""Default total process memory budget (3.75 GiB)."""

LOGO_BLOCKLIST_KEY = "json/image-data/logos/domain-blocklist.json"
"""Storage key of the persisted domain blocklist."""

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)


@dataclass
class MemoryConfig:
    """Configuration for the memory health monitor."""

    total_budget_bytes: int = DEFAULT_MEMORY_BUDGET_BYTES
    """Total RSS budget for the process in bytes."""

    warning_threshold: int | None = None
    """RSS above which status is warning. Defaults to 70% of the budget."""

    critical_threshold: int | None = None
    """RSS above which status is critical. Defaults to 90% of the budget."""

    check_interval: float = 5.0
    """Seconds between periodic memory samples."""

    history_size: int = 60
    """Maximum number of snapshots kept for trend analysis."""

    cleanup_on_critical: bool = True
    """Run emergency cleanup automatically when status becomes critical."""

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if self.total_budget_bytes <= 0:
            raise ValueError("total_budget_bytes must be positive")
        if self.warning_threshold is None:
            self.warning_threshold = int(self.total_budget_bytes * 0.7)
        if self.critical_threshold is None:
            self.critical_threshold = int(self.total_budget_bytes * 0.9)
        if self.warning_threshold <= 0 or self.critical_threshold <= 0:
            raise ValueError("memory thresholds must be positive")
        if self.warning_threshold >= self.critical_threshold:
            raise ValueError("warning_threshold must be below critical_threshold")
        if self.check_interval <= 0:
            raise ValueError("check_interval must be positive")
        if self.history_size < 2:
            raise ValueError("history_size must be at least 2")


@dataclass
class SchedulerConfig:
    """Configuration for the memory-aware request scheduler."""

    max_queue_size: int = 1000
    """Maximum number of queued requests before rejecting new ones."""

    max_concurrent_requests: int = 10
    """Maximum number of requests running at once."""

    memory_threshold_percent: float = 60.0
    """RSS as a percentage of the budget above which dequeuing pauses."""

    backoff_base: float = 0.1
    """Base delay in seconds for pressure and retry backoff."""

    max_backoff: float = 30.0
    """Upper bound for pressure backoff in seconds."""

    tick_interval: float = 0.1
    """Seconds between scheduler ticks."""

    default_max_retries: int = 3
    """Retries granted to a request when the caller does not specify."""

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if self.max_queue_size < 1:
            raise ValueError("max_queue_size must be at least 1")
        if self.max_concurrent_requests < 1:
            raise ValueError("max_concurrent_requests must be at least 1")
        if not 0 < self.memory_threshold_percent <= 100:
            raise ValueError("memory_threshold_percent must be between 0 and 100")
        if self.backoff_base <= 0 or self.max_backoff <= 0:
            raise ValueError("backoff values must be positive")
        if self.tick_interval <= 0:
            raise ValueError("tick_interval must be positive")
        if self.default_max_retries < 0:
            raise ValueError("default_max_retries must be non-negative")


@dataclass
class StreamingConfig:
    """Configuration for streaming large bodies straight to storage."""

    stream_threshold_bytes: int = 5 * MIB
    """Bodies with a declared length above this are streamed."""

    max_stream_bytes: int = 100 * MIB
    """Hard cap on streamed bytes."""

    stream_timeout: float = 300.0
    """Deadline in seconds for a whole streamed upload."""

    part_size: int = 5 * MIB
    """Multipart upload part size in bytes."""

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if self.stream_threshold_bytes < 0:
            raise ValueError("stream_threshold_bytes must be non-negative")
        if self.max_stream_bytes <= self.stream_threshold_bytes:
            raise ValueError("max_stream_bytes must exceed stream_threshold_bytes")
        if self.stream_timeout <= 0:
            raise ValueError("stream_timeout must be positive")
        if self.part_size < 1:
            raise ValueError("part_size must be at least 1")


@dataclass
class FetchConfig:
    """Configuration for origin fetching and logo validation."""

    fetch_timeout: float = 30.0
    """Timeout in seconds for general image fetches."""

    logo_fetch_timeout: float = 5.0
    """Timeout in seconds for a single logo candidate."""

    direct_fetch_timeout: float = 10.0
    """Timeout in seconds for direct favicon candidates."""

    min_buffer_size: int = 100
    """Candidate bodies smaller than this many bytes are rejected."""

    min_logo_size: int = 64
    """Minimum width and height in pixels for raster logos."""

    aspect_ratio_tolerance: float = 0.5
    """Raster logos are accepted when ``abs(width / height - 1)`` is below this."""

    max_image_bytes: int = 50 * MIB
    """Largest body accepted on the buffered path."""

    user_agent: str = DEFAULT_USER_AGENT
    """User-Agent header sent to origins."""

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if min(self.fetch_timeout, self.logo_fetch_timeout, self.direct_fetch_timeout) <= 0:
            raise ValueError("fetch timeouts must be positive")
        if self.min_buffer_size < 0:
            raise ValueError("min_buffer_size must be non-negative")
        if self.aspect_ratio_tolerance <= 0:
            raise ValueError("aspect_ratio_tolerance must be positive")
        if self.max_image_bytes < 1:
            raise ValueError("max_image_bytes must be at least 1")


@dataclass
class FailureConfig:
    """Configuration for per-session and durable domain failure tracking."""

    permanent_failure_threshold: int = 5
    """Durable failures after which a domain is permanently blocked."""

    max_retries_per_session: int = 2
    """Failures allowed per domain within one session window."""

    session_max_duration: float = 1800.0
    """Seconds after which session tracking resets."""

    cooldown: float = 24 * 60 * 60.0
    """Seconds a failed domain is skipped after its last failure."""

    max_blocklist_size: int = 10000
    """Maximum number of durable failure records."""

    max_session_domains: int = 500
    """Session failed-domain set size that triggers a session reset."""

    blocklist_key: str = LOGO_BLOCKLIST_KEY
    """Storage key of the persisted blocklist."""

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if self.permanent_failure_threshold < 1:
            raise ValueError("permanent_failure_threshold must be at least 1")
        if self.max_retries_per_session < 1:
            raise ValueError("max_retries_per_session must be at least 1")
        if self.session_max_duration <= 0:
            raise ValueError("session_max_duration must be positive")
        if self.cooldown < 0:
            raise ValueError("cooldown must be non-negative")
        if self.max_blocklist_size < 1 or self.max_session_domains < 1:
            raise ValueError("size bounds must be at least 1")


@dataclass
class RetryConfig:
    """Configuration for the upload retry queue."""

    max_upload_retries: int = 3
    """Attempts after which a queued upload is dropped."""

    retry_base_delay: float = 1.0
    """Base delay in seconds for exponential retry backoff."""

    retry_max_delay: float = 60.0
    """Maximum delay in seconds between retries."""

    retry_jitter_factor: float = 0.2
    """Random jitter as a fraction of the computed delay."""

    max_retry_queue_size: int = 100
    """Maximum number of queued uploads."""

    retry_interval: float = 60.0
    """Seconds between retry queue drains."""

    retry_entry_ttl: float = 3600.0
    """Seconds after the last attempt when an entry is discarded by cleanup."""

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if self.max_upload_retries < 1:
            raise ValueError("max_upload_retries must be at least 1")
        if self.retry_base_delay <= 0 or self.retry_max_delay < self.retry_base_delay:
            raise ValueError("retry delays must be positive and max >= base")
        if not 0 <= self.retry_jitter_factor <= 1:
            raise ValueError("retry_jitter_factor must be between 0 and 1")
        if self.max_retry_queue_size < 1:
            raise ValueError("max_retry_queue_size must be at least 1")
        if self.retry_interval <= 0 or self.retry_entry_ttl <= 0:
            raise ValueError("retry intervals must be positive")


@dataclass
class ServiceConfig:
    """Configuration for the unified image service itself."""

    max_in_flight_requests: int = 100
    """Maximum number of coalesced in-flight logo fetches."""

    cleanup_interval: float = 300.0
    """Seconds between periodic memory cleanups."""

    result_cache_ttl: float = 30 * 24 * 60 * 60.0
    """Lifetime in seconds of a cached successful logo result."""

    negative_cache_ttl: float = 60 * 60.0
    """Lifetime in seconds of a cached failed logo result."""

    result_cache_size: int = 5000
    """Maximum number of cached logo results."""

    image_operation_timeout: float = 60.0
    """Deadline in seconds for a whole get_image call."""

    logo_operation_timeout: float = 120.0
    """Deadline in seconds for a whole get_logo pipeline."""

    read_only: bool = False
    """Serve from storage only and never write."""

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if self.max_in_flight_requests < 1:
            raise ValueError("max_in_flight_requests must be at least 1")
        if self.cleanup_interval <= 0:
            raise ValueError("cleanup_interval must be positive")
        if self.result_cache_ttl <= 0 or self.negative_cache_ttl <= 0:
            raise ValueError("cache TTLs must be positive")
        if self.result_cache_size < 1:
            raise ValueError("result_cache_size must be at least 1")


@dataclass
class CdnConfig:
    """Where stored objects are served from."""

    cdn_base_url: str | None = None
    """Public CDN base URL, e.g. ``https://cdn.example.com``."""

    bucket: str | None = None
    """Bucket name used to build a virtual-hosted URL when no CDN is set."""

    s3_server_url: str | None = None
    """S3-compatible endpoint URL."""


@dataclass
class PipelineConfig:
    """Aggregate configuration for a whole pipeline."""

    memory: MemoryConfig = field(default_factory=MemoryConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    streaming: StreamingConfig = field(default_factory=StreamingConfig)
    fetch: FetchConfig = field(default_factory=FetchConfig)
    failures: FailureConfig = field(default_factory=FailureConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    service: ServiceConfig = field(default_factory=ServiceConfig)
    cdn: CdnConfig = field(default_factory=CdnConfig)

    redis_url: str | None = None
    """Redis URL for the Redis blob store, if used."""

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> PipelineConfig:
        """Build configuration from environment variables.

        Unset variables keep their defaults. Malformed values raise
        ConfigurationError naming the offending variable.
        """
        env = os.environ if environ is None else environ

        try:
            memory = MemoryConfig(
                total_budget_bytes=_env_int(env, "TOTAL_PROCESS_MEMORY_BUDGET_BYTES", DEFAULT_MEMORY_BUDGET_BYTES),
                warning_threshold=_env_optional_int(env, "MEMORY_WARNING_THRESHOLD"),
                critical_threshold=_env_optional_int(env, "MEMORY_CRITICAL_THRESHOLD"),
            )
            scheduler = SchedulerConfig(
                max_queue_size=_env_int(env, "SCHEDULER_MAX_QUEUE_SIZE", 1000),
                max_concurrent_requests=_env_int(env, "SCHEDULER_MAX_CONCURRENT", 10),
            )
            streaming = StreamingConfig(
                stream_threshold_bytes=_env_int(env, "IMAGE_STREAM_THRESHOLD_BYTES", 5 * MIB),
            )
            fetch = FetchConfig(max_image_bytes=_env_int(env, "MAX_IMAGE_BYTES", 50 * MIB))
            failures = FailureConfig(
                permanent_failure_threshold=_env_int(env, "PERMANENT_FAILURE_THRESHOLD", 5),
                max_retries_per_session=_env_int(env, "MAX_RETRIES_PER_SESSION", 2),
            )
            retry = RetryConfig(
                retry_base_delay=_env_float(env, "RETRY_BASE_DELAY", 1.0),
                retry_max_delay=_env_float(env, "RETRY_MAX_DELAY", 60.0),
                retry_jitter_factor=_env_float(env, "RETRY_JITTER_FACTOR", 0.2),
                max_retry_queue_size=_env_int(env, "MAX_RETRY_QUEUE_SIZE", 100),
            )
            service = ServiceConfig(read_only=_env_bool(env, "S3_READ_ONLY"))
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

        cdn = CdnConfig(
            cdn_base_url=env.get("S3_CDN_URL") or None,
            bucket=env.get("S3_BUCKET") or None,
            s3_server_url=env.get("S3_SERVER_URL") or None,
        )
        return cls(
            memory=memory,
            scheduler=scheduler,
            streaming=streaming,
            fetch=fetch,
            failures=failures,
            retry=retry,
            service=service,
            cdn=cdn,
            redis_url=env.get("REDIS_URL") or None,
        )


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(float(raw))
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def _env_optional_int(env: Mapping[str, str], name: str) -> int | None:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return None
    return _env_int(env, name, 0)


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def _env_bool(env: Mapping[str, str], name: str) -> bool:
    return env.get(name, "").strip().lower() in ("1", "true", "yes", "on")


__all__ = [
    "DEFAULT_MEMORY_BUDGET_BYTES",
    "LOGO_BLOCKLIST_KEY",
    "CdnConfig",
    "FailureConfig",
    "FetchConfig",
    "MemoryConfig",
    "PipelineConfig",
    "RetryConfig",
    "SchedulerConfig",
    "ServiceConfig",
    "StreamingConfig",
]
