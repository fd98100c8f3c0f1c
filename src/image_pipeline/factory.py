# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Pipeline assembly.

``create_pipeline`` builds every component once, wires them together and
returns an ImagePipeline container. Consumers receive the container (or the
component they need) explicitly; nothing in the package is a module-level
singleton.

Example:
    pipeline = create_pipeline(PipelineConfig.from_env())
    async with pipeline:
        result = await pipeline.service.get_logo("example.com")
        status_code, headers, body = pipeline.memory_health_response()
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from types import TracebackType
from typing import Any

import httpx
from typing_extensions import Self

from .config import PipelineConfig
from .health.memory import MemoryMonitor, memory_health_response
from .limits.failure_tracker import FailureTracker
from .limits.rate_limiter import RateLimiter
from .monitoring.operations import OperationTracker
from .observability.collector import UnifiedMetricsCollector
from .scheduler.memory_aware import MemoryAwareScheduler
from .service.cache import ResultCache
from .service.cdn import CdnUrlBuilder
from .service.fetcher import LogoFetcher
from .service.session import SessionManager
from .service.unified import UnifiedImageService
from .service.uploads import UploadRetryQueue
from .service.validators import LogoValidator
from .storage.base import BaseStore
from .storage.memory import MemoryStore
from .streaming.upload import StreamingUploader
from .types.memory import MemorySnapshot

logger = logging.getLogger(__name__)


@dataclass
class ImagePipeline:
    """Every long-lived component of one pipeline, with a joint lifecycle."""

    config: PipelineConfig
    metrics: UnifiedMetricsCollector
    monitor: MemoryMonitor
    scheduler: MemoryAwareScheduler
    limiter: RateLimiter
    operations: OperationTracker
    store: BaseStore
    http_client: httpx.AsyncClient
    service: UnifiedImageService
    owns_http_client: bool = False
    _started: bool = field(default=False, repr=False)

    async def start(self) -> None:
        """Start sampling, scheduling, operation pruning and the service loops."""
        if self._started:
            return
        self.monitor.start()
        self.scheduler.start()
        await self.operations.start()
        await self.service.start()
        self._started = True
        logger.info("Image pipeline started")

    async def stop(self) -> None:
        """Stop every component in reverse order and release connections."""
        if not self._started:
            return
        await self.service.stop()
        await self.operations.stop()
        await self.scheduler.stop()
        await self.monitor.stop()
        if self.owns_http_client:
            await self.http_client.aclose()
        await self.store.close()
        self._started = False
        logger.info("Image pipeline stopped")

    def memory_health_response(self) -> tuple[int, dict[str, str], dict[str, Any]]:
        return memory_health_response(self.monitor)

    def get_stats(self) -> dict[str, Any]:
        return {
            "service": self.service.get_stats(),
            "scheduler": self.scheduler.get_metrics(),
            "memory": self.monitor.get_stats(),
            "metrics": self.metrics.get_flat_metrics(),
        }

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()


def _default_store(config: PipelineConfig, monitor: MemoryMonitor) -> BaseStore:
    if config.redis_url:
        from .storage.redis import RedisStore

        return RedisStore(redis_url=config.redis_url, memory_guard=monitor.has_headroom)
    if config.cdn.bucket:
        from .storage.s3 import S3Store

        return S3Store(
            bucket=config.cdn.bucket,
            endpoint_url=config.cdn.s3_server_url,
            memory_guard=monitor.has_headroom,
        )
    return MemoryStore(memory_guard=monitor.has_headroom)


def create_pipeline(
    config: PipelineConfig | None = None,
    store: BaseStore | None = None,
    http_client: httpx.AsyncClient | None = None,
    metrics: UnifiedMetricsCollector | None = None,
    memory_sampler: Callable[[], MemorySnapshot] | None = None,
    clock: Callable[[], float] | None = None,
) -> ImagePipeline:
    """
    Build a fully wired pipeline.

    Args:
        config: Pipeline configuration (defaults to ``PipelineConfig()``)
        store: Blob store. Defaults to Redis when ``redis_url`` is set, S3
            when a bucket is configured, otherwise an in-memory store. A
            store without a memory guard gets the monitor's headroom check.
        http_client: Shared HTTP client. One is created (and closed by
            ``stop()``) when omitted.
        metrics: Metrics collector (a private registry is used by default)
        memory_sampler: Replaces psutil sampling, mainly for tests
        clock: Wall clock used for durable failure records and retry scheduling

    Returns:
        An ImagePipeline; call ``start()`` or use ``async with`` before serving
    """
    config = config or PipelineConfig()
    metrics = metrics or UnifiedMetricsCollector()
    wall_clock = clock or time.time

    monitor = MemoryMonitor(config.memory, metrics=metrics, sampler=memory_sampler)
    scheduler = MemoryAwareScheduler(config.scheduler, monitor=monitor, metrics=metrics)
    limiter = RateLimiter(metrics=metrics)
    operations = OperationTracker(metrics=metrics)

    if store is None:
        store = _default_store(config, monitor)
    elif store.memory_guard is None:
        store.memory_guard = monitor.has_headroom

    owns_http_client = http_client is None
    if http_client is None:
        http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(config.fetch.fetch_timeout),
            headers={"User-Agent": config.fetch.user_agent},
        )

    cache = ResultCache(
        max_size=config.service.result_cache_size,
        ttl=config.service.result_cache_ttl,
        negative_ttl=config.service.negative_cache_ttl,
        metrics=metrics,
    )
    monitor.register_cache(cache)

    failure_tracker: FailureTracker[str] = FailureTracker(
        key_fn=str.lower,
        store=store,
        storage_key=config.failures.blocklist_key,
        max_retries=config.failures.permanent_failure_threshold,
        cooldown=config.failures.cooldown,
        max_items=config.failures.max_blocklist_size,
        name="logo-domains",
        metrics=metrics,
        clock=wall_clock,
    )

    service = UnifiedImageService(
        store=store,
        fetcher=LogoFetcher(
            http_client, config.fetch, validator=LogoValidator(config.fetch), metrics=metrics
        ),
        http_client=http_client,
        monitor=monitor,
        operations=operations,
        failure_tracker=failure_tracker,
        sessions=SessionManager(config.failures, limiter),
        retry_queue=UploadRetryQueue(config.retry, metrics=metrics, clock=wall_clock),
        cache=cache,
        uploader=StreamingUploader(store, config.streaming, metrics=metrics),
        cdn=CdnUrlBuilder(config.cdn),
        config=config,
        scheduler=scheduler,
        metrics=metrics,
    )

    logger.debug(f"Created pipeline with {store.store_type} store")
    return ImagePipeline(
        config=config,
        metrics=metrics,
        monitor=monitor,
        scheduler=scheduler,
        limiter=limiter,
        operations=operations,
        store=store,
        http_client=http_client,
        service=service,
        owns_http_client=owns_http_client,
    )


__all__ = ["ImagePipeline", "create_pipeline"]
