# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Unified image and logo service.

``get_image`` mirrors an arbitrary image URL into storage. ``get_logo``
resolves a domain to a stored logo through, in order:

1. the in-process result cache
2. a prefix search for an already stored, hashed logo key
3. a legacy (hashless) logo, migrated in the background
4. the external candidate walk, gated by durable and session failure
   tracking

Concurrent ``get_logo`` calls for one domain share a single pipeline run.
Logo uploads refused for lack of memory headroom go to the upload retry
queue, which a background loop drains while the memory monitor admits work.

Example:
    service = UnifiedImageService(store, fetcher, client, monitor, ...)
    async with service:
        result = await service.get_logo("example.com")
        if result.is_valid:
            print(result.cdn_url)
"""

from __future__ import annotations

import asyncio
import contextlib
import gc
import logging
from collections.abc import Coroutine
from types import TracebackType
from typing import Any

import httpx
from typing_extensions import Self

from ..config import PipelineConfig
from ..exceptions import (
    ImageValidationError,
    MemoryPressureError,
    QueueOverflowError,
    ReadOnlyStorageError,
    RequestCancelledError,
    StorageError,
    StreamTooLargeError,
)
from ..health.memory import MemoryMonitor
from ..limits.failure_tracker import FailureTracker
from ..monitoring.operations import OperationTracker
from ..observability.collector import UnifiedMetricsCollector
from ..observability.constants import (
    CACHE_HITS_TOTAL,
    CACHE_MISSES_TOTAL,
    COALESCED_REQUESTS_TOTAL,
    STORAGE_ERRORS_TOTAL,
    STORAGE_WRITES_TOTAL,
)
from ..scheduler.memory_aware import MemoryAwareScheduler
from ..storage.base import BaseStore
from ..streaming.upload import StreamingUploader
from ..types.memory import MemoryStatus
from ..types.queue import RequestPriority
from ..types.results import ImageResult, LogoFetchResult, LogoSource, UploadRetryEntry
from .cache import ResultCache
from .cdn import CdnUrlBuilder
from .domains import ensure_protocol, extract_tld, normalize_domain
from .fetcher import FetchedLogo, LogoFetcher
from .keys import (
    LOGO_EXTENSIONS,
    extension_for_content_type,
    find_legacy_logo_key,
    image_storage_key,
    infer_content_type,
    logo_storage_key,
    migrate_legacy_logo,
    parse_storage_key,
)
from .session import SessionManager
from .uploads import UploadRetryQueue, is_memory_pressure_failure
from .validators import LogoValidator, invert_image

logger = logging.getLogger(__name__)

INSUFFICIENT_MEMORY_ERROR = "Insufficient memory to process logo request"
NOT_IN_CDN_ERROR = "Logo not available in CDN (fetch required at runtime)"
NO_LOGO_ERROR = "No logo found"
BLOCKED_ERROR = "Domain skipped after repeated failures"

STORAGE_LAYER = "storage"


class UnifiedImageService:
    """Fetch, validate, store and serve images and logos."""

    def __init__(
        self,
        store: BaseStore,
        fetcher: LogoFetcher,
        http_client: httpx.AsyncClient,
        monitor: MemoryMonitor,
        operations: OperationTracker,
        failure_tracker: FailureTracker[str],
        sessions: SessionManager,
        retry_queue: UploadRetryQueue,
        cache: ResultCache,
        uploader: StreamingUploader,
        cdn: CdnUrlBuilder,
        config: PipelineConfig | None = None,
        scheduler: MemoryAwareScheduler | None = None,
        metrics: UnifiedMetricsCollector | None = None,
    ):
        self.store = store
        self.fetcher = fetcher
        self.http_client = http_client
        self.monitor = monitor
        self.operations = operations
        self.failure_tracker = failure_tracker
        self.sessions = sessions
        self.retry_queue = retry_queue
        self.cache = cache
        self.uploader = uploader
        self.cdn = cdn
        self.config = config or PipelineConfig()
        self.scheduler = scheduler
        self.validator: LogoValidator = fetcher.validator
        self._metrics = metrics

        self._in_flight: dict[str, asyncio.Task[LogoFetchResult]] = {}
        self._migration_locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._background: set[asyncio.Task[Any]] = set()

        self._cleanup_task: asyncio.Task[None] | None = None
        self._retry_task: asyncio.Task[None] | None = None
        self._running = False
        self._unsubscribe = monitor.subscribe(self._on_memory_status_change)

    @property
    def read_only(self) -> bool:
        return self.config.service.read_only

    # ==========================================================================
    # Images
    # ==========================================================================

    async def get_image(
        self, url: str, image_type: str | None = None, force_refresh: bool = False
    ) -> ImageResult:
        """
        Mirror ``url`` into storage and return its CDN reference.

        Raises:
            MemoryPressureError: If memory is critical; nothing is attempted
            ReadOnlyStorageError: If the object is missing and the service is read-only
            ImageValidationError: If the origin does not serve an image
            StreamTooLargeError: If a body exceeds ``max_image_bytes`` or, when
                streamed, ``max_stream_bytes``
            OperationTimeoutError: If the whole call exceeds its deadline
            httpx.HTTPError: On origin failures
        """
        if not self.monitor.should_accept_new_requests():
            snapshot = self.monitor.latest()
            raise MemoryPressureError(
                "Insufficient memory to process image request",
                status=self.monitor.status.value,
                rss_bytes=snapshot.rss_bytes if snapshot else None,
            )
        return await self.operations.monitored(
            "get_image",
            lambda: self._get_image(ensure_protocol(url), image_type, force_refresh),
            timeout=self.config.service.image_operation_timeout,
            metadata={"url": url},
        )

    async def _get_image(self, url: str, image_type: str | None, force_refresh: bool) -> ImageResult:
        key = image_storage_key(url, image_type)

        if not force_refresh and await self.store.exists(key):
            self._count_storage_lookup(hit=True)
            return ImageResult(
                storage_key=key,
                cdn_url=self.cdn.url_for(key),
                content_type=infer_content_type(url),
                source="storage",
            )
        self._count_storage_lookup(hit=False)

        if self.read_only:
            raise ReadOnlyStorageError(f"{key} is not stored and the pipeline is read-only")

        async with self.http_client.stream(
            "GET",
            url,
            headers={"User-Agent": self.config.fetch.user_agent},
            timeout=self.config.fetch.fetch_timeout,
            follow_redirects=True,
        ) as response:
            response.raise_for_status()
            content_type = self._require_image(response, url)
            if self.uploader.should_stream(response.headers.get("content-length")):
                streamed = await self.uploader.stream_to_storage(key, response.aiter_bytes(), content_type)
                if streamed.success:
                    return ImageResult(
                        storage_key=key,
                        cdn_url=self.cdn.url_for(key),
                        content_type=content_type,
                        source="origin",
                        streamed=True,
                        size_bytes=streamed.bytes_streamed,
                    )
                if streamed.reason == "too_large":
                    raise StreamTooLargeError(
                        streamed.error or f"{url} exceeded the streaming cap",
                        bytes_read=streamed.bytes_streamed,
                        max_bytes=self.uploader.config.max_stream_bytes,
                    )
                logger.warning(f"Streaming {url} failed ({streamed.error}), retrying buffered")
            else:
                data = await self._read_body(response, url)
                await self._write_image(key, data, content_type)
                return self._image_result(key, content_type, len(data))

        async with self.http_client.stream(
            "GET",
            url,
            headers={"User-Agent": self.config.fetch.user_agent},
            timeout=self.config.fetch.fetch_timeout,
            follow_redirects=True,
        ) as response:
            response.raise_for_status()
            content_type = self._require_image(response, url)
            data = await self._read_body(response, url)
        await self._write_image(key, data, content_type)
        return self._image_result(key, content_type, len(data))

    def _image_result(self, key: str, content_type: str, size: int) -> ImageResult:
        return ImageResult(
            storage_key=key,
            cdn_url=self.cdn.url_for(key),
            content_type=content_type,
            source="origin",
            size_bytes=size,
        )

    @staticmethod
    def _require_image(response: httpx.Response, url: str) -> str:
        content_type = response.headers.get("content-type", "").split(";", 1)[0].strip().lower()
        if not content_type.startswith("image/"):
            raise ImageValidationError(
                f"{url} is not an image (content-type {content_type or 'missing'})",
                url=url,
                reason="content_type",
            )
        return content_type

    async def _read_body(self, response: httpx.Response, url: str) -> bytes:
        limit = self.config.fetch.max_image_bytes
        body = bytearray()
        async for chunk in response.aiter_bytes():
            body.extend(chunk)
            if len(body) > limit:
                raise StreamTooLargeError(
                    f"{url} exceeded {limit} bytes", bytes_read=len(body), max_bytes=limit
                )
        return bytes(body)

    async def _write_image(self, key: str, data: bytes, content_type: str) -> None:
        try:
            await self.store.write(key, data, content_type)
        except StorageError as e:
            logger.error(f"Failed to store {key}: {e}")
            if self._metrics:
                self._metrics.inc_counter(STORAGE_ERRORS_TOTAL, labels={"operation": "write"})
            raise
        if self._metrics:
            self._metrics.inc_counter(STORAGE_WRITES_TOTAL, labels={"mode": "buffered"})

    # ==========================================================================
    # Logos
    # ==========================================================================

    async def get_logo(
        self,
        domain: str,
        force_refresh: bool = False,
        invert_colors: bool = False,
        priority: RequestPriority = RequestPriority.NORMAL,
    ) -> LogoFetchResult:
        """
        Resolve ``domain`` to a stored logo.

        Never raises for fetch, validation or storage problems; failures are
        returned as results with ``is_valid=False`` and an ``error``.

        Args:
            domain: Domain or URL; normalised before use
            force_refresh: Skip cache and storage lookups and refetch
            invert_colors: Store and return a colour-inverted variant
            priority: Scheduler priority of the external walk
        """
        normalized = normalize_domain(domain)
        if not normalized or not extract_tld(normalized)[1]:
            return LogoFetchResult.failure(domain, f"Invalid domain: {domain!r}")

        if not self.monitor.should_accept_new_requests():
            logger.warning(f"Refusing logo request for {normalized}: memory critical")
            return LogoFetchResult.failure(normalized, INSUFFICIENT_MEMORY_ERROR)

        flight_key = self._result_key(normalized, invert_colors)
        if not force_refresh:
            existing = self._in_flight.get(flight_key)
            if existing is not None:
                if self._metrics:
                    self._metrics.inc_counter(COALESCED_REQUESTS_TOTAL)
                logger.debug(f"Joining in-flight logo fetch for {flight_key}")
                return await asyncio.shield(existing)

        if len(self._in_flight) >= self.config.service.max_in_flight_requests:
            evicted = next(iter(self._in_flight))
            del self._in_flight[evicted]
            logger.warning(f"In-flight map full, no longer coalescing {evicted}")

        task = asyncio.create_task(
            self._logo_pipeline(normalized, force_refresh, invert_colors, priority),
            name=f"get_logo:{flight_key}",
        )
        self._in_flight[flight_key] = task
        task.add_done_callback(lambda t: self._forget_in_flight(flight_key, t))
        return await asyncio.shield(task)

    def _forget_in_flight(self, key: str, task: asyncio.Task[LogoFetchResult]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    @staticmethod
    def _result_key(domain: str, inverted: bool) -> str:
        return f"{domain}:inverted" if inverted else domain

    async def _logo_pipeline(
        self, domain: str, force_refresh: bool, invert_colors: bool, priority: RequestPriority
    ) -> LogoFetchResult:
        try:
            return await self.operations.monitored(
                "get_logo",
                lambda: self._resolve_logo(domain, force_refresh, invert_colors, priority),
                timeout=self.config.service.logo_operation_timeout,
                metadata={"domain": domain},
            )
        except (QueueOverflowError, RequestCancelledError, MemoryPressureError) as e:
            logger.warning(f"Logo request for {domain} not admitted: {e}")
            return LogoFetchResult.failure(domain, str(e))
        except Exception as e:
            logger.error(f"Logo pipeline failed for {domain}: {e}", exc_info=True)
            result = LogoFetchResult.failure(domain, str(e) or type(e).__name__)
            self.cache.set(self._result_key(domain, invert_colors), result)
            return result

    async def _resolve_logo(
        self, domain: str, force_refresh: bool, invert_colors: bool, priority: RequestPriority
    ) -> LogoFetchResult:
        result_key = self._result_key(domain, invert_colors)

        if not force_refresh or self.read_only:
            cached = self.cache.get(result_key)
            if cached is not None:
                return cached

        if not force_refresh or self.read_only:
            stored_key = await self._find_stored_logo(domain, invert_colors)
            if stored_key is not None:
                result = self._stored_result(domain, stored_key)
                self.cache.set(result_key, result)
                return result

            if not invert_colors:
                legacy_key = await find_legacy_logo_key(domain, self.store)
                if legacy_key is not None:
                    if not self.read_only:
                        self._schedule_migration(domain, legacy_key)
                    return self._stored_result(domain, legacy_key)

        if self.read_only:
            return LogoFetchResult.failure(domain, NOT_IN_CDN_ERROR)

        if await self.failure_tracker.should_skip(domain) or self.sessions.has_domain_failed_too_many_times(
            domain
        ):
            logger.debug(f"Skipping {domain}: too many failures")
            result = LogoFetchResult.failure(domain, BLOCKED_ERROR)
            self.cache.set(result_key, result)
            return result

        logo = await self._run_walk(domain, priority)
        if logo is None:
            await self._mark_failed(domain, NO_LOGO_ERROR)
            result = LogoFetchResult.failure(domain, NO_LOGO_ERROR)
            self.cache.set(result_key, result)
            return result

        await self._mark_succeeded(domain)
        result = await self._store_logo(domain, logo, invert_colors)
        if result.storage_key is not None:
            self.cache.set(result_key, result)
        return result

    async def _run_walk(self, domain: str, priority: RequestPriority) -> FetchedLogo | None:
        if self.scheduler is not None and self.scheduler.is_running:
            future = self.scheduler.schedule_request(
                lambda: self.fetcher.walk(domain), priority=priority, max_retries=0
            )
            result: FetchedLogo | None = await future
            return result
        return await self.fetcher.walk(domain)

    async def _find_stored_logo(self, domain: str, inverted: bool) -> str | None:
        """First existing hashed key over every (source, extension) pair, via one prefix listing."""
        candidates = [
            logo_storage_key(domain, source, extension, inverted=inverted)
            for source in LogoSource
            for extension in LOGO_EXTENSIONS
        ]
        prefix = candidates[0].rsplit("_", 2)[0] + "_"
        try:
            existing = set(await self.store.list_keys(prefix))
        except StorageError as e:
            logger.warning(f"Storage lookup for {domain} failed: {e}")
            self._count_storage_lookup(hit=False)
            return None
        for key in candidates:
            if key in existing:
                self._count_storage_lookup(hit=True)
                return key
        self._count_storage_lookup(hit=False)
        return None

    def _stored_result(self, domain: str, key: str) -> LogoFetchResult:
        parsed = parse_storage_key(key)
        try:
            source = LogoSource(parsed.source) if parsed.source else None
        except ValueError:
            source = None
        return LogoFetchResult(
            domain=domain,
            source=source,
            content_type=infer_content_type(key),
            storage_key=key,
            cdn_url=self.cdn.url_for(key),
            is_valid=True,
            inverted=parsed.inverted,
        )

    async def _store_logo(self, domain: str, logo: FetchedLogo, invert_colors: bool) -> LogoFetchResult:
        is_globe = await asyncio.to_thread(self.validator.is_globe_icon, logo.data, logo.content_type)

        data, content_type, inverted = logo.data, logo.content_type, False
        if invert_colors:
            if logo.is_svg:
                logger.debug(f"Not inverting SVG logo of {domain}")
            else:
                data, content_type = await asyncio.to_thread(invert_image, data)
                inverted = True

        key = logo_storage_key(
            domain, logo.source, extension_for_content_type(content_type), inverted=inverted
        )
        stored = await self._upload_logo(domain, key, data, content_type)
        return LogoFetchResult(
            domain=domain,
            source=logo.source,
            content_type=content_type,
            storage_key=key if stored else None,
            cdn_url=self.cdn.url_for(key) if stored else None,
            url=logo.url,
            is_valid=True,
            is_globe_icon=is_globe,
            inverted=inverted,
            error=None if stored else f"Upload of {key} deferred",
        )

    async def _upload_logo(self, domain: str, key: str, data: bytes, content_type: str) -> bool:
        """Write a logo. Memory-pressure failures are queued for retry, others dropped."""
        try:
            await self.store.write(key, data, content_type)
        except StorageError as e:
            if self._metrics:
                self._metrics.inc_counter(STORAGE_ERRORS_TOTAL, labels={"operation": "write"})
            if is_memory_pressure_failure(e):
                self.retry_queue.enqueue(key, domain, content_type)
            else:
                logger.error(f"Dropping upload of {key}: {e}")
            return False
        if self._metrics:
            self._metrics.inc_counter(STORAGE_WRITES_TOTAL, labels={"mode": "buffered"})
        logger.info(f"Stored logo for {domain} at {key}")
        return True

    async def _mark_failed(self, domain: str, reason: str) -> None:
        self.sessions.mark_domain_as_failed(domain)
        await self.failure_tracker.record_failure(domain, reason)
        await self.failure_tracker.save()

    async def _mark_succeeded(self, domain: str) -> None:
        self.sessions.mark_domain_succeeded(domain)
        if await self.failure_tracker.remove_failure(domain):
            await self.failure_tracker.save()

    def _count_storage_lookup(self, hit: bool) -> None:
        if self._metrics:
            name = CACHE_HITS_TOTAL if hit else CACHE_MISSES_TOTAL
            self._metrics.inc_counter(name, labels={"layer": STORAGE_LAYER})

    # ==========================================================================
    # Legacy migration
    # ==========================================================================

    def _schedule_migration(self, domain: str, legacy_key: str) -> None:
        source = parse_storage_key(legacy_key).source or "unknown"
        lock = self._migration_locks.setdefault((domain, source), asyncio.Lock())
        if lock.locked():
            return
        self._spawn(self._migrate(domain, lock), name=f"migrate:{domain}")

    async def _migrate(self, domain: str, lock: asyncio.Lock) -> None:
        async with lock:
            new_key = await migrate_legacy_logo(domain, self.store)
        if new_key is not None:
            self.cache.invalidate(self._result_key(domain, False))

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ==========================================================================
    # Upload retries
    # ==========================================================================

    async def process_retry_queue(self) -> int:
        """Retry due uploads by refetching their logos. Returns the number stored."""
        if not len(self.retry_queue):
            return 0
        if not self.monitor.should_accept_new_requests():
            logger.debug("Memory critical, postponing upload retries")
            return 0
        return await self.retry_queue.drain(self._retry_upload)

    async def _retry_upload(self, entry: UploadRetryEntry) -> bool:
        inverted = parse_storage_key(entry.source_key).inverted
        result = await self.get_logo(
            entry.source_url,
            force_refresh=True,
            invert_colors=inverted,
            priority=RequestPriority.LOW,
        )
        return bool(result.cdn_url)

    # ==========================================================================
    # Maintenance
    # ==========================================================================

    def perform_memory_cleanup(self) -> dict[str, int]:
        """Trim in-flight, session, retry and cache state, then run the garbage collector."""
        stats: dict[str, int] = {"in_flight_trimmed": 0}
        limit = self.config.service.max_in_flight_requests
        if len(self._in_flight) > limit:
            keep = limit // 2
            drop = list(self._in_flight)[: len(self._in_flight) - keep]
            for key in drop:
                del self._in_flight[key]
            stats["in_flight_trimmed"] = len(drop)

        stats.update(self.sessions.cleanup())
        stats["retry_entries_expired"] = self.retry_queue.cleanup_expired()
        stats["cache_entries_expired"] = self.cache.prune_expired()
        stats["operations_cleared"] = self.operations.clear_completed()
        stats["gc_collected"] = gc.collect()
        logger.debug(f"Memory cleanup: {stats}")
        return stats

    def _on_memory_status_change(self, previous: MemoryStatus, current: MemoryStatus) -> None:
        if current is MemoryStatus.HEALTHY and not self.cache.enabled:
            self.cache.enable()

    def get_stats(self) -> dict[str, Any]:
        summary = self.operations.get_summary()
        return {
            "in_flight": len(self._in_flight),
            "background_tasks": len(self._background),
            "read_only": self.read_only,
            "memory_status": self.monitor.status.value,
            "cache": self.cache.get_stats(),
            "retry_queue": self.retry_queue.get_stats(),
            "failure_tracker": self.failure_tracker.get_stats(),
            "session": self.sessions.get_stats(),
            "operations": {
                "total": summary.total,
                "pending": summary.pending,
                "completed": summary.completed,
                "failed": summary.failed,
                "timeout": summary.timeout,
                "average_duration": summary.average_duration,
            },
        }

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def start(self) -> None:
        """Load the failure blocklist and start the cleanup and retry loops."""
        if self._running:
            return
        await self.failure_tracker.load()
        self._running = True
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="image_service_cleanup")
        self._retry_task = asyncio.create_task(self._retry_loop(), name="image_service_upload_retry")
        logger.info(f"Image service started (read_only={self.read_only})")

    async def stop(self) -> None:
        """Stop the loops, wait for background migrations and persist the blocklist."""
        self._running = False
        for task in (self._cleanup_task, self._retry_task):
            if task and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._cleanup_task = None
        self._retry_task = None

        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.failure_tracker.save()
        self._unsubscribe()
        logger.info("Image service stopped")

    async def _cleanup_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.config.service.cleanup_interval)
                self.perform_memory_cleanup()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Memory cleanup error: {e}", exc_info=True)

    async def _retry_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.config.retry.retry_interval)
                await self.process_retry_queue()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Upload retry loop error: {e}", exc_info=True)

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


__all__ = [
    "BLOCKED_ERROR",
    "INSUFFICIENT_MEMORY_ERROR",
    "NOT_IN_CDN_ERROR",
    "NO_LOGO_ERROR",
    "UnifiedImageService",
]
