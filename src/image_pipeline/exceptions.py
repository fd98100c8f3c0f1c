# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Exception classes for the image pipeline.

This module defines the exception hierarchy used throughout the package.
All exceptions inherit from ImagePipelineError, making it easy to catch
every pipeline-related exception with a single except clause.
"""


class ImagePipelineError(Exception):
    """Base exception for all image pipeline errors.

    Example:
        try:
            result = await service.get_image(url)
        except ImagePipelineError as e:
            logger.error(f"Image pipeline error: {e}")
    """

    pass


class ConfigurationError(ImagePipelineError):
    """Raised when configuration is invalid.

    This exception is raised during initialization, or on the first call of a
    primitive such as the rate limiter, when the provided values are invalid.

    Common causes include:
    - Non-positive request counts or windows
    - Warning threshold not below the critical threshold
    - Malformed numeric environment variables

    Example:
        try:
            config = PipelineConfig.from_env()
        except ConfigurationError as e:
            logger.error(f"Invalid configuration: {e}")
            raise SystemExit(1)
    """

    pass


class QueueOverflowError(ImagePipelineError):
    """Raised when the scheduler queue is full and cannot accept more requests.

    This is a backpressure mechanism to prevent unbounded queue growth under
    heavy load.

    Attributes:
        queue_size: Number of queued requests at the time of rejection.
        max_queue_size: Configured queue bound.

    Example:
        try:
            await scheduler.schedule_request(fetch_thumbnail)
        except QueueOverflowError:
            raise HTTPException(status_code=503, detail="Service overloaded")
    """

    def __init__(
        self,
        message: str,
        queue_size: int | None = None,
        max_queue_size: int | None = None,
    ):
        super().__init__(message)
        self.queue_size = queue_size
        self.max_queue_size = max_queue_size


class RequestCancelledError(ImagePipelineError):
    """Raised when a queued request is dropped before it ran.

    Queued requests below the highest priority are cancelled when process
    memory becomes critical, and every pending request is cancelled when the
    scheduler stops. Requests that are already running are never cancelled.

    Attributes:
        request_id: Identifier of the cancelled request.
        reason: Short machine-readable reason (``"memory_critical"`` or
            ``"shutdown"``).
    """

    def __init__(self, message: str, request_id: str | None = None, reason: str | None = None):
        super().__init__(message)
        self.request_id = request_id
        self.reason = reason


class MemoryPressureError(ImagePipelineError):
    """Raised when work is refused because process memory is critical.

    Attributes:
        status: Memory status at the time of refusal.
        rss_bytes: Resident set size at the time of refusal, if known.
    """

    def __init__(self, message: str, status: str | None = None, rss_bytes: int | None = None):
        super().__init__(message)
        self.status = status
        self.rss_bytes = rss_bytes


class OperationTimeoutError(ImagePipelineError):
    """Raised when a monitored operation exceeds its deadline.

    This is distinct from the error raised by the operation itself, so callers
    can tell a slow origin apart from a failing one.

    Attributes:
        operation_id: Identifier assigned by the operation tracker.
        operation_name: Human-readable name of the operation.
        timeout: Deadline in seconds that was exceeded.

    Example:
        try:
            await tracker.monitored("fetch-logo", lambda: fetch(domain), timeout=5.0)
        except OperationTimeoutError as e:
            logger.warning(f"{e.operation_name} timed out after {e.timeout}s")
    """

    def __init__(
        self,
        message: str,
        operation_id: str | None = None,
        operation_name: str | None = None,
        timeout: float | None = None,
    ):
        super().__init__(message)
        self.operation_id = operation_id
        self.operation_name = operation_name
        self.timeout = timeout


class CircuitOpenError(ImagePipelineError):
    """Raised when a circuit breaker is open for a context.

    Attributes:
        store: Rate limit store name.
        context: Context identifier within the store (e.g. a domain).
        retry_after: Seconds until the circuit closes again.
    """

    def __init__(
        self,
        message: str,
        store: str | None = None,
        context: str | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message)
        self.store = store
        self.context = context
        self.retry_after = retry_after


class StorageError(ImagePipelineError):
    """Base class for blob store failures."""

    pass


class StorageConnectionError(StorageError):
    """Raised when connection to the blob store fails.

    Example:
        try:
            await store.write(key, data, "image/png")
        except StorageConnectionError:
            logger.warning("Store unavailable, serving origin bytes only")
    """

    pass


class StorageOperationError(StorageError):
    """Raised when a blob store operation fails after connecting.

    Attributes:
        key: Object key involved in the failed operation, if any.
    """

    def __init__(self, message: str, key: str | None = None):
        super().__init__(message)
        self.key = key


class ReadOnlyStorageError(StorageError):
    """Raised when a write is attempted while the pipeline is read-only."""

    pass


class StreamTooLargeError(ImagePipelineError):
    """Raised when a streamed body exceeds the configured hard cap.

    Attributes:
        bytes_read: Bytes consumed before the cap was hit.
        max_bytes: The configured cap.
    """

    def __init__(self, message: str, bytes_read: int = 0, max_bytes: int = 0):
        super().__init__(message)
        self.bytes_read = bytes_read
        self.max_bytes = max_bytes


class ImageValidationError(ImagePipelineError):
    """Raised when fetched bytes are not an acceptable image.

    Attributes:
        url: Source URL of the rejected image.
        reason: Short reason such as ``"too_small"`` or ``"globe_icon"``.
    """

    def __init__(self, message: str, url: str | None = None, reason: str | None = None):
        super().__init__(message)
        self.url = url
        self.reason = reason
