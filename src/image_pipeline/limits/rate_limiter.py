# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Fixed-window rate limiting with an attached circuit breaker.

Counters live in named stores (``"domain-failures"``, ``"github-graphql"``)
and are keyed by a context id inside each store (a domain, a client IP).

Window semantics: the first call in a window, or the first call after the
window's reset time has passed, starts a new window with a count of 1. Later
calls are allowed while the count is below ``max_requests``; with
``max_requests=m`` the (m+1)-th call in a window is denied.

The circuit breaker keeps a separate failure counter per (store, context).
Once ``failure_threshold`` failures are recorded inside ``reset_timeout``,
``is_operation_allowed_with_circuit_breaker`` denies every call without
consulting the rate limiter until the failure window has elapsed. There is
no half-open probing state.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from ..exceptions import CircuitOpenError, ConfigurationError, OperationTimeoutError
from ..observability.collector import UnifiedMetricsCollector
from ..observability.constants import (
    CIRCUIT_BREAKER_REJECTIONS_TOTAL,
    RATE_LIMIT_DENIALS_TOTAL,
)

logger = logging.getLogger(__name__)

LONG_WAIT_THRESHOLD = 1.0
"""Remaining window (seconds) above which wait_for_permit sleeps until reset."""


@dataclass(frozen=True)
class RateLimitConfig:
    """Fixed window of ``max_requests`` per ``window`` seconds."""

    max_requests: int
    window: float

    def __post_init__(self) -> None:
        if self.max_requests <= 0:
            raise ConfigurationError(f"max_requests must be positive, got {self.max_requests}")
        if self.window <= 0:
            raise ConfigurationError(f"window must be positive, got {self.window}")


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Open the circuit after ``failure_threshold`` failures within ``reset_timeout`` seconds."""

    failure_threshold: int
    reset_timeout: float

    def __post_init__(self) -> None:
        if self.failure_threshold <= 0:
            raise ConfigurationError(
                f"failure_threshold must be positive, got {self.failure_threshold}"
            )
        if self.reset_timeout <= 0:
            raise ConfigurationError(f"reset_timeout must be positive, got {self.reset_timeout}")


@dataclass
class RateLimitRecord:
    """Request count in the current window and when the window ends."""

    count: int
    reset_at: float


@dataclass
class FailureCounter:
    """Failures recorded for one context since ``window_start``."""

    count: int = 0
    window_start: float = field(default_factory=time.monotonic)

    def increment(self, now: float, reset_timeout: float) -> int:
        """Increment the failure count, starting a new window if the old one expired."""
        if now - self.window_start > reset_timeout:
            self.count = 0
            self.window_start = now
        self.count += 1
        return self.count

    def is_open(self, now: float, config: CircuitBreakerConfig) -> bool:
        """Check if the failure threshold is reached inside the current window."""
        if now - self.window_start > config.reset_timeout:
            self.count = 0
            self.window_start = now
            return False
        return self.count >= config.failure_threshold


class RateLimiter:
    """
    Namespace-keyed fixed-window rate limiter and circuit breaker.

    One instance is shared by every component that needs admission control;
    it is created by the pipeline factory and passed in explicitly.

    Example:
        >>> limiter = RateLimiter()
        >>> cfg = RateLimitConfig(max_requests=2, window=60.0)
        >>> [limiter.is_operation_allowed("api", "1.2.3.4", cfg) for _ in range(3)]
        [True, True, False]
    """

    def __init__(
        self,
        metrics: UnifiedMetricsCollector | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._metrics = metrics
        self._clock = clock
        self._stores: dict[str, dict[str, RateLimitRecord]] = {}
        self._failures: dict[str, dict[str, FailureCounter]] = {}

    # === Rate limiting ===

    def is_operation_allowed(self, store: str, context: str, config: RateLimitConfig) -> bool:
        """
        Count one operation for ``context`` and report whether it is allowed.

        Denied calls do not consume quota.
        """
        now = self._clock()
        records = self._stores.setdefault(store, {})
        record = records.get(context)

        if record is None or now > record.reset_at:
            records[context] = RateLimitRecord(count=1, reset_at=now + config.window)
            return True

        if record.count < config.max_requests:
            record.count += 1
            return True

        logger.debug(f"Rate limit reached for {store}:{context} ({record.count}/{config.max_requests})")
        if self._metrics:
            self._metrics.inc_counter(RATE_LIMIT_DENIALS_TOTAL, labels={"store": store})
        return False

    def time_until_reset(self, store: str, context: str) -> float:
        """Seconds until the context's window resets (0 if it has none)."""
        record = self._stores.get(store, {}).get(context)
        if record is None:
            return 0.0
        return max(0.0, record.reset_at - self._clock())

    async def wait_for_permit(
        self,
        store: str,
        context: str,
        config: RateLimitConfig,
        poll_interval: float = 0.1,
        reset_buffer: float = 0.1,
        timeout: float | None = None,
    ) -> None:
        """
        Wait until an operation is allowed, then consume it.

        When more than a second remains in the window the wait sleeps until
        the reset time plus ``reset_buffer``; shorter waits poll every
        ``min(time_to_reset, poll_interval)`` seconds.

        Raises:
            OperationTimeoutError: If ``timeout`` elapses before a permit
        """
        deadline = None if timeout is None else self._clock() + timeout

        while not self.is_operation_allowed(store, context, config):
            time_to_reset = self.time_until_reset(store, context)
            if time_to_reset > LONG_WAIT_THRESHOLD:
                delay = time_to_reset + reset_buffer
            else:
                delay = max(min(time_to_reset, poll_interval), 0.001)

            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0 or delay > remaining:
                    raise OperationTimeoutError(
                        f"No permit for {store}:{context} within {timeout}s",
                        operation_name=f"{store}:{context}",
                        timeout=timeout,
                    )

            logger.debug(f"Waiting {delay:.2f}s for permit on {store}:{context}")
            await asyncio.sleep(delay)

    def clear_store(self, store: str) -> None:
        """Forget all rate limit and failure state of one store."""
        self._stores.pop(store, None)
        self._failures.pop(store, None)

    def prune_expired(self) -> int:
        """Drop windows that have already reset. Returns the number removed."""
        now = self._clock()
        removed = 0
        for records in self._stores.values():
            expired = [ctx for ctx, record in records.items() if now > record.reset_at]
            for ctx in expired:
                del records[ctx]
            removed += len(expired)
        return removed

    # === Circuit breaker ===

    def record_operation_failure(
        self, store: str, context: str, config: CircuitBreakerConfig
    ) -> int:
        """Record a failure for ``context`` and return the failure count in the window."""
        counter = self._failures.setdefault(store, {}).setdefault(
            context, FailureCounter(window_start=self._clock())
        )
        count = counter.increment(self._clock(), config.reset_timeout)
        if count == config.failure_threshold:
            logger.warning(
                f"Circuit opened for {store}:{context} after {count} failures "
                f"(reset in {config.reset_timeout}s)"
            )
        return count

    def record_operation_success(self, store: str, context: str) -> None:
        """Clear the failure counter of ``context``."""
        self._failures.get(store, {}).pop(context, None)

    def reset_circuit(self, store: str, context: str) -> None:
        """Close the circuit and drop the rate limit window of ``context``."""
        self.record_operation_success(store, context)
        self._stores.get(store, {}).pop(context, None)

    def is_circuit_open(self, store: str, context: str, config: CircuitBreakerConfig) -> bool:
        counter = self._failures.get(store, {}).get(context)
        if counter is None:
            return False
        return counter.is_open(self._clock(), config)

    def check_circuit(self, store: str, context: str, config: CircuitBreakerConfig) -> None:
        """
        Raise if the circuit of ``context`` is open.

        Raises:
            CircuitOpenError: With ``retry_after`` set to the seconds left in
                the failure window
        """
        if not self.is_circuit_open(store, context, config):
            return
        counter = self._failures[store][context]
        retry_after = max(0.0, counter.window_start + config.reset_timeout - self._clock())
        if self._metrics:
            self._metrics.inc_counter(CIRCUIT_BREAKER_REJECTIONS_TOTAL, labels={"store": store})
        raise CircuitOpenError(
            f"Circuit open for {store}:{context} ({counter.count} failures)",
            store=store,
            context=context,
            retry_after=retry_after,
        )

    def get_circuit_state(self, store: str, context: str) -> dict[str, float | int]:
        """Failure count and window age of ``context`` (zeros if none)."""
        counter = self._failures.get(store, {}).get(context)
        if counter is None:
            return {"failures": 0, "window_age": 0.0}
        return {"failures": counter.count, "window_age": self._clock() - counter.window_start}

    def is_operation_allowed_with_circuit_breaker(
        self,
        store: str,
        context: str,
        config: RateLimitConfig,
        breaker: CircuitBreakerConfig,
    ) -> bool:
        """Deny while the circuit is open, otherwise defer to the rate limiter."""
        if self.is_circuit_open(store, context, breaker):
            logger.debug(f"Circuit open for {store}:{context}, denying")
            if self._metrics:
                self._metrics.inc_counter(CIRCUIT_BREAKER_REJECTIONS_TOTAL, labels={"store": store})
            return False
        return self.is_operation_allowed(store, context, config)


__all__ = [
    "CircuitBreakerConfig",
    "FailureCounter",
    "RateLimitConfig",
    "RateLimitRecord",
    "RateLimiter",
]
