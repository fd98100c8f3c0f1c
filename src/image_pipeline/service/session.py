# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Per-session domain failure tracking.

A session is a window of ``session_max_duration`` seconds. Within it each
domain may be walked ``max_retries_per_session`` times; the walk count is a
fixed-window rate limit on the shared RateLimiter, and exhausted walks feed
its circuit breaker. Sessions reset when the window expires or when the set
of failed domains reaches ``max_session_domains``.

Durable, cross-session counting lives in FailureTracker; this class only
bounds the work done inside one process lifetime.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from ..config import FailureConfig
from ..limits.rate_limiter import CircuitBreakerConfig, RateLimitConfig, RateLimiter

logger = logging.getLogger(__name__)

DOMAIN_FAILURES_STORE = "domain-failures"


class SessionManager:
    """Session-scoped failure bookkeeping for logo walks."""

    def __init__(
        self,
        config: FailureConfig | None = None,
        limiter: RateLimiter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or FailureConfig()
        self.limiter = limiter or RateLimiter()
        self._clock = clock

        self._rate_config = RateLimitConfig(
            max_requests=self.config.max_retries_per_session,
            window=self.config.session_max_duration,
        )
        self._breaker_config = CircuitBreakerConfig(
            failure_threshold=self.config.permanent_failure_threshold,
            reset_timeout=self.config.session_max_duration,
        )

        self._session_start = clock()
        self._failed_domains: set[str] = set()
        self._retry_counts: dict[str, int] = {}
        self._resets = 0

    # === Session window ===

    def check_session_reset(self) -> bool:
        """Reset the session if it expired or tracks too many domains. Returns True on reset."""
        age = self._clock() - self._session_start
        if age > self.config.session_max_duration:
            self.reset_session(f"expired after {age:.0f}s")
            return True
        if len(self._failed_domains) >= self.config.max_session_domains:
            self.reset_session(f"{len(self._failed_domains)} failed domains")
            return True
        return False

    def reset_session(self, reason: str = "manual") -> None:
        self._failed_domains.clear()
        self._retry_counts.clear()
        self.limiter.clear_store(DOMAIN_FAILURES_STORE)
        self._session_start = self._clock()
        self._resets += 1
        logger.info(f"Session reset ({reason})")

    # === Domain state ===

    def has_domain_failed_too_many_times(self, domain: str) -> bool:
        """
        True if ``domain`` should not be walked again in this session.

        Each call that returns False counts as one walk.
        """
        self.check_session_reset()
        allowed = self.limiter.is_operation_allowed_with_circuit_breaker(
            DOMAIN_FAILURES_STORE, domain, self._rate_config, self._breaker_config
        )
        if not allowed:
            logger.debug(f"{domain} exhausted its walks for this session")
        return not allowed

    def mark_domain_as_failed(self, domain: str) -> int:
        """Record an exhausted walk. Returns the domain's failures this session."""
        self.limiter.record_operation_failure(DOMAIN_FAILURES_STORE, domain, self._breaker_config)
        self._failed_domains.add(domain)
        count = self._retry_counts.pop(domain, 0) + 1
        self._retry_counts[domain] = count
        return count

    def mark_domain_succeeded(self, domain: str) -> None:
        self.limiter.reset_circuit(DOMAIN_FAILURES_STORE, domain)
        self._failed_domains.discard(domain)
        self._retry_counts.pop(domain, None)

    def is_failed(self, domain: str) -> bool:
        return domain in self._failed_domains

    # === Maintenance ===

    def cleanup(self) -> dict[str, int]:
        """
        Trim session state.

        Clears the failed-domain set when it is over its bound and keeps only
        the most recently failed half of the retry counts.
        """
        cleared = 0
        if len(self._failed_domains) > self.config.max_session_domains:
            cleared = len(self._failed_domains)
            self._failed_domains.clear()

        trimmed = 0
        if self._retry_counts:
            keep = len(self._retry_counts) // 2
            recent = list(self._retry_counts.items())[len(self._retry_counts) - keep :]
            trimmed = len(self._retry_counts) - keep
            self._retry_counts = dict(recent)

        self.limiter.prune_expired()
        return {"failed_domains_cleared": cleared, "retry_counts_trimmed": trimmed}

    def get_stats(self) -> dict[str, Any]:
        return {
            "session_age": self._clock() - self._session_start,
            "failed_domains": len(self._failed_domains),
            "tracked_retry_counts": len(self._retry_counts),
            "session_resets": self._resets,
        }


__all__ = ["DOMAIN_FAILURES_STORE", "SessionManager"]
