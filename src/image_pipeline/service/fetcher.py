# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Logo candidate fetching.

The LogoFetcher walks the ordered candidate list of a domain with a shared
``httpx.AsyncClient`` and returns the first body that passes validation.
Network errors and validation failures only exclude the candidate at hand;
the walk moves on to the next one and never retries the same URL.

Example:
    async with httpx.AsyncClient() as client:
        fetcher = LogoFetcher(client, metrics=collector)
        logo = await fetcher.walk("example.com")
        if logo is not None:
            print(logo.source, logo.url, len(logo.data))
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

import httpx
from PIL import Image

from ..config import FetchConfig
from ..observability.collector import UnifiedMetricsCollector
from ..observability.constants import FETCH_ATTEMPTS_TOTAL, FETCH_LATENCY_SECONDS
from ..types.results import LogoSource
from .keys import DEFAULT_CONTENT_TYPE
from .sources import LogoCandidate, build_candidates
from .validators import ImageAnalysis, LogoValidator

logger = logging.getLogger(__name__)

SVG_CONTENT_TYPE = "image/svg+xml"


@dataclass
class FetchedLogo:
    """
    A candidate body that passed validation.

    Attributes:
        data: Raw bytes as served
        content_type: Normalised MIME type
        url: Final URL after redirects
        source: Candidate source the body is attributed to
        analysis: Pixel statistics (None for SVG)
    """

    data: bytes
    content_type: str
    url: str
    source: LogoSource
    analysis: ImageAnalysis | None = None

    @property
    def is_svg(self) -> bool:
        return self.content_type == SVG_CONTENT_TYPE


class LogoFetcher:
    """Fetches and validates logo candidates."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        config: FetchConfig | None = None,
        validator: LogoValidator | None = None,
        metrics: UnifiedMetricsCollector | None = None,
    ):
        self.client = client
        self.config = config or FetchConfig()
        self.validator = validator or LogoValidator(self.config)
        self._metrics = metrics

    async def _read_capped(self, candidate: LogoCandidate) -> tuple[bytes, str, str] | None:
        headers = {"User-Agent": self.config.user_agent, "Accept": "image/*,*/*;q=0.8"}
        async with self.client.stream(
            "GET", candidate.url, headers=headers, timeout=candidate.timeout, follow_redirects=True
        ) as response:
            if not response.is_success:
                logger.debug(f"{candidate.url} answered {response.status_code}")
                return None
            declared = response.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > self.config.max_image_bytes:
                logger.debug(f"{candidate.url} too large ({declared} bytes)")
                return None
            body = bytearray()
            async for chunk in response.aiter_bytes():
                body.extend(chunk)
                if len(body) > self.config.max_image_bytes:
                    logger.debug(f"{candidate.url} exceeded {self.config.max_image_bytes} bytes")
                    return None
            return bytes(body), response.headers.get("content-type", ""), str(response.url)

    def _record(self, source: LogoSource, outcome: str, started: float) -> None:
        if self._metrics:
            self._metrics.inc_counter(
                FETCH_ATTEMPTS_TOTAL, labels={"source": source.value, "outcome": outcome}
            )
            self._metrics.observe_histogram(
                FETCH_LATENCY_SECONDS, time.monotonic() - started, labels={"source": source.value}
            )

    async def fetch_candidate(self, candidate: LogoCandidate) -> FetchedLogo | None:
        """Fetch and validate one candidate; None if it is unusable."""
        started = time.monotonic()
        try:
            fetched = await self._read_capped(candidate)
        except httpx.TimeoutException:
            logger.debug(f"Timed out fetching {candidate.url} after {candidate.timeout}s")
            self._record(candidate.source, "timeout", started)
            return None
        except httpx.HTTPError as e:
            logger.debug(f"Error fetching {candidate.url}: {type(e).__name__}: {e}")
            self._record(candidate.source, "error", started)
            return None

        if fetched is None:
            self._record(candidate.source, "error", started)
            return None

        data, content_type, final_url = fetched
        outcome = await asyncio.to_thread(
            self.validator.validate_candidate, data, final_url, content_type
        )
        if not outcome.valid:
            logger.debug(f"Rejected {final_url}: {outcome.reason}")
            self._record(candidate.source, "invalid", started)
            return None

        self._record(candidate.source, "success", started)
        if outcome.is_svg:
            resolved_type = SVG_CONTENT_TYPE
        elif outcome.analysis is not None and outcome.analysis.format:
            resolved_type = Image.MIME.get(outcome.analysis.format, DEFAULT_CONTENT_TYPE)
        else:
            resolved_type = content_type.split(";", 1)[0].strip() or DEFAULT_CONTENT_TYPE
        return FetchedLogo(
            data=data,
            content_type=resolved_type,
            url=final_url,
            source=candidate.source,
            analysis=outcome.analysis,
        )

    async def walk(self, domain: str) -> FetchedLogo | None:
        """Try every candidate of ``domain`` in order; the first valid one wins."""
        candidates = build_candidates(domain, self.config)
        for candidate in candidates:
            logo = await self.fetch_candidate(candidate)
            if logo is not None:
                logger.info(f"Found logo for {domain} at {logo.url} ({logo.source.value})")
                return logo
        logger.info(f"No valid logo for {domain} after {len(candidates)} candidates")
        return None


__all__ = ["FetchedLogo", "LogoFetcher"]
