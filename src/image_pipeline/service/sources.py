# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Ordered logo candidate URLs.

Self-hosted favicons come first, from highest to lowest fidelity, followed by
the third-party favicon services. ``build_candidates`` expands the list over
every domain variant so a site that only serves icons on ``www.`` or on its
root domain is still found.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..config import FetchConfig
from ..types.results import LogoSource
from .domains import get_domain_variants

DIRECT_ICON_PATHS = (
    "/android-chrome-512x512.png",
    "/android-chrome-192x192.png",
    "/apple-touch-icon.png",
    "/favicon.svg",
    "/favicon.png",
    "/favicon.ico",
)

GOOGLE_FAVICON_SIZES = (256, 128)


@dataclass(frozen=True)
class LogoCandidate:
    """One URL to try, with the source it is attributed to and its timeout."""

    url: str
    source: LogoSource
    timeout: float


def direct_candidates(domain: str, config: FetchConfig) -> list[LogoCandidate]:
    return [
        LogoCandidate(f"https://{domain}{path}", LogoSource.DIRECT, config.direct_fetch_timeout)
        for path in DIRECT_ICON_PATHS
    ]


def service_candidates(domain: str, config: FetchConfig) -> list[LogoCandidate]:
    candidates = [
        LogoCandidate(
            f"https://www.google.com/s2/favicons?domain={domain}&sz={size}",
            LogoSource.GOOGLE,
            config.logo_fetch_timeout,
        )
        for size in GOOGLE_FAVICON_SIZES
    ]
    candidates.append(
        LogoCandidate(
            f"https://icons.duckduckgo.com/ip3/{domain}.ico",
            LogoSource.DUCKDUCKGO,
            config.logo_fetch_timeout,
        )
    )
    return candidates


def build_candidates(domain: str, config: FetchConfig | None = None) -> list[LogoCandidate]:
    """
    Every candidate for ``domain`` in the order they are tried.

    For each domain variant, direct favicons are tried before the favicon
    services.

    >>> [c.url for c in build_candidates("example.com")][:2]
    ['https://example.com/android-chrome-512x512.png', 'https://example.com/android-chrome-192x192.png']
    """
    config = config or FetchConfig()
    candidates: list[LogoCandidate] = []
    for variant in get_domain_variants(domain):
        candidates.extend(direct_candidates(variant, config))
        candidates.extend(service_candidates(variant, config))
    return candidates


__all__ = [
    "DIRECT_ICON_PATHS",
    "GOOGLE_FAVICON_SIZES",
    "LogoCandidate",
    "build_candidates",
    "direct_candidates",
    "service_candidates",
]
