# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Image and logo acquisition.

Contains the unified service and the pieces it is built from: domain and
storage key helpers, CDN URL construction, candidate sources, fetching and
validation, session failure tracking, the upload retry queue and the result
cache.
"""

from .cache import ResultCache
from .cdn import CdnUrlBuilder, build_cdn_url, extract_key_from_url, is_cdn_url
from .domains import extract_tld, get_domain_variants, get_root_domain, normalize_domain
from .fetcher import FetchedLogo, LogoFetcher
from .keys import (
    ParsedStorageKey,
    find_legacy_logo_key,
    image_storage_key,
    logo_storage_key,
    migrate_legacy_logo,
    parse_storage_key,
)
from .session import SessionManager
from .sources import LogoCandidate, build_candidates
from .unified import UnifiedImageService
from .uploads import UploadRetryQueue
from .validators import ImageAnalysis, LogoValidator, ValidationOutcome, invert_image

__all__ = [
    "CdnUrlBuilder",
    "FetchedLogo",
    "ImageAnalysis",
    "LogoCandidate",
    "LogoFetcher",
    "LogoValidator",
    "ParsedStorageKey",
    "ResultCache",
    "SessionManager",
    "UnifiedImageService",
    "UploadRetryQueue",
    "ValidationOutcome",
    "build_candidates",
    "build_cdn_url",
    "extract_key_from_url",
    "extract_tld",
    "find_legacy_logo_key",
    "get_domain_variants",
    "get_root_domain",
    "image_storage_key",
    "invert_image",
    "is_cdn_url",
    "logo_storage_key",
    "migrate_legacy_logo",
    "normalize_domain",
    "parse_storage_key",
]
