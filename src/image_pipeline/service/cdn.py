# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
CDN URL construction.

Stored objects are served from, in order of preference:

1. ``{cdn_base_url}/{key}`` when a CDN base URL is configured
2. ``https://{bucket}.{s3 host}/{key}`` when a bucket is configured
3. the relative path ``/{key}`` otherwise
"""

from __future__ import annotations

from urllib.parse import urlsplit

from ..config import CdnConfig

_SUPPORTED_SCHEMES = frozenset({"http", "https"})
DEFAULT_S3_HOST = "s3.amazonaws.com"


def get_s3_host(s3_server_url: str | None) -> str:
    """Host (no scheme, no port) of the S3 endpoint."""
    if not s3_server_url:
        return DEFAULT_S3_HOST
    url = s3_server_url if "://" in s3_server_url else f"https://{s3_server_url}"
    return urlsplit(url).hostname or DEFAULT_S3_HOST


def build_cdn_url(key: str, config: CdnConfig) -> str:
    """
    Public URL of ``key``.

    >>> build_cdn_url("/images/a.png", CdnConfig(cdn_base_url="https://cdn.example.com/"))
    'https://cdn.example.com/images/a.png'
    """
    clean_key = key.lstrip("/")
    if config.cdn_base_url:
        return f"{config.cdn_base_url.rstrip('/')}/{clean_key}"
    if config.bucket:
        return f"https://{config.bucket}.{get_s3_host(config.s3_server_url)}/{clean_key}"
    return f"/{clean_key}"


def _cdn_base_path(base_path: str) -> str:
    return base_path.rstrip("/") + "/"


def extract_key_from_url(url: str, config: CdnConfig) -> str | None:
    """Inverse of ``build_cdn_url`` for absolute CDN and bucket URLs; None for foreign URLs."""
    parsed = urlsplit(url)
    if parsed.scheme not in _SUPPORTED_SCHEMES:
        return None

    if config.cdn_base_url:
        base = urlsplit(config.cdn_base_url)
        if parsed.netloc == base.netloc and parsed.scheme == base.scheme:
            base_path = _cdn_base_path(base.path)
            if parsed.path.startswith(base_path):
                return parsed.path[len(base_path) :] or None

    if config.bucket:
        if parsed.hostname == f"{config.bucket}.{get_s3_host(config.s3_server_url)}":
            return parsed.path.lstrip("/") or None

    return None


def is_cdn_url(url: str, config: CdnConfig) -> bool:
    return extract_key_from_url(url, config) is not None


class CdnUrlBuilder:
    """Binds a CdnConfig to the URL helpers."""

    def __init__(self, config: CdnConfig | None = None):
        self.config = config or CdnConfig()

    def url_for(self, key: str) -> str:
        return build_cdn_url(key, self.config)

    def key_for(self, url: str) -> str | None:
        return extract_key_from_url(url, self.config)

    def is_cdn_url(self, url: str) -> bool:
        return is_cdn_url(url, self.config)


__all__ = [
    "CdnUrlBuilder",
    "build_cdn_url",
    "extract_key_from_url",
    "get_s3_host",
    "is_cdn_url",
]
