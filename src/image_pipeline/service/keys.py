# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Storage key generation and parsing.

Logo keys:
    ``images/logos[/inverted]/{name}_{tld}_{source}_{hash8}.{ext}``

    Dots in name and TLD become underscores, ``duckduckgo`` is written as
    ``ddg`` and ``hash8`` is the first 8 hex digits of ``sha256(domain)``.
    Keys written before hashing was introduced lack the hash segment; they
    are found by ``find_legacy_logo_key`` and moved to the hashed form by
    ``migrate_legacy_logo``, which keeps a copy under ``images/logos/archive/``.

Other images:
    ``images[/{type}][/inverted]/{sha256(url)[:16]}.{ext}``
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from urllib.parse import urlsplit

from ..exceptions import StorageError
from ..storage.base import BaseStore
from ..types.results import LogoSource
from .domains import extract_tld

logger = logging.getLogger(__name__)

IMAGES_DIR = "images"
LOGOS_DIR = f"{IMAGES_DIR}/logos"
ARCHIVE_DIR = f"{LOGOS_DIR}/archive"
INVERTED_SEGMENT = "inverted"

DEFAULT_EXTENSION = "png"
DEFAULT_CONTENT_TYPE = "image/png"

LOGO_EXTENSIONS = ("png", "jpg", "jpeg", "svg", "ico", "webp")
"""Extensions probed when looking for an already stored logo."""

CONTENT_TYPES: dict[str, str] = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
    "avif": "image/avif",
    "svg": "image/svg+xml",
    "ico": "image/x-icon",
    "bmp": "image/bmp",
}

_EXTENSIONS_BY_TYPE: dict[str, str] = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/avif": "avif",
    "image/svg+xml": "svg",
    "image/x-icon": "ico",
    "image/vnd.microsoft.icon": "ico",
    "image/bmp": "bmp",
}

_SOURCE_SEGMENTS = {"direct", "google", "ddg", "duckduckgo", "clearbit", "unknown"}
_HASH8 = re.compile(r"^[a-f0-9]{8}$", re.IGNORECASE)


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


# =============================================================================
# Content types
# =============================================================================


def content_type_for_extension(extension: str) -> str:
    return CONTENT_TYPES.get(extension.lower().lstrip("."), DEFAULT_CONTENT_TYPE)


def extension_for_content_type(content_type: str | None) -> str:
    """Map a MIME type (parameters ignored) to an extension; unknown types give ``png``."""
    if not content_type:
        return DEFAULT_EXTENSION
    mime = content_type.split(";", 1)[0].strip().lower()
    return _EXTENSIONS_BY_TYPE.get(mime, DEFAULT_EXTENSION)


def _path_extension(url: str) -> str | None:
    path = urlsplit(url).path
    filename = path.rsplit("/", 1)[-1]
    if "." not in filename:
        return None
    ext = filename.rsplit(".", 1)[-1].lower()
    return ext if ext in CONTENT_TYPES else None


def get_file_extension(url: str | None = None, content_type: str | None = None) -> str:
    """Extension from the URL path, else from the content type, else ``png``."""
    if url:
        ext = _path_extension(url)
        if ext:
            return ext
    if content_type:
        return extension_for_content_type(content_type)
    return DEFAULT_EXTENSION


def infer_content_type(url: str) -> str:
    """Guess a content type from the URL's file extension."""
    ext = _path_extension(url)
    return CONTENT_TYPES[ext] if ext else DEFAULT_CONTENT_TYPE


# =============================================================================
# Key generation
# =============================================================================


def _source_segment(source: LogoSource | str) -> str:
    try:
        return LogoSource(source).key_segment
    except ValueError:
        return str(source)


def logo_storage_key(
    domain: str,
    source: LogoSource | str,
    extension: str = DEFAULT_EXTENSION,
    inverted: bool = False,
) -> str:
    """
    Deterministic storage key of a logo.

    Raises:
        ValueError: If ``domain`` has no TLD

    >>> logo_storage_key("example.co.uk", "duckduckgo")
    'images/logos/example_co_uk_ddg_52389233.png'
    """
    domain = domain.lower()
    name, tld = extract_tld(domain)
    if not tld:
        raise ValueError(f"Invalid domain format: {domain}")
    segment = _source_segment(source)
    filename = f"{name.replace('.', '_')}_{tld.replace('.', '_')}_{segment}_{sha256_hex(domain)[:8]}"
    directory = f"{LOGOS_DIR}/{INVERTED_SEGMENT}" if inverted else LOGOS_DIR
    return f"{directory}/{filename}.{extension.lower().lstrip('.')}"


def image_storage_key(
    url: str,
    image_type: str | None = None,
    extension: str | None = None,
    inverted: bool = False,
) -> str:
    """Deterministic storage key of an arbitrary image URL."""
    parts = [IMAGES_DIR]
    if image_type:
        parts.append(image_type.strip("/"))
    if inverted:
        parts.append(INVERTED_SEGMENT)
    ext = (extension or get_file_extension(url)).lower().lstrip(".")
    return f"{'/'.join(parts)}/{sha256_hex(url)[:16]}.{ext}"


# =============================================================================
# Key parsing
# =============================================================================


@dataclass(frozen=True)
class ParsedStorageKey:
    """What ``parse_storage_key`` recovered from a key."""

    kind: str
    domain: str | None = None
    source: str | None = None
    hash: str | None = None
    extension: str | None = None
    inverted: bool = False

    @property
    def is_legacy_logo(self) -> bool:
        return self.kind == "logo" and self.hash is None


def _domain_from_parts(parts: list[str]) -> str | None:
    if len(parts) < 2:
        return None
    if len(parts) >= 3:
        complex_tld = f"{parts[-2]}.{parts[-1]}"
        if extract_tld(f"test.{complex_tld}")[1] == complex_tld:
            return f"{'.'.join(parts[:-2])}.{complex_tld}"
    return f"{'.'.join(parts[:-1])}.{parts[-1]}"


def _normalize_source(segment: str) -> str:
    return LogoSource.DUCKDUCKGO.value if segment == "ddg" else segment


def parse_storage_key(key: str) -> ParsedStorageKey:
    """
    Recover metadata from a storage key.

    Hashed logo keys are recognised by an 8-hex-digit final segment.
    Legacy logo keys (no hash) parse with ``hash=None``.
    """
    filename = key.rsplit("/", 1)[-1]
    stem, _, extension = filename.partition(".")
    inverted = f"/{INVERTED_SEGMENT}/" in key

    if key.startswith(f"{LOGOS_DIR}/") and "_" in stem:
        parts = stem.split("_")
        if len(parts) >= 4 and _HASH8.match(parts[-1]):
            return ParsedStorageKey(
                kind="logo",
                domain=_domain_from_parts(parts[:-2]),
                source=_normalize_source(parts[-2]),
                hash=parts[-1],
                extension=extension or None,
                inverted=inverted,
            )
        source = "unknown"
        if parts[-1] in _SOURCE_SEGMENTS:
            source = parts[-1]
            parts = parts[:-1]
        domain = _domain_from_parts(parts)
        if domain:
            return ParsedStorageKey(
                kind="logo",
                domain=domain,
                source=_normalize_source(source),
                extension=extension or None,
                inverted=inverted,
            )

    if key.startswith(f"{IMAGES_DIR}/"):
        return ParsedStorageKey(kind="image", hash=stem, extension=extension or None, inverted=inverted)
    return ParsedStorageKey(kind="unknown")


# =============================================================================
# Legacy logo migration
# =============================================================================


def _logo_name_prefix(domain: str) -> str | None:
    name, tld = extract_tld(domain)
    if not tld:
        return None
    return f"{LOGOS_DIR}/{name.replace('.', '_')}_{tld.replace('.', '_')}"


async def find_legacy_logo_key(domain: str, store: BaseStore) -> str | None:
    """First hashless logo key stored for ``domain``, listing only that domain's name prefix."""
    domain = domain.lower()
    prefix = _logo_name_prefix(domain)
    if prefix is None:
        return None
    for key in await store.list_keys(prefix):
        parsed = parse_storage_key(key)
        if parsed.is_legacy_logo and parsed.domain == domain:
            return key
    return None


async def migrate_legacy_logo(domain: str, store: BaseStore) -> str | None:
    """
    Move a legacy logo of ``domain`` to its hashed key.

    Writes the hashed copy, writes an archive copy, then deletes the legacy
    object.

    Returns:
        The new key, or None if there was nothing to migrate or migration failed
    """
    legacy_key = await find_legacy_logo_key(domain, store)
    if legacy_key is None:
        return None
    try:
        data = await store.read(legacy_key)
        if data is None:
            return None
        parsed = parse_storage_key(legacy_key)
        extension = parsed.extension or DEFAULT_EXTENSION
        source = parsed.source or "unknown"
        new_key = logo_storage_key(domain, source, extension)
        content_type = content_type_for_extension(extension)

        await store.write(new_key, data, content_type)
        await store.write(f"{ARCHIVE_DIR}/{legacy_key.rsplit('/', 1)[-1]}", data, content_type)
        await store.delete(legacy_key)
    except (StorageError, ValueError) as e:
        logger.error(f"Legacy logo migration failed for {domain} ({legacy_key}): {e}")
        return None

    logger.info(f"Migrated legacy logo {legacy_key} -> {new_key}")
    return new_key


__all__ = [
    "ARCHIVE_DIR",
    "CONTENT_TYPES",
    "LOGOS_DIR",
    "LOGO_EXTENSIONS",
    "ParsedStorageKey",
    "content_type_for_extension",
    "extension_for_content_type",
    "find_legacy_logo_key",
    "get_file_extension",
    "image_storage_key",
    "infer_content_type",
    "logo_storage_key",
    "migrate_legacy_logo",
    "parse_storage_key",
    "sha256_hex",
]
