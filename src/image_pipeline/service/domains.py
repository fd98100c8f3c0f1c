# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Domain name helpers.

Splits hostnames into name and TLD (aware of common two-label public
suffixes such as ``co.uk``), derives root domains and builds the list of
hostname variants probed for a logo.
"""

from __future__ import annotations

import re
from urllib.parse import urlsplit

COMPLEX_TLDS = frozenset(
    {
        "com.br", "co.uk", "co.za", "co.in", "co.nz", "co.jp", "co.kr",
        "com.au", "com.cn", "com.mx", "com.ar", "com.tr", "com.tw",
        "net.au", "net.br", "net.cn", "net.in", "net.nz",
        "org.au", "org.br", "org.uk", "org.in", "org.nz",
        "gov.au", "gov.br", "gov.uk", "gov.in", "gov.cn",
        "edu.au", "edu.br", "edu.cn", "edu.in", "edu.mx",
        "ac.uk", "ac.jp", "ac.in", "ac.za", "ac.nz",
        "or.jp", "ne.jp", "gr.jp",
    }
)  # fmt: skip
"""Two-label suffixes treated as a single TLD."""

_LOOKS_LIKE_HOST = re.compile(r"^[a-z0-9.-]+\.[a-z]{2,}(?::\d{2,5})?(?:[/?#]|$)", re.IGNORECASE)


def ensure_protocol(url: str) -> str:
    """Prefix ``https://`` unless the URL already has an http(s) scheme."""
    if url.startswith(("http://", "https://")):
        return url
    return f"https://{url}"


def strip_www(hostname: str) -> str:
    return hostname[4:] if hostname.startswith("www.") else hostname


def normalize_domain(value: str) -> str:
    """
    Reduce a URL or hostname to a bare, lowercase domain.

    Scheme, path, port and a leading ``www.`` are removed. Input that does
    not look like a hostname (a company name, say) is returned stripped but
    otherwise unchanged.

    >>> normalize_domain("https://www.Example.com:8443/about")
    'example.com'
    """
    s = value.strip()
    if not s:
        return ""
    if "://" not in s and not s.startswith("www.") and not _LOOKS_LIKE_HOST.match(s):
        return s
    hostname = urlsplit(s if "://" in s else f"https://{s}").hostname
    if not hostname:
        return s
    return strip_www(hostname.lower().rstrip("."))


def extract_tld(domain: str) -> tuple[str, str]:
    """
    Split ``domain`` into ``(name, tld)``.

    >>> extract_tld("shop.example.co.uk")
    ('shop.example', 'co.uk')
    >>> extract_tld("localhost")
    ('localhost', '')
    """
    parts = domain.lower().split(".")
    if len(parts) >= 3:
        candidate = f"{parts[-2]}.{parts[-1]}"
        if candidate in COMPLEX_TLDS:
            return ".".join(parts[:-2]), candidate
    if len(parts) >= 2:
        return ".".join(parts[:-1]), parts[-1]
    return domain, ""


def get_root_domain(domain: str) -> str:
    """Registrable domain of ``domain`` (``blog.example.com`` -> ``example.com``)."""
    name, tld = extract_tld(domain)
    if not tld:
        return domain
    return f"{name.split('.')[-1]}.{tld}"


def get_domain_variants(domain: str) -> list[str]:
    """
    Hostnames to probe for a logo, in order: the domain itself, its ``www.``
    form, then the root domain when ``domain`` is a subdomain.
    """
    domain = domain.lower()
    bare = strip_www(domain)
    variants = [bare]
    name, _ = extract_tld(bare)
    if name and "." not in name:
        variants.append(f"www.{bare}")
    root = get_root_domain(bare)
    if root not in variants:
        variants.append(root)
    return variants


__all__ = [
    "COMPLEX_TLDS",
    "ensure_protocol",
    "extract_tld",
    "get_domain_variants",
    "get_root_domain",
    "normalize_domain",
    "strip_www",
]
