# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Logo validation, analysis and inversion with Pillow.

A fetched candidate is rejected when:

- its body is shorter than ``min_buffer_size`` bytes
- its (final) URL matches a known globe-placeholder pattern of a favicon
  service
- it is a raster image smaller than ``min_logo_size`` on either side
- its aspect ratio is off square by ``aspect_ratio_tolerance`` or more
- it is blank (fully transparent or a single flat colour)

SVG bodies skip every pixel check. Pillow work is CPU bound; callers run
these functions through ``asyncio.to_thread``.
"""

from __future__ import annotations

import io
import logging
import re
from dataclasses import dataclass

from PIL import Image, ImageOps, ImageStat, UnidentifiedImageError

from ..config import FetchConfig
from ..exceptions import ImageValidationError

logger = logging.getLogger(__name__)

GLOBE_URL_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"/faviconV2\?.*&fallback_opts=.*&type=DEFAULT",
        r"/faviconV2\?.*&fallback_opts=.*&type=FAVICON.*&err=1",
        r"/ip3/[^/]+\.ico.*\?v=\d+",
        r"/ip3/[^/]+\.ico\?f=1",
        r"logo\.clearbit\.com/.*\?.*&default",
    )
)
"""URLs favicon services redirect to when they only have a generic globe."""

GLOBE_MAX_SIZE = 32
"""Square images at most this many pixels wide are treated as placeholder globes."""

BLANK_STDDEV = 2.0
"""Opaque pixels with every channel's standard deviation below this are one flat colour."""

DARK_BRIGHTNESS = 100
LIGHT_BRIGHTNESS = 200

ANALYSIS_MAX_SIZE = (256, 256)

_SVG_PREFIXES = (b"<svg", b"<?xml")


def is_globe_url(url: str | None) -> bool:
    return bool(url) and any(p.search(url) for p in GLOBE_URL_PATTERNS)  # type: ignore[arg-type]


def is_svg(data: bytes, content_type: str | None = None) -> bool:
    if content_type and "svg" in content_type.lower():
        return True
    head = data[:256].lstrip().lower()
    return head.startswith(_SVG_PREFIXES) and b"<svg" in data[:4096].lower()


@dataclass
class ImageAnalysis:
    """
    Pixel statistics of a decoded image.

    Attributes:
        width: Width in pixels
        height: Height in pixels
        format: Pillow format name (PNG, ICO, ...)
        brightness: Mean luminance of non-transparent pixels (0-255)
        has_transparency: Whether any pixel is not fully opaque
        is_blank: Fully transparent, or one flat colour
        is_globe_icon: Tiny square icon typical of placeholder globes
    """

    width: int
    height: int
    format: str | None
    brightness: float
    has_transparency: bool
    is_blank: bool
    is_globe_icon: bool

    @property
    def needs_dark_inversion(self) -> bool:
        """Dark logo that disappears on a dark background."""
        return self.brightness < DARK_BRIGHTNESS

    @property
    def needs_light_inversion(self) -> bool:
        """Light logo that disappears on a light background."""
        return self.brightness > LIGHT_BRIGHTNESS


@dataclass
class ValidationOutcome:
    """Verdict on one candidate. ``reason`` names the failed check."""

    valid: bool
    reason: str | None = None
    analysis: ImageAnalysis | None = None
    is_svg: bool = False


def _open(data: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
        raise ImageValidationError(f"Cannot decode image: {e}", reason="undecodable") from e
    return image


def analyze_image(data: bytes) -> ImageAnalysis:
    """
    Decode ``data`` and compute its statistics.

    Raises:
        ImageValidationError: If Pillow cannot decode the bytes
    """
    image = _open(data)
    width, height = image.size
    image_format = image.format

    rgba = image.convert("RGBA")
    rgba.thumbnail(ANALYSIS_MAX_SIZE)
    alpha = rgba.getchannel("A")
    min_alpha, max_alpha = alpha.getextrema()

    if max_alpha == 0:
        brightness = 0.0
        is_blank = True
    else:
        mask = alpha.point(lambda a: 255 if a > 0 else 0)
        brightness = float(ImageStat.Stat(rgba.convert("L"), mask=mask).mean[0])
        stddev = ImageStat.Stat(rgba.convert("RGB"), mask=mask).stddev
        is_blank = max(stddev) < BLANK_STDDEV

    return ImageAnalysis(
        width=width,
        height=height,
        format=image_format,
        brightness=brightness,
        has_transparency=min_alpha < 255,
        is_blank=is_blank,
        is_globe_icon=width == height and width <= GLOBE_MAX_SIZE,
    )


def invert_image(data: bytes) -> tuple[bytes, str]:
    """
    Invert the colours of a raster image, keeping its alpha channel.

    Returns:
        ``(png_bytes, "image/png")``

    Raises:
        ImageValidationError: If the image is SVG or cannot be decoded
    """
    if is_svg(data):
        raise ImageValidationError("SVG logos cannot be inverted", reason="svg")
    rgba = _open(data).convert("RGBA")
    red, green, blue, alpha = rgba.split()
    inverted = ImageOps.invert(Image.merge("RGB", (red, green, blue)))
    result = Image.merge("RGBA", (*inverted.split(), alpha))
    buffer = io.BytesIO()
    result.save(buffer, format="PNG")
    return buffer.getvalue(), "image/png"


class LogoValidator:
    """Applies the candidate checks configured in FetchConfig."""

    def __init__(self, config: FetchConfig | None = None):
        self.config = config or FetchConfig()

    def validate_candidate(
        self, data: bytes, url: str | None = None, content_type: str | None = None
    ) -> ValidationOutcome:
        if len(data) < self.config.min_buffer_size:
            return ValidationOutcome(False, "too_small")
        if is_globe_url(url):
            return ValidationOutcome(False, "globe_url")
        if is_svg(data, content_type):
            return ValidationOutcome(True, is_svg=True)

        try:
            analysis = analyze_image(data)
        except ImageValidationError:
            return ValidationOutcome(False, "undecodable")

        min_size = self.config.min_logo_size
        if analysis.width < min_size or analysis.height < min_size:
            return ValidationOutcome(False, "too_small_dimensions", analysis)
        if abs(analysis.width / analysis.height - 1) >= self.config.aspect_ratio_tolerance:
            return ValidationOutcome(False, "aspect_ratio", analysis)
        if analysis.is_globe_icon:
            return ValidationOutcome(False, "globe_icon", analysis)
        if analysis.is_blank:
            return ValidationOutcome(False, "blank", analysis)
        return ValidationOutcome(True, analysis=analysis)

    def is_globe_icon(self, data: bytes, content_type: str | None = None) -> bool:
        """Final check on an accepted logo: True for tiny square placeholders."""
        if is_svg(data, content_type):
            return False
        try:
            return analyze_image(data).is_globe_icon
        except ImageValidationError:
            return False


__all__ = [
    "GLOBE_URL_PATTERNS",
    "ImageAnalysis",
    "LogoValidator",
    "ValidationOutcome",
    "analyze_image",
    "invert_image",
    "is_globe_url",
    "is_svg",
]
