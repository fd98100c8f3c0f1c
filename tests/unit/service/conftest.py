"""Shared fixtures for service tests."""

import io
from collections.abc import Callable

import httpx
import pytest
from PIL import Image, ImageDraw


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def render_logo(
    size: tuple[int, int] = (512, 512),
    background: tuple[int, int, int, int] = (255, 255, 255, 255),
    foreground: tuple[int, int, int, int] | None = (0, 0, 0, 255),
    image_format: str = "PNG",
) -> bytes:
    """Encode a logo-like image: a flat background with a filled rectangle."""
    image = Image.new("RGBA", size, background)
    if foreground is not None:
        width, height = size
        ImageDraw.Draw(image).rectangle(
            (width // 4, height // 4, 3 * width // 4, 3 * height // 4), fill=foreground
        )
    if image_format == "JPEG":
        image = image.convert("RGB")
    buffer = io.BytesIO()
    image.save(buffer, format=image_format)
    return buffer.getvalue()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_logo():
    return render_logo


SVG_LOGO = (
    b'<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 64 64">'
    b'<rect x="8" y="8" width="48" height="48" fill="#123456"/>'
    b'<circle cx="32" cy="32" r="12" fill="#ffffff"/></svg>'
)


@pytest.fixture
def svg_logo():
    return SVG_LOGO


class Origin:
    """
    MockTransport handler serving canned responses by URL.

    Unknown URLs answer 404. Every request is recorded in ``requested``.
    """

    def __init__(self):
        self.routes: dict[str, Callable[[], httpx.Response] | Exception] = {}
        self.requested: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requested.append(url)
        route = self.routes.get(url)
        if route is None:
            return httpx.Response(404)
        if isinstance(route, Exception):
            raise route
        return route()

    def respond(self, url: str, status_code: int = 200, headers=None, content: bytes = b"") -> None:
        self.routes[url] = lambda: httpx.Response(status_code, headers=headers, content=content)

    def serve(self, url: str, content: bytes, content_type: str = "image/png") -> None:
        self.respond(url, headers={"content-type": content_type}, content=content)

    def fail(self, url: str, error: Exception) -> None:
        self.routes[url] = error

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def origin():
    return Origin()
