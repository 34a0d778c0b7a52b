"""Pytest configuration and fixtures."""

from io import BytesIO
from typing import Callable

import httpx
import pytest
from PIL import Image

from image_relay.api.routes.proxy import limiter
from image_relay.core.cache import ResponseCache
from image_relay.core.codec import ImageCodec
from image_relay.core.fetcher import OriginFetcher
from image_relay.core.planner import TransformPlanner
from image_relay.core.url_guard import UrlGuard
from image_relay.utils.identity import CallerIdentity

Handler = Callable[[httpx.Request], httpx.Response]


class SleepRecorder:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def encode_image(image: Image.Image, fmt: str, **kwargs: object) -> bytes:
    buffer = BytesIO()
    image.save(buffer, format=fmt, **kwargs)
    return buffer.getvalue()


def make_fetcher(handler: Handler, **kwargs: object) -> OriginFetcher:
    """Build a fetcher whose HTTP traffic is answered by `handler`."""
    kwargs.setdefault("sleep", SleepRecorder())
    kwargs.setdefault("guard", UrlGuard())
    return OriginFetcher(transport=httpx.MockTransport(handler), **kwargs)  # type: ignore[arg-type]


@pytest.fixture(autouse=True)
def reset_burst_limiter() -> None:
    """Start each test with an empty per-minute burst window."""
    limiter.reset()


@pytest.fixture
def anonymous_caller() -> CallerIdentity:
    return CallerIdentity(kind="ip", value="198.51.100.7")


@pytest.fixture
def privileged_caller() -> CallerIdentity:
    return CallerIdentity(kind="key", value="secret-key", unlimited=True)


@pytest.fixture
def planner() -> TransformPlanner:
    """Create transform planner with default heuristics."""
    return TransformPlanner()


@pytest.fixture
def response_cache() -> ResponseCache:
    """Create response cache with a small budget."""
    return ResponseCache(max_size_mb=1)


@pytest.fixture
def image_codec() -> ImageCodec:
    return ImageCodec(timeout_seconds=10)


@pytest.fixture
def sample_image() -> Image.Image:
    """Create a photographic-looking 800x600 gradient image."""
    red = Image.linear_gradient("L").resize((800, 600))
    green = Image.linear_gradient("L").rotate(90).resize((800, 600))
    blue = Image.new("L", (800, 600), color=128)
    return Image.merge("RGB", (red, green, blue))


@pytest.fixture
def sample_jpeg(sample_image: Image.Image) -> bytes:
    """Encode the sample image as JPEG."""
    return encode_image(sample_image, "JPEG", quality=90)


@pytest.fixture
def sample_png_with_transparency() -> bytes:
    """Create a PNG with a transparent background."""
    image = Image.new("RGBA", (400, 300), color=(255, 255, 255, 0))
    for x in range(100, 300):
        for y in range(100, 200):
            image.putpixel((x, y), (20, 20, 20, 255))
    return encode_image(image, "PNG")
