"""Pytest configuration and fixtures."""

import asyncio
from io import BytesIO
from typing import Callable, Optional

import pytest
from PIL import Image

from src.api.config import HostingLimits
from src.core.cache import ImageCache
from src.core.generator import QuoteImageGenerator, RenderRequest
from src.core.processor import ImageProcessor
from src.core.scaler import ImageScaler


class FakeClock:
    """Manually advanced clock for expiry tests."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_png(
    width: int = 1080, height: int = 1080, color: tuple[int, int, int] = (200, 60, 60)
) -> bytes:
    """Encode a solid-colour PNG."""
    buffer = BytesIO()
    Image.new("RGB", (width, height), color=color).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeGenerator:
    """Generator stand-in that records concurrency and can fail on demand."""

    def __init__(
        self,
        delay: float = 0.01,
        fail_when: Optional[Callable[[RenderRequest, int], bool]] = None,
    ):
        self.delay = delay
        self.fail_when = fail_when
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.png = make_png()

    async def generate(self, request: RenderRequest) -> bytes:
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail_when and self.fail_when(request, self.calls):
                raise RuntimeError(f"render failed for {request.content}")
            return self.png
        finally:
            self.in_flight -= 1


@pytest.fixture
def clock() -> FakeClock:
    """Create a controllable clock."""
    return FakeClock()


@pytest.fixture
def image_cache(clock: FakeClock) -> ImageCache:
    """Create an isolated image cache driven by the fake clock."""
    return ImageCache(max_entries=10, max_age=60 * 60, max_size=10_000, clock=clock)


@pytest.fixture
def hosting_limits() -> HostingLimits:
    """Create hosting limits with a 7MB file size allowance."""
    return HostingLimits(cloud_name="test-cloud", max_file_size=7 * 1024 * 1024)


@pytest.fixture
def image_scaler(hosting_limits: HostingLimits) -> ImageScaler:
    """Create image scaler instance."""
    return ImageScaler(limits=hosting_limits)


@pytest.fixture
def quote_generator() -> QuoteImageGenerator:
    """Create a generator that renders with fallback fonts."""
    return QuoteImageGenerator(font_path=None)


@pytest.fixture
def fake_generator() -> FakeGenerator:
    """Create a generator stand-in."""
    return FakeGenerator()


@pytest.fixture
def sample_png() -> bytes:
    """Create a 1080x1080 rendered-size PNG."""
    return make_png()


@pytest.fixture
def processor(
    fake_generator: FakeGenerator, image_scaler: ImageScaler, clock: FakeClock
) -> ImageProcessor:
    """Create a processor with fast retries and its own roomy cache."""
    return ImageProcessor(
        generator=fake_generator,  # type: ignore[arg-type]
        scaler=image_scaler,
        cache=ImageCache(max_size=50 * 1024 * 1024, clock=clock),
        retry_delay=0.001,
        max_memory_usage=1024 * 1024 * 1024,
        memory_wait_timeout=0.2,
        memory_poll_interval=0.01,
        memory_sampler=lambda: 100 * 1024 * 1024,
    )
