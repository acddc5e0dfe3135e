"""Quote image rendering."""

import asyncio
import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from io import BytesIO
from typing import Callable, List, Optional, Union

import httpx
import numpy as np
from PIL import Image, ImageDraw, ImageFont

from src.api.config import (
    CANVAS_HEIGHT,
    CANVAS_PADDING,
    CANVAS_WIDTH,
    FALLBACK_FONT_PATHS,
    MIN_FONT_SIZE,
    TEXT_SIZE_MAP,
)
from src.core.background import BackgroundFetcher, BackgroundLoadError

logger = logging.getLogger(__name__)

Font = Union[ImageFont.FreeTypeFont, ImageFont.ImageFont]

GRADIENT_START = (0x1A, 0x1A, 0x1A)
GRADIENT_END = (0x2A, 0x2A, 0x2A)
OVERLAY_COLOR = (0, 0, 0, 128)
TEXT_COLOR = (255, 255, 255, 255)
SITE_NAME_COLOR = (255, 255, 255, 178)


@dataclass
class RenderRequest:
    """Quote content to render."""

    content: str
    author: str
    site_name: str
    background_url: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.content or not self.content.strip():
            raise ValueError("Quote content must not be empty")
        if not self.author or not self.author.strip():
            raise ValueError("Quote author must not be empty")


@dataclass
class TextLayout:
    """Wrapped quote text and its vertical metrics."""

    lines: List[str]
    font_size: int
    line_height: float
    total_height: float


def font_size_for(length: int) -> int:
    """Pick the font size for a quote of the given length."""
    for max_length, font_size in TEXT_SIZE_MAP:
        if length <= max_length:
            return font_size
    return MIN_FONT_SIZE


def wrap_text(text: str, max_width: float, measure: Callable[[str], float]) -> List[str]:
    """
    Greedily wrap words into lines no wider than max_width.

    A single word wider than max_width is kept on its own line. Words are
    split on any whitespace, so newlines and runs of spaces collapse into
    single spaces; explicit line breaks in the quote are not kept.

    Args:
        text: Text to wrap
        max_width: Maximum line width in pixels
        measure: Function returning the rendered width of a string

    Returns:
        List of lines
    """
    lines: List[str] = []
    current_line = ""

    for word in text.split():
        test_line = f"{current_line} {word}" if current_line else word
        if current_line and measure(test_line) > max_width:
            lines.append(current_line)
            current_line = word
        else:
            current_line = test_line

    if current_line:
        lines.append(current_line)

    return lines


@lru_cache(maxsize=64)
def _load_font(path: Optional[str], size: int) -> Font:
    if path is None:
        return ImageFont.load_default(size=size)
    return ImageFont.truetype(path, size)


def _find_fallback_font() -> Optional[str]:
    for path in FALLBACK_FONT_PATHS:
        if os.path.exists(path):
            return path
    return None


class QuoteImageGenerator:
    """Render quotes onto a fixed-size square canvas."""

    def __init__(
        self,
        font_path: Optional[str] = None,
        fetcher: Optional[BackgroundFetcher] = None,
    ):
        """
        Initialize generator; fonts are registered by ensure_fonts_ready().

        Backgrounds are loaded through fetcher. Whether fetched bytes are
        cached is decided by whoever builds the fetcher.
        """
        self.canvas_width = CANVAS_WIDTH
        self.canvas_height = CANVAS_HEIGHT
        self.padding = CANVAS_PADDING
        self.font_path = font_path
        self.fetcher = fetcher or BackgroundFetcher()

        self.font_loaded = False
        self._font_source = _find_fallback_font()

    async def ensure_fonts_ready(self) -> bool:
        """
        Register the custom font once.

        Falls back to system fonts when registration fails. Rendering
        before this completes also uses the fallback fonts.

        Returns:
            True if the custom font is in use
        """
        if self.font_loaded or not self.font_path:
            return self.font_loaded

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, _load_font, self.font_path, MIN_FONT_SIZE)
        except OSError as e:
            logger.warning(
                f"Failed to register font {self.font_path}, using system fonts: {e}"
            )
            return False

        self._font_source = self.font_path
        self.font_loaded = True
        logger.info(f"Registered font: {self.font_path}")
        return True

    def get_font(self, size: float) -> Font:
        """Get the active font at the given pixel size."""
        return _load_font(self._font_source, max(1, round(size)))

    def compute_layout(self, content: str) -> TextLayout:
        """Select a font size and wrap content to the canvas width."""
        font_size = font_size_for(len(content))
        font = self.get_font(font_size)
        max_width = self.canvas_width - self.padding * 2

        lines = wrap_text(content, max_width, font.getlength)
        line_height = font_size * 1.5

        return TextLayout(
            lines=lines,
            font_size=font_size,
            line_height=line_height,
            total_height=len(lines) * line_height,
        )

    async def generate(self, request: RenderRequest) -> bytes:
        """
        Generate the quote image.

        Args:
            request: Quote content and optional background

        Returns:
            PNG-encoded image bytes
        """
        background = None
        if request.background_url:
            background = await self.load_background(request.background_url)

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.render, request, background)

    def render(self, request: RenderRequest, background: Optional[Image.Image] = None) -> bytes:
        """Draw the quote synchronously and encode it as PNG."""
        canvas = self._draw_background(background)
        draw = ImageDraw.Draw(canvas, "RGBA")

        layout = self.compute_layout(request.content)
        center_x = self.canvas_width / 2
        start_y = (self.canvas_height - layout.total_height) / 2

        font = self.get_font(layout.font_size)
        for i, line in enumerate(layout.lines):
            draw.text(
                (center_x, start_y + i * layout.line_height),
                line,
                font=font,
                fill=TEXT_COLOR,
                anchor="mm",
            )

        draw.text(
            (center_x, start_y + layout.total_height + layout.font_size * 0.8),
            f"― {request.author}",
            font=self.get_font(layout.font_size * 0.4),
            fill=TEXT_COLOR,
            anchor="mm",
        )

        draw.text(
            (center_x, self.canvas_height - self.padding / 2),
            request.site_name,
            font=self.get_font(layout.font_size * 0.25),
            fill=SITE_NAME_COLOR,
            anchor="mm",
        )

        buffer = BytesIO()
        canvas.save(buffer, format="PNG")
        logger.debug(
            f"Rendered quote: {len(request.content)} chars, {len(layout.lines)} lines, "
            f"{layout.font_size}px"
        )
        return buffer.getvalue()

    async def load_background(self, url: str) -> Optional[Image.Image]:
        """
        Load a background image, returning None on failure.

        Args:
            url: Background location understood by the fetcher

        Returns:
            Decoded RGB image, or None if it could not be loaded
        """
        try:
            data = await self.fetcher.fetch(url)
            image = Image.open(BytesIO(data))
            image.load()
            return image.convert("RGB")
        except (BackgroundLoadError, httpx.HTTPError, OSError) as e:
            logger.error(f"Failed to load background image {url}: {e}")
            return None

    def _draw_background(self, background: Optional[Image.Image]) -> Image.Image:
        size = (self.canvas_width, self.canvas_height)
        if background is None:
            return self._default_background()

        scale = max(self.canvas_width / background.width, self.canvas_height / background.height)
        scaled_width = max(1, round(background.width * scale))
        scaled_height = max(1, round(background.height * scale))
        scaled = background.resize((scaled_width, scaled_height), Image.Resampling.LANCZOS)

        canvas = Image.new("RGB", size)
        x = round((self.canvas_width - scaled_width) / 2)
        y = round((self.canvas_height - scaled_height) / 2)
        canvas.paste(scaled, (x, y))

        overlay = Image.new("RGBA", size, OVERLAY_COLOR)
        return Image.alpha_composite(canvas.convert("RGBA"), overlay).convert("RGB")

    def _default_background(self) -> Image.Image:
        """Two-stop linear gradient from the top-left to the bottom-right corner."""
        w, h = self.canvas_width, self.canvas_height
        ys, xs = np.mgrid[0:h, 0:w].astype(np.float32)
        t = (xs * w + ys * h) / float(w * w + h * h)

        start = np.array(GRADIENT_START, dtype=np.float32)
        end = np.array(GRADIENT_END, dtype=np.float32)
        pixels = start + (end - start) * t[..., None]

        return Image.fromarray(np.clip(pixels, 0, 255).astype(np.uint8))
