"""Device-aware image scaling with format-specific compression."""

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from io import BytesIO
from typing import Callable, Dict, List, Optional, Tuple

from PIL import Image

from src.api.config import (
    DEFAULT_SCALE_FORMAT,
    DEFAULT_SCALE_QUALITY,
    DEVICE_BREAKPOINTS,
    SCALER_CACHE_MAX_ENTRIES,
    SCALER_CACHE_TTL_SECONDS,
    DeviceBreakpoint,
    HostingLimits,
)

logger = logging.getLogger(__name__)

# Pillow encoder names
PIL_FORMATS: Dict[str, str] = {
    "webp": "WEBP",
    "png": "PNG",
    "jpeg": "JPEG",
    "jpg": "JPEG",
}


class UnsupportedFormatError(ValueError):
    """Raised when a requested output format is not allowed by the hosting provider."""

    pass


@dataclass
class ScalingOptions:
    """Caller-supplied scaling parameters; unset fields use device defaults."""

    quality: Optional[int] = None
    format: Optional[str] = None
    device_pixel_ratio: Optional[float] = None
    preserve_text: Optional[bool] = None
    max_width: Optional[int] = None
    max_height: Optional[int] = None


@dataclass
class CachedImage:
    """Scaled image held in the scaler's result cache."""

    buffer: bytes
    width: int
    height: int
    timestamp: float
    format: str
    quality: int


class ImageScaler:
    """Rescale rendered images for specific device resolutions."""

    def __init__(
        self,
        limits: HostingLimits,
        breakpoints: Optional[List[DeviceBreakpoint]] = None,
        cache_ttl: float = SCALER_CACHE_TTL_SECONDS,
        max_cache_entries: int = SCALER_CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the scaler with hosting limits and device breakpoints."""
        self.limits = limits
        self.device_breakpoints = breakpoints or DEVICE_BREAKPOINTS
        self.cache_ttl = cache_ttl
        self.max_cache_entries = max_cache_entries
        self.clock = clock
        self.cache: Dict[str, CachedImage] = {}

    async def scale_for_device(
        self,
        source: bytes,
        device_width: int,
        device_height: int,
        options: Optional[ScalingOptions] = None,
    ) -> bytes:
        """
        Scale an image for a device, reusing cached results.

        Args:
            source: Encoded source image
            device_width: Device width in CSS pixels
            device_height: Device height in CSS pixels
            options: Explicit scaling options overriding device defaults

        Returns:
            Encoded scaled image

        Raises:
            UnsupportedFormatError: If the resolved format is not allowed
        """
        breakpoint = self.find_device_breakpoint(device_width, device_height)
        final_options = self.merge_with_device_defaults(options or ScalingOptions(), breakpoint)

        output_format = final_options.format or DEFAULT_SCALE_FORMAT
        self.validate_format(output_format)

        cache_key = self.get_cache_key(source, breakpoint, final_options)
        cached = self._get_from_cache(cache_key)
        if cached:
            logger.debug(f"Scaler cache hit: {cache_key}")
            return cached.buffer

        loop = asyncio.get_running_loop()
        scaled, size = await loop.run_in_executor(
            None,
            self.scale_buffer,
            source,
            breakpoint.width,
            breakpoint.height,
            final_options,
        )

        self.cache[cache_key] = CachedImage(
            buffer=scaled,
            width=size[0],
            height=size[1],
            timestamp=self.clock(),
            format=output_format,
            quality=final_options.quality or DEFAULT_SCALE_QUALITY,
        )
        self._evict_oldest()
        return scaled

    def scale_buffer(
        self,
        source: bytes,
        target_width: int,
        target_height: int,
        options: ScalingOptions,
    ) -> Tuple[bytes, Tuple[int, int]]:
        """Resize and encode synchronously, letterboxing to preserve aspect ratio."""
        output_format = (options.format or DEFAULT_SCALE_FORMAT).lower()
        quality = options.quality if options.quality is not None else DEFAULT_SCALE_QUALITY
        pixel_ratio = options.device_pixel_ratio or 1
        preserve_text = True if options.preserve_text is None else options.preserve_text

        scaled_width = round(target_width * pixel_ratio)
        scaled_height = round(target_height * pixel_ratio)
        if options.max_width:
            scaled_width = min(scaled_width, options.max_width)
        if options.max_height:
            scaled_height = min(scaled_height, options.max_height)

        with Image.open(BytesIO(source)) as image:
            image.load()
            canvas = self.draw_letterboxed(
                image.convert("RGB"), scaled_width, scaled_height, preserve_text
            )

        save_kwargs = self.get_compression_options(output_format, quality, preserve_text)
        buffer = BytesIO()
        canvas.save(buffer, format=PIL_FORMATS[output_format], **save_kwargs)

        logger.info(
            f"Scaled image to {scaled_width}x{scaled_height} {output_format}, "
            f"{len(buffer.getvalue()) / 1024:.1f}KB"
        )
        return buffer.getvalue(), canvas.size

    def draw_letterboxed(
        self,
        image: Image.Image,
        target_width: int,
        target_height: int,
        preserve_text: bool = True,
    ) -> Image.Image:
        """Fit the image inside the target, centred, without cropping."""
        scale = min(target_width / image.width, target_height / image.height)
        content_width = max(1, round(image.width * scale))
        content_height = max(1, round(image.height * scale))

        # LANCZOS keeps baked-in text sharp
        resample = Image.Resampling.LANCZOS if preserve_text else Image.Resampling.BILINEAR
        resized = image.resize((content_width, content_height), resample)

        canvas = Image.new("RGB", (target_width, target_height), (0, 0, 0))
        x = (target_width - content_width) // 2
        y = (target_height - content_height) // 2
        canvas.paste(resized, (x, y))
        return canvas

    def get_compression_options(
        self, output_format: str, quality: int, preserve_text: bool
    ) -> Dict[str, object]:
        """Build Pillow save options, capped by the hosting provider's size policy."""
        quality_cap = 90 if self.limits.max_file_size > 5 * 1024 * 1024 else 85
        capped_quality = min(quality, quality_cap)

        output_format = output_format.lower()
        if output_format == "webp":
            return {
                "quality": capped_quality,
                "lossless": preserve_text,
                "method": 6,
            }
        elif output_format == "png":
            return {
                "compress_level": 9,
                "optimize": preserve_text,
            }
        elif output_format in ("jpeg", "jpg"):
            return {
                "quality": capped_quality,
                "optimize": True,
                "progressive": True,
                "subsampling": 0 if preserve_text else 2,
            }
        return {"quality": capped_quality}

    def find_device_breakpoint(self, width: int, height: int) -> DeviceBreakpoint:
        """Find the exact breakpoint, or synthesize a default one."""
        for breakpoint in self.device_breakpoints:
            if breakpoint.width == width and breakpoint.height == height:
                return breakpoint
        return DeviceBreakpoint(
            width=width,
            height=height,
            pixel_ratio=1,
            default_format="webp",
            default_quality=85,
        )

    def merge_with_device_defaults(
        self, options: ScalingOptions, breakpoint: DeviceBreakpoint
    ) -> ScalingOptions:
        """Fill unset options from the breakpoint."""
        return ScalingOptions(
            quality=options.quality if options.quality is not None else breakpoint.default_quality,
            format=(options.format or breakpoint.default_format).lower(),
            device_pixel_ratio=options.device_pixel_ratio or breakpoint.pixel_ratio,
            preserve_text=True if options.preserve_text is None else options.preserve_text,
            max_width=options.max_width,
            max_height=options.max_height,
        )

    def validate_format(self, output_format: str) -> None:
        """
        Check the format against the hosting provider's allowed formats.

        Raises:
            UnsupportedFormatError: If the format is not allowed
        """
        allowed = self.limits.allowed_formats
        if output_format.lower() not in allowed or output_format.lower() not in PIL_FORMATS:
            raise UnsupportedFormatError(
                f"Unsupported format: {output_format}. Allowed formats: {', '.join(allowed)}"
            )

    def get_cache_key(
        self, source: bytes, breakpoint: DeviceBreakpoint, options: ScalingOptions
    ) -> str:
        """Generate a cache key namespaced by the hosting account."""
        source_hash = hashlib.sha256(source).hexdigest()[:8]
        return (
            f"{self.limits.cloud_name}-{source_hash}-{breakpoint.width}x{breakpoint.height}-"
            f"{options.quality}-{options.format}-{options.device_pixel_ratio}-"
            f"{options.max_width or 'auto'}x{options.max_height or 'auto'}-"
            f"{int(bool(options.preserve_text))}"
        )

    @property
    def cache_size(self) -> int:
        """Number of cached scaled images."""
        return len(self.cache)

    def cleanup(self) -> int:
        """Drop expired scaled images, returning how many were removed."""
        now = self.clock()
        expired = [
            key for key, cached in self.cache.items() if now - cached.timestamp >= self.cache_ttl
        ]
        for key in expired:
            del self.cache[key]
        if expired:
            logger.debug(f"Scaler cache cleanup removed {len(expired)} entries")
        return len(expired)

    def clear_cache(self) -> None:
        """Drop all cached scaled images."""
        self.cache.clear()

    def _get_from_cache(self, key: str) -> Optional[CachedImage]:
        cached = self.cache.get(key)
        if cached is None:
            return None
        if self.clock() - cached.timestamp < self.cache_ttl:
            return cached

        del self.cache[key]
        return None

    def _evict_oldest(self) -> None:
        while len(self.cache) > self.max_cache_entries:
            oldest = min(self.cache, key=lambda key: self.cache[key].timestamp)
            del self.cache[oldest]
