"""Background image fetching for quote renders."""

import logging
from io import BytesIO
from pathlib import Path
from typing import List, Optional, Union

import httpx
from PIL import Image

from src.api.config import DEFAULT_BACKGROUND_MAX_BYTES
from src.core.cache import ImageCache, ImageMetadata

logger = logging.getLogger(__name__)


class BackgroundLoadError(Exception):
    """Raised when a background image cannot be fetched."""

    pass


class BackgroundFetcher:
    """
    Fetch background image bytes for the renderer.

    Remote backgrounds must use http(s) and are streamed, aborting once
    max_bytes is exceeded. Plain paths are only accepted when
    backgrounds_dir is set, and must resolve inside it. When a cache is
    given, fetched bytes are stored in its background namespace.
    """

    def __init__(
        self,
        cache: Optional[ImageCache] = None,
        timeout_seconds: float = 10.0,
        max_bytes: int = DEFAULT_BACKGROUND_MAX_BYTES,
        backgrounds_dir: Optional[Union[str, Path]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.cache = cache
        self.timeout_seconds = timeout_seconds
        self.max_bytes = max_bytes
        self.backgrounds_dir = Path(backgrounds_dir).resolve() if backgrounds_dir else None
        self.transport = transport

    async def fetch(self, url: str) -> bytes:
        """
        Fetch background bytes, serving repeats from the cache.

        Args:
            url: HTTP(S) URL, or a path inside backgrounds_dir

        Returns:
            Raw image bytes

        Raises:
            BackgroundLoadError: If the source is not allowed, too large or empty
            httpx.HTTPError: If the download fails
        """
        if self.cache:
            cached = self.cache.get_background(url)
            if cached:
                logger.debug(f"Background cache hit: {url}")
                return cached.buffer

        if url.startswith(("http://", "https://")):
            data = await self._download(url)
        else:
            data = self._read_local(url)

        if not data:
            raise BackgroundLoadError(f"Empty background image: {url}")

        if self.cache:
            self._store(self.cache, url, data)
        return data

    async def _download(self, url: str) -> bytes:
        chunks: List[bytes] = []
        received = 0

        async with httpx.AsyncClient(
            timeout=self.timeout_seconds,
            follow_redirects=True,
            transport=self.transport,
        ) as client:
            async with client.stream("GET", url) as response:
                response.raise_for_status()

                declared = response.headers.get("content-length", "")
                if declared.isdigit() and int(declared) > self.max_bytes:
                    raise BackgroundLoadError(
                        f"Background too large: {declared} bytes (limit {self.max_bytes})"
                    )

                async for chunk in response.aiter_bytes():
                    received += len(chunk)
                    if received > self.max_bytes:
                        raise BackgroundLoadError(
                            f"Background exceeded {self.max_bytes} bytes: {url}"
                        )
                    chunks.append(chunk)

        return b"".join(chunks)

    def _read_local(self, url: str) -> bytes:
        if self.backgrounds_dir is None:
            raise BackgroundLoadError(f"Unsupported background URL: {url}")

        path = (self.backgrounds_dir / url).resolve()
        if not path.is_relative_to(self.backgrounds_dir):
            raise BackgroundLoadError(f"Background outside {self.backgrounds_dir}: {url}")
        if not path.is_file():
            raise BackgroundLoadError(f"Background not found: {url}")
        if path.stat().st_size > self.max_bytes:
            raise BackgroundLoadError(f"Background too large: {url}")

        return path.read_bytes()

    def _store(self, cache: ImageCache, url: str, data: bytes) -> None:
        with Image.open(BytesIO(data)) as probe:
            metadata = ImageMetadata(
                width=probe.width,
                height=probe.height,
                format=(probe.format or "unknown").lower(),
                quality=100,
                size=len(data),
            )
        cache.set_background(url, data, metadata)
