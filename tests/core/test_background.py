"""Tests for background image fetching."""

from pathlib import Path
from typing import AsyncIterator

import httpx
import pytest

from conftest import make_png
from src.core.background import BackgroundFetcher, BackgroundLoadError
from src.core.cache import ImageCache


def _transport(response: httpx.Response) -> httpx.MockTransport:
    return httpx.MockTransport(lambda request: response)


class TestRemoteBackgrounds:
    """Test HTTP(S) background downloads."""

    @pytest.mark.asyncio
    async def test_download(self) -> None:
        png = make_png(32, 32)
        fetcher = BackgroundFetcher(transport=_transport(httpx.Response(200, content=png)))

        assert await fetcher.fetch("https://cdn.example/bg.png") == png

    @pytest.mark.asyncio
    async def test_declared_size_over_limit(self) -> None:
        """Test a Content-Length above the limit is refused."""
        fetcher = BackgroundFetcher(
            max_bytes=100, transport=_transport(httpx.Response(200, content=b"x" * 500))
        )

        with pytest.raises(BackgroundLoadError, match="too large"):
            await fetcher.fetch("https://cdn.example/bg.png")

    @pytest.mark.asyncio
    async def test_streamed_size_over_limit(self) -> None:
        """Test a download without Content-Length is cut off at the limit."""

        async def body() -> AsyncIterator[bytes]:
            for _ in range(10):
                yield b"x" * 50

        fetcher = BackgroundFetcher(
            max_bytes=100, transport=_transport(httpx.Response(200, content=body()))
        )

        with pytest.raises(BackgroundLoadError, match="exceeded"):
            await fetcher.fetch("https://cdn.example/bg.png")

    @pytest.mark.asyncio
    async def test_http_error_raises(self) -> None:
        fetcher = BackgroundFetcher(transport=_transport(httpx.Response(404)))

        with pytest.raises(httpx.HTTPStatusError):
            await fetcher.fetch("https://cdn.example/missing.png")


class TestLocalBackgrounds:
    """Test filesystem backgrounds are confined to the backgrounds directory."""

    @pytest.mark.asyncio
    async def test_paths_rejected_without_directory(self, tmp_path: Path) -> None:
        """Test server paths cannot be read when no directory is configured."""
        private = tmp_path / "private.png"
        private.write_bytes(make_png(8, 8))

        with pytest.raises(BackgroundLoadError, match="Unsupported"):
            await BackgroundFetcher().fetch(str(private))

    @pytest.mark.asyncio
    async def test_relative_path_inside_directory(self, tmp_path: Path) -> None:
        png = make_png(8, 8)
        (tmp_path / "bg.png").write_bytes(png)

        assert await BackgroundFetcher(backgrounds_dir=tmp_path).fetch("bg.png") == png

    @pytest.mark.asyncio
    async def test_traversal_rejected(self, tmp_path: Path) -> None:
        """Test paths escaping the directory are refused."""
        backgrounds = tmp_path / "backgrounds"
        backgrounds.mkdir()
        (tmp_path / "secret.png").write_bytes(make_png(8, 8))
        fetcher = BackgroundFetcher(backgrounds_dir=backgrounds)

        with pytest.raises(BackgroundLoadError, match="outside"):
            await fetcher.fetch("../secret.png")

        with pytest.raises(BackgroundLoadError, match="outside"):
            await fetcher.fetch(str(tmp_path / "secret.png"))

    @pytest.mark.asyncio
    async def test_local_size_limit(self, tmp_path: Path) -> None:
        (tmp_path / "bg.png").write_bytes(make_png(64, 64))
        fetcher = BackgroundFetcher(backgrounds_dir=tmp_path, max_bytes=10)

        with pytest.raises(BackgroundLoadError, match="too large"):
            await fetcher.fetch("bg.png")


class TestBackgroundCaching:
    """Test caching is opt-in through the fetcher's cache."""

    @pytest.mark.asyncio
    async def test_cached_in_background_namespace(self, tmp_path: Path) -> None:
        """Test fetched bytes are stored and served after the source is gone."""
        cache = ImageCache()
        fetcher = BackgroundFetcher(cache=cache, backgrounds_dir=tmp_path)
        background = tmp_path / "bg.png"
        background.write_bytes(make_png(64, 64))

        first = await fetcher.fetch("bg.png")
        background.unlink()

        entry = cache.get_background("bg.png")
        assert entry is not None
        assert entry.metadata.width == 64
        assert entry.metadata.optimized is True
        assert await fetcher.fetch("bg.png") == first

