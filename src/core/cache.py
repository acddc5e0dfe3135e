"""In-memory caching system for rendered and scaled quote images."""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterator, Optional, Tuple

from src.api.config import CACHE_CLEANUP_INTERVAL_SECONDS

logger = logging.getLogger(__name__)

NAMESPACE_MAIN = "main"
NAMESPACE_SIZED = "sized"
NAMESPACE_BACKGROUND = "background"


@dataclass
class ImageMetadata:
    """Metadata stored alongside a cached image buffer."""

    width: int
    height: int
    format: str
    quality: int
    size: int
    optimized: bool = False
    device_type: Optional[str] = None
    pixel_ratio: Optional[float] = None


@dataclass
class CacheEntry:
    """Single cached image."""

    buffer: bytes
    url: str
    timestamp: float
    metadata: ImageMetadata


# (namespace, key, size, entry)
_EntryRef = Tuple[str, str, Optional[str], CacheEntry]


class ImageCache:
    """
    Bounded in-memory image cache with three namespaces.

    Plain keyed entries, key x size entries and background images share
    one entry-count budget and one byte-size budget.
    """

    def __init__(
        self,
        max_entries: int = 100,
        max_age: float = 60 * 60,
        max_size: int = 100 * 1024 * 1024,
        cleanup_interval: float = CACHE_CLEANUP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize cache limits; max_age and cleanup_interval are in seconds."""
        self.max_entries = max_entries
        self.max_age = max_age
        self.max_size = max_size
        self.cleanup_interval = cleanup_interval
        self.clock = clock

        self.cache: Dict[str, CacheEntry] = {}
        self.size_cache: Dict[str, Dict[str, CacheEntry]] = {}
        self.background_cache: Dict[str, CacheEntry] = {}
        self.current_size = 0

        self._cleanup_task: Optional[asyncio.Task[None]] = None

    def get(self, key: str, size: Optional[str] = None) -> Optional[CacheEntry]:
        """Get a valid entry, dropping it if it has expired."""
        if size:
            return self._get_sized_entry(key, size)
        return self._get_entry(key)

    def set(
        self,
        key: str,
        buffer: bytes,
        metadata: ImageMetadata,
        size: Optional[str] = None,
    ) -> None:
        """Store an image buffer, then enforce count and size limits."""
        entry = CacheEntry(
            buffer=buffer, url=key, timestamp=self.clock(), metadata=metadata
        )

        if size:
            self._set_sized_entry(key, size, entry)
        else:
            self._set_entry(key, entry)

        logger.debug(
            f"Image cache set: {key}{'::' + size if size else ''} "
            f"({len(buffer)} bytes, total: {self.current_size / (1024 * 1024):.2f}MB)"
        )
        self._enforce_limits()

    def set_background(self, url: str, buffer: bytes, metadata: ImageMetadata) -> None:
        """Cache a downloaded background image."""
        entry = CacheEntry(
            buffer=buffer,
            url=url,
            timestamp=self.clock(),
            metadata=replace(metadata, optimized=True),
        )

        old_entry = self.background_cache.get(url)
        if old_entry:
            self.current_size -= len(old_entry.buffer)

        self.background_cache[url] = entry
        self.current_size += len(buffer)
        logger.debug(f"Background cached: {url} ({len(buffer)} bytes)")
        self._enforce_limits()

    def get_background(self, url: str) -> Optional[CacheEntry]:
        """Get a cached background image if it has not expired."""
        entry = self.background_cache.get(url)
        if entry is None:
            return None
        if self._is_valid(entry):
            return entry

        del self.background_cache[url]
        self.current_size -= len(entry.buffer)
        return None

    def has(self, key: str, size: Optional[str] = None) -> bool:
        """Check whether a valid entry exists."""
        if size:
            entry = self.size_cache.get(key, {}).get(size)
        else:
            entry = self.cache.get(key)
        return entry is not None and self._is_valid(entry)

    def delete(self, key: str, size: Optional[str] = None) -> bool:
        """Delete an entry, returning whether anything was removed."""
        if size:
            sizes = self.size_cache.get(key)
            if not sizes or size not in sizes:
                return False
            entry = sizes.pop(size)
            self.current_size -= len(entry.buffer)
            if not sizes:
                del self.size_cache[key]
            return True

        entry = self.cache.pop(key, None)
        if entry is None:
            return False
        self.current_size -= len(entry.buffer)
        return True

    def clear(self) -> None:
        """Clear all namespaces."""
        self.cache.clear()
        self.size_cache.clear()
        self.background_cache.clear()
        self.current_size = 0
        logger.info("Image cache cleared")

    def get_stats(self) -> Dict[str, int]:
        """Get entry counts per namespace and total byte size."""
        return {
            "entries": len(self.cache),
            "size_entries": sum(len(sizes) for sizes in self.size_cache.values()),
            "background_entries": len(self.background_cache),
            "total_size": self.current_size,
        }

    def cleanup(self) -> int:
        """
        Remove every expired entry across all namespaces.

        Returns:
            Number of entries removed
        """
        expired = [ref for ref in self._iter_entries() if not self._is_valid(ref[3])]
        for ref in expired:
            self._remove_entry(ref)

        if expired:
            logger.info(f"Image cache cleanup removed {len(expired)} expired entries")
        return len(expired)

    async def start(self) -> None:
        """Start the periodic expiry sweep."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def stop(self) -> None:
        """Stop the periodic expiry sweep."""
        if self._cleanup_task is None:
            return
        self._cleanup_task.cancel()
        try:
            await self._cleanup_task
        except asyncio.CancelledError:
            pass
        self._cleanup_task = None

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            self.cleanup()

    def _get_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self.cache.get(key)
        if entry is None:
            logger.debug(f"Image cache miss: {key}")
            return None
        if self._is_valid(entry):
            logger.debug(f"Image cache hit: {key}")
            return entry

        self.delete(key)
        logger.debug(f"Image cache expired: {key}")
        return None

    def _get_sized_entry(self, key: str, size: str) -> Optional[CacheEntry]:
        entry = self.size_cache.get(key, {}).get(size)
        if entry is None:
            return None
        if self._is_valid(entry):
            return entry

        self.delete(key, size)
        return None

    def _set_entry(self, key: str, entry: CacheEntry) -> None:
        old_entry = self.cache.get(key)
        if old_entry:
            self.current_size -= len(old_entry.buffer)

        self.cache[key] = entry
        self.current_size += len(entry.buffer)

    def _set_sized_entry(self, key: str, size: str, entry: CacheEntry) -> None:
        sizes = self.size_cache.setdefault(key, {})

        old_entry = sizes.get(size)
        if old_entry:
            self.current_size -= len(old_entry.buffer)

        sizes[size] = entry
        self.current_size += len(entry.buffer)

    def _is_valid(self, entry: CacheEntry) -> bool:
        return self.clock() - entry.timestamp < self.max_age

    def _total_entries(self) -> int:
        return (
            len(self.cache)
            + len(self.background_cache)
            + sum(len(sizes) for sizes in self.size_cache.values())
        )

    def _enforce_limits(self) -> None:
        # Count first, then bytes
        if self._total_entries() > self.max_entries:
            self._remove_oldest_entries()

        if self.current_size > self.max_size:
            self._remove_largest_entries()

    def _remove_oldest_entries(self) -> None:
        entries = sorted(self._iter_entries(), key=lambda ref: ref[3].timestamp)
        excess = len(entries) - self.max_entries

        for ref in entries[:excess]:
            self._remove_entry(ref)
        logger.debug(f"Image cache evicted {max(excess, 0)} oldest entries")

    def _remove_largest_entries(self) -> None:
        entries = sorted(self._iter_entries(), key=lambda ref: len(ref[3].buffer))

        while self.current_size > self.max_size and entries:
            ref = entries.pop()
            self._remove_entry(ref)
            logger.debug(f"Image cache evicted {ref[1]} ({len(ref[3].buffer)} bytes)")

    def _iter_entries(self) -> Iterator[_EntryRef]:
        for key, entry in self.cache.items():
            yield NAMESPACE_MAIN, key, None, entry
        for key, entry in self.background_cache.items():
            yield NAMESPACE_BACKGROUND, key, None, entry
        for key, sizes in self.size_cache.items():
            for size, entry in sizes.items():
                yield NAMESPACE_SIZED, key, size, entry

    def _remove_entry(self, ref: _EntryRef) -> None:
        namespace, key, size, entry = ref

        if namespace == NAMESPACE_MAIN:
            self.delete(key)
        elif namespace == NAMESPACE_SIZED:
            self.delete(key, size)
        elif self.background_cache.pop(key, None) is not None:
            self.current_size -= len(entry.buffer)
