"""
Page rasters and the page-raster cache.

A PageRaster is a rendered page at a given scale. The cache keeps at most one
raster per page; asking for the same page at another scale evicts and frees
the old raster before the new one is rendered.
"""

import io
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional, Tuple

import numpy as np
from PIL import Image

from ..logging import get_logger

logger = get_logger(__name__)


@dataclass
class PageRaster:
    """A rendered page. ``pixels`` has shape (height, width, channels)."""
    page_number: int
    scale: float
    width: int
    height: int
    pixels: np.ndarray
    transparent: bool = False

    @classmethod
    def from_array(cls, page_number: int, scale: float, pixels: np.ndarray,
                   transparent: bool = False) -> "PageRaster":
        height, width = pixels.shape[:2]
        return cls(
            page_number=page_number,
            scale=scale,
            width=int(width),
            height=int(height),
            pixels=pixels,
            transparent=transparent,
        )

    @property
    def channels(self) -> int:
        return 1 if self.pixels.ndim == 2 else int(self.pixels.shape[2])

    @property
    def nbytes(self) -> int:
        return int(self.pixels.nbytes)


def encode_png(pixels: np.ndarray, compress_level: int = 6) -> bytes:
    """
    Encode an RGB/RGBA/grayscale uint8 array as PNG bytes.

    Args:
        pixels: Array of shape (h, w), (h, w, 3) or (h, w, 4)
        compress_level: zlib level passed to Pillow (0-9)

    Returns:
        PNG file contents
    """
    if pixels.ndim == 3 and pixels.shape[2] == 1:
        pixels = pixels[:, :, 0]
    image = Image.fromarray(np.ascontiguousarray(pixels))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG", compress_level=compress_level)
    return buffer.getvalue()


def decode_png(data: bytes) -> np.ndarray:
    """Decode PNG bytes back into a uint8 array."""
    with Image.open(io.BytesIO(data)) as image:
        return np.array(image)


class PageRasterCache:
    """
    One-entry-per-page raster cache keyed by exact ``(page, scale)``.

    Example:
        >>> cache = PageRasterCache()
        >>> raster = cache.get_or_render(1, 2.0, False, render)
        >>> raster2 = cache.get_or_render(1, 2.0, False, render)  # Cache hit
    """

    def __init__(self) -> None:
        self._entries: Dict[int, PageRaster] = {}
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, page_number: int, scale: float, transparent: bool = False) -> Optional[PageRaster]:
        entry = self._entries.get(page_number)
        if entry is None:
            return None
        if entry.scale != scale or entry.transparent != transparent:
            return None
        return entry

    def get_or_render(
        self,
        page_number: int,
        scale: float,
        transparent: bool,
        render: Callable[[int, float, bool], np.ndarray],
    ) -> PageRaster:
        """
        Return the cached raster or render, cache and return a new one.

        Args:
            page_number: 1-based page number
            scale: Render scale (1.0 = one pixel per point)
            transparent: Whether to render with an alpha channel
            render: Called as ``render(page_number, scale, transparent)`` on a miss

        Returns:
            PageRaster for the requested key
        """
        cached = self.get(page_number, scale, transparent)
        if cached is not None:
            self.hits += 1
            logger.debug(f"Cache HIT: page {page_number} at scale {scale}")
            return cached

        # Stale entry for this page goes before the new render allocates
        self.evict(page_number)

        pixels = render(page_number, scale, transparent)
        raster = PageRaster.from_array(page_number, scale, pixels, transparent)
        self._entries[page_number] = raster
        self.misses += 1
        logger.debug(
            f"Cache MISS: rendered page {page_number} at scale {scale} "
            f"({raster.width}x{raster.height})"
        )
        return raster

    def evict(self, page_number: int) -> bool:
        entry = self._entries.pop(page_number, None)
        if entry is None:
            return False
        logger.debug(f"Cache EVICT: page {page_number} at scale {entry.scale}")
        # Only the cache reference is dropped; callers holding the raster keep it
        del entry
        self.evictions += 1
        return True

    def clear(self) -> None:
        for page_number in list(self._entries):
            self.evict(page_number)

    def keys(self) -> Iterator[Tuple[int, float]]:
        for page_number, entry in self._entries.items():
            yield page_number, entry.scale

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Tuple[int, float]) -> bool:
        page_number, scale = key
        entry = self._entries.get(page_number)
        return entry is not None and entry.scale == scale

    @property
    def nbytes(self) -> int:
        return sum(entry.nbytes for entry in self._entries.values())
