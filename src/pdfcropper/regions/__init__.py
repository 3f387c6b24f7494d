"""
Page rasters and region cropping.

Renders are cached per page; regions are cropped out of a rendered page by
mapping point-space boxes into pixel space.
"""

from .extraction import CroppedRaster, OutOfBoundsError, extract, warp_quad
from .rendering import PageRaster, PageRasterCache, decode_png, encode_png

__all__ = [
    'CroppedRaster',
    'OutOfBoundsError',
    'extract',
    'warp_quad',
    'PageRaster',
    'PageRasterCache',
    'decode_png',
    'encode_png',
]
