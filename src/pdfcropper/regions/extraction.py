"""
Region extraction from rendered page rasters.

Boxes arrive in PDF point space and are mapped into pixel space by the
raster's scale. Cropping goes through a 4-point warp so rotated or skewed
regions can use the same path; boxes produce axis-aligned quads.
"""

import math
from dataclasses import dataclass
from typing import Sequence, Tuple

import cv2
import numpy as np

from .rendering import PageRaster, encode_png
from ..overlays.model import Box
from ..logging import get_logger

logger = get_logger(__name__)

Point = Tuple[float, float]
Quad = Tuple[Point, Point, Point, Point]

# Float noise allowed when a box touches the raster edge
EDGE_TOLERANCE = 1e-6


class OutOfBoundsError(Exception):
    """Raised when a mapped region falls outside its page raster."""


@dataclass
class CroppedRaster:
    width: int
    height: int
    pixels: np.ndarray

    def to_png(self, compress_level: int = 6) -> bytes:
        return encode_png(self.pixels, compress_level=compress_level)


def box_to_pixel_quad(box: Box, scale: float) -> Quad:
    """Corners of ``box`` in pixel space, clockwise from top-left."""
    left, top = box.left * scale, box.top * scale
    right, bottom = box.right * scale, box.bottom * scale
    return ((left, top), (right, top), (right, bottom), (left, bottom))


def warp_quad(raster: PageRaster, quad: Sequence[Point], width: int, height: int) -> CroppedRaster:
    """
    Warp an arbitrary pixel-space quadrilateral onto a ``width`` x ``height`` image.

    Args:
        raster: Source page raster
        quad: Four (x, y) pixel corners: top-left, top-right, bottom-right, bottom-left
        width: Output width in pixels
        height: Output height in pixels

    Returns:
        CroppedRaster with its own pixel buffer

    Raises:
        OutOfBoundsError: If any corner lies outside the raster
    """
    if len(quad) != 4:
        raise ValueError(f"Expected 4 corners, got {len(quad)}")
    if width <= 0 or height <= 0:
        raise OutOfBoundsError(f"Empty output size {width}x{height}")

    for x, y in quad:
        if (x < -EDGE_TOLERANCE or y < -EDGE_TOLERANCE
                or x > raster.width + EDGE_TOLERANCE or y > raster.height + EDGE_TOLERANCE):
            raise OutOfBoundsError(
                f"Corner ({x:.2f}, {y:.2f}) outside page {raster.page_number} "
                f"raster {raster.width}x{raster.height}"
            )

    src = np.array(quad, dtype=np.float32)
    dst = np.array(
        [[0, 0], [width, 0], [width, height], [0, height]],
        dtype=np.float32,
    )
    matrix = cv2.getPerspectiveTransform(src, dst)
    pixels = cv2.warpPerspective(
        raster.pixels,
        matrix,
        (width, height),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_REPLICATE,
    )
    return CroppedRaster(width=width, height=height, pixels=pixels)


def extract(raster: PageRaster, box: Box) -> CroppedRaster:
    """
    Crop ``box`` (point space) out of ``raster``.

    The output is exactly ceil(w) x ceil(h) pixels, where w and h are the
    box's size after scaling into pixel space.

    Raises:
        OutOfBoundsError: If the mapped rectangle is not inside the raster
    """
    quad = box_to_pixel_quad(box, raster.scale)
    width = math.ceil(box.width * raster.scale - EDGE_TOLERANCE)
    height = math.ceil(box.height * raster.scale - EDGE_TOLERANCE)
    cropped = warp_quad(raster, quad, width, height)
    logger.debug(
        f"Cropped {width}x{height} px from page {raster.page_number} "
        f"at ({box.left:.1f}, {box.top:.1f})"
    )
    return cropped
