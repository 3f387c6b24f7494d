"""
Rasterization engine handle.

Wraps the PyMuPDF module behind a small interface so the raster service can be
given an engine explicitly (and tests can count or replace render calls).
"""

from __future__ import annotations

import importlib
from types import ModuleType
from typing import Any, Sequence, Tuple

import numpy as np

from ..logging import get_logger

logger = get_logger(__name__)

DEFAULT_ENGINE_MODULES: Tuple[str, ...] = ("pymupdf", "fitz")


class EngineUnavailableError(Exception):
    """Raised when none of the candidate engine modules can be imported."""


class RasterEngine:
    """Thin adapter over a PyMuPDF module object."""

    def __init__(self, module: ModuleType) -> None:
        self._mupdf = module

    @property
    def name(self) -> str:
        return self._mupdf.__name__

    @property
    def version(self) -> str:
        return str(getattr(self._mupdf, "VersionBind", "unknown"))

    def open(self, data: bytes) -> Any:
        """Open a document from an in-memory buffer."""
        return self._mupdf.open(stream=data, filetype="pdf")

    def page_size(self, doc: Any, index: int) -> Tuple[float, float]:
        """Point-space (width, height) of the zero-based page ``index``."""
        rect = doc.load_page(index).rect
        return abs(float(rect.width)), abs(float(rect.height))

    def render(self, doc: Any, index: int, scale: float, transparent: bool = False) -> np.ndarray:
        """
        Render a page to an RGB (or RGBA when ``transparent``) uint8 array.

        The returned array owns its memory; the native pixmap is released
        before returning.
        """
        page = doc.load_page(index)
        matrix = self._mupdf.Matrix(scale, scale)
        pix = page.get_pixmap(matrix=matrix, colorspace=self._mupdf.csRGB, alpha=transparent)

        channels = pix.n
        img = np.frombuffer(pix.samples, dtype=np.uint8)
        # Copy out of the pixmap buffer so the pixmap can be freed now
        img = img.reshape(pix.height, pix.width, channels).copy()
        pix = None
        return img


def load_engine(candidates: Sequence[str] = DEFAULT_ENGINE_MODULES) -> RasterEngine:
    """
    Initialise the rasterization engine from a prioritized list of local modules.

    Args:
        candidates: Module names tried in order; the first importable one wins.

    Returns:
        RasterEngine bound to the first importable module

    Raises:
        EngineUnavailableError: If no candidate can be imported
    """
    errors = []
    for module_name in candidates:
        try:
            module = importlib.import_module(module_name)
        except ImportError as exc:
            logger.debug(f"Engine module {module_name!r} not importable: {exc}")
            errors.append(f"{module_name}: {exc}")
            continue

        engine = RasterEngine(module)
        logger.info(f"Using rasterization engine {engine.name} ({engine.version})")
        return engine

    raise EngineUnavailableError(
        "No rasterization engine available; tried " + ", ".join(errors or list(candidates))
    )
