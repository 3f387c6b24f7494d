"""
Raster service: one open document, rendered through a page-raster cache.

Opening a new document closes the previous one and drops its cached rasters,
so a service instance never holds more than one native document handle.
"""

from __future__ import annotations

from typing import Dict, Optional, Tuple

from .engine import RasterEngine, load_engine
from .ingestion import NotLoadedError, PdfDocument
from ..regions.rendering import PageRaster, PageRasterCache, encode_png
from ..logging import get_logger

logger = get_logger(__name__)


class RasterService:
    def __init__(self, engine: Optional[RasterEngine] = None) -> None:
        self._engine = engine if engine is not None else load_engine()
        self._document: Optional[PdfDocument] = None
        self._cache = PageRasterCache()

    @property
    def engine(self) -> RasterEngine:
        return self._engine

    @property
    def cache(self) -> PageRasterCache:
        return self._cache

    @property
    def document(self) -> Optional[PdfDocument]:
        """The currently loaded handle, if any."""
        if self._document is not None and self._document.is_loaded:
            return self._document
        return None

    def open_document(self, data: bytes) -> PdfDocument:
        """
        Load ``data`` as the service's document.

        Any previously open document is closed first, even if the new buffer
        turns out to be invalid.

        Raises:
            DocumentLoadError: If the buffer is not a valid/parseable PDF
        """
        self._close_current()
        document = PdfDocument.from_bytes(self._engine, data)
        self._document = document
        logger.info(f"Opened PDF with {document.page_count} pages ({len(data)} bytes)")
        return document

    def page_count(self, handle: Optional[PdfDocument] = None) -> int:
        return self._resolve(handle).page_count

    def page_dimensions(self, handle: Optional[PdfDocument], page_number: int) -> Tuple[float, float]:
        return self._resolve(handle).page_dimensions(page_number)

    def all_page_dimensions(self, handle: Optional[PdfDocument] = None) -> Dict[int, Tuple[float, float]]:
        document = self._resolve(handle)
        return {page.number: (page.width, page.height) for page in document.pages()}

    def render_page(
        self,
        handle: Optional[PdfDocument],
        page_number: int,
        scale: float,
        transparent: bool = False,
    ) -> PageRaster:
        """
        Render a page, reusing the cached raster for an identical ``(page, scale)``.

        Raises:
            NotLoadedError: If the handle is not in the Loaded state
            RenderError: If the engine fails or the page is out of range
        """
        document = self._resolve(handle)
        return self._cache.get_or_render(page_number, scale, transparent, document.render)

    def render_page_png(
        self,
        handle: Optional[PdfDocument],
        page_number: int,
        scale: float,
        transparent: bool = False,
        compress_level: int = 6,
    ) -> bytes:
        raster = self.render_page(handle, page_number, scale, transparent)
        return encode_png(raster.pixels, compress_level=compress_level)

    def close(self, handle: Optional[PdfDocument] = None) -> None:
        """
        Release the document and every cached raster.

        Raises:
            NotLoadedError: If there is no loaded document to close
        """
        self._resolve(handle)
        self._close_current()

    def _close_current(self) -> None:
        self._cache.clear()
        if self._document is not None and self._document.is_loaded:
            self._document.close()
            logger.info("Closed PDF document")
        self._document = None

    def _resolve(self, handle: Optional[PdfDocument]) -> PdfDocument:
        if handle is None:
            handle = self._document
        if handle is None:
            raise NotLoadedError("No document loaded")
        if handle is not self._document:
            # A superseded handle was closed when its successor opened
            raise NotLoadedError("Document handle is not the service's current document")
        if not handle.is_loaded:
            raise NotLoadedError(f"No document loaded (state: {handle.state.value})")
        return handle
