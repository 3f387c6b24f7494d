from __future__ import annotations

import enum
import hashlib
from pathlib import Path
from typing import Any, Iterator, Optional, Tuple

import numpy as np

from .engine import RasterEngine


class DocumentLoadError(Exception):
    """Raised when a buffer is not a valid, parseable PDF document."""


class EncryptedPdfError(DocumentLoadError):
    """Raised when a PDF is encrypted and cannot be read."""


class NotLoadedError(Exception):
    """Raised when a document operation is attempted outside the Loaded state."""


class RenderError(Exception):
    """Raised when the engine fails to render a page."""


class PageOutOfRangeError(RenderError):
    """Raised when a page number is outside 1..page_count."""


class DocumentState(enum.Enum):
    UNLOADED = "unloaded"
    LOADED = "loaded"
    CLOSED = "closed"


class PdfPage:
    def __init__(self, number: int, width: float, height: float) -> None:
        self._number = number
        self._width = width
        self._height = height

    @property
    def number(self) -> int:
        """1-based page number."""
        return self._number

    @property
    def width(self) -> float:
        return self._width

    @property
    def height(self) -> float:
        return self._height


class PdfDocument:
    """
    Handle on one open document.

    Lifecycle is Unloaded -> Loaded -> Closed. Every accessor other than
    ``load`` raises NotLoadedError outside the Loaded state. Page numbers
    are 1-based throughout.
    """

    def __init__(self, engine: RasterEngine) -> None:
        self._engine = engine
        self._doc: Any = None
        self._state = DocumentState.UNLOADED
        self._sha256: Optional[str] = None

    @classmethod
    def from_bytes(cls, engine: RasterEngine, data: bytes) -> PdfDocument:
        doc = cls(engine)
        doc.load(data)
        return doc

    @classmethod
    def from_path(cls, engine: RasterEngine, source: Path | str) -> PdfDocument:
        path = Path(source)
        if not path.exists():
            raise DocumentLoadError(f"PDF file does not exist: {path}")
        return cls.from_bytes(engine, path.read_bytes())

    @property
    def state(self) -> DocumentState:
        return self._state

    @property
    def is_loaded(self) -> bool:
        return self._state is DocumentState.LOADED

    @property
    def sha256(self) -> str:
        """Hex digest of the source buffer."""
        self._require_loaded()
        return self._sha256  # type: ignore[return-value]

    @property
    def page_count(self) -> int:
        self._require_loaded()
        return self._doc.page_count

    def load(self, data: bytes) -> None:
        if self._state is not DocumentState.UNLOADED:
            raise DocumentLoadError(f"Document handle is {self._state.value}; create a new handle")
        if not data:
            raise DocumentLoadError("PDF buffer is empty")

        try:
            doc = self._engine.open(bytes(data))
        except Exception as exc:
            raise DocumentLoadError(f"Failed to open PDF: {exc}") from exc

        if not getattr(doc, "is_pdf", True):
            doc.close()
            raise DocumentLoadError("Buffer is not a PDF document")
        if doc.needs_pass:
            doc.close()  # Close before raising exception
            raise EncryptedPdfError("PDF is encrypted")
        if doc.page_count == 0:
            doc.close()
            raise DocumentLoadError("PDF has no pages")

        self._doc = doc
        self._sha256 = hashlib.sha256(data).hexdigest()
        self._state = DocumentState.LOADED

    def page(self, number: int) -> PdfPage:
        width, height = self.page_dimensions(number)
        return PdfPage(number, width, height)

    def pages(self) -> Iterator[PdfPage]:
        """Iterate over all pages in the document."""
        for number in range(1, self.page_count + 1):
            yield self.page(number)

    def page_dimensions(self, number: int) -> Tuple[float, float]:
        """Point-space (width, height), independent of any render scale."""
        index = self._page_index(number)
        return self._engine.page_size(self._doc, index)

    def render(self, number: int, scale: float, transparent: bool = False) -> np.ndarray:
        index = self._page_index(number)
        if scale <= 0:
            raise RenderError(f"Render scale must be positive, got {scale}")
        try:
            return self._engine.render(self._doc, index, scale, transparent)
        except Exception as exc:
            raise RenderError(f"Failed to render page {number} at scale {scale}: {exc}") from exc

    def close(self) -> None:
        """Close the PDF document and release native resources."""
        self._require_loaded()
        self._release()

    def __enter__(self) -> PdfDocument:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.is_loaded:
            self._release()

    def _release(self) -> None:
        if self._doc is not None:
            self._doc.close()
            self._doc = None
        self._state = DocumentState.CLOSED

    def _page_index(self, number: int) -> int:
        self._require_loaded()
        count = self._doc.page_count
        if not 1 <= number <= count:
            raise PageOutOfRangeError(f"Page {number} is outside 1..{count}")
        return number - 1

    def _require_loaded(self) -> None:
        if self._state is not DocumentState.LOADED:
            raise NotLoadedError(f"No document loaded (state: {self._state.value})")
