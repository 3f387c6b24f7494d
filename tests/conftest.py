"""Test configuration for pytest."""

import logging
import os

import fitz  # type: ignore[import]
import pytest

from pdfcropper.pdf.engine import RasterEngine
from tests.helpers.pdf_factory import make_pdf_bytes


class CountingEngine(RasterEngine):
    """Real PyMuPDF engine that records every render call."""

    def __init__(self) -> None:
        super().__init__(fitz)
        self.render_calls = []

    def render(self, doc, index, scale, transparent=False):
        self.render_calls.append((index + 1, scale, transparent))
        return super().render(doc, index, scale, transparent)


@pytest.fixture(autouse=True)
def configure_test_logging():
    """Configure logging for tests to be minimal."""
    os.environ['PDFCROPPER_LOG_LEVEL'] = 'WARNING'

    logging.getLogger().setLevel(logging.WARNING)

    # Per-region skip warnings are expected in failure tests
    for logger_name in ['pdfcropper.batch.orchestrator', 'pdfcropper.worker.server',
                        'pdfcropper.overlays.store', 'pdfcropper.output.assembler']:
        logging.getLogger(logger_name).setLevel(logging.CRITICAL)


@pytest.fixture
def engine():
    return CountingEngine()


@pytest.fixture
def two_page_pdf() -> bytes:
    """A4 pages; page 1 has a red block at (100, 100)-(200, 150) in points."""
    return make_pdf_bytes(
        page_sizes=[(595, 842), (595, 842)],
        rects=[(1, (100, 100, 200, 150), (1, 0, 0)), (2, (50, 400, 300, 500), (0, 0, 1))],
    )
