"""
Batched region extraction.

Pages are rendered once each, in ascending order, and every region on the
page is cropped from that raster. Failures are recorded per region; only a
missing document stops the run.
"""

import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from ..overlays.model import RegionDescriptor
from ..pdf.ingestion import PdfDocument, RenderError
from ..pdf.raster import RasterService
from ..regions.extraction import extract
from ..logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class BatchProgress:
    """Emitted once per question whose images have all been processed."""
    completed: int
    total: int
    question_key: str


@dataclass
class BatchResult:
    images: Dict[str, bytes] = field(default_factory=dict)
    failures: Dict[str, Exception] = field(default_factory=dict)
    cancelled: bool = False
    pages_rendered: int = 0

    @property
    def ok(self) -> bool:
        return not self.failures and not self.cancelled


ProgressCallback = Callable[[BatchProgress], None]


def group_by_page(descriptors: Iterable[RegionDescriptor]) -> Dict[int, List[RegionDescriptor]]:
    """Group descriptors by page, pages ascending, input order within a page."""
    grouped: Dict[int, List[RegionDescriptor]] = {}
    for descriptor in descriptors:
        grouped.setdefault(descriptor.page, []).append(descriptor)
    return {page: grouped[page] for page in sorted(grouped)}


def generate(
    service: RasterService,
    regions_by_page: Mapping[int, Sequence[RegionDescriptor]],
    scale: float,
    transparent: bool = False,
    progress: Optional[ProgressCallback] = None,
    cancel_event: Optional[threading.Event] = None,
    handle: Optional[PdfDocument] = None,
    compress_level: int = 6,
) -> BatchResult:
    """
    Crop every region to PNG bytes.

    Args:
        service: Raster service with the source document loaded
        regions_by_page: Descriptors keyed by 1-based page number
        scale: Render scale for every page
        transparent: Render with an alpha channel
        progress: Called once per completed question
        cancel_event: Checked between pages; work done so far is kept
        handle: Document handle (defaults to the service's current one)
        compress_level: PNG compression level

    Returns:
        BatchResult with images and failures keyed by region id

    Raises:
        NotLoadedError: If the service has no loaded document
    """
    result = BatchResult()

    remaining: Dict[str, int] = {}
    for regions in regions_by_page.values():
        for region in regions:
            remaining[region.question_key] = remaining.get(region.question_key, 0) + 1
    total_questions = len(remaining)
    completed = 0

    logger.info(
        f"Generating images for {sum(remaining.values())} regions "
        f"({total_questions} questions) on {len(regions_by_page)} pages at scale {scale}"
    )

    def finish_region(region: RegionDescriptor) -> None:
        nonlocal completed
        remaining[region.question_key] -= 1
        if remaining[region.question_key] == 0:
            completed += 1
            if progress is not None:
                progress(BatchProgress(completed, total_questions, region.question_key))

    for page in sorted(regions_by_page):
        if cancel_event is not None and cancel_event.is_set():
            logger.warning(f"Generation cancelled before page {page}; keeping {len(result.images)} images")
            result.cancelled = True
            break

        regions = regions_by_page[page]
        if not regions:
            continue

        # Pages cached before the batch (the preview) stay; the rest are dropped once cropped
        was_cached = service.cache.get(page, scale, transparent) is not None
        try:
            raster = service.render_page(handle, page, scale, transparent)
        except RenderError as exc:
            logger.warning(f"Page {page} failed to render; failing {len(regions)} regions: {exc}")
            for region in regions:
                result.failures[region.id] = exc
                finish_region(region)
            continue
        result.pages_rendered += 1

        for region in regions:
            try:
                cropped = extract(raster, region.box)
                result.images[region.id] = cropped.to_png(compress_level=compress_level)
            except Exception as exc:
                logger.warning(f"Region {region.id} skipped: {exc}")
                result.failures[region.id] = exc
            finish_region(region)

        if not was_cached:
            service.cache.evict(page)

    logger.info(
        f"Generated {len(result.images)} images, {len(result.failures)} failures"
        + (" (cancelled)" if result.cancelled else "")
    )
    return result
