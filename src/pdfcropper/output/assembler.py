"""
Export assembly: overlay store -> export tree -> archive bytes.

Document mode embeds the source PDF. Image mode crops every region first,
either in-process through a RasterService or on a RasterWorker, and refuses
to write an archive if any image is missing.
"""

import hashlib
import threading
from typing import Callable, Dict, Optional

from .archive import ArchiveError, ArchiveMode, serialize
from .manifest import ExportTree, build_tree
from ..batch.orchestrator import BatchProgress, BatchResult, generate, group_by_page
from ..config import Settings
from ..overlays.store import OverlayStore
from ..pdf.raster import RasterService
from ..worker.client import RasterWorker
from ..worker.protocol import PROGRESS
from ..logging import get_logger

logger = get_logger(__name__)

ProgressCallback = Callable[[BatchProgress], None]

# How long to wait for a progress event before re-checking the job
_POLL_INTERVAL = 0.05


class ExportAssembler:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        service: Optional[RasterService] = None,
        worker: Optional[RasterWorker] = None,
    ) -> None:
        self.settings = settings or Settings()
        self._service = service
        self._worker = worker

    def build_tree(self, store: OverlayStore) -> ExportTree:
        return build_tree(store)

    def export(
        self,
        store: OverlayStore,
        mode: ArchiveMode,
        source_document: Optional[bytes] = None,
        progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> bytes:
        """
        Build the archive for ``store``.

        Args:
            store: Overlay store to export
            mode: Embed the source document or the per-region images
            source_document: Source PDF bytes (required in document mode; in
                image mode only used for the manifest hash)
            progress: Called once per completed question in image mode
            cancel_event: Stops image generation between pages

        Returns:
            Complete archive bytes

        Raises:
            ArchiveError: If the payload is missing, generation failed for any
                region, generation was cancelled, or writing failed
        """
        mode = ArchiveMode(mode)
        pdf_file_hash = hashlib.sha256(source_document).hexdigest() if source_document else None

        if mode is ArchiveMode.EMBED_SOURCE_DOCUMENT:
            tree = self.build_tree(store)
            return serialize(tree, mode, source_document=source_document, pdf_file_hash=pdf_file_hash)

        if pdf_file_hash is None and self._service is not None and self._service.document is not None:
            pdf_file_hash = self._service.document.sha256
        images = self.generate_images(store, progress=progress, cancel_event=cancel_event)
        tree = self.build_tree(store)
        return serialize(tree, mode, images=images, pdf_file_hash=pdf_file_hash)

    def generate_images(
        self,
        store: OverlayStore,
        progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, bytes]:
        """Crop every region of ``store``; raises ArchiveError unless all succeed."""
        regions_by_page = group_by_page(store)
        if self._worker is not None:
            result = self._generate_on_worker(regions_by_page, progress, cancel_event)
        elif self._service is not None:
            result = generate(
                self._service,
                regions_by_page,
                self.settings.scale,
                transparent=self.settings.transparent,
                progress=progress,
                cancel_event=cancel_event,
                compress_level=self.settings.png_compress_level,
            )
        else:
            raise ArchiveError("Image export needs a raster service or worker")

        if result.cancelled:
            logger.error("Image export cancelled; no archive written")
            raise ArchiveError("Image generation was cancelled")
        if result.failures:
            failed = ", ".join(sorted(result.failures))
            logger.error(f"Image export failed for {len(result.failures)} regions: {failed}")
            raise ArchiveError(f"Failed to generate images for: {failed}")
        return result.images

    def _generate_on_worker(self, regions_by_page, progress, cancel_event) -> BatchResult:
        job = self._worker.generate(regions_by_page, scale=self.settings.scale,
                                    transparent=self.settings.transparent)

        def deliver(event) -> None:
            if event is not None and event.correlation_id == job.correlation_id and event.kind == PROGRESS:
                if progress is not None:
                    progress(event.value)

        while not job.future.done():
            if cancel_event is not None and cancel_event.is_set():
                job.cancel()
            deliver(self._worker.next_event(timeout=_POLL_INTERVAL))
        # Events posted before the response are already queued
        for event in self._worker.drain_events():
            deliver(event)
        return job.result()
