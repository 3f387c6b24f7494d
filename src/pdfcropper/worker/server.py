"""
Worker side of the raster channel.

One WorkerLoop owns one RasterService, so one document handle per worker.
Every request gets exactly one response; handler exceptions are carried
back in the response instead of ending the loop.
"""

import queue
import threading
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from .protocol import PROGRESS, QUESTION_IMAGE, SHUTDOWN, ProgressEvent, Request, Response, WorkerError
from ..batch.orchestrator import BatchProgress, BatchResult, generate
from ..config import Settings
from ..overlays.model import RegionDescriptor
from ..pdf.engine import RasterEngine
from ..pdf.ingestion import NotLoadedError
from ..pdf.raster import RasterService
from ..regions.extraction import extract
from ..logging import get_logger

logger = get_logger(__name__)


class WorkerLoop:
    def __init__(
        self,
        engine: RasterEngine,
        requests: "queue.Queue[Request]",
        responses: "queue.Queue[Response]",
        events: "queue.Queue[ProgressEvent]",
        settings: Optional[Settings] = None,
    ) -> None:
        self._engine = engine
        self._requests = requests
        self._responses = responses
        self._events = events
        self._settings = settings or Settings()
        self._service: Optional[RasterService] = None
        self._handlers: Dict[str, Callable[..., Any]] = {
            "open_document": self.open_document,
            "page_count": self.page_count,
            "page_dimensions": self.page_dimensions,
            "all_page_dimensions": self.all_page_dimensions,
            "render_page_png": self.render_page_png,
            "generate": self.generate,
            "generate_question_images": self.generate_question_images,
            "close": self.close,
        }
        # Set while handling a request; used by generate for progress tagging
        self._current_id = 0

    @property
    def service(self) -> RasterService:
        if self._service is None:
            self._service = RasterService(self._engine)
        return self._service

    def serve_forever(self) -> None:
        logger.debug("Raster worker started")
        while True:
            request = self._requests.get()
            if request.method == SHUTDOWN:
                self._shutdown()
                self._responses.put(Response(request.method, request.correlation_id))
                break
            self._responses.put(self.handle(request))
        logger.debug("Raster worker stopped")

    def handle(self, request: Request) -> Response:
        handler = self._handlers.get(request.method)
        if handler is None:
            return Response(request.method, request.correlation_id,
                            error=WorkerError(f"Unknown method: {request.method}"))

        self._current_id = request.correlation_id
        try:
            result = handler(**request.payload)
        except Exception as exc:
            logger.warning(f"Request {request.method}#{request.correlation_id} failed: {exc}")
            return Response(request.method, request.correlation_id, error=exc)
        return Response(request.method, request.correlation_id, result=result)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def open_document(self, data: bytes) -> int:
        document = self.service.open_document(data)
        return document.page_count

    def page_count(self) -> int:
        return self.service.page_count()

    def page_dimensions(self, page: int):
        return self.service.page_dimensions(None, page)

    def all_page_dimensions(self):
        return self.service.all_page_dimensions()

    def render_page_png(self, page: int, scale: Optional[float] = None,
                        transparent: Optional[bool] = None) -> bytes:
        return self.service.render_page_png(
            None,
            page,
            scale if scale is not None else self._settings.preview_scale,
            self._settings.transparent if transparent is None else transparent,
            compress_level=self._settings.png_compress_level,
        )

    def generate(
        self,
        regions_by_page: Mapping[int, Sequence[RegionDescriptor]],
        scale: Optional[float] = None,
        transparent: Optional[bool] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> BatchResult:
        correlation_id = self._current_id

        def post_progress(progress: BatchProgress) -> None:
            self._events.put(ProgressEvent(correlation_id, PROGRESS, progress))

        return generate(
            self.service,
            regions_by_page,
            scale if scale is not None else self._settings.scale,
            transparent=self._settings.transparent if transparent is None else transparent,
            progress=post_progress,
            cancel_event=cancel_event,
            compress_level=self._settings.png_compress_level,
        )

    def generate_question_images(
        self,
        questions: Mapping[str, Sequence[RegionDescriptor]],
        scale: Optional[float] = None,
        transparent: Optional[bool] = None,
    ) -> int:
        """
        Stream images question by question as ``question-image`` events.

        Each event value is ``(question_key, region_id, png_bytes)``.
        Regions whose page fails to render or whose box fails to crop are
        skipped with a warning.

        Returns:
            Number of images posted
        """
        correlation_id = self._current_id
        scale = scale if scale is not None else self._settings.scale
        transparent = self._settings.transparent if transparent is None else transparent
        posted = 0

        for question_key, regions in questions.items():
            for region in regions:
                try:
                    raster = self.service.render_page(None, region.page, scale, transparent)
                    png = extract(raster, region.box).to_png(self._settings.png_compress_level)
                except NotLoadedError:
                    raise
                except Exception as exc:
                    logger.warning(f"Region {region.id} skipped: {exc}")
                    continue
                self._events.put(ProgressEvent(correlation_id, QUESTION_IMAGE, (question_key, region.id, png)))
                posted += 1
        return posted

    def close(self) -> None:
        self.service.close()

    def _shutdown(self) -> None:
        if self._service is not None and self._service.document is not None:
            self._service.close()
