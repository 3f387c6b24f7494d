"""
Caller side of the raster channel.

RasterWorker starts the worker thread and a receiver thread. Every call
returns a ``concurrent.futures.Future`` resolved by correlation id when the
matching response arrives. Progress events are read with ``next_event``.
"""

import itertools
import queue
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .protocol import SHUTDOWN, ProgressEvent, Request, Response, WorkerError
from .server import WorkerLoop
from ..config import Settings
from ..overlays.model import RegionDescriptor
from ..pdf.engine import RasterEngine, load_engine
from ..logging import get_logger

logger = get_logger(__name__)


@dataclass
class BatchJob:
    """A running ``generate`` request that can be cancelled."""
    correlation_id: int
    future: Future
    cancel_event: threading.Event

    def cancel(self) -> None:
        self.cancel_event.set()

    def result(self, timeout: Optional[float] = None):
        return self.future.result(timeout=timeout)


class RasterWorker:
    def __init__(self, settings: Optional[Settings] = None, engine: Optional[RasterEngine] = None) -> None:
        self._settings = settings or Settings()
        # Resolved on the caller's thread so a missing engine fails at startup
        self._engine = engine if engine is not None else load_engine(self._settings.engine_modules)
        self._requests: "queue.Queue[Request]" = queue.Queue()
        self._responses: "queue.Queue[Response]" = queue.Queue()
        self._events: "queue.Queue[ProgressEvent]" = queue.Queue()
        self._pending: Dict[int, Future] = {}
        self._pending_lock = threading.Lock()
        self._ids = itertools.count(1)
        self._worker_thread: Optional[threading.Thread] = None
        self._receiver_thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._worker_thread is not None and self._worker_thread.is_alive()

    def start(self) -> "RasterWorker":
        if self.running:
            return self
        loop = WorkerLoop(self._engine, self._requests, self._responses, self._events, self._settings)
        self._worker_thread = threading.Thread(target=loop.serve_forever, name="raster-worker", daemon=True)
        self._receiver_thread = threading.Thread(target=self._receive, name="raster-receiver", daemon=True)
        self._worker_thread.start()
        self._receiver_thread.start()
        logger.debug(f"Started raster worker ({self._engine.name} {self._engine.version})")
        return self

    def shutdown(self, timeout: Optional[float] = 5.0) -> None:
        """Close any open document and stop both threads."""
        if not self.running:
            return
        future = self.call(SHUTDOWN)
        future.result(timeout=timeout)
        self._worker_thread.join(timeout)
        self._receiver_thread.join(timeout)
        self._worker_thread = None
        self._receiver_thread = None

    def __enter__(self) -> "RasterWorker":
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()

    def call(self, method: str, **payload: Any) -> Future:
        """
        Post a request and return a future for its response.

        Raises:
            WorkerError: If the worker has not been started
        """
        _, future = self._post(method, payload)
        return future

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def open_document(self, data: bytes) -> Future:
        """Resolves to the page count; any previous document is closed."""
        return self.call("open_document", data=data)

    def page_count(self) -> Future:
        return self.call("page_count")

    def page_dimensions(self, page: int) -> Future:
        return self.call("page_dimensions", page=page)

    def all_page_dimensions(self) -> Future:
        return self.call("all_page_dimensions")

    def render_page_png(self, page: int, scale: Optional[float] = None,
                        transparent: Optional[bool] = None) -> Future:
        return self.call("render_page_png", page=page, scale=scale, transparent=transparent)

    def generate(
        self,
        regions_by_page: Mapping[int, Sequence[RegionDescriptor]],
        scale: Optional[float] = None,
        transparent: Optional[bool] = None,
    ) -> BatchJob:
        cancel_event = threading.Event()
        correlation_id, future = self._post("generate", {
            "regions_by_page": {page: list(regions) for page, regions in regions_by_page.items()},
            "scale": scale,
            "transparent": transparent,
            "cancel_event": cancel_event,
        })
        return BatchJob(correlation_id, future, cancel_event)

    def generate_question_images(
        self,
        questions: Mapping[str, Sequence[RegionDescriptor]],
        scale: Optional[float] = None,
        transparent: Optional[bool] = None,
    ) -> Future:
        """Resolves to the number of images posted as ``question-image`` events."""
        return self.call(
            "generate_question_images",
            questions={key: list(regions) for key, regions in questions.items()},
            scale=scale,
            transparent=transparent,
        )

    def close(self) -> Future:
        return self.call("close")

    # ------------------------------------------------------------------
    # Progress channel
    # ------------------------------------------------------------------

    def next_event(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """Next progress event, or None if none arrives within ``timeout``."""
        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain_events(self) -> List[ProgressEvent]:
        events = []
        while True:
            try:
                events.append(self._events.get_nowait())
            except queue.Empty:
                return events

    # ------------------------------------------------------------------
    # Receiver
    # ------------------------------------------------------------------

    def _post(self, method: str, payload: Dict[str, Any]) -> Tuple[int, Future]:
        if not self.running:
            raise WorkerError("Raster worker is not running")
        correlation_id = next(self._ids)
        future: Future = Future()
        with self._pending_lock:
            self._pending[correlation_id] = future
        self._requests.put(Request(method, correlation_id, payload))
        return correlation_id, future

    def _receive(self) -> None:
        while True:
            response = self._responses.get()
            with self._pending_lock:
                future = self._pending.pop(response.correlation_id, None)

            if future is None:
                logger.warning(f"Dropping response for unknown request #{response.correlation_id}")
            elif response.ok:
                future.set_result(response.result)
            else:
                future.set_exception(response.error)

            if response.method == SHUTDOWN:
                break
