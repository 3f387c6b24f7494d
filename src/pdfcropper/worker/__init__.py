from .client import BatchJob, RasterWorker
from .protocol import PROGRESS, QUESTION_IMAGE, ProgressEvent, Request, Response, WorkerError
from .server import WorkerLoop

__all__ = [
    "BatchJob",
    "RasterWorker",
    "WorkerLoop",
    "ProgressEvent",
    "Request",
    "Response",
    "WorkerError",
    "PROGRESS",
    "QUESTION_IMAGE",
]
