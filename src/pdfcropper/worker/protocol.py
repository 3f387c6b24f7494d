"""
Messages exchanged with the raster worker.

Requests and responses travel on two queues and are matched by correlation
id. Progress travels one way on a third queue and is never answered.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

SHUTDOWN = "shutdown"

# Event kinds on the progress channel
PROGRESS = "progress"
QUESTION_IMAGE = "question-image"


class WorkerError(Exception):
    """Raised for protocol-level failures (unknown method, worker not running)."""


@dataclass(frozen=True)
class Request:
    method: str
    correlation_id: int
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Response:
    method: str
    correlation_id: int
    result: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ProgressEvent:
    correlation_id: int
    kind: str
    value: Any
