"""Region descriptors and the overlay store."""

from .model import (
    Box,
    CounterStyle,
    MarkingScheme,
    QuestionType,
    RegionDescriptor,
    composite_id,
    question_key,
)
from .store import (
    ConcurrentMutationError,
    InvalidRegionError,
    OverlayStore,
    StoreEvent,
    UnknownRegionError,
)

__all__ = [
    "Box",
    "CounterStyle",
    "MarkingScheme",
    "QuestionType",
    "RegionDescriptor",
    "composite_id",
    "question_key",
    "ConcurrentMutationError",
    "InvalidRegionError",
    "OverlayStore",
    "StoreEvent",
    "UnknownRegionError",
]
