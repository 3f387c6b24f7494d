"""Batched extraction of region images."""

from .orchestrator import BatchProgress, BatchResult, generate, group_by_page

__all__ = [
    "BatchProgress",
    "BatchResult",
    "generate",
    "group_by_page",
]
