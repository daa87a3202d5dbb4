"""Content stage: unattended batches and the step-by-step variant."""

from .engine import BatchContentGenerator, BatchResult, ChapterWriter, chunked
from .step import StepByStepGenerator, StepResult, find_by_position

__all__ = [
    "BatchContentGenerator",
    "BatchResult",
    "ChapterWriter",
    "StepByStepGenerator",
    "StepResult",
    "chunked",
    "find_by_position",
]
