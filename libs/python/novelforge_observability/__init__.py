"""Logging and metrics helpers shared by NovelForge services."""

from .logging import current_log_context, log_context, setup_logging
from .metrics import (
    observe_chapter_outcome,
    observe_cost_units,
    observe_provider_response,
    observe_stage_duration,
    setup_fastapi_metrics,
)

__all__ = [
    "setup_logging",
    "log_context",
    "current_log_context",
    "setup_fastapi_metrics",
    "observe_provider_response",
    "observe_stage_duration",
    "observe_cost_units",
    "observe_chapter_outcome",
]
