"""Idea stage."""

from .engine import IdeaResult, generate_idea, optimize_idea, stream_idea

__all__ = ["IdeaResult", "generate_idea", "optimize_idea", "stream_idea"]
