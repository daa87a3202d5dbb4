"""Review stage."""

from .engine import ChapterReview, ChapterReviewer, ReviewOptimizer, ReviewResult, parse_review_report

__all__ = ["ChapterReview", "ChapterReviewer", "ReviewOptimizer", "ReviewResult", "parse_review_report"]
