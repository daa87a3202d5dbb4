"""Outline stage and the entity extraction pass that follows it."""

from .engine import OutlineBuilder, OutlineResult, parse_outline_items
from .extractor import ExtractionResult, collect_seeds, extract_entities
from .tree import build_outline_tree

__all__ = [
    "ExtractionResult",
    "OutlineBuilder",
    "OutlineResult",
    "build_outline_tree",
    "collect_seeds",
    "extract_entities",
    "parse_outline_items",
]
