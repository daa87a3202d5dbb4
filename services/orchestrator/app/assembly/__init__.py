"""Prompt template resolution into model messages."""

from .engine import Mentions, PromptAssembler, SlotSelection, build_messages, trim_history

__all__ = ["Mentions", "PromptAssembler", "SlotSelection", "build_messages", "trim_history"]
