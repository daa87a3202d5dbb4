"""Macro and mention expansion for prompt text."""

from .mentions import MentionLoader
from .resolver import MacroContext, MacroResolver

__all__ = ["MacroContext", "MacroResolver", "MentionLoader"]
