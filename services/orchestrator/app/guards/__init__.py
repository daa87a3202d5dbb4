"""Prompt-injection detection and sanitisation."""

from .detector import RiskAssessment, RiskLevel, assess, is_creative_content
from .guard import PromptInjectionGuard, ProtectedInput

__all__ = [
    "PromptInjectionGuard",
    "ProtectedInput",
    "RiskAssessment",
    "RiskLevel",
    "assess",
    "is_creative_content",
]
