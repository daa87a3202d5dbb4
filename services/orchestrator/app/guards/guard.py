"""Injection defense applied when a caller runs someone else's prompt."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping

from . import sanitizer
from .detector import RiskAssessment, RiskLevel, assess, is_creative_content
from .prompts import directive_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProtectedInput:
    original: str
    protected: str
    risk: RiskAssessment

    @property
    def modified(self) -> bool:
        return self.protected != self.original


class PromptInjectionGuard:
    """Scores, escapes and labels untrusted text.

    Creative material at MEDIUM risk or below is only labelled, never escaped,
    because story text routinely contains dialogue that reads like commands.
    """

    def protect_input(self, text: str, *, mark_boundaries: bool = True) -> ProtectedInput:
        risk = assess(text)
        protected = text
        if is_creative_content(text) and risk.level <= RiskLevel.MEDIUM:
            logger.debug("Creative content detected; skipping sanitisation")
        elif risk.level >= RiskLevel.MEDIUM:
            protected = sanitizer.sanitize(text, risk)
        protected = sanitizer.add_warning(protected, risk)
        if mark_boundaries:
            protected = sanitizer.mark_boundaries(protected, "input")

        if risk.level >= RiskLevel.HIGH:
            logger.warning(
                "High risk user input",
                extra={
                    "risk_level": risk.level.name.lower(),
                    "risk_score": risk.score,
                    "categories": sorted(risk.categories),
                },
            )
        return ProtectedInput(original=text, protected=protected, risk=risk)

    def protect_parameters(self, params: Mapping[str, str]) -> dict[str, str]:
        """Protect each value in place; boundary markers would break substitution."""

        protected: dict[str, str] = {}
        for key, value in params.items():
            result = self.protect_input(value, mark_boundaries=False)
            protected[key] = result.protected
            if result.modified:
                logger.warning(
                    "Parameter sanitised",
                    extra={"parameter": key, "original_length": len(value), "protected_length": len(result.protected)},
                )
        return protected

    @staticmethod
    def directive(level: RiskLevel) -> str:
        return directive_for(level)

    @staticmethod
    def is_safe(text: str) -> bool:
        return assess(text).level <= RiskLevel.LOW
