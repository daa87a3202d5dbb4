"""Static rate tables and helpers for the character-based cost unit.

Billing is expressed in character equivalents. Provider token counts are
converted to characters with a language-dependent ratio, and per-model
rates then turn input/output characters into cost units.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Mapping


class LanguageType(str, Enum):
    CHINESE = "zh"
    ENGLISH = "en"
    MIXED = "mixed"


# Characters per token.
_TOKEN_CHAR_RATIO: Mapping[LanguageType, float] = {
    LanguageType.CHINESE: 1.5,
    LanguageType.ENGLISH: 4.0,
    LanguageType.MIXED: 2.5,
}

_CJK_RE = re.compile(r"[一-龥]")
_LATIN_RE = re.compile(r"[a-zA-Z]")


@dataclass(frozen=True)
class ModelRate:
    """Characters billed per cost unit, for input and output separately."""

    input_ratio: float
    output_ratio: float
    min_input_chars: int = 0
    is_free: bool = False


_MODEL_RATES: Mapping[str, ModelRate] = {
    "gemini-2.5-pro": ModelRate(input_ratio=4.0, output_ratio=1.0, min_input_chars=0),
    "gemini-2.5-flash": ModelRate(input_ratio=10.0, output_ratio=2.5, min_input_chars=0),
    "gpt-5": ModelRate(input_ratio=4.0, output_ratio=1.0),
    "gpt-5-mini": ModelRate(input_ratio=20.0, output_ratio=5.0),
    "gpt-4.1": ModelRate(input_ratio=5.0, output_ratio=1.25),
    "mock": ModelRate(input_ratio=1.0, output_ratio=1.0),
    "mock-free": ModelRate(input_ratio=0.0, output_ratio=0.0, is_free=True),
}


def detect_language(text: str) -> LanguageType:
    """Classify text by the share of CJK characters among letters."""

    chinese = len(_CJK_RE.findall(text or ""))
    english = len(_LATIN_RE.findall(text or ""))
    total = chinese + english
    if total == 0:
        return LanguageType.MIXED
    ratio = chinese / total
    if ratio > 0.7:
        return LanguageType.CHINESE
    if ratio < 0.3:
        return LanguageType.ENGLISH
    return LanguageType.MIXED


def token_to_chars(tokens: int | float | None, language: LanguageType = LanguageType.MIXED) -> int:
    value = max(float(tokens or 0.0), 0.0)
    if not math.isfinite(value):
        return 0
    return math.ceil(value * _TOKEN_CHAR_RATIO[language])


def count_chars(text: str | None) -> int:
    return len(text) if text else 0


def model_rate(model_id: str) -> ModelRate | None:
    """Return the rate row for ``model_id`` or ``None`` when the model is unknown."""

    return _MODEL_RATES.get((model_id or "").lower())


def calculate_cost(rate: ModelRate, input_chars: int, output_chars: int) -> tuple[int, int]:
    """Return ``(input_cost, output_cost)`` in cost units.

    Args:
        rate: Rate row of the model that served the call.
        input_chars: Characters sent to the model, history included.
        output_chars: Characters produced by the model.
    """

    if rate.is_free or (rate.input_ratio == 0 and rate.output_ratio == 0):
        return 0, 0

    input_value = max(int(input_chars or 0), 0)
    output_value = max(int(output_chars or 0), 0)

    input_cost = 0
    if input_value >= rate.min_input_chars and rate.input_ratio > 0:
        input_cost = math.ceil(input_value / rate.input_ratio)

    output_cost = 0
    if rate.output_ratio > 0:
        output_cost = math.ceil(output_value / rate.output_ratio)
    return input_cost, output_cost


__all__ = [
    "LanguageType",
    "ModelRate",
    "calculate_cost",
    "count_chars",
    "detect_language",
    "model_rate",
    "token_to_chars",
]
