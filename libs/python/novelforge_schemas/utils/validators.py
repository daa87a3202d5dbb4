"""Reusable normalisation helpers for model output and counters."""

from __future__ import annotations

import json
import math
import re
from typing import Any

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")
_BLOCK_END_RE = re.compile(r"</(?:p|div|h[1-6]|li)>", re.IGNORECASE)
_BR_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]*>")
_ENTITIES = {
    "&nbsp;": " ",
    "&lt;": "<",
    "&gt;": ">",
    "&quot;": '"',
    "&#39;": "'",
    "&apos;": "'",
    "&ldquo;": '"',
    "&rdquo;": '"',
    "&amp;": "&",
}


class StructuredOutputError(ValueError):
    """Raised when model output cannot be decoded into JSON."""


def clamp_non_negative(value: Any) -> float:
    """Coerce ``value`` into a finite, non-negative float.

    ``None``, NaN, infinities, negative numbers and non-numeric input all
    collapse to ``0.0`` so that aggregate counters are never corrupted.
    """

    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number) or number < 0:
        return 0.0
    return number


def count_words(text: str | None) -> int:
    """Word count as used for manuscripts: every non-whitespace character."""

    if not text:
        return 0
    return len(_WHITESPACE_RE.sub("", text))


def unwrap_json_fence(payload: str) -> str:
    """Return the body of a fenced code block, or the stripped payload."""

    text = (payload or "").strip()
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    return text


def parse_json_payload(payload: str, *, label: str) -> Any:
    """Decode model output that may be wrapped in a fenced code block.

    Args:
        payload: Raw model text.
        label: Human readable name used in the raised error message.

    Raises:
        StructuredOutputError: If the payload is not valid JSON.
    """

    body = unwrap_json_fence(payload)
    try:
        return json.loads(body)
    except json.JSONDecodeError as exc:
        raise StructuredOutputError(f"{label} response was not valid JSON") from exc


def strip_html(html: str | None) -> str:
    """Flatten rich-text chapter content into plain text."""

    if not html:
        return ""
    text = _BLOCK_END_RE.sub("\n", html)
    text = _BR_RE.sub("\n", text)
    text = _TAG_RE.sub("", text)
    for entity, replacement in _ENTITIES.items():
        text = text.replace(entity, replacement)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()
