"""Macro expansion for prompt text.

Expansion runs in a fixed order: mentions, static names, variables, time,
random values, then text transforms. Both ``{{name}}`` and ``${name}``
delimiters are accepted wherever a macro takes no arguments.
"""

from __future__ import annotations

import logging
import math
import random
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from .mentions import MentionLoader

logger = logging.getLogger(__name__)

_SETVAR_RE = re.compile(
    r"\{\{setvar::([^:}]+)::([^}]+)\}\}|\$\{setvar::([^:}]+)::([^}]+)\}", re.IGNORECASE
)
_GETVAR_RE = re.compile(r"\{\{getvar::([^}]+)\}\}|\$\{getvar::([^}]+)\}", re.IGNORECASE)
_SIMPLE_VAR_RE = re.compile(r"\{\{([^:}]+)\}\}|\$\{([^:}]+)\}")
_ROLL_RE = re.compile(r"\{\{roll:([^}]+)\}\}", re.IGNORECASE)
_DICE_RE = re.compile(r"^(\d+)d(\d+)([+-]\d+)?$", re.IGNORECASE)
_RANDOM_RE = re.compile(r"\{\{random::([^}]+)\}\}", re.IGNORECASE)
_PICK_RE = re.compile(r"\{\{pick::([^}]+)\}\}", re.IGNORECASE)
_TRIM_RE = re.compile(r"\s*(?:\{\{trim\}\}|\$\{trim\})\s*", re.IGNORECASE)
_UPPER_RE = re.compile(r"\{\{upper::([^}]*)\}\}", re.IGNORECASE)
_LOWER_RE = re.compile(r"\{\{lower::([^}]*)\}\}", re.IGNORECASE)

# Names owned by other macro families; the simple variable pass leaves them alone.
RESERVED_NAMES = frozenset({"char", "user", "time", "date", "weekday", "isotime", "trim", "newline"})

_WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


def _bare(name: str) -> re.Pattern[str]:
    escaped = re.escape(name)
    return re.compile(r"\{\{" + escaped + r"\}\}|\$\{" + escaped + r"\}", re.IGNORECASE)


_USER_RE = _bare("user")
_CHAR_RE = _bare("char")
_TIME_RE = _bare("time")
_DATE_RE = _bare("date")
_WEEKDAY_RE = _bare("weekday")
_ISOTIME_RE = _bare("isotime")
_NEWLINE_RE = _bare("newline")


@dataclass
class MacroContext:
    """Per-call expansion state.

    ``variables`` is shared by every block of one call, so a ``setvar`` in an
    earlier block is visible to later ones.
    """

    owner_id: int
    novel_id: Optional[int] = None
    user_name: str = ""
    char_name: str = ""
    variables: dict[str, Any] = field(default_factory=dict)
    rng: random.Random = field(default_factory=random.Random)
    clock: Callable[[], datetime] = datetime.now


def coerce_value(raw: str) -> Any:
    if raw == "true":
        return True
    if raw == "false":
        return False
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        number = float(raw)
    except ValueError:
        return raw
    return number if math.isfinite(number) else raw


def render_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ", ".join(render_value(item) for item in value)
    return str(value)


def roll_dice(formula: str, rng: random.Random) -> int:
    """Evaluate ``NdM[+K]``; raises ``ValueError`` for anything else."""

    match = _DICE_RE.match(formula.strip())
    if not match:
        raise ValueError(f"Invalid dice formula: {formula}")
    count, sides = int(match.group(1)), int(match.group(2))
    modifier = int(match.group(3)) if match.group(3) else 0
    if not (1 <= count <= 100 and 2 <= sides <= 1000):
        raise ValueError(f"Dice out of range: {formula}")
    return sum(rng.randint(1, sides) for _ in range(count)) + modifier


class MacroResolver:
    def __init__(self, mentions: Optional[MentionLoader] = None) -> None:
        self._mentions = mentions

    async def render(self, text: str, context: MacroContext) -> str:
        """Expand every macro in ``text``; on failure the text comes back unchanged."""

        if not text:
            return text
        try:
            result = text
            if self._mentions is not None:
                result = await self._mentions.expand(result, context.novel_id)
            return self.render_sync(result, context)
        except Exception:
            logger.exception("Macro expansion failed; keeping original text")
            return text

    def render_sync(self, text: str, context: MacroContext) -> str:
        """Every pass except mentions, which need storage access."""

        result = self._static(text, context)
        result = self._variables(result, context)
        result = self._time(result, context)
        result = self._random(result, context)
        return self._text(result)

    @staticmethod
    def _static(text: str, context: MacroContext) -> str:
        text = _USER_RE.sub(lambda _: context.user_name, text)
        return _CHAR_RE.sub(lambda _: context.char_name, text)

    @staticmethod
    def _variables(text: str, context: MacroContext) -> str:
        variables = context.variables

        def setvar(match: re.Match[str]) -> str:
            name = (match.group(1) or match.group(3)).strip()
            value = (match.group(2) or match.group(4)).strip()
            variables[name] = coerce_value(value)
            return ""

        def getvar(match: re.Match[str]) -> str:
            name = (match.group(1) or match.group(2)).strip()
            if name not in variables:
                return match.group(0)
            return render_value(variables[name])

        def simple(match: re.Match[str]) -> str:
            name = (match.group(1) or match.group(2)).strip()
            if name in RESERVED_NAMES or name not in variables:
                return match.group(0)
            return render_value(variables[name])

        text = _SETVAR_RE.sub(setvar, text)
        text = _GETVAR_RE.sub(getvar, text)
        return _SIMPLE_VAR_RE.sub(simple, text)

    @staticmethod
    def _time(text: str, context: MacroContext) -> str:
        if "time" not in text and "date" not in text and "weekday" not in text:
            return text
        now = context.clock()
        text = _TIME_RE.sub(lambda _: now.strftime("%H:%M"), text)
        text = _DATE_RE.sub(lambda _: now.strftime("%Y-%m-%d"), text)
        text = _WEEKDAY_RE.sub(lambda _: _WEEKDAYS[now.weekday()], text)
        return _ISOTIME_RE.sub(lambda _: now.isoformat(), text)

    @staticmethod
    def _random(text: str, context: MacroContext) -> str:
        rng = context.rng

        def roll(match: re.Match[str]) -> str:
            try:
                return str(roll_dice(match.group(1), rng))
            except ValueError:
                return match.group(0)

        def choose(match: re.Match[str]) -> str:
            options = [option.strip() for option in match.group(1).split("::")]
            return rng.choice(options)

        def pick(match: re.Match[str]) -> str:
            values = context.variables.get(match.group(1).strip())
            if not isinstance(values, (list, tuple)) or not values:
                return match.group(0)
            return render_value(rng.choice(values))

        text = _ROLL_RE.sub(roll, text)
        text = _RANDOM_RE.sub(choose, text)
        return _PICK_RE.sub(pick, text)

    @staticmethod
    def _text(text: str) -> str:
        text = _UPPER_RE.sub(lambda m: m.group(1).upper(), text)
        text = _LOWER_RE.sub(lambda m: m.group(1).lower(), text)
        text = _NEWLINE_RE.sub("\n", text)
        return _TRIM_RE.sub("", text)
