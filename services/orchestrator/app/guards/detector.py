"""Weighted pattern scoring for prompt-injection attempts."""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Mapping, Sequence

logger = logging.getLogger(__name__)


class RiskLevel(IntEnum):
    SAFE = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


def _compile(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(pattern, re.IGNORECASE) for pattern in patterns)


INJECTION_PATTERNS: Mapping[str, Sequence[re.Pattern[str]]] = {
    "override_commands": _compile(
        r"忽略.*(?:之前|以上|所有).*(?:指令|提示|规则|设定)",
        r"ignore\s+(?:all|previous|above)\s+(?:instructions?|prompts?|rules?)",
        r"forget\s+(?:everything|all)\s+(?:above|before)",
        r"disregard.*(?:previous|prior|above).*(?:instructions?|prompts?)",
    ),
    "role_switching": _compile(
        r"(?:现在|从现在开始|接下来).*你(?:是|变成|扮演)",
        r"(?:---.*作废.*---|===.*结束.*===)",
        r"new\s+(?:role|character|persona):",
        r"你.*(?:不再是|改为|变成)",
        r"from\s+now\s+on.*you\s+(?:are|will\s+be)",
    ),
    "tag_injection": _compile(
        r"</?(?:system|user|assistant|role)>",
        r"\[(?:SYSTEM|USER|ASSISTANT)\]",
        r"<\|(?:im_start|im_end)\|>",
    ),
    "parameter_escape": _compile(
        r"\}\}.*\{\{",
        r"\$\{[^}]*\}",
        r"\{\{[^}]*\}\}.*\{\{",
    ),
    "delimiter_confusion": _compile(
        r"---\s*(?:系统|system|prompt)\s*---",
        r"###\s*(?:新|new)\s*(?:指令|instruction)",
        r"={3,}\s*(?:end|结束|over)\s*={3,}",
    ),
    "prompt_leakage": _compile(
        r"(?:请|请把|能否|能否把).*(?:完整|全部|原样).*(?:系统提示|提示词|指令|prompt|system\s*message).*(?:输出|显示|打印|给我|给我看)",
        r"(?:重复|再说一遍|再发送).*(?:你的|一次|的).*(?:指令|系统提示|提示词)",
        r"(?:你的|你收到).*(?:原始|最初|主要|核心).*(?:指令|提示词|prompt)",
        r"show\s+me\s+(?:your|the)\s+(?:prompt|system\s*message|instructions?)",
        r"(?:print|display|reveal|output).*(?:your|the).*(?:prompt|system\s*message)",
        r"what.*(?:your|you).*(?:original|initial)\s+(?:prompt|instruction)",
    ),
    "indirect_leakage": _compile(
        r"(?:假设|如果).*你.*是.*助手.*请回复.*指令",
        r"(?:用.*话|简短|简单).*(?:总结|描述|说明).*(?:你的|你).*(?:职责|作用|工作)",
        r"(?:你.*的主要|核心).*(?:功能|作用|目标|任务)",
        r"what\s+(?:are\s+)?(?:your|you).*(?:instructions?|prompt|system\s*message)",
        r"(?:summarize|describe).*(?:your|you).*(?:role|purpose|task)",
    ),
}

PATTERN_WEIGHTS: Mapping[str, int] = {
    "override_commands": 25,
    "role_switching": 20,
    "tag_injection": 30,
    "parameter_escape": 25,
    "delimiter_confusion": 15,
    "prompt_leakage": 35,
    "indirect_leakage": 20,
}

DEFAULT_WEIGHT = 10
CATEGORY_BONUS = 0.2

# Lower bounds of each level, highest first.
RISK_THRESHOLDS: tuple[tuple[RiskLevel, int], ...] = (
    (RiskLevel.CRITICAL, 80),
    (RiskLevel.HIGH, 60),
    (RiskLevel.MEDIUM, 40),
    (RiskLevel.LOW, 20),
)

_STORY_INDICATORS = (
    re.compile(r"(?:小说|故事|剧本|情节|章节|角色|主角)"),
    re.compile(r"(?:写|创作|续写|生成).*(?:内容|文章|段落)"),
    re.compile(r"第[一二三四五六七八九十\d]+(?:章|节|部分)"),
    re.compile(r"(?:novel|story|chapter|plot|character)", re.IGNORECASE),
)

_DIALOGUE_PATTERNS = (
    re.compile(r"[「『“\"][^\"”」』]+[」』”\"]"),
    re.compile(r"(?:说|道|问|答)[:：]"),
    re.compile(r"\b(?:said|asked|replied|whispered)\b", re.IGNORECASE),
)


@dataclass(frozen=True)
class DetectedPattern:
    category: str
    pattern: str
    match: str
    position: int


@dataclass(frozen=True)
class RiskAssessment:
    level: RiskLevel
    score: int
    detected_patterns: tuple[DetectedPattern, ...] = field(default_factory=tuple)

    @property
    def categories(self) -> set[str]:
        return {pattern.category for pattern in self.detected_patterns}


SAFE_ASSESSMENT = RiskAssessment(level=RiskLevel.SAFE, score=0)


def detect_patterns(text: str) -> list[DetectedPattern]:
    detected: list[DetectedPattern] = []
    for category, patterns in INJECTION_PATTERNS.items():
        for pattern in patterns:
            for match in pattern.finditer(text):
                detected.append(
                    DetectedPattern(
                        category=category,
                        pattern=pattern.pattern,
                        match=match.group(0),
                        position=match.start(),
                    )
                )
    return detected


def score_patterns(patterns: Sequence[DetectedPattern]) -> int:
    """Sum category weights with 1/sqrt(n) decay, then add 20% per extra category."""

    if not patterns:
        return 0
    counts: dict[str, int] = {}
    score = 0.0
    for pattern in patterns:
        counts[pattern.category] = counts.get(pattern.category, 0) + 1
        weight = PATTERN_WEIGHTS.get(pattern.category, DEFAULT_WEIGHT)
        score += weight / math.sqrt(counts[pattern.category])
    if len(counts) > 1:
        score *= 1 + (len(counts) - 1) * CATEGORY_BONUS
    return min(100, int(math.floor(score + 0.5)))


def risk_level(score: int) -> RiskLevel:
    for level, threshold in RISK_THRESHOLDS:
        if score >= threshold:
            return level
    return RiskLevel.SAFE


def assess(text: str) -> RiskAssessment:
    if not text or not text.strip():
        return SAFE_ASSESSMENT
    patterns = detect_patterns(text)
    score = score_patterns(patterns)
    level = risk_level(score)
    if level >= RiskLevel.HIGH:
        logger.warning(
            "High risk input detected",
            extra={"risk_level": level.name.lower(), "risk_score": score},
        )
    return RiskAssessment(level=level, score=score, detected_patterns=tuple(patterns))


def is_creative_content(text: str) -> bool:
    """Heuristic for story material, which tolerates instruction-like phrasing."""

    return any(pattern.search(text) for pattern in _STORY_INDICATORS) or any(
        pattern.search(text) for pattern in _DIALOGUE_PATTERNS
    )
