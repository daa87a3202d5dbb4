"""Enum definitions shared across the generation pipeline."""

from __future__ import annotations

from enum import Enum


class StageType(str, Enum):
    IDEA = "idea"
    TITLE = "title"
    OUTLINE = "outline"
    CONTENT = "content"
    REVIEW = "review"


STAGE_SEQUENCE: tuple[StageType, ...] = (
    StageType.IDEA,
    StageType.TITLE,
    StageType.OUTLINE,
    StageType.CONTENT,
    StageType.REVIEW,
)


class TaskStatus(str, Enum):
    IDEA_GENERATING = "idea_generating"
    TITLE_GENERATING = "title_generating"
    OUTLINE_GENERATING = "outline_generating"
    CONTENT_GENERATING = "content_generating"
    REVIEW_OPTIMIZING = "review_optimizing"
    WAITING_NEXT_STAGE = "waiting_next_stage"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StageStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class OutlineLevel(int, Enum):
    BOOK = 1
    VOLUME = 2
    CHAPTER = 3


class OutlineNodeStatus(str, Enum):
    PENDING = "pending"
    GENERATED = "generated"
    CONFIRMED = "confirmed"


class PromptRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ContentBlockType(str, Enum):
    TEXT = "text"
    CHARACTER = "character"
    WORLD = "world"


class ResolvedContentType(str, Enum):
    PROMPT = "prompt"
    CHARACTER = "character"
    WORLD = "world"


class PromptStageKey(str, Enum):
    """Keys of a shared prompt group, one per configurable prompt slot."""

    IDEA = "idea"
    IDEA_OPTIMIZE = "idea_optimize"
    TITLE = "title"
    MAIN_OUTLINE = "main_outline"
    MAIN_OUTLINE_OPTIMIZE = "main_outline_optimize"
    VOLUME_OUTLINE = "volume_outline"
    VOLUME_OUTLINE_OPTIMIZE = "volume_outline_optimize"
    CHAPTER_OUTLINE = "chapter_outline"
    CHAPTER_OUTLINE_OPTIMIZE = "chapter_outline_optimize"
    CONTENT = "content"
    REVIEW = "review"
    SUMMARY = "summary"


class PermissionLevel(int, Enum):
    VIEW = 1
    USE = 2
    EDIT = 3


class ChapterRefMode(str, Enum):
    FULL = "full"
    SUMMARY = "summary"


class ConsumptionSource(str, Enum):
    GENERATION = "generation"
    BOOK_CREATION = "book_creation"


class IssueSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ProgressEventType(str, Enum):
    STAGE_STARTED = "stage_started"
    STAGE_COMPLETED = "stage_completed"
    STAGE_FAILED = "stage_failed"
    OUTLINE_PROGRESS = "outline_progress"
    CONTENT_PROGRESS = "content_progress"
    CHAPTER_STARTED = "chapter_generation_started"
    STEP_PROGRESS = "step_progress"
    CHAPTER_COMPLETED = "chapter_generation_completed"
    CHAPTER_FAILED = "chapter_generation_failed"
