"""Shared enums and models for the NovelForge pipeline."""

from .enums import (
    STAGE_SEQUENCE,
    ChapterRefMode,
    ConsumptionSource,
    ContentBlockType,
    IssueSeverity,
    OutlineLevel,
    OutlineNodeStatus,
    PermissionLevel,
    ProgressEventType,
    PromptRole,
    PromptStageKey,
    ResolvedContentType,
    StageStatus,
    StageType,
    TaskStatus,
)
from .models import (
    PROMPT_CONFIG_FIELDS,
    BatchSummary,
    Chapter,
    FieldCard,
    Character,
    ChatMessage,
    FailedChapter,
    Memo,
    Novel,
    OutlineNode,
    OutlineSummary,
    OutlineTreeNode,
    ProcessedData,
    ProgressEvent,
    Prompt,
    PromptConfig,
    PromptContent,
    PromptGrant,
    PromptGroup,
    PromptGroupItem,
    PromptParameter,
    ResolvedContent,
    ReviewIssue,
    ReviewReport,
    ReviewSummary,
    StageRecord,
    Task,
    TaskConfig,
    Volume,
    WorldEntry,
)
