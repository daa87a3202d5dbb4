"""Pydantic models shared by the pipeline and its collaborators."""

from .manuscript import Chapter, Character, FieldCard, Memo, Novel, Volume, WorldEntry
from .messages import ChatMessage, ProgressEvent, ReviewIssue, ReviewReport
from .prompts import (
    Prompt,
    PromptContent,
    PromptGrant,
    PromptGroup,
    PromptGroupItem,
    PromptParameter,
    ResolvedContent,
)
from .task import (
    PROMPT_CONFIG_FIELDS,
    BatchSummary,
    FailedChapter,
    OutlineNode,
    OutlineSummary,
    OutlineTreeNode,
    ProcessedData,
    PromptConfig,
    ReviewSummary,
    StageRecord,
    Task,
    TaskConfig,
)
