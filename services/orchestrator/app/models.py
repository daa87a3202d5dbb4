"""Pydantic models for the orchestrator API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from novelforge_schemas import (
    ChapterRefMode,
    ChatMessage,
    PromptConfig,
    ReviewReport,
    StageRecord,
    StageType,
    Task,
    TaskConfig,
    TaskStatus,
)

from .assembly import Mentions, SlotSelection
from .generation import GenerationRequest


class TaskCreateRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    novel_id: Optional[int] = None
    model_id: Optional[str] = None
    prompt_group_id: Optional[int] = None
    prompt_config: Optional[PromptConfig] = None
    task_config: Optional[TaskConfig] = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    auto_execute: bool = False


class ExecuteStageRequest(BaseModel):
    stage: Optional[str] = Field(None, description="Stage name or 1-based ordinal; next stage when omitted")


class TitleSelectionRequest(BaseModel):
    title: str = Field(..., min_length=1)
    synopsis: Optional[str] = None


class OptimizeRequest(BaseModel):
    feedback: str = Field(..., min_length=1)


class NextChapterRequest(BaseModel):
    chapter_order: Optional[int] = Field(None, ge=1)


class ChapterMention(BaseModel):
    chapter_id: int
    mode: ChapterRefMode = ChapterRefMode.SUMMARY


class GenerationStreamRequest(BaseModel):
    """Free-form prompt generation outside of a book task."""

    model_config = ConfigDict(protected_namespaces=())

    prompt_id: int
    parameters: dict[str, str] = Field(default_factory=dict)
    user_input: str = ""
    history: List[ChatMessage] = Field(default_factory=list)
    model_id: Optional[str] = None
    temperature: Optional[float] = Field(None, ge=0, le=2)
    max_tokens: Optional[int] = Field(None, ge=16)
    history_limit: Optional[int] = Field(None, ge=0)
    novel_id: Optional[int] = None
    character_ids: List[int] = Field(default_factory=list)
    world_ids: List[int] = Field(default_factory=list)
    mentioned_character_ids: List[int] = Field(default_factory=list)
    mentioned_world_ids: List[int] = Field(default_factory=list)
    mentioned_memo_ids: List[int] = Field(default_factory=list)
    mentioned_chapters: List[ChapterMention] = Field(default_factory=list)
    user_name: str = ""

    def to_generation_request(self, owner_id: int) -> GenerationRequest:
        return GenerationRequest(
            prompt_id=self.prompt_id,
            owner_id=owner_id,
            parameters=dict(self.parameters),
            user_input=self.user_input,
            history=list(self.history),
            model_id=self.model_id,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            history_limit=self.history_limit,
            novel_id=self.novel_id,
            slots=SlotSelection(character_ids=list(self.character_ids), world_ids=list(self.world_ids)),
            mentions=Mentions(
                character_ids=list(self.mentioned_character_ids),
                world_ids=list(self.mentioned_world_ids),
                memo_ids=list(self.mentioned_memo_ids),
                chapters=[(item.chapter_id, item.mode) for item in self.mentioned_chapters],
            ),
            user_name=self.user_name,
        )


class StageRunResponse(BaseModel):
    task: Task
    stage: StageType
    data: dict[str, Any]
    cost_consumed: float


class TaskPage(BaseModel):
    items: List[Task]
    total: int
    page: int
    limit: int
    total_pages: int


class TaskProgress(BaseModel):
    task_id: int
    status: TaskStatus
    current_stage: Optional[StageType]
    completed_stages: List[StageType]
    overall_progress: int = Field(..., ge=0, le=100)
    total_characters_consumed: float
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None


class StageRecordList(BaseModel):
    items: List[StageRecord]


class ChapterStepResponse(BaseModel):
    task: Task
    chapter: dict[str, Any]
    review_report: ReviewReport
    next_chapter_order: Optional[int] = None
    characters_consumed: float
