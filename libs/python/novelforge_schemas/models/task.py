"""Task, stage record and outline node models for the generation workflow."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..enums import (
    OutlineLevel,
    OutlineNodeStatus,
    PromptStageKey,
    StageStatus,
    StageType,
    TaskStatus,
)
from ..utils.validators import clamp_non_negative


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskConfig(BaseModel):
    """Per-task execution knobs."""

    enable_review: bool = True
    concurrency_limit: int = Field(5, ge=1, le=50)
    temperature: Optional[float] = Field(None, ge=0, le=2)
    history_message_limit: Optional[int] = Field(None, ge=0)
    max_output_tokens: Optional[int] = Field(None, ge=16)


class PromptConfig(BaseModel):
    """One prompt id per configurable slot of the pipeline."""

    idea_prompt_id: Optional[int] = None
    idea_optimize_prompt_id: Optional[int] = None
    title_prompt_id: Optional[int] = None
    main_outline_prompt_id: Optional[int] = None
    main_outline_optimize_prompt_id: Optional[int] = None
    volume_outline_prompt_id: Optional[int] = None
    volume_outline_optimize_prompt_id: Optional[int] = None
    chapter_outline_prompt_id: Optional[int] = None
    chapter_outline_optimize_prompt_id: Optional[int] = None
    content_prompt_id: Optional[int] = None
    review_prompt_id: Optional[int] = None
    summary_prompt_id: Optional[int] = None

    def prompt_for(self, key: PromptStageKey) -> Optional[int]:
        return getattr(self, PROMPT_CONFIG_FIELDS[key])


PROMPT_CONFIG_FIELDS: dict[PromptStageKey, str] = {
    key: f"{key.value}_prompt_id" for key in PromptStageKey
}


class FailedChapter(BaseModel):
    chapter_id: int
    error: str


class OutlineSummary(BaseModel):
    main_nodes: int = 0
    volumes: int = 0
    chapters: int = 0
    characters_created: int = 0
    world_entries_created: int = 0


class BatchSummary(BaseModel):
    total_generated: int = 0
    total_failed: int = 0
    failed_chapters: list[FailedChapter] = Field(default_factory=list)


class ReviewSummary(BaseModel):
    skipped: bool = False
    total_chapters: int = 0
    reviewed: int = 0
    optimized: int = 0
    failed: int = 0
    average_score: Optional[float] = None


class ProcessedData(BaseModel):
    """Stage artifacts accumulated on a task.

    Known stage outputs are typed fields; anything else a stage writes lands
    in ``extras`` so newer writers do not break older readers.
    """

    user_parameters: dict[str, Any] = Field(default_factory=dict)
    brainstorm: Optional[str] = None
    titles: list[str] = Field(default_factory=list)
    synopsis: Optional[str] = None
    selected_title: Optional[str] = None
    selected_synopsis: Optional[str] = None
    outline: Optional[OutlineSummary] = None
    chapter_generation: Optional[BatchSummary] = None
    review: Optional[ReviewSummary] = None
    current_chapter_order: Optional[int] = Field(None, ge=1)
    extras: dict[str, Any] = Field(default_factory=dict)

    def merged(self, update: Mapping[str, Any]) -> "ProcessedData":
        """Return a copy with ``update`` applied; unknown keys go to ``extras``."""

        data = self.model_dump()
        extras = dict(self.extras)
        for key, value in update.items():
            if key in type(self).model_fields and key != "extras":
                data[key] = value.model_dump() if isinstance(value, BaseModel) else value
            else:
                extras[key] = value
        data["extras"] = extras
        return ProcessedData.model_validate(data)


class Task(BaseModel):
    """One end-to-end book generation run."""

    model_config = ConfigDict(validate_assignment=True, protected_namespaces=())

    id: int = 0
    owner_id: int
    novel_id: Optional[int] = None
    model_id: Optional[str] = None
    prompt_group_id: Optional[int] = None
    status: TaskStatus = TaskStatus.PAUSED
    current_stage: Optional[StageType] = StageType.IDEA
    prompt_config: PromptConfig = Field(default_factory=PromptConfig)
    task_config: TaskConfig = Field(default_factory=TaskConfig)
    processed_data: ProcessedData = Field(default_factory=ProcessedData)
    total_characters_consumed: float = 0.0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @field_validator("total_characters_consumed", mode="before")
    @classmethod
    def normalise_total(cls, value: Any) -> float:
        return clamp_non_negative(value)


class StageRecord(BaseModel):
    """One attempt at running a stage."""

    model_config = ConfigDict(validate_assignment=True)

    id: int = 0
    task_id: int
    stage_type: StageType
    status: StageStatus = StageStatus.PENDING
    input_data: dict[str, Any] = Field(default_factory=dict)
    output_data: Optional[dict[str, Any]] = None
    characters_consumed: float = 0.0
    retry_count: int = Field(0, ge=0)
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("characters_consumed", mode="before")
    @classmethod
    def normalise_consumed(cls, value: Any) -> float:
        return clamp_non_negative(value)


class OutlineNode(BaseModel):
    """A row of the three-level outline tree, linked to its parent by id."""

    id: int = 0
    task_id: int
    parent_id: Optional[int] = None
    level: OutlineLevel
    title: str
    content: str = ""
    order: int = Field(0, ge=0)
    status: OutlineNodeStatus = OutlineNodeStatus.GENERATED
    volume_id: Optional[int] = None
    chapter_id: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)


class OutlineTreeNode(BaseModel):
    """Outline node with its children attached, built on read."""

    node: OutlineNode
    children: list["OutlineTreeNode"] = Field(default_factory=list)


OutlineTreeNode.model_rebuild()
