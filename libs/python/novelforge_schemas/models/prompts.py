"""Prompt templates, their content blocks and shared prompt groups."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from ..enums import (
    ContentBlockType,
    PermissionLevel,
    PromptRole,
    PromptStageKey,
    ResolvedContentType,
)


class PromptParameter(BaseModel):
    name: str = Field(..., min_length=1)
    required: bool = False
    description: Optional[str] = None


class PromptContent(BaseModel):
    """One ordered block of a prompt template.

    Character and world blocks with no ``reference_id`` are slots filled from
    the entities the caller selected for the call.
    """

    id: int = 0
    name: str = ""
    role: PromptRole = PromptRole.SYSTEM
    type: ContentBlockType = ContentBlockType.TEXT
    content: str = ""
    order: int = 0
    is_enabled: bool = True
    reference_id: Optional[int] = None
    parameters: list[PromptParameter] = Field(default_factory=list)


class Prompt(BaseModel):
    id: int = 0
    author_id: int
    name: str
    is_public: bool = False
    require_application: bool = False
    is_banned: bool = False
    needs_review: bool = False
    use_count: int = Field(0, ge=0)
    contents: list[PromptContent] = Field(default_factory=list)


class PromptGrant(BaseModel):
    prompt_id: int
    user_id: int
    level: PermissionLevel = PermissionLevel.USE


class PromptGroupItem(BaseModel):
    stage_key: PromptStageKey
    prompt_id: int


class PromptGroup(BaseModel):
    id: int = 0
    owner_id: int
    name: str
    items: list[PromptGroupItem] = Field(default_factory=list)


class ResolvedContent(BaseModel):
    """Transient block produced while assembling one generation call."""

    role: PromptRole
    content: str
    order: int
    source_id: int
    type: ResolvedContentType
