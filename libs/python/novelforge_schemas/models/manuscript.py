"""Manuscript records owned by external storage and read by the pipeline."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

from ..utils.validators import count_words

_DESCRIPTION_KEYS = ("description", "简介", "描述", "summary")


class Novel(BaseModel):
    id: int = 0
    owner_id: int
    name: str
    synopsis: Optional[str] = None


class Volume(BaseModel):
    id: int = 0
    novel_id: int
    name: str
    description: str = ""
    order: int = Field(0, ge=0)


class Chapter(BaseModel):
    id: int = 0
    novel_id: int
    volume_id: Optional[int] = None
    title: str
    summary: str = ""
    content: str = ""
    order: int = Field(0, ge=0)
    word_count: int = Field(0, ge=0)

    def with_content(self, content: str) -> "Chapter":
        return self.model_copy(update={"content": content, "word_count": count_words(content)})


class FieldCard(BaseModel):
    """Shared shape of character cards and world entries."""

    id: int = 0
    novel_id: int
    name: str
    category: str = "uncategorized"
    fields: dict[str, Any] = Field(default_factory=dict)
    order: int = Field(0, ge=0)

    @property
    def description(self) -> str:
        for key in _DESCRIPTION_KEYS:
            value = self.fields.get(key)
            if value:
                return str(value)
        return ""

    def field_lines(self) -> list[str]:
        return [f"{key}: {value}" for key, value in self.fields.items() if value]


class Character(FieldCard):
    pass


class WorldEntry(FieldCard):
    pass


class Memo(BaseModel):
    id: int = 0
    novel_id: int
    title: str
    content: str = ""
    is_pinned: bool = False
