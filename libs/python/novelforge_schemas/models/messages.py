"""Chat messages, review reports and progress events."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from ..enums import IssueSeverity, ProgressEventType, PromptRole, StageType
from ..utils.validators import clamp_non_negative


class ChatMessage(BaseModel):
    role: PromptRole
    content: str

    def as_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class ReviewIssue(BaseModel):
    """A single problem flagged by the reviewer."""

    severity: IssueSeverity = IssueSeverity.LOW
    description: str = ""
    location: Optional[str] = None
    suggestion: Optional[str] = None

    @field_validator("severity", mode="before")
    @classmethod
    def normalise_severity(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class ReviewReport(BaseModel):
    score: float = 0.0
    issues: list[ReviewIssue] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    strengths: list[str] = Field(default_factory=list)

    @field_validator("score", mode="before")
    @classmethod
    def normalise_score(cls, value: Any) -> float:
        return clamp_non_negative(value)

    @property
    def needs_optimization(self) -> bool:
        return any(
            issue.severity in (IssueSeverity.HIGH, IssueSeverity.MEDIUM) for issue in self.issues
        )


class ProgressEvent(BaseModel):
    type: ProgressEventType
    task_id: int
    stage: Optional[StageType] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
