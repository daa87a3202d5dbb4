"""Title stage: candidate titles plus a synopsis, and the manuscript record."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from novelforge_schemas import Novel, PromptStageKey, StageType, Task
from novelforge_schemas.utils.validators import StructuredOutputError, parse_json_payload

from ..context import require_prompt, stage_request
from ..errors import StageOutputError
from ..generation import GenerationCore, GenerationRequest
from ..interfaces import ManuscriptStore, ResponseSink

logger = logging.getLogger(__name__)

PROVISIONAL_NAME = "Untitled"


class TitlePayload(BaseModel):
    titles: list[str] = Field(default_factory=list)
    synopsis: str = ""

    @field_validator("titles", mode="before")
    @classmethod
    def clean_titles(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [str(item).strip() for item in value if item is not None and str(item).strip()]
        return value

    @field_validator("synopsis", mode="before")
    @classmethod
    def clean_synopsis(cls, value: Any) -> Any:
        return "" if value is None else value


@dataclass
class TitleResult:
    titles: list[str]
    synopsis: str
    novel_id: int
    cost: float

    def as_output(self) -> dict[str, Any]:
        return {"titles": self.titles, "synopsis": self.synopsis}


def parse_title_payload(text: str) -> TitlePayload:
    """Parse ``{"titles": [...], "synopsis": "..."}``, fenced or bare.

    Raises:
        StageOutputError: If the text is not a JSON object of that shape.
    """

    try:
        data = parse_json_payload(text, label="Title")
    except StructuredOutputError as exc:
        raise StageOutputError(str(exc)) from exc
    if not isinstance(data, dict):
        raise StageOutputError("Title response must be a JSON object")
    try:
        return TitlePayload.model_validate(data)
    except ValidationError as exc:
        raise StageOutputError("Title response did not match the expected shape") from exc


def title_request(task: Task) -> GenerationRequest:
    prompt_id = require_prompt(task, PromptStageKey.TITLE)
    return stage_request(
        task, prompt_id, StageType.TITLE, {"brainstorm": task.processed_data.brainstorm or ""}
    )


async def generate_titles(core: GenerationCore, manuscripts: ManuscriptStore, task: Task) -> TitleResult:
    generation = await core.generate(title_request(task))
    return await finalize_titles(manuscripts, task, generation.content, generation.cost)


async def stream_titles(
    core: GenerationCore, manuscripts: ManuscriptStore, task: Task, sink: ResponseSink
) -> TitleResult:
    generation = await core.stream_to(sink, title_request(task))
    return await finalize_titles(manuscripts, task, generation.content, generation.cost)


async def finalize_titles(
    manuscripts: ManuscriptStore, task: Task, text: str, cost: float
) -> TitleResult:
    """Parse the model output and make sure the task has a manuscript."""

    payload = parse_title_payload(text)
    novel_id: Optional[int] = task.novel_id
    if not novel_id:
        novel = await manuscripts.create_novel(
            Novel(
                owner_id=task.owner_id,
                name=payload.titles[0] if payload.titles else PROVISIONAL_NAME,
                synopsis=payload.synopsis,
            )
        )
        novel_id = novel.id
        logger.info("Manuscript created for task", extra={"task_id": task.id})
    return TitleResult(titles=payload.titles, synopsis=payload.synopsis, novel_id=novel_id, cost=cost)
