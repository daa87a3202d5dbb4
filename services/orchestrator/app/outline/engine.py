"""Outline stage: book, volume and chapter outlines built as a three-level tree."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from novelforge_schemas import (
    Chapter,
    OutlineLevel,
    OutlineNode,
    OutlineSummary,
    ProgressEventType,
    PromptStageKey,
    StageType,
    Task,
    Volume,
)
from novelforge_schemas.utils.validators import StructuredOutputError, parse_json_payload

from ..context import require_novel, require_prompt, stage_request
from ..errors import PreconditionError, StageOutputError
from ..generation import GenerationCore
from ..interfaces import Stores
from ..progress import ProgressNotifier
from .extractor import ExtractionResult, extract_entities

logger = logging.getLogger(__name__)


class MainOutlineItem(BaseModel):
    title: str = Field(..., min_length=1)
    content: str = ""


class VolumeOutlineItem(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = ""


class ChapterOutlineItem(BaseModel):
    """Chapter outline entry; unknown keys survive into the stored node payload."""

    model_config = ConfigDict(extra="allow")

    title: str = Field(..., min_length=1)
    summary: str = ""
    characters: list[Any] = Field(default_factory=list)
    worldviews: list[Any] = Field(default_factory=list)


ItemT = TypeVar("ItemT", bound=BaseModel)


def parse_outline_items(text: str, model: Type[ItemT], *, label: str) -> list[ItemT]:
    """Parse a JSON list of outline items.

    A single-key object wrapping the list (``{"volumes": [...]}``) is accepted.

    Raises:
        StageOutputError: If the payload is not a list of valid items.
    """

    try:
        data = parse_json_payload(text, label=label)
    except StructuredOutputError as exc:
        raise StageOutputError(str(exc)) from exc
    if isinstance(data, dict) and len(data) == 1:
        data = next(iter(data.values()))
    if not isinstance(data, list):
        raise StageOutputError(f"{label} response must be a JSON list")
    try:
        return [model.model_validate(item) for item in data]
    except ValidationError as exc:
        raise StageOutputError(f"{label} response contained an invalid item") from exc


@dataclass
class OutlineResult:
    summary: OutlineSummary
    cost: float

    def as_output(self) -> dict[str, Any]:
        return {"outline": self.summary.model_dump()}


class OutlineBuilder:
    """Fans out one call for the book outline, one per book node, one per volume."""

    def __init__(self, core: GenerationCore, stores: Stores, progress: ProgressNotifier) -> None:
        self._core = core
        self._stores = stores
        self._progress = progress

    async def build(self, task: Task) -> OutlineResult:
        data = task.processed_data
        if not data.selected_title:
            raise PreconditionError("Select a title before generating the outline")
        novel_id = require_novel(task)
        main_prompt = require_prompt(task, PromptStageKey.MAIN_OUTLINE)
        volume_prompt = require_prompt(task, PromptStageKey.VOLUME_OUTLINE)
        chapter_prompt = require_prompt(task, PromptStageKey.CHAPTER_OUTLINE)
        await self._discard_previous(task)

        total_cost = 0.0

        async def _generate(prompt_id: int, parameters: dict[str, Any]) -> str:
            nonlocal total_cost
            result = await self._core.generate(stage_request(task, prompt_id, StageType.OUTLINE, parameters))
            total_cost += result.cost
            return result.content

        summary = OutlineSummary()
        await self._report(task, "Generating main outline")
        main_text = await _generate(
            main_prompt,
            {
                "title": data.selected_title,
                "synopsis": data.selected_synopsis or data.synopsis or "",
                "brainstorm": data.brainstorm or "",
            },
        )
        main_items = parse_outline_items(main_text, MainOutlineItem, label="Main outline")
        main_nodes = [
            await self._stores.outline.create_outline_node(
                OutlineNode(task_id=task.id, level=OutlineLevel.BOOK, title=item.title, content=item.content, order=index)
            )
            for index, item in enumerate(main_items)
        ]
        summary.main_nodes = len(main_nodes)

        volume_order = 0
        chapter_order = 0
        for position, main_node in enumerate(main_nodes, start=1):
            await self._report(task, f"Generating volume outline {position}/{len(main_nodes)}")
            volume_text = await _generate(
                volume_prompt, {"outline_title": main_node.title, "outline_content": main_node.content}
            )
            for index, item in enumerate(parse_outline_items(volume_text, VolumeOutlineItem, label="Volume outline")):
                volume = await self._stores.manuscripts.create_volume(
                    Volume(novel_id=novel_id, name=item.title, description=item.description, order=volume_order)
                )
                volume_order += 1
                volume_node = await self._stores.outline.create_outline_node(
                    OutlineNode(
                        task_id=task.id,
                        parent_id=main_node.id,
                        level=OutlineLevel.VOLUME,
                        title=item.title,
                        content=item.description,
                        order=index,
                        volume_id=volume.id,
                    )
                )
                summary.volumes += 1

                chapter_text = await _generate(
                    chapter_prompt, {"volume_title": volume_node.title, "volume_description": volume_node.content}
                )
                chapter_items = parse_outline_items(chapter_text, ChapterOutlineItem, label="Chapter outline")
                for chapter_index, chapter_item in enumerate(chapter_items):
                    chapter = await self._stores.manuscripts.create_chapter(
                        Chapter(
                            novel_id=novel_id,
                            volume_id=volume.id,
                            title=chapter_item.title,
                            summary=chapter_item.summary,
                            order=chapter_order,
                        )
                    )
                    chapter_order += 1
                    await self._stores.outline.create_outline_node(
                        OutlineNode(
                            task_id=task.id,
                            parent_id=volume_node.id,
                            level=OutlineLevel.CHAPTER,
                            title=chapter_item.title,
                            content=json.dumps(chapter_item.model_dump(), ensure_ascii=False),
                            order=chapter_index,
                            chapter_id=chapter.id,
                        )
                    )
                    summary.chapters += 1

        await self._report(task, "Extracting characters and world entries")
        extraction = await self._extract(task, novel_id)
        summary.characters_created = extraction.characters_created
        summary.world_entries_created = extraction.world_entries_created

        await self._report(task, "Outline complete")
        logger.info(
            "Outline built",
            extra={"task_id": task.id, "cost": total_cost},
        )
        return OutlineResult(summary=summary, cost=total_cost)

    async def _discard_previous(self, task: Task) -> None:
        """Drop the nodes, volumes and chapters an earlier attempt left behind."""

        nodes = await self._stores.outline.delete_outline_nodes(task.id)
        if not nodes:
            return
        await self._stores.manuscripts.delete_chapters([n.chapter_id for n in nodes if n.chapter_id is not None])
        await self._stores.manuscripts.delete_volumes([n.volume_id for n in nodes if n.volume_id is not None])
        logger.info("Discarded previous outline attempt", extra={"task_id": task.id, "nodes": len(nodes)})

    async def _extract(self, task: Task, novel_id: int) -> ExtractionResult:
        try:
            return await extract_entities(self._stores.outline, self._stores.manuscripts, task.id, novel_id)
        except Exception:
            logger.exception("Outline extraction failed", extra={"task_id": task.id})
            return ExtractionResult()

    async def _report(self, task: Task, message: str) -> None:
        await self._progress.emit(
            task.id, ProgressEventType.OUTLINE_PROGRESS, stage=StageType.OUTLINE, message=message
        )
