"""Content stage: materialise chapter prose in bounded concurrent chunks."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Iterator, Optional, Sequence, TypeVar

from novelforge_observability import log_context, observe_chapter_outcome
from novelforge_schemas import (
    BatchSummary,
    Chapter,
    FailedChapter,
    ProgressEventType,
    PromptStageKey,
    StageType,
    Task,
)

from ..context import build_chapter_context, chapter_parameters, require_novel, require_prompt, stage_request
from ..errors import NotFoundError
from ..generation import GenerationCore, GenerationResult
from ..interfaces import ManuscriptStore
from ..progress import ProgressNotifier
from ..settings import SERVICE_NAME

logger = logging.getLogger(__name__)

ItemT = TypeVar("ItemT")


def chunked(items: Sequence[ItemT], size: int) -> Iterator[Sequence[ItemT]]:
    size = max(1, size)
    for start in range(0, len(items), size):
        yield items[start : start + size]


@dataclass
class BatchResult:
    summary: BatchSummary
    cost: float

    def as_output(self) -> dict[str, Any]:
        return {"chapter_generation": self.summary.model_dump()}


class ChapterWriter:
    """Generates and stores the prose of one chapter."""

    def __init__(self, core: GenerationCore, manuscripts: ManuscriptStore) -> None:
        self._core = core
        self._manuscripts = manuscripts

    async def load(self, chapter_id: int) -> Chapter:
        chapter = await self._manuscripts.get_chapter(chapter_id)
        if chapter is None:
            raise NotFoundError(f"Chapter {chapter_id} not found")
        return chapter

    async def write(
        self,
        task: Task,
        chapter: Chapter,
        chapters: Optional[Sequence[Chapter]] = None,
    ) -> tuple[Chapter, GenerationResult]:
        prompt_id = require_prompt(task, PromptStageKey.CONTENT)
        context = await build_chapter_context(self._manuscripts, chapter, chapters)
        result = await self._core.generate(
            stage_request(task, prompt_id, StageType.CONTENT, chapter_parameters(chapter, context))
        )
        saved = await self._manuscripts.save_chapter(chapter.with_content(result.content))
        return saved, result


class BatchContentGenerator:
    """Runs chapter generations ``concurrency_limit`` at a time.

    Each chunk is joined before the next one starts. Per-chapter failures are
    collected into the summary; only configuration problems abort the batch.
    """

    def __init__(self, writer: ChapterWriter, manuscripts: ManuscriptStore, progress: ProgressNotifier) -> None:
        self._writer = writer
        self._manuscripts = manuscripts
        self._progress = progress

    async def run(self, task: Task, chapter_ids: Optional[Sequence[int]] = None) -> BatchResult:
        require_prompt(task, PromptStageKey.CONTENT)
        novel_id = require_novel(task)
        chapters = await self._manuscripts.list_chapters(novel_id)
        if chapter_ids is None:
            chapter_ids = [chapter.id for chapter in chapters]
        if not chapter_ids:
            logger.info("Chapter batch has nothing to generate", extra={"task_id": task.id})
            return BatchResult(summary=BatchSummary(), cost=0.0)

        total = len(chapter_ids)
        limit = task.task_config.concurrency_limit
        summary = BatchSummary()
        total_cost = 0.0
        done = 0

        logger.info(
            "Starting chapter batch",
            extra={"task_id": task.id, "chapters": total, "concurrency": limit},
        )

        for chunk in chunked(list(chapter_ids), limit):
            outcomes = await asyncio.gather(
                *(self._generate_one(task, chapter_id, chapters) for chapter_id in chunk),
                return_exceptions=True,
            )
            for chapter_id, outcome in zip(chunk, outcomes):
                if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                    raise outcome
                if isinstance(outcome, Exception):
                    summary.total_failed += 1
                    summary.failed_chapters.append(FailedChapter(chapter_id=chapter_id, error=str(outcome)))
                    observe_chapter_outcome("failed", service_name=SERVICE_NAME)
                    logger.warning(
                        "Chapter generation failed",
                        extra={"task_id": task.id, "chapter_id": chapter_id, "error": str(outcome)},
                    )
                    continue
                summary.total_generated += 1
                total_cost += outcome
                observe_chapter_outcome("generated", service_name=SERVICE_NAME)

            done += len(chunk)
            await self._progress.emit(
                task.id,
                ProgressEventType.CONTENT_PROGRESS,
                stage=StageType.CONTENT,
                current=done,
                total=total,
                percentage=round(done / total * 100, 2),
            )

        logger.info(
            "Chapter batch finished",
            extra={
                "task_id": task.id,
                "generated": summary.total_generated,
                "failed": summary.total_failed,
                "cost": total_cost,
            },
        )
        return BatchResult(summary=summary, cost=total_cost)

    async def _generate_one(self, task: Task, chapter_id: int, chapters: Sequence[Chapter]) -> float:
        with log_context(task_id=task.id, chapter_id=chapter_id, stage=StageType.CONTENT.value):
            chapter = await self._writer.load(chapter_id)
            _, result = await self._writer.write(task, chapter, chapters)
            return result.cost
