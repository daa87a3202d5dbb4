"""Human-in-the-loop chapter generation, one chapter per caller action.

Each call writes one chapter, summarises it, reviews it and then stops so a
person can read the report before asking for the next one. Chapter positions
exposed to callers are 1-based; stored chapter orders are 0-based.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from novelforge_observability import log_context, observe_chapter_outcome
from novelforge_schemas import Chapter, ProgressEventType, ReviewReport, StageType, Task

from ..context import require_novel
from ..errors import PreconditionError
from ..interfaces import ManuscriptStore
from ..progress import ProgressNotifier
from ..review import ChapterReviewer
from ..settings import SERVICE_NAME
from .engine import ChapterWriter

logger = logging.getLogger(__name__)


@dataclass
class StepResult:
    chapter: Chapter
    report: ReviewReport
    next_chapter_order: Optional[int]
    cost: float

    @property
    def chapter_order(self) -> int:
        return self.chapter.order + 1

    def as_output(self) -> dict[str, Any]:
        return {
            "chapter": {
                "id": self.chapter.id,
                "order": self.chapter_order,
                "title": self.chapter.title,
                "content": self.chapter.content,
                "summary": self.chapter.summary,
                "word_count": self.chapter.word_count,
            },
            "review_report": self.report.model_dump(),
            "next_chapter_order": self.next_chapter_order,
            "characters_consumed": self.cost,
        }


def find_by_position(chapters: Sequence[Chapter], position: int) -> Optional[Chapter]:
    """Chapter at 1-based ``position``, or ``None``."""

    for chapter in chapters:
        if chapter.order == position - 1:
            return chapter
    return None


class StepByStepGenerator:
    def __init__(
        self,
        writer: ChapterWriter,
        reviewer: ChapterReviewer,
        manuscripts: ManuscriptStore,
        progress: ProgressNotifier,
    ) -> None:
        self._writer = writer
        self._reviewer = reviewer
        self._manuscripts = manuscripts
        self._progress = progress

    async def generate_next(self, task: Task, chapter_order: Optional[int] = None) -> StepResult:
        """Generate the chapter at ``chapter_order`` (1-based).

        Without an explicit position the chapter after the last recorded one
        is used, or the first chapter when nothing has been recorded yet.

        Raises:
            PreconditionError: If there is no chapter at that position.
        """

        novel_id = require_novel(task)
        chapters = await self._manuscripts.list_chapters(novel_id)
        if chapter_order is None:
            chapter_order = (task.processed_data.current_chapter_order or 0) + 1
        target = find_by_position(chapters, chapter_order)
        if target is None:
            raise PreconditionError("No chapter to generate at that position; build the outline first")

        with log_context(task_id=task.id, chapter_id=target.id, stage=StageType.CONTENT.value):
            try:
                return await self._run(task, target, chapters)
            except Exception as exc:
                observe_chapter_outcome("failed", service_name=SERVICE_NAME)
                logger.warning("Step generation failed", extra={"task_id": task.id, "error": str(exc)})
                await self._progress.emit(
                    task.id,
                    ProgressEventType.CHAPTER_FAILED,
                    stage=StageType.CONTENT,
                    chapter_id=target.id,
                    chapter_order=target.order + 1,
                    error=str(exc),
                )
                raise

    async def continue_generation(self, task: Task) -> StepResult:
        return await self.generate_next(task, (task.processed_data.current_chapter_order or 0) + 1)

    async def _run(self, task: Task, chapter: Chapter, chapters: Sequence[Chapter]) -> StepResult:
        position = chapter.order + 1
        await self._progress.emit(
            task.id,
            ProgressEventType.CHAPTER_STARTED,
            stage=StageType.CONTENT,
            chapter_id=chapter.id,
            chapter_order=position,
            chapter_title=chapter.title,
        )

        await self._step(task, chapter, "generating")
        chapter, generation = await self._writer.write(task, chapter, chapters)
        cost = generation.cost
        observe_chapter_outcome("generated", service_name=SERVICE_NAME)

        await self._step(task, chapter, "summarizing")
        chapter, spent = await self._reviewer.summarize(task, chapter)
        cost += spent

        await self._step(task, chapter, "reviewing")
        report, spent = await self._reviewer.review(task, chapter)
        cost += spent
        observe_chapter_outcome("reviewed", service_name=SERVICE_NAME)

        following = find_by_position(chapters, position + 1)
        next_order = following.order + 1 if following is not None else None

        await self._step(task, chapter, "awaiting_confirmation")
        await self._progress.emit(
            task.id,
            ProgressEventType.CHAPTER_COMPLETED,
            stage=StageType.CONTENT,
            chapter_id=chapter.id,
            chapter_order=position,
            chapter_title=chapter.title,
            review_report=report.model_dump(),
            has_next=following is not None,
            next_chapter_order=next_order,
        )
        logger.info(
            "Chapter awaiting confirmation",
            extra={"task_id": task.id, "chapter_id": chapter.id, "cost": cost},
        )
        return StepResult(chapter=chapter, report=report, next_chapter_order=next_order, cost=cost)

    async def _step(self, task: Task, chapter: Chapter, step: str) -> None:
        await self._progress.emit(
            task.id,
            ProgressEventType.STEP_PROGRESS,
            stage=StageType.CONTENT,
            chapter_id=chapter.id,
            step=step,
        )
