"""Review stage: summarise, review and, when needed, optimise each chapter."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from pydantic import ValidationError

from novelforge_observability import observe_chapter_outcome
from novelforge_schemas import (
    Chapter,
    ProgressEventType,
    PromptStageKey,
    ReviewReport,
    ReviewSummary,
    StageType,
    Task,
)
from novelforge_schemas.utils.validators import StructuredOutputError, parse_json_payload

from ..context import (
    build_chapter_context,
    chapter_parameters,
    require_novel,
    require_prompt,
    stage_request,
)
from ..errors import StageOutputError
from ..generation import GenerationCore
from ..interfaces import ManuscriptStore
from ..progress import ProgressNotifier
from ..settings import SERVICE_NAME

logger = logging.getLogger(__name__)

# Summaries shorter than this are regenerated before review.
MIN_SUMMARY_CHARS = 20


def parse_review_report(text: str) -> ReviewReport:
    """Parse the reviewer's JSON report.

    Raises:
        StageOutputError: If the text is not a JSON object matching the report shape.
    """

    try:
        data = parse_json_payload(text, label="Review")
    except StructuredOutputError as exc:
        raise StageOutputError(str(exc)) from exc
    if not isinstance(data, dict):
        raise StageOutputError("Review response must be a JSON object")
    try:
        return ReviewReport.model_validate(data)
    except ValidationError as exc:
        raise StageOutputError("Review response did not match the report shape") from exc


@dataclass
class ChapterReview:
    chapter: Chapter
    report: ReviewReport
    optimized: bool
    cost: float


class ChapterReviewer:
    """Per-chapter summary, review and optimisation calls."""

    def __init__(self, core: GenerationCore, manuscripts: ManuscriptStore) -> None:
        self._core = core
        self._manuscripts = manuscripts

    async def summarize(self, task: Task, chapter: Chapter) -> tuple[Chapter, float]:
        prompt_id = require_prompt(task, PromptStageKey.SUMMARY)
        result = await self._core.generate(
            stage_request(
                task,
                prompt_id,
                StageType.REVIEW,
                {"chapter_title": chapter.title, "chapter_content": chapter.content},
            )
        )
        updated = await self._manuscripts.save_chapter(chapter.model_copy(update={"summary": result.content.strip()}))
        return updated, result.cost

    async def review(self, task: Task, chapter: Chapter) -> tuple[ReviewReport, float]:
        prompt_id = require_prompt(task, PromptStageKey.REVIEW)
        result = await self._core.generate(
            stage_request(
                task,
                prompt_id,
                StageType.REVIEW,
                {"chapter_title": chapter.title, "chapter_content": chapter.content},
            )
        )
        return parse_review_report(result.content), result.cost

    async def optimize(
        self,
        task: Task,
        chapter: Chapter,
        report: ReviewReport,
        chapters: Optional[Sequence[Chapter]] = None,
    ) -> tuple[Chapter, float]:
        """Rewrite the chapter with the content prompt, steered by the review report."""

        prompt_id = require_prompt(task, PromptStageKey.CONTENT)
        context = await build_chapter_context(self._manuscripts, chapter, chapters)
        parameters: dict[str, Any] = chapter_parameters(chapter, context)
        parameters.update(
            {
                "original_content": chapter.content,
                "review_report": report.model_dump_json(),
            }
        )
        result = await self._core.generate(stage_request(task, prompt_id, StageType.REVIEW, parameters))
        updated = await self._manuscripts.save_chapter(chapter.with_content(result.content))
        return updated, result.cost

    async def run(self, task: Task, chapter: Chapter, chapters: Optional[Sequence[Chapter]] = None) -> ChapterReview:
        cost = 0.0
        if len((chapter.summary or "").strip()) < MIN_SUMMARY_CHARS:
            chapter, spent = await self.summarize(task, chapter)
            cost += spent
        report, spent = await self.review(task, chapter)
        cost += spent
        optimized = False
        if report.needs_optimization:
            chapter, spent = await self.optimize(task, chapter, report, chapters)
            cost += spent
            optimized = True
        return ChapterReview(chapter=chapter, report=report, optimized=optimized, cost=cost)


@dataclass
class ReviewResult:
    summary: ReviewSummary
    cost: float

    def as_output(self) -> dict[str, Any]:
        return {"review": self.summary.model_dump()}


class ReviewOptimizer:
    """Walks every chapter in order; a failing chapter is counted, not raised."""

    def __init__(self, reviewer: ChapterReviewer, manuscripts: ManuscriptStore, progress: ProgressNotifier) -> None:
        self._reviewer = reviewer
        self._manuscripts = manuscripts
        self._progress = progress

    async def run(self, task: Task) -> ReviewResult:
        if not task.task_config.enable_review:
            logger.info("Review disabled for task", extra={"task_id": task.id})
            return ReviewResult(summary=ReviewSummary(skipped=True), cost=0.0)

        novel_id = require_novel(task)
        chapters = await self._manuscripts.list_chapters(novel_id)
        summary = ReviewSummary(total_chapters=len(chapters))
        total_score = 0.0
        total_cost = 0.0

        for position, chapter in enumerate(chapters, start=1):
            try:
                outcome = await self._reviewer.run(task, chapter, chapters)
            except Exception as exc:
                summary.failed += 1
                observe_chapter_outcome("failed", service_name=SERVICE_NAME)
                logger.warning(
                    "Chapter review failed",
                    extra={"task_id": task.id, "chapter_id": chapter.id, "error": str(exc)},
                )
            else:
                chapters[position - 1] = outcome.chapter
                summary.reviewed += 1
                total_score += outcome.report.score
                total_cost += outcome.cost
                observe_chapter_outcome("reviewed", service_name=SERVICE_NAME)
                if outcome.optimized:
                    summary.optimized += 1
                    observe_chapter_outcome("optimized", service_name=SERVICE_NAME)

            await self._progress.emit(
                task.id,
                ProgressEventType.CONTENT_PROGRESS,
                stage=StageType.REVIEW,
                current=position,
                total=len(chapters),
                percentage=round(position / len(chapters) * 100, 2),
            )

        if summary.reviewed:
            summary.average_score = round(total_score / summary.reviewed, 2)
        return ReviewResult(summary=summary, cost=total_cost)
