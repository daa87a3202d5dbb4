"""Stage executors behind one ``execute(task, stage) -> StageOutcome`` contract.

The executor owns the StageRecord lifecycle and the stage-level progress
events; the per-stage engines only build parameters, call the generation
core and persist their artefacts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from time import perf_counter
from typing import Any, Awaitable, Callable, Optional

from novelforge_observability import log_context, observe_stage_duration
from novelforge_schemas import ProgressEventType, StageRecord, StageStatus, StageType, Task
from novelforge_schemas.models.task import utcnow
from novelforge_schemas.utils.validators import clamp_non_negative

from .content import BatchContentGenerator, ChapterWriter, StepByStepGenerator
from .errors import PreconditionError
from .generation import ContentTap, GenerationCore, MetadataTap
from .idea import generate_idea, optimize_idea, stream_idea
from .interfaces import ResponseSink, Stores
from .outline import OutlineBuilder
from .progress import ProgressNotifier
from .review import ChapterReviewer, ReviewOptimizer
from .settings import SERVICE_NAME
from .stages import STREAMABLE_STAGES
from .title import generate_titles, stream_titles

logger = logging.getLogger(__name__)


@dataclass
class StageOutcome:
    data: dict[str, Any]
    cost_consumed: float
    novel_id: Optional[int] = None


class StageExecutor:
    """Dispatches a stage to its engine and records the attempt."""

    def __init__(self, core: GenerationCore, stores: Stores, progress: ProgressNotifier) -> None:
        self._core = core
        self._stores = stores
        self._progress = progress
        writer = ChapterWriter(core, stores.manuscripts)
        reviewer = ChapterReviewer(core, stores.manuscripts)
        self.outline = OutlineBuilder(core, stores, progress)
        self.batch = BatchContentGenerator(writer, stores.manuscripts, progress)
        self.review = ReviewOptimizer(reviewer, stores.manuscripts, progress)
        self.step = StepByStepGenerator(writer, reviewer, stores.manuscripts, progress)

    async def execute(self, task: Task, stage: StageType) -> StageOutcome:
        return await self._recorded(task, stage, lambda: self._dispatch(task, stage))

    async def stream(self, task: Task, stage: StageType, sink: ResponseSink) -> StageOutcome:
        """Run a streamable stage, forwarding deltas to ``sink``.

        Cost is taken from the metadata frame observed on the way out; when
        the client left before it was written, the engine's own figure is used.
        """

        if stage not in STREAMABLE_STAGES:
            raise PreconditionError(f"Stage '{stage.value}' does not support streaming")
        return await self._recorded(task, stage, lambda: self._dispatch_stream(task, stage, sink))

    async def optimize_idea(self, task: Task, feedback: str) -> StageOutcome:
        async def _run() -> StageOutcome:
            result = await optimize_idea(self._core, task, feedback)
            return StageOutcome(data=result.as_output(), cost_consumed=result.cost)

        return await self._recorded(task, StageType.IDEA, _run, extra_input={"feedback": feedback})

    async def _dispatch(self, task: Task, stage: StageType) -> StageOutcome:
        if stage is StageType.IDEA:
            idea = await generate_idea(self._core, task)
            return StageOutcome(data=idea.as_output(), cost_consumed=idea.cost)
        if stage is StageType.TITLE:
            titles = await generate_titles(self._core, self._stores.manuscripts, task)
            return StageOutcome(data=titles.as_output(), cost_consumed=titles.cost, novel_id=titles.novel_id)
        if stage is StageType.OUTLINE:
            outline = await self.outline.build(task)
            return StageOutcome(data=outline.as_output(), cost_consumed=outline.cost)
        if stage is StageType.CONTENT:
            batch = await self.batch.run(task)
            return StageOutcome(data=batch.as_output(), cost_consumed=batch.cost)
        review = await self.review.run(task)
        return StageOutcome(data=review.as_output(), cost_consumed=review.cost)

    async def _dispatch_stream(self, task: Task, stage: StageType, sink: ResponseSink) -> StageOutcome:
        metadata_tap = MetadataTap(sink)
        content_tap = ContentTap(metadata_tap)
        if stage is StageType.IDEA:
            idea = await stream_idea(self._core, task, content_tap)
            outcome = StageOutcome(data=idea.as_output(), cost_consumed=idea.cost)
        else:
            titles = await stream_titles(self._core, self._stores.manuscripts, task, content_tap)
            outcome = StageOutcome(data=titles.as_output(), cost_consumed=titles.cost, novel_id=titles.novel_id)

        if metadata_tap.metadata is not None:
            outcome.cost_consumed = clamp_non_negative(metadata_tap.metadata.get("cost"))
        logger.info(
            "Streamed stage output",
            extra={
                "task_id": task.id,
                "stage": stage.value,
                "output_chars": len(content_tap.text),
                "cost": outcome.cost_consumed,
            },
        )
        return outcome

    async def _recorded(
        self,
        task: Task,
        stage: StageType,
        run: Callable[[], Awaitable[StageOutcome]],
        *,
        extra_input: Optional[dict[str, Any]] = None,
    ) -> StageOutcome:
        previous = [r for r in await self._stores.stages.list_stage_records(task.id) if r.stage_type is stage]
        record = await self._stores.stages.create_stage_record(
            StageRecord(
                task_id=task.id,
                stage_type=stage,
                status=StageStatus.PROCESSING,
                input_data={
                    "model_id": task.model_id,
                    "prompt_config": task.prompt_config.model_dump(exclude_none=True),
                    **(extra_input or {}),
                },
                retry_count=len(previous),
                started_at=utcnow(),
            )
        )
        await self._progress.emit(task.id, ProgressEventType.STAGE_STARTED, stage=stage)

        started = perf_counter()
        with log_context(task_id=task.id, stage=stage.value, owner_id=task.owner_id):
            logger.info("Executing stage", extra={"attempt": record.retry_count + 1})
            try:
                outcome = await run()
            except Exception as exc:
                record.status = StageStatus.FAILED
                record.error_message = str(exc) or type(exc).__name__
                record.completed_at = utcnow()
                await self._stores.stages.save_stage_record(record)
                observe_stage_duration(
                    stage.value, perf_counter() - started, service_name=SERVICE_NAME, status="failure"
                )
                await self._progress.emit(
                    task.id, ProgressEventType.STAGE_FAILED, stage=stage, error=record.error_message
                )
                logger.warning("Stage failed", extra={"error": record.error_message})
                raise

            outcome.cost_consumed = clamp_non_negative(outcome.cost_consumed)
            record.status = StageStatus.COMPLETED
            record.output_data = outcome.data
            record.characters_consumed = outcome.cost_consumed
            record.completed_at = utcnow()
            await self._stores.stages.save_stage_record(record)
            observe_stage_duration(stage.value, perf_counter() - started, service_name=SERVICE_NAME)
            await self._progress.emit(
                task.id, ProgressEventType.STAGE_COMPLETED, stage=stage, cost=outcome.cost_consumed
            )
            logger.info("Stage completed", extra={"cost": outcome.cost_consumed})
        return outcome
