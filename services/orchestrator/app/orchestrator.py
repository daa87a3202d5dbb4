"""Task orchestrator: the state machine over a book generation task.

``status`` is always derived from ``current_stage`` when a stage starts or
resumes; side states (paused, waiting, failed, cancelled) only ever replace
it. Completing a stage advances ``current_stage`` except for the title stage,
which waits for an explicit title selection, and the review stage, which
completes the task.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Any, Awaitable, Callable, Mapping, Optional

from novelforge_observability import log_context
from novelforge_schemas import (
    STAGE_SEQUENCE,
    OutlineTreeNode,
    PromptConfig,
    StageRecord,
    StageStatus,
    StageType,
    Task,
    TaskConfig,
    TaskStatus,
)
from novelforge_schemas.models.task import PROMPT_CONFIG_FIELDS, ProcessedData, utcnow
from novelforge_schemas.utils.validators import clamp_non_negative

from .content import StepResult
from .errors import AuthorizationError, InsufficientBalanceError, NotFoundError, PreconditionError
from .executor import StageExecutor, StageOutcome
from .interfaces import Ledger, ResponseSink, Stores
from .models import TaskCreateRequest, TaskPage, TaskProgress
from .outline import build_outline_tree
from .progress import ProgressNotifier
from .settings import OrchestratorSettings
from .stages import (
    FINISHED_STATUSES,
    STAGE_PROGRESS_STEP,
    TERMINAL_STATUSES,
    following_stage,
    in_progress_status,
    stage_index,
)

logger = logging.getLogger(__name__)


def add_cost(total: Any, increment: Any) -> float:
    """Running total plus a finite, non-negative increment."""

    return clamp_non_negative(total) + clamp_non_negative(increment)


class TaskOrchestrator:
    def __init__(
        self,
        stores: Stores,
        ledger: Ledger,
        executor: StageExecutor,
        settings: OrchestratorSettings,
        progress: Optional[ProgressNotifier] = None,
    ) -> None:
        self._stores = stores
        self._ledger = ledger
        self._executor = executor
        self._settings = settings
        self._progress = progress or ProgressNotifier()
        self._background: set[asyncio.Task[None]] = set()

    # creation and queries

    async def create_task(self, owner_id: int, request: TaskCreateRequest) -> Task:
        """Create a task, optionally starting the idea stage in the background.

        Raises:
            PreconditionError: If the owner already has the maximum of active tasks.
            InsufficientBalanceError: If the balance is below the task minimum.
            NotFoundError: If the prompt group or manuscript does not exist.
        """

        active = await self._stores.tasks.count_active_tasks(owner_id)
        if active >= self._settings.max_active_tasks:
            raise PreconditionError(
                f"At most {self._settings.max_active_tasks} tasks may be active at once; "
                "finish or cancel one first"
            )
        available = await self._ledger.available_balance(owner_id)
        if available < self._settings.min_task_balance:
            raise InsufficientBalanceError(
                f"A book task needs at least {self._settings.min_task_balance} characters of balance"
            )

        if request.novel_id is not None:
            novel = await self._stores.manuscripts.get_novel(request.novel_id)
            if novel is None:
                raise NotFoundError(f"Novel {request.novel_id} not found")
            if novel.owner_id != owner_id:
                raise AuthorizationError("Novel belongs to another user")

        prompt_config = request.prompt_config or PromptConfig()
        if request.prompt_group_id is not None:
            prompt_config = await self._expand_group(request.prompt_group_id)

        task_config = request.task_config or TaskConfig(concurrency_limit=self._settings.concurrency_limit)
        task = await self._stores.tasks.create_task(
            Task(
                owner_id=owner_id,
                novel_id=request.novel_id,
                model_id=request.model_id or self._settings.default_model,
                prompt_group_id=request.prompt_group_id,
                status=TaskStatus.IDEA_GENERATING if request.auto_execute else TaskStatus.PAUSED,
                current_stage=StageType.IDEA,
                prompt_config=prompt_config,
                task_config=task_config,
                processed_data=ProcessedData(user_parameters=dict(request.parameters)),
            )
        )
        logger.info(
            "Task created",
            extra={"task_id": task.id, "owner_id": owner_id, "auto_execute": request.auto_execute},
        )

        if request.auto_execute:
            self._spawn(self._auto_execute(task.id, owner_id))
        return task

    async def get_task(self, task_id: int, owner_id: int) -> Task:
        task = await self._stores.tasks.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        if task.owner_id != owner_id:
            raise AuthorizationError("You do not own this task")
        return task

    async def list_tasks(self, owner_id: int, page: int = 1, limit: int = 20) -> TaskPage:
        page = max(1, page)
        limit = max(1, min(limit, 100))
        items, total = await self._stores.tasks.list_tasks(owner_id, offset=(page - 1) * limit, limit=limit)
        return TaskPage(
            items=items,
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if total else 0,
        )

    async def get_progress(self, task_id: int, owner_id: int) -> TaskProgress:
        task = await self.get_task(task_id, owner_id)
        completed = await self._completed_stages(task.id)
        return TaskProgress(
            task_id=task.id,
            status=task.status,
            current_stage=task.current_stage,
            completed_stages=completed,
            overall_progress=min(100, STAGE_PROGRESS_STEP * len(completed)),
            total_characters_consumed=task.total_characters_consumed,
            created_at=task.created_at,
            updated_at=task.updated_at,
            completed_at=task.completed_at,
        )

    async def get_stage_records(self, task_id: int, owner_id: int) -> list[StageRecord]:
        task = await self.get_task(task_id, owner_id)
        return await self._stores.stages.list_stage_records(task.id)

    async def get_outline_tree(self, task_id: int, owner_id: int) -> list[OutlineTreeNode]:
        task = await self.get_task(task_id, owner_id)
        return build_outline_tree(await self._stores.outline.list_outline_nodes(task.id))

    # stage execution

    async def execute_stage(
        self, task_id: int, owner_id: int, stage: Optional[StageType] = None
    ) -> tuple[Task, StageType, StageOutcome]:
        """Run ``stage`` (or the next one) and advance the task.

        Raises:
            PreconditionError: If the task is finished or the stage would skip ahead.
        """

        task = await self.get_task(task_id, owner_id)
        target = stage or await self._next_stage(task)
        task, outcome = await self._run_stage(task, target, lambda: self._executor.execute(task, target))
        return task, target, outcome

    async def stream_stage(
        self, task_id: int, owner_id: int, stage: StageType, sink: ResponseSink
    ) -> tuple[Task, StageOutcome]:
        task = await self.get_task(task_id, owner_id)
        return await self._run_stage(task, stage, lambda: self._executor.stream(task, stage, sink))

    async def optimize_stage(
        self, task_id: int, owner_id: int, stage: StageType, feedback: str
    ) -> tuple[Task, StageOutcome]:
        """Rewrite a completed stage's output from caller feedback; idea only."""

        if stage is not StageType.IDEA:
            raise PreconditionError(f"Optimisation is not supported for the '{stage.value}' stage")
        task = await self.get_task(task_id, owner_id)
        self._ensure_open(task)
        if StageType.IDEA not in await self._completed_stages(task.id):
            raise PreconditionError("Generate the idea before optimising it")

        outcome = await self._executor.optimize_idea(task, feedback)
        task = await self.get_task(task_id, owner_id)
        task.processed_data = task.processed_data.merged(outcome.data)
        task.total_characters_consumed = add_cost(task.total_characters_consumed, outcome.cost_consumed)
        return await self._save(task), outcome

    # state transitions

    async def pause_task(self, task_id: int, owner_id: int) -> Task:
        task = await self.get_task(task_id, owner_id)
        self._ensure_not_terminal(task, "paused")
        task.status = TaskStatus.PAUSED
        return await self._save(task)

    async def resume_task(self, task_id: int, owner_id: int) -> Task:
        task = await self.get_task(task_id, owner_id)
        if task.status is not TaskStatus.PAUSED:
            raise PreconditionError(f"Only a paused task can be resumed, not a {task.status.value} one")
        task.status = in_progress_status(task.current_stage)
        return await self._save(task)

    async def cancel_task(self, task_id: int, owner_id: int) -> Task:
        task = await self.get_task(task_id, owner_id)
        if task.status is TaskStatus.COMPLETED:
            raise PreconditionError("A completed task cannot be cancelled")
        task.status = TaskStatus.CANCELLED
        logger.info("Task cancelled", extra={"task_id": task.id})
        return await self._save(task)

    async def update_prompt_config(self, task_id: int, owner_id: int, changes: Mapping[str, Any]) -> Task:
        """Edit a free-form prompt configuration.

        Raises:
            PreconditionError: If the configuration came from a prompt group.
        """

        task = await self.get_task(task_id, owner_id)
        if task.prompt_group_id is not None:
            raise PreconditionError("Prompt configuration from a prompt group cannot be edited")
        unknown = set(changes) - set(PromptConfig.model_fields)
        if unknown:
            raise PreconditionError(f"Unknown prompt configuration fields: {', '.join(sorted(unknown))}")
        task.prompt_config = PromptConfig.model_validate({**task.prompt_config.model_dump(), **changes})
        return await self._save(task)

    async def update_title_and_synopsis(
        self, task_id: int, owner_id: int, title: str, synopsis: Optional[str] = None
    ) -> Task:
        """Record the chosen title and move the task on to the outline stage."""

        task = await self.get_task(task_id, owner_id)
        self._ensure_open(task)
        if not task.processed_data.titles:
            raise PreconditionError("Generate titles before selecting one")

        chosen_synopsis = synopsis if synopsis is not None else task.processed_data.synopsis
        task.processed_data = task.processed_data.merged(
            {"selected_title": title, "selected_synopsis": chosen_synopsis}
        )
        if task.novel_id:
            novel = await self._stores.manuscripts.get_novel(task.novel_id)
            if novel is not None:
                await self._stores.manuscripts.save_novel(
                    novel.model_copy(update={"name": title, "synopsis": chosen_synopsis or novel.synopsis})
                )
        task.current_stage = StageType.OUTLINE
        task.status = TaskStatus.WAITING_NEXT_STAGE
        return await self._save(task)

    # step-by-step content

    async def generate_next_chapter(
        self, task_id: int, owner_id: int, chapter_order: Optional[int] = None
    ) -> tuple[Task, StepResult]:
        task = await self.get_task(task_id, owner_id)
        self._ensure_open(task)
        result = await self._executor.step.generate_next(task, chapter_order)
        return await self._record_step(task_id, owner_id, result), result

    async def continue_generation(self, task_id: int, owner_id: int) -> tuple[Task, StepResult]:
        task = await self.get_task(task_id, owner_id)
        self._ensure_open(task)
        result = await self._executor.step.continue_generation(task)
        return await self._record_step(task_id, owner_id, result), result

    async def drain(self) -> None:
        """Wait for background auto-executions started by :meth:`create_task`."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # internals

    async def _run_stage(
        self,
        task: Task,
        stage: StageType,
        run: Callable[[], Awaitable[StageOutcome]],
    ) -> tuple[Task, StageOutcome]:
        self._ensure_open(task)
        await self._check_order(task, stage)

        task.status = in_progress_status(stage)
        task = await self._save(task)

        with log_context(task_id=task.id, stage=stage.value):
            try:
                outcome = await run()
            except Exception:
                failed = await self._stores.tasks.get_task(task.id) or task
                if failed.status is not TaskStatus.CANCELLED:
                    failed.status = TaskStatus.FAILED
                    await self._save(failed)
                logger.warning("Task marked failed", extra={"task_id": task.id})
                raise

            task = await self._stores.tasks.get_task(task.id) or task
            task.processed_data = task.processed_data.merged(outcome.data)
            if outcome.novel_id and not task.novel_id:
                task.novel_id = outcome.novel_id
            task.total_characters_consumed = add_cost(task.total_characters_consumed, outcome.cost_consumed)
            self._advance(task, stage)
            task = await self._save(task)
            logger.info(
                "Task advanced",
                extra={"task_id": task.id, "status": task.status.value, "cost": outcome.cost_consumed},
            )
        return task, outcome

    def _advance(self, task: Task, stage: StageType) -> None:
        cancelled = task.status is TaskStatus.CANCELLED
        if stage is StageType.REVIEW:
            task.current_stage = StageType.REVIEW
            if not cancelled:
                task.status = TaskStatus.COMPLETED
                task.completed_at = utcnow()
            return
        if stage is not StageType.TITLE:
            task.current_stage = following_stage(stage)
        else:
            task.current_stage = StageType.TITLE
        if not cancelled:
            task.status = TaskStatus.WAITING_NEXT_STAGE

    async def _next_stage(self, task: Task) -> StageType:
        current = task.current_stage
        if current is None:
            raise PreconditionError("Task has no remaining stages")
        if current in await self._completed_stages(task.id):
            if current is StageType.TITLE:
                raise PreconditionError("Select a title before continuing to the outline")
            following = following_stage(current)
            if following is None:
                raise PreconditionError("Task has no remaining stages")
            return following
        return current

    async def _check_order(self, task: Task, stage: StageType) -> None:
        current = task.current_stage
        if current is None:
            raise PreconditionError("Task has no remaining stages")
        target, now = stage_index(stage), stage_index(current)
        if target == now:
            return
        # Title never advances on its own; selecting a title moves the task on.
        if (
            target == now + 1
            and current is not StageType.TITLE
            and current in await self._completed_stages(task.id)
        ):
            return
        raise PreconditionError(
            f"Cannot run '{stage.value}' while the task is at '{current.value}'; stages run in order"
        )

    async def _completed_stages(self, task_id: int) -> list[StageType]:
        records = await self._stores.stages.list_stage_records(task_id)
        done = {record.stage_type for record in records if record.status is StageStatus.COMPLETED}
        return [stage for stage in STAGE_SEQUENCE if stage in done]

    async def _expand_group(self, group_id: int) -> PromptConfig:
        group = await self._stores.prompts.get_prompt_group(group_id)
        if group is None:
            raise NotFoundError(f"Prompt group {group_id} not found")
        return PromptConfig.model_validate(
            {PROMPT_CONFIG_FIELDS[item.stage_key]: item.prompt_id for item in group.items}
        )

    async def _record_step(self, task_id: int, owner_id: int, result: StepResult) -> Task:
        task = await self.get_task(task_id, owner_id)
        task.processed_data = task.processed_data.merged({"current_chapter_order": result.chapter_order})
        task.total_characters_consumed = add_cost(task.total_characters_consumed, result.cost)
        return await self._save(task)

    async def _auto_execute(self, task_id: int, owner_id: int) -> None:
        try:
            await self.execute_stage(task_id, owner_id, StageType.IDEA)
        except Exception:
            logger.exception("Automatic idea generation failed", extra={"task_id": task_id})

    def _spawn(self, coroutine: Awaitable[None]) -> None:
        background = asyncio.ensure_future(coroutine)
        self._background.add(background)
        background.add_done_callback(self._background.discard)

    async def _save(self, task: Task) -> Task:
        task.updated_at = utcnow()
        saved = await self._stores.tasks.save_task(task)
        if saved.status in FINISHED_STATUSES:
            await self._progress.release(saved.id)
        return saved

    @staticmethod
    def _ensure_open(task: Task) -> None:
        if task.status is TaskStatus.CANCELLED:
            raise PreconditionError("Task has been cancelled")
        if task.status is TaskStatus.COMPLETED:
            raise PreconditionError("Task is already completed")

    @staticmethod
    def _ensure_not_terminal(task: Task, action: str) -> None:
        if task.status in TERMINAL_STATUSES:
            raise PreconditionError(f"A {task.status.value} task cannot be {action}")
