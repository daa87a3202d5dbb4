"""Prefect flow that drives a book task through its remaining stages unattended."""

from __future__ import annotations

import logging
from typing import Optional

from prefect import flow
from pydantic import BaseModel, Field

from novelforge_observability import log_context
from novelforge_schemas import StageType, TaskStatus

from .orchestrator import TaskOrchestrator
from .runtime import get_runtime

logger = logging.getLogger(__name__)


class FlowStageResult(BaseModel):
    stage: StageType
    cost_consumed: float


class FlowSummary(BaseModel):
    task_id: int
    status: TaskStatus
    current_stage: Optional[StageType]
    stages: list[FlowStageResult] = Field(default_factory=list)
    total_cost: float = 0.0
    waiting_for_title: bool = False


@flow(name="novel-forge-pipeline", version="0.1.0", validate_parameters=False)
async def run_book_flow(
    task_id: int,
    owner_id: int,
    auto_select_title: bool = True,
    orchestrator: Optional[TaskOrchestrator] = None,
) -> FlowSummary:
    """Execute every remaining stage in order.

    After the title stage the first candidate is selected when
    ``auto_select_title`` is set; otherwise the flow stops and leaves the
    choice to a person. The flow also stops once the task is cancelled. A
    failing stage propagates after the task is marked failed.
    """

    orchestrator = orchestrator or get_runtime().orchestrator
    results: list[FlowStageResult] = []
    waiting_for_title = False

    with log_context(task_id=task_id, owner_id=owner_id):
        logger.info("Starting book flow", extra={"auto_select_title": auto_select_title})
        task = await orchestrator.get_task(task_id, owner_id)

        while task.status not in (TaskStatus.COMPLETED, TaskStatus.CANCELLED):
            if task.current_stage is StageType.TITLE and task.processed_data.titles:
                if not auto_select_title:
                    waiting_for_title = True
                    break
                data = task.processed_data
                task = await orchestrator.update_title_and_synopsis(
                    task_id, owner_id, data.titles[0], data.synopsis
                )
                logger.info("Selected first candidate title")
                continue

            task, stage, outcome = await orchestrator.execute_stage(task_id, owner_id)
            results.append(FlowStageResult(stage=stage, cost_consumed=outcome.cost_consumed))
            if task.status is TaskStatus.CANCELLED:
                logger.info("Task was cancelled during a stage", extra={"stage": stage.value})

        logger.info(
            "Book flow finished",
            extra={"stage_count": len(results), "status": task.status.value},
        )

    return FlowSummary(
        task_id=task.id,
        status=task.status,
        current_stage=task.current_stage,
        stages=results,
        total_cost=sum(result.cost_consumed for result in results),
        waiting_for_title=waiting_for_title,
    )
