"""Stage ordering and the fixed stage/status mapping of the task state machine."""

from __future__ import annotations

from typing import Optional

from novelforge_schemas import STAGE_SEQUENCE, StageType, TaskStatus

IN_PROGRESS_STATUS: dict[StageType, TaskStatus] = {
    StageType.IDEA: TaskStatus.IDEA_GENERATING,
    StageType.TITLE: TaskStatus.TITLE_GENERATING,
    StageType.OUTLINE: TaskStatus.OUTLINE_GENERATING,
    StageType.CONTENT: TaskStatus.CONTENT_GENERATING,
    StageType.REVIEW: TaskStatus.REVIEW_OPTIMIZING,
}

# Statuses counted against the per-owner concurrency cap.
ACTIVE_STATUSES: frozenset[TaskStatus] = frozenset(IN_PROGRESS_STATUS.values()) | {TaskStatus.PAUSED}

TERMINAL_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)

# Statuses a task never leaves; failed tasks may still retry their stage.
FINISHED_STATUSES: frozenset[TaskStatus] = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED})

STREAMABLE_STAGES: frozenset[StageType] = frozenset({StageType.IDEA, StageType.TITLE})

STAGE_PROGRESS_STEP = 100 // len(STAGE_SEQUENCE)


def stage_index(stage: StageType) -> int:
    return STAGE_SEQUENCE.index(stage)


def following_stage(stage: StageType) -> Optional[StageType]:
    index = stage_index(stage)
    if index + 1 < len(STAGE_SEQUENCE):
        return STAGE_SEQUENCE[index + 1]
    return None


def in_progress_status(stage: Optional[StageType]) -> TaskStatus:
    if stage is None:
        return TaskStatus.COMPLETED
    return IN_PROGRESS_STATUS[stage]


def status_matches_stage(status: TaskStatus, stage: Optional[StageType]) -> bool:
    """True when ``status`` is a legal companion of ``stage``.

    In-progress statuses are tied to exactly one stage; side states may
    accompany any stage, and ``completed`` only the final one.
    """

    if status in IN_PROGRESS_STATUS.values():
        return stage is not None and IN_PROGRESS_STATUS[stage] is status
    if status is TaskStatus.COMPLETED:
        return stage in (None, STAGE_SEQUENCE[-1])
    return True


def parse_stage(value: str | StageType) -> StageType:
    """Accept a stage by value or by 1-based ordinal ("1" .. "5")."""

    if isinstance(value, StageType):
        return value
    text = str(value).strip().lower()
    if text.isdigit():
        ordinal = int(text)
        if 1 <= ordinal <= len(STAGE_SEQUENCE):
            return STAGE_SEQUENCE[ordinal - 1]
    return StageType(text)
