"""Tests for the task state machine."""

from __future__ import annotations

import pytest

from novelforge_schemas import (
    Novel,
    PromptConfig,
    PromptGroup,
    PromptGroupItem,
    PromptStageKey,
    StageStatus,
    StageType,
    TaskStatus,
)

from services.orchestrator.app.errors import (
    AuthorizationError,
    InsufficientBalanceError,
    NotFoundError,
    PreconditionError,
    StageOutputError,
)
from services.orchestrator.app.models import TaskCreateRequest
from services.orchestrator.app.orchestrator import add_cost
from services.orchestrator.app.stages import status_matches_stage

from tests.utils.books import (
    SYNOPSIS,
    TITLES,
    BookScript,
    add_stage_prompts,
    create_book_task,
    make_runtime,
    run_through,
)


pytestmark = pytest.mark.anyio("asyncio")


@pytest.fixture
def anyio_backend():
    return "asyncio"


class _BrokenTitles(BookScript):
    broken = True

    def _title(self, request):
        if self.broken:
            return "I could not think of anything."
        return super()._title(request)


def test_add_cost_ignores_garbage_increments() -> None:
    assert add_cost(10, float("nan")) == 10.0
    assert add_cost(-5, 2) == 2.0
    assert add_cost(1.5, None) == 1.5


async def test_create_task_defaults() -> None:
    runtime = make_runtime()
    task = await create_book_task(runtime)

    assert task.status is TaskStatus.PAUSED
    assert task.current_stage is StageType.IDEA
    assert task.model_id == "mock"
    assert task.task_config.concurrency_limit == 2
    assert task.processed_data.user_parameters == {"genre": "mystery"}
    assert task.total_characters_consumed == 0


async def test_active_task_cap_per_owner() -> None:
    runtime = make_runtime()
    tasks = [await create_book_task(runtime) for _ in range(3)]

    with pytest.raises(PreconditionError):
        await create_book_task(runtime)
    # Other owners are unaffected.
    await create_book_task(runtime, owner_id=2)

    await runtime.orchestrator.cancel_task(tasks[0].id, 1)
    assert (await create_book_task(runtime)).status is TaskStatus.PAUSED


async def test_create_task_requires_minimum_balance() -> None:
    runtime = make_runtime()
    runtime.ledger.set_balance(1, 60000, used=20000)

    with pytest.raises(InsufficientBalanceError):
        await create_book_task(runtime)


async def test_create_task_checks_the_manuscript() -> None:
    runtime = make_runtime()
    theirs = await runtime.store.create_novel(Novel(owner_id=2, name="Theirs"))

    with pytest.raises(AuthorizationError):
        await create_book_task(runtime, novel_id=theirs.id)
    with pytest.raises(NotFoundError):
        await create_book_task(runtime, novel_id=999)


async def test_prompt_group_expands_and_locks_configuration() -> None:
    runtime = make_runtime()
    group = runtime.store.add_prompt_group(
        PromptGroup(
            owner_id=1,
            name="house style",
            items=[
                PromptGroupItem(stage_key=PromptStageKey.IDEA, prompt_id=11),
                PromptGroupItem(stage_key=PromptStageKey.CHAPTER_OUTLINE_OPTIMIZE, prompt_id=12),
            ],
        )
    )
    orchestrator = runtime.orchestrator

    task = await orchestrator.create_task(1, TaskCreateRequest(prompt_group_id=group.id))

    assert task.prompt_config.idea_prompt_id == 11
    assert task.prompt_config.chapter_outline_optimize_prompt_id == 12
    assert task.prompt_config.title_prompt_id is None
    with pytest.raises(PreconditionError):
        await orchestrator.update_prompt_config(task.id, 1, {"idea_prompt_id": 99})
    with pytest.raises(NotFoundError):
        await orchestrator.create_task(1, TaskCreateRequest(prompt_group_id=404))


async def test_free_form_prompt_configuration_is_editable() -> None:
    runtime = make_runtime()
    task = await runtime.orchestrator.create_task(1, TaskCreateRequest(prompt_config=PromptConfig(idea_prompt_id=1)))

    task = await runtime.orchestrator.update_prompt_config(task.id, 1, {"title_prompt_id": 5})

    assert (task.prompt_config.idea_prompt_id, task.prompt_config.title_prompt_id) == (1, 5)
    with pytest.raises(PreconditionError):
        await runtime.orchestrator.update_prompt_config(task.id, 1, {"cover_prompt_id": 3})


async def test_tasks_are_private_to_their_owner() -> None:
    runtime = make_runtime()
    task = await create_book_task(runtime)

    with pytest.raises(AuthorizationError):
        await runtime.orchestrator.get_task(task.id, 2)
    with pytest.raises(NotFoundError):
        await runtime.orchestrator.get_task(999, 1)
    with pytest.raises(AuthorizationError):
        await runtime.orchestrator.execute_stage(task.id, 2)


async def test_full_run_walks_the_state_machine() -> None:
    runtime = make_runtime()
    orchestrator = runtime.orchestrator
    task = await create_book_task(runtime)

    task, stage, _ = await orchestrator.execute_stage(task.id, 1)
    assert stage is StageType.IDEA
    assert (task.current_stage, task.status) == (StageType.TITLE, TaskStatus.WAITING_NEXT_STAGE)
    assert (await orchestrator.get_progress(task.id, 1)).overall_progress == 20

    task, stage, _ = await orchestrator.execute_stage(task.id, 1)
    assert stage is StageType.TITLE
    assert (task.current_stage, task.status) == (StageType.TITLE, TaskStatus.WAITING_NEXT_STAGE)
    assert task.processed_data.synopsis == SYNOPSIS

    with pytest.raises(PreconditionError):
        await orchestrator.execute_stage(task.id, 1)
    with pytest.raises(PreconditionError):
        await orchestrator.execute_stage(task.id, 1, StageType.OUTLINE)
    assert (await orchestrator.get_task(task.id, 1)).status is TaskStatus.WAITING_NEXT_STAGE

    task = await orchestrator.update_title_and_synopsis(task.id, 1, TITLES[1], "A shorter synopsis.")
    assert (task.current_stage, task.status) == (StageType.OUTLINE, TaskStatus.WAITING_NEXT_STAGE)
    assert task.processed_data.selected_title == TITLES[1]
    novel = await runtime.store.get_novel(task.novel_id)
    assert (novel.name, novel.synopsis) == (TITLES[1], "A shorter synopsis.")

    for expected_stage, next_stage in (
        (StageType.OUTLINE, StageType.CONTENT),
        (StageType.CONTENT, StageType.REVIEW),
    ):
        task, stage, _ = await orchestrator.execute_stage(task.id, 1)
        assert stage is expected_stage
        assert (task.current_stage, task.status) == (next_stage, TaskStatus.WAITING_NEXT_STAGE)
        assert status_matches_stage(task.status, task.current_stage)

    task, stage, _ = await orchestrator.execute_stage(task.id, 1)
    assert stage is StageType.REVIEW
    assert (task.current_stage, task.status) == (StageType.REVIEW, TaskStatus.COMPLETED)

    progress = await orchestrator.get_progress(task.id, 1)
    assert progress.overall_progress == 100
    assert progress.completed_stages == list(StageType)

    records = await orchestrator.get_stage_records(task.id, 1)
    assert [r.stage_type for r in records] == list(StageType)
    assert task.total_characters_consumed == pytest.approx(sum(r.characters_consumed for r in records))
    assert task.total_characters_consumed > 0

    for action in (orchestrator.execute_stage, orchestrator.cancel_task, orchestrator.pause_task):
        with pytest.raises(PreconditionError):
            await action(task.id, 1)


async def test_stages_cannot_be_skipped() -> None:
    runtime = make_runtime()
    task = await create_book_task(runtime)

    with pytest.raises(PreconditionError):
        await runtime.orchestrator.execute_stage(task.id, 1, StageType.TITLE)

    task = await runtime.orchestrator.get_task(task.id, 1)
    assert task.status is TaskStatus.PAUSED
    assert await runtime.store.list_stage_records(task.id) == []


async def test_failed_stage_marks_task_and_can_be_retried() -> None:
    script = _BrokenTitles()
    runtime = make_runtime(script)
    task = await create_book_task(runtime)
    await run_through(runtime, task.id, until=StageType.IDEA)

    with pytest.raises(StageOutputError):
        await runtime.orchestrator.execute_stage(task.id, 1)

    task = await runtime.orchestrator.get_task(task.id, 1)
    assert (task.current_stage, task.status) == (StageType.TITLE, TaskStatus.FAILED)
    failed = (await runtime.orchestrator.get_stage_records(task.id, 1))[-1]
    assert failed.status is StageStatus.FAILED
    assert failed.error_message

    script.broken = False
    task, stage, _ = await runtime.orchestrator.execute_stage(task.id, 1)

    assert stage is StageType.TITLE
    assert task.status is TaskStatus.WAITING_NEXT_STAGE
    retried = (await runtime.orchestrator.get_stage_records(task.id, 1))[-1]
    assert (retried.status, retried.retry_count) == (StageStatus.COMPLETED, 1)


async def test_pause_resume_and_cancel() -> None:
    runtime = make_runtime()
    orchestrator = runtime.orchestrator
    task = await create_book_task(runtime)
    await run_through(runtime, task.id, until=StageType.IDEA)

    task = await orchestrator.pause_task(task.id, 1)
    assert task.status is TaskStatus.PAUSED
    task = await orchestrator.resume_task(task.id, 1)
    assert task.status is TaskStatus.TITLE_GENERATING

    task = await orchestrator.cancel_task(task.id, 1)
    assert task.status is TaskStatus.CANCELLED
    with pytest.raises(PreconditionError):
        await orchestrator.execute_stage(task.id, 1)
    with pytest.raises(PreconditionError):
        await orchestrator.resume_task(task.id, 1)


async def test_resume_only_applies_to_paused_tasks() -> None:
    runtime = make_runtime()
    orchestrator = runtime.orchestrator
    tasks = [await create_book_task(runtime) for _ in range(3)]
    for task in tasks:
        await run_through(runtime, task.id, until=StageType.IDEA)
        with pytest.raises(PreconditionError):
            await orchestrator.resume_task(task.id, 1)
        stored = await orchestrator.get_task(task.id, 1)
        assert stored.status is TaskStatus.WAITING_NEXT_STAGE

    # Waiting tasks hold no slot, so the cap still has room.
    assert (await create_book_task(runtime)).status is TaskStatus.PAUSED
    assert await runtime.store.count_active_tasks(1) == 1


async def test_title_selection_requires_generated_titles() -> None:
    runtime = make_runtime()
    task = await create_book_task(runtime)
    await run_through(runtime, task.id, until=StageType.IDEA)

    with pytest.raises(PreconditionError):
        await runtime.orchestrator.update_title_and_synopsis(task.id, 1, "Anything")

    task = await runtime.orchestrator.get_task(task.id, 1)
    assert task.processed_data.selected_title is None
    assert (task.current_stage, task.status) == (StageType.TITLE, TaskStatus.WAITING_NEXT_STAGE)


async def test_cancellation_during_a_stage_is_kept() -> None:
    class _CancelMidway(BookScript):
        task_id = None

        def _idea(self, request):
            store.tasks[self.task_id].status = TaskStatus.CANCELLED
            return super()._idea(request)

    script = _CancelMidway()
    runtime = make_runtime(script)
    store = runtime.store
    task = await create_book_task(runtime)
    script.task_id = task.id

    task, _, _ = await runtime.orchestrator.execute_stage(task.id, 1)

    assert task.status is TaskStatus.CANCELLED
    assert task.processed_data.brainstorm


async def test_auto_execute_runs_the_idea_stage_in_the_background() -> None:
    runtime = make_runtime()
    task = await create_book_task(runtime, auto_execute=True)
    assert task.status is TaskStatus.IDEA_GENERATING

    await runtime.orchestrator.drain()

    task = await runtime.orchestrator.get_task(task.id, 1)
    assert (task.current_stage, task.status) == (StageType.TITLE, TaskStatus.WAITING_NEXT_STAGE)
    assert task.processed_data.brainstorm


async def test_idea_optimisation() -> None:
    runtime = make_runtime()
    orchestrator = runtime.orchestrator
    task = await create_book_task(runtime)

    with pytest.raises(PreconditionError):
        await orchestrator.optimize_stage(task.id, 1, StageType.IDEA, "more tension")
    await run_through(runtime, task.id, until=StageType.IDEA)
    with pytest.raises(PreconditionError):
        await orchestrator.optimize_stage(task.id, 1, StageType.TITLE, "shorter")

    task, outcome = await orchestrator.optimize_stage(task.id, 1, StageType.IDEA, "more tension")

    assert task.processed_data.brainstorm.startswith("A sharper idea")
    assert (task.current_stage, task.status) == (StageType.TITLE, TaskStatus.WAITING_NEXT_STAGE)
    record = (await orchestrator.get_stage_records(task.id, 1))[-1]
    assert record.input_data["feedback"] == "more tension"
    assert record.retry_count == 1
    assert outcome.cost_consumed == record.characters_consumed


async def test_list_tasks_pages_newest_first() -> None:
    runtime = make_runtime(max_active_tasks=5)
    config = add_stage_prompts(runtime.store, 1)
    created = [
        await runtime.orchestrator.create_task(1, TaskCreateRequest(prompt_config=config)) for _ in range(3)
    ]

    page = await runtime.orchestrator.list_tasks(1, page=1, limit=2)

    assert (page.total, page.total_pages, page.page, page.limit) == (3, 2, 1, 2)
    assert [task.id for task in page.items] == [created[2].id, created[1].id]
    second = await runtime.orchestrator.list_tasks(1, page=2, limit=2)
    assert [task.id for task in second.items] == [created[0].id]
