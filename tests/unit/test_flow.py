"""Tests for the unattended book flow using the mock provider."""

from __future__ import annotations

import pytest

from novelforge_schemas import StageType, TaskStatus

from services.orchestrator.app.errors import StageOutputError
from services.orchestrator.app.flows import run_book_flow

from tests.utils.books import TITLES, BookScript, create_book_task, make_runtime


pytestmark = pytest.mark.anyio("asyncio")


@pytest.fixture
def anyio_backend():
    return "asyncio"


async def test_flow_runs_every_stage() -> None:
    runtime = make_runtime()
    task = await create_book_task(runtime)

    summary = await run_book_flow.fn(task.id, 1, orchestrator=runtime.orchestrator)

    assert summary.status is TaskStatus.COMPLETED
    assert [result.stage for result in summary.stages] == list(StageType)
    assert not summary.waiting_for_title
    task = await runtime.orchestrator.get_task(task.id, 1)
    assert task.processed_data.selected_title == TITLES[0]
    assert summary.total_cost == pytest.approx(task.total_characters_consumed)


async def test_flow_stops_for_a_title_choice() -> None:
    runtime = make_runtime()
    task = await create_book_task(runtime)

    summary = await run_book_flow.fn(task.id, 1, auto_select_title=False, orchestrator=runtime.orchestrator)

    assert summary.waiting_for_title
    assert [result.stage for result in summary.stages] == [StageType.IDEA, StageType.TITLE]
    assert (summary.current_stage, summary.status) == (StageType.TITLE, TaskStatus.WAITING_NEXT_STAGE)


async def test_flow_propagates_stage_failures() -> None:
    class _NoTitles(BookScript):
        def _title(self, request):
            return "no json here"

    runtime = make_runtime(_NoTitles())
    task = await create_book_task(runtime)

    with pytest.raises(StageOutputError):
        await run_book_flow.fn(task.id, 1, orchestrator=runtime.orchestrator)

    assert (await runtime.orchestrator.get_task(task.id, 1)).status is TaskStatus.FAILED


async def test_flow_stops_when_the_task_is_cancelled_mid_stage() -> None:
    class _CancelDuringIdea(BookScript):
        task_id = None

        def _idea(self, request):
            runtime.store.tasks[self.task_id].status = TaskStatus.CANCELLED
            return super()._idea(request)

    script = _CancelDuringIdea()
    runtime = make_runtime(script)
    task = await create_book_task(runtime)
    script.task_id = task.id

    summary = await run_book_flow.fn(task.id, 1, orchestrator=runtime.orchestrator)

    assert summary.status is TaskStatus.CANCELLED
    assert [result.stage for result in summary.stages] == [StageType.IDEA]
    assert "title" not in script.calls
