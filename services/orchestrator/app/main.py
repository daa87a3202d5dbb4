"""FastAPI entrypoint for the NovelForge orchestrator."""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Iterator, List

from fastapi import Depends, FastAPI, Header, HTTPException, Query, status
from fastapi.responses import StreamingResponse

from novelforge_observability import log_context, setup_fastapi_metrics, setup_logging
from novelforge_providers import ClientDisconnected, ProviderError
from novelforge_schemas import OutlineTreeNode, StageType, Task

from .errors import (
    AuthorizationError,
    InsufficientBalanceError,
    NotFoundError,
    OrchestratorError,
    StageOutputError,
)
from .generation import QueueSink, StreamWriter
from .generation.sinks import encode_frame
from .interfaces import ResponseSink
from .models import (
    ChapterStepResponse,
    ExecuteStageRequest,
    GenerationStreamRequest,
    NextChapterRequest,
    OptimizeRequest,
    StageRecordList,
    StageRunResponse,
    TaskCreateRequest,
    TaskPage,
    TaskProgress,
    TitleSelectionRequest,
)
from .runtime import Runtime, get_runtime
from .settings import SERVICE_NAME, get_settings
from .stages import STREAMABLE_STAGES, parse_stage

setup_logging(SERVICE_NAME, get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="NovelForge Orchestrator", version="0.1.0")
setup_fastapi_metrics(app, service_name=SERVICE_NAME)

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}

_producers: set[asyncio.Task[None]] = set()


def runtime_dependency() -> Runtime:
    return get_runtime()


def current_owner(x_user_id: int = Header(..., alias="X-User-Id")) -> int:
    return x_user_id


@contextmanager
def http_errors() -> Iterator[None]:
    try:
        yield
    except InsufficientBalanceError as exc:
        raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=str(exc)) from exc
    except AuthorizationError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except StageOutputError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    except OrchestratorError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ProviderError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc


def _stage(value: str) -> StageType:
    try:
        return parse_stage(value)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown stage '{value}'") from exc


async def report_stream_failure(sink: ResponseSink, exc: Exception) -> None:
    """Write an error frame for a failed streaming job if the client is still listening."""

    try:
        await StreamWriter(sink).error(str(exc) or type(exc).__name__)
    except ClientDisconnected:
        logger.info("Client gone before error frame could be written")


def _sse(job: Callable[[QueueSink], Awaitable[Any]]) -> StreamingResponse:
    """Run ``job`` in the background and stream whatever it writes to the sink."""

    sink = QueueSink()

    async def _produce() -> None:
        try:
            await job(sink)
        except ProviderError:
            # The generation core has already written an error frame.
            logger.warning("Streaming generation failed", exc_info=True)
        except Exception as exc:
            logger.warning("Streaming request failed", exc_info=True)
            await report_stream_failure(sink, exc)
        finally:
            await sink.close()

    producer = asyncio.create_task(_produce())
    _producers.add(producer)
    producer.add_done_callback(_producers.discard)

    async def _body():
        try:
            async for frame in sink.frames():
                yield frame
        finally:
            sink.disconnect()

    return StreamingResponse(_body(), media_type="text/event-stream", headers=SSE_HEADERS)


@app.get("/health", tags=["health"])
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/tasks", response_model=Task, status_code=status.HTTP_201_CREATED, tags=["tasks"])
async def create_task(
    payload: TaskCreateRequest,
    owner_id: int = Depends(current_owner),
    runtime: Runtime = Depends(runtime_dependency),
) -> Task:
    with log_context(owner_id=owner_id), http_errors():
        return await runtime.orchestrator.create_task(owner_id, payload)


@app.get("/tasks", response_model=TaskPage, tags=["tasks"])
async def list_tasks(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    owner_id: int = Depends(current_owner),
    runtime: Runtime = Depends(runtime_dependency),
) -> TaskPage:
    return await runtime.orchestrator.list_tasks(owner_id, page, limit)


@app.get("/tasks/{task_id}", response_model=Task, tags=["tasks"])
async def get_task(
    task_id: int, owner_id: int = Depends(current_owner), runtime: Runtime = Depends(runtime_dependency)
) -> Task:
    with http_errors():
        return await runtime.orchestrator.get_task(task_id, owner_id)


@app.get("/tasks/{task_id}/progress", response_model=TaskProgress, tags=["tasks"])
async def get_progress(
    task_id: int, owner_id: int = Depends(current_owner), runtime: Runtime = Depends(runtime_dependency)
) -> TaskProgress:
    with http_errors():
        return await runtime.orchestrator.get_progress(task_id, owner_id)


@app.get("/tasks/{task_id}/stages", response_model=StageRecordList, tags=["tasks"])
async def get_stage_records(
    task_id: int, owner_id: int = Depends(current_owner), runtime: Runtime = Depends(runtime_dependency)
) -> StageRecordList:
    with http_errors():
        return StageRecordList(items=await runtime.orchestrator.get_stage_records(task_id, owner_id))


@app.post("/tasks/{task_id}/stages/execute", response_model=StageRunResponse, tags=["stages"])
async def execute_stage(
    task_id: int,
    payload: ExecuteStageRequest,
    owner_id: int = Depends(current_owner),
    runtime: Runtime = Depends(runtime_dependency),
) -> StageRunResponse:
    stage = _stage(payload.stage) if payload.stage else None
    with log_context(task_id=task_id, owner_id=owner_id), http_errors():
        task, executed, outcome = await runtime.orchestrator.execute_stage(task_id, owner_id, stage)
    return StageRunResponse(task=task, stage=executed, data=outcome.data, cost_consumed=outcome.cost_consumed)


@app.post("/tasks/{task_id}/stages/{stage}/stream", tags=["stages"])
async def stream_stage(
    task_id: int,
    stage: str,
    owner_id: int = Depends(current_owner),
    runtime: Runtime = Depends(runtime_dependency),
) -> StreamingResponse:
    stage_type = _stage(stage)
    if stage_type not in STREAMABLE_STAGES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Stage '{stage_type.value}' does not support streaming",
        )
    with http_errors():
        await runtime.orchestrator.get_task(task_id, owner_id)
    return _sse(lambda sink: runtime.orchestrator.stream_stage(task_id, owner_id, stage_type, sink))


@app.post("/tasks/{task_id}/stages/{stage}/optimize", response_model=StageRunResponse, tags=["stages"])
async def optimize_stage(
    task_id: int,
    stage: str,
    payload: OptimizeRequest,
    owner_id: int = Depends(current_owner),
    runtime: Runtime = Depends(runtime_dependency),
) -> StageRunResponse:
    stage_type = _stage(stage)
    with http_errors():
        task, outcome = await runtime.orchestrator.optimize_stage(task_id, owner_id, stage_type, payload.feedback)
    return StageRunResponse(task=task, stage=stage_type, data=outcome.data, cost_consumed=outcome.cost_consumed)


@app.post("/tasks/{task_id}/pause", response_model=Task, tags=["tasks"])
async def pause_task(
    task_id: int, owner_id: int = Depends(current_owner), runtime: Runtime = Depends(runtime_dependency)
) -> Task:
    with http_errors():
        return await runtime.orchestrator.pause_task(task_id, owner_id)


@app.post("/tasks/{task_id}/resume", response_model=Task, tags=["tasks"])
async def resume_task(
    task_id: int, owner_id: int = Depends(current_owner), runtime: Runtime = Depends(runtime_dependency)
) -> Task:
    with http_errors():
        return await runtime.orchestrator.resume_task(task_id, owner_id)


@app.post("/tasks/{task_id}/cancel", response_model=Task, tags=["tasks"])
async def cancel_task(
    task_id: int, owner_id: int = Depends(current_owner), runtime: Runtime = Depends(runtime_dependency)
) -> Task:
    with http_errors():
        return await runtime.orchestrator.cancel_task(task_id, owner_id)


@app.patch("/tasks/{task_id}/prompt-config", response_model=Task, tags=["tasks"])
async def update_prompt_config(
    task_id: int,
    payload: dict[str, Any],
    owner_id: int = Depends(current_owner),
    runtime: Runtime = Depends(runtime_dependency),
) -> Task:
    with http_errors():
        return await runtime.orchestrator.update_prompt_config(task_id, owner_id, payload)


@app.patch("/tasks/{task_id}/title", response_model=Task, tags=["tasks"])
async def select_title(
    task_id: int,
    payload: TitleSelectionRequest,
    owner_id: int = Depends(current_owner),
    runtime: Runtime = Depends(runtime_dependency),
) -> Task:
    with http_errors():
        return await runtime.orchestrator.update_title_and_synopsis(
            task_id, owner_id, payload.title, payload.synopsis
        )


@app.get("/tasks/{task_id}/outline", response_model=List[OutlineTreeNode], tags=["tasks"])
async def get_outline(
    task_id: int, owner_id: int = Depends(current_owner), runtime: Runtime = Depends(runtime_dependency)
) -> List[OutlineTreeNode]:
    with http_errors():
        return await runtime.orchestrator.get_outline_tree(task_id, owner_id)


@app.post("/tasks/{task_id}/chapters/next", response_model=ChapterStepResponse, tags=["chapters"])
async def generate_next_chapter(
    task_id: int,
    payload: NextChapterRequest,
    owner_id: int = Depends(current_owner),
    runtime: Runtime = Depends(runtime_dependency),
) -> ChapterStepResponse:
    with log_context(task_id=task_id, owner_id=owner_id), http_errors():
        task, result = await runtime.orchestrator.generate_next_chapter(task_id, owner_id, payload.chapter_order)
    output = result.as_output()
    return ChapterStepResponse(
        task=task,
        chapter=output["chapter"],
        review_report=result.report,
        next_chapter_order=result.next_chapter_order,
        characters_consumed=result.cost,
    )


@app.post("/tasks/{task_id}/chapters/continue", response_model=ChapterStepResponse, tags=["chapters"])
async def continue_generation(
    task_id: int, owner_id: int = Depends(current_owner), runtime: Runtime = Depends(runtime_dependency)
) -> ChapterStepResponse:
    with log_context(task_id=task_id, owner_id=owner_id), http_errors():
        task, result = await runtime.orchestrator.continue_generation(task_id, owner_id)
    output = result.as_output()
    return ChapterStepResponse(
        task=task,
        chapter=output["chapter"],
        review_report=result.report,
        next_chapter_order=result.next_chapter_order,
        characters_consumed=result.cost,
    )


@app.get("/tasks/{task_id}/events", tags=["tasks"])
async def task_events(
    task_id: int,
    replay: bool = Query(False),
    owner_id: int = Depends(current_owner),
    runtime: Runtime = Depends(runtime_dependency),
) -> StreamingResponse:
    with http_errors():
        await runtime.orchestrator.get_task(task_id, owner_id)
    broadcaster = runtime.broadcaster
    queue = broadcaster.subscribe(task_id)
    backlog = broadcaster.events_for(task_id) if replay else []

    async def _body():
        try:
            for event in backlog:
                yield encode_frame(event.model_dump(mode="json"))
            while True:
                event = await queue.get()
                yield encode_frame(event.model_dump(mode="json"))
        finally:
            broadcaster.unsubscribe(task_id, queue)

    return StreamingResponse(_body(), media_type="text/event-stream", headers=SSE_HEADERS)


@app.post("/generation/stream", tags=["generation"])
async def stream_generation(
    payload: GenerationStreamRequest,
    owner_id: int = Depends(current_owner),
    runtime: Runtime = Depends(runtime_dependency),
) -> StreamingResponse:
    request = payload.to_generation_request(owner_id)
    with log_context(owner_id=owner_id, prompt_id=payload.prompt_id), http_errors():
        prepared = await runtime.core.prepare(request, streaming=True)
    return _sse(lambda sink: runtime.core.stream_to(sink, request, prepared=prepared))
