"""HTTP surface tests against the ASGI app."""

from __future__ import annotations

import logging

import httpx
import pytest

from novelforge_schemas import PromptStageKey

from services.orchestrator.app.generation import MemorySink
from services.orchestrator.app.generation.sinks import DONE_FRAME, parse_frame
from services.orchestrator.app.main import app, report_stream_failure, runtime_dependency

from tests.utils.books import SYNOPSIS, TITLES, add_stage_prompts, make_runtime, stage_prompt


pytestmark = pytest.mark.anyio("asyncio")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def runtime():
    runtime = make_runtime()
    app.dependency_overrides[runtime_dependency] = lambda: runtime
    yield runtime
    app.dependency_overrides.clear()


@pytest.fixture
async def client(runtime):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


def _headers(owner_id: int = 1) -> dict[str, str]:
    return {"X-User-Id": str(owner_id)}


async def _create(client, runtime, owner_id: int = 1) -> dict:
    config = add_stage_prompts(runtime.store, owner_id)
    response = await client.post(
        "/tasks",
        json={"prompt_config": config.model_dump(exclude_none=True), "parameters": {"genre": "mystery"}},
        headers=_headers(owner_id),
    )
    assert response.status_code == 201, response.text
    return response.json()


async def test_health(client) -> None:
    response = await client.get("/health")
    assert response.json() == {"status": "ok"}

    metrics = await client.get("/metrics")
    assert "novelforge_http_requests_total" in metrics.text


async def test_owner_header_is_required(client) -> None:
    assert (await client.get("/tasks")).status_code == 422


async def test_task_lifecycle_over_http(client, runtime) -> None:
    task = await _create(client, runtime)
    assert task["status"] == "paused"
    assert task["current_stage"] == "idea"

    response = await client.post(f"/tasks/{task['id']}/stages/execute", json={}, headers=_headers())
    body = response.json()
    assert response.status_code == 200, response.text
    assert body["stage"] == "idea"
    assert body["task"]["current_stage"] == "title"
    assert body["cost_consumed"] > 0

    response = await client.post(f"/tasks/{task['id']}/stages/execute", json={"stage": "title"}, headers=_headers())
    assert response.json()["data"]["titles"] == TITLES

    response = await client.patch(f"/tasks/{task['id']}/title", json={"title": TITLES[0]}, headers=_headers())
    assert response.json()["current_stage"] == "outline"
    assert response.json()["processed_data"]["selected_synopsis"] == SYNOPSIS

    progress = (await client.get(f"/tasks/{task['id']}/progress", headers=_headers())).json()
    assert progress["overall_progress"] == 40
    assert progress["completed_stages"] == ["idea", "title"]

    stages = (await client.get(f"/tasks/{task['id']}/stages", headers=_headers())).json()
    assert [item["stage_type"] for item in stages["items"]] == ["idea", "title"]

    listing = (await client.get("/tasks", params={"limit": 5}, headers=_headers())).json()
    assert listing["total"] == 1


async def test_errors_map_to_status_codes(client, runtime) -> None:
    task = await _create(client, runtime)

    assert (await client.get("/tasks/999", headers=_headers())).status_code == 404
    assert (await client.get(f"/tasks/{task['id']}", headers=_headers(2))).status_code == 403

    skipped = await client.post(f"/tasks/{task['id']}/stages/execute", json={"stage": "outline"}, headers=_headers())
    assert skipped.status_code == 400
    assert "in order" in skipped.json()["detail"]

    unknown = await client.post(f"/tasks/{task['id']}/stages/execute", json={"stage": "cover"}, headers=_headers())
    assert unknown.status_code == 400

    not_streamable = await client.post(f"/tasks/{task['id']}/stages/outline/stream", headers=_headers())
    assert not_streamable.status_code == 400

    runtime.ledger.set_balance(3, 100)
    poor = await client.post("/tasks", json={}, headers=_headers(3))
    assert poor.status_code == 402


async def test_idea_streams_as_server_sent_events(client, runtime) -> None:
    task = await _create(client, runtime)

    response = await client.post(f"/tasks/{task['id']}/stages/idea/stream", headers=_headers())

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.text.endswith(DONE_FRAME)
    frames = [parse_frame(chunk + "\n\n") for chunk in response.text.split("\n\n") if chunk]
    payloads = [frame for frame in frames if frame]
    content = "".join(frame["content"] for frame in payloads if frame["type"] == "content")
    assert content == "A lighthouse keeper finds a map that redraws the coast."
    assert [frame["type"] for frame in payloads][-1] == "metadata"

    stored = (await client.get(f"/tasks/{task['id']}", headers=_headers())).json()
    assert stored["current_stage"] == "title"
    assert stored["processed_data"]["brainstorm"] == content


async def test_free_form_generation_checks_balance_first(client, runtime) -> None:
    prompt = runtime.store.add_prompt(stage_prompt(1, PromptStageKey.IDEA))
    runtime.ledger.set_balance(1, 10)

    response = await client.post(
        "/generation/stream",
        json={"prompt_id": prompt.id, "parameters": {"genre": "noir"}, "user_input": "Go"},
        headers=_headers(),
    )

    assert response.status_code == 402
    assert runtime.ledger.entries == []


async def test_free_form_generation_streams(client, runtime) -> None:
    prompt = runtime.store.add_prompt(stage_prompt(1, PromptStageKey.IDEA))

    response = await client.post(
        "/generation/stream",
        json={"prompt_id": prompt.id, "parameters": {"genre": "noir"}, "user_input": "Go"},
        headers=_headers(),
    )

    assert response.status_code == 200
    assert response.text.endswith(DONE_FRAME)
    assert len(runtime.ledger.entries) == 1


async def test_stream_failure_is_reported_to_a_listening_client() -> None:
    sink = MemorySink()

    await report_stream_failure(sink, RuntimeError())

    assert sink.payloads() == [{"type": "error", "message": "RuntimeError"}]


async def test_stream_failure_after_disconnect_is_logged(caplog) -> None:
    sink = MemorySink(disconnect_after=0)

    with caplog.at_level(logging.INFO, logger="services.orchestrator.app.main"):
        await report_stream_failure(sink, RuntimeError("boom"))

    assert sink.frames == []
    assert "Client gone before error frame could be written" in caplog.text
