"""Tests for the generation core: precheck, retries, streaming and billing."""

from __future__ import annotations

import asyncio

import pytest

from novelforge_providers import (
    ClientDisconnected,
    LLMProvider,
    MockProvider,
    ProviderCapabilities,
    ProviderRequest,
    ProviderResponse,
    ProviderStreamChunk,
    ProviderTransientError,
)
from novelforge_schemas import (
    Character,
    ConsumptionSource,
    Novel,
    Prompt,
    PromptContent,
    PromptRole,
)

from services.orchestrator.app.assembly import Mentions
from services.orchestrator.app.errors import InsufficientBalanceError
from services.orchestrator.app.generation import (
    ContentTap,
    GenerationRequest,
    MemorySink,
    MetadataTap,
    QueueSink,
    StreamWriter,
)
from services.orchestrator.app.generation.sinks import DONE_FRAME
from services.orchestrator.app.guards.prompts import BASE_DIRECTIVE

from tests.utils.books import make_runtime


pytestmark = pytest.mark.anyio("asyncio")


@pytest.fixture
def anyio_backend():
    return "asyncio"


class _Sleeps(list):
    async def __call__(self, delay: float) -> None:
        self.append(delay)


class _PlainProvider(LLMProvider):
    """Buffered replies without token usage, so billing falls back to characters."""

    name = "plain"

    def __init__(self, text: str) -> None:
        self.text = text
        self.requests: list[ProviderRequest] = []

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities()

    async def generate(self, request: ProviderRequest) -> ProviderResponse:
        self.requests.append(request)
        return ProviderResponse(text=self.text, raw={}, model=request.model or "mock")

    async def stream(self, request: ProviderRequest):
        self.requests.append(request)
        yield ProviderStreamChunk(delta=self.text)


class _StallingProvider(LLMProvider):
    name = "stalling"

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities()

    async def generate(self, request: ProviderRequest) -> ProviderResponse:
        raise NotImplementedError

    async def stream(self, request: ProviderRequest):
        yield ProviderStreamChunk(delta="abcd")
        await asyncio.Event().wait()


def _prompt(author_id: int = 1, **flags) -> Prompt:
    return Prompt(
        author_id=author_id,
        name="brief",
        contents=[PromptContent(id=1, role=PromptRole.SYSTEM, content="Be brief.", order=0)],
        **flags,
    )


def _request(prompt_id: int, **fields) -> GenerationRequest:
    return GenerationRequest(prompt_id=prompt_id, owner_id=1, user_input="Hello", model_id="mock", **fields)


async def test_generate_debits_once_from_character_counts() -> None:
    runtime = make_runtime(provider=_PlainProvider("Hi there"))
    prompt = runtime.store.add_prompt(_prompt())

    result = await runtime.core.generate(_request(prompt.id))

    # "Be brief." + "Hello" in, "Hi there" out, one unit per character for the mock model.
    assert (result.input_chars, result.output_chars, result.cost) == (14, 8, 22)
    assert len(runtime.ledger.entries) == 1
    entry = runtime.ledger.entries[0]
    assert entry.source is ConsumptionSource.GENERATION
    assert entry.consumption.total_cost == 22
    assert await runtime.ledger.available_balance(1) == runtime.settings.starting_balance - 22
    assert runtime.store.prompt_records[prompt.id].use_count == 1


async def test_precheck_rejects_before_calling_the_model() -> None:
    provider = _PlainProvider("never")
    runtime = make_runtime(provider=provider)
    prompt = runtime.store.add_prompt(_prompt())
    runtime.ledger.set_balance(1, 10)

    with pytest.raises(InsufficientBalanceError):
        await runtime.core.generate(_request(prompt.id))

    assert provider.requests == []
    assert runtime.ledger.entries == []


async def test_transient_failures_are_retried_with_backoff() -> None:
    sleeps = _Sleeps()
    provider = MockProvider(responses=["ok"], transient_failures=2)
    runtime = make_runtime(provider=provider, sleep=sleeps, provider_retries=2, retry_backoff_seconds=0.5)
    prompt = runtime.store.add_prompt(_prompt())

    result = await runtime.core.generate(_request(prompt.id))

    assert result.content == "ok"
    assert sleeps == [0.5, 1.0]
    assert len(provider.requests) == 1
    assert len(runtime.ledger.entries) == 1


async def test_exhausted_retries_propagate_without_debit() -> None:
    provider = MockProvider(responses=["ok"], transient_failures=5)
    runtime = make_runtime(provider=provider, provider_retries=2)
    prompt = runtime.store.add_prompt(_prompt())

    with pytest.raises(ProviderTransientError):
        await runtime.core.generate(_request(prompt.id))

    assert runtime.ledger.entries == []


async def test_stream_writes_content_metadata_and_done() -> None:
    runtime = make_runtime(provider=MockProvider(responses=["abcdefghij"], chunk_size=4))
    prompt = runtime.store.add_prompt(_prompt())
    sink = MemorySink()

    result = await runtime.core.stream_to(sink, _request(prompt.id))

    payloads = sink.payloads()
    assert [p["content"] for p in payloads if p["type"] == "content"] == ["abcd", "efgh", "ij"]
    metadata = payloads[-1]
    assert metadata["type"] == "metadata"
    assert metadata["output_chars"] == 10
    assert metadata["cost"] == 24
    assert metadata["interrupted"] is False
    assert sink.frames[-1] == DONE_FRAME
    assert result.content == "abcdefghij"
    assert len(runtime.ledger.entries) == 1


async def test_stream_usage_is_converted_to_characters() -> None:
    provider = MockProvider(responses=["one two three"], report_stream_usage=True)
    runtime = make_runtime(provider=provider)
    prompt = runtime.store.add_prompt(_prompt())

    await runtime.core.stream_to(MemorySink(), _request(prompt.id))

    entry = runtime.ledger.entries[0]
    # English text: four characters per token.
    assert (entry.input_chars, entry.output_chars) == (8, 12)


async def test_abort_after_partial_output_bills_what_was_produced() -> None:
    provider = MockProvider(responses=["abcdefghij"], chunk_size=4, interrupt_after_chunks=1)
    runtime = make_runtime(provider=provider, provider_retries=2)
    prompt = runtime.store.add_prompt(_prompt())
    sink = MemorySink()

    result = await runtime.core.stream_to(sink, _request(prompt.id))

    assert result.interrupted
    assert result.content == "abcd"
    assert sink.payloads()[-1]["interrupted"] is True
    assert len(provider.requests) == 1
    assert [entry.output_chars for entry in runtime.ledger.entries] == [4]


async def test_failure_before_first_delta_writes_error_and_skips_debit() -> None:
    provider = MockProvider(responses=["never"], transient_failures=5)
    runtime = make_runtime(provider=provider, provider_retries=0)
    prompt = runtime.store.add_prompt(_prompt())
    sink = MemorySink()

    with pytest.raises(ProviderTransientError):
        await runtime.core.stream_to(sink, _request(prompt.id))

    assert sink.payloads()[-1]["type"] == "error"
    assert runtime.ledger.entries == []


async def test_client_disconnect_stops_cleanly_and_bills_partial_output() -> None:
    provider = MockProvider(responses=["abcdefghij"], chunk_size=4)
    runtime = make_runtime(provider=provider)
    prompt = runtime.store.add_prompt(_prompt())
    sink = MemorySink(disconnect_after=1)

    result = await runtime.core.stream_to(sink, _request(prompt.id))

    assert result.interrupted
    assert len(sink.frames) == 1
    assert [entry.output_chars for entry in runtime.ledger.entries] == [8]


async def test_cancellation_settles_partial_output_then_propagates() -> None:
    runtime = make_runtime(provider=_StallingProvider())
    prompt = runtime.store.add_prompt(_prompt())
    sink = MemorySink()

    job = asyncio.create_task(runtime.core.stream_to(sink, _request(prompt.id)))
    while not sink.frames:
        await asyncio.sleep(0)
    job.cancel()

    with pytest.raises(asyncio.CancelledError):
        await job

    assert [entry.output_chars for entry in runtime.ledger.entries] == [4]


async def test_third_party_prompt_gets_directive_and_marked_input() -> None:
    provider = MockProvider(responses=["fine"])
    runtime = make_runtime(provider=provider)
    prompt = runtime.store.add_prompt(_prompt(author_id=2, is_public=True))

    await runtime.core.generate(_request(prompt.id))

    messages = provider.requests[0].messages
    assert messages[0]["role"] == "system"
    assert messages[0]["content"] == BASE_DIRECTIVE
    assert messages[1]["content"] == "Be brief."
    assert messages[-1]["content"] == "[USER INPUT START]\nHello\n[USER INPUT END]"


async def test_own_prompt_is_sent_verbatim_with_mentions_first() -> None:
    provider = MockProvider(responses=["fine"])
    runtime = make_runtime(provider=provider)
    prompt = runtime.store.add_prompt(_prompt())
    novel = await runtime.store.create_novel(Novel(owner_id=1, name="Tides"))
    character = await runtime.store.create_character(
        Character(novel_id=novel.id, name="Lin", fields={"role": "captain"})
    )

    await runtime.core.generate(_request(prompt.id, mentions=Mentions(character_ids=[character.id])))

    messages = provider.requests[0].messages
    assert messages[0]["content"] == "Be brief."
    assert messages[-1] == {"role": "user", "content": "【Character: Lin】\nrole: captain\n\nHello"}


async def test_taps_observe_their_own_frames() -> None:
    sink = MemorySink()
    metadata_tap = MetadataTap(sink)
    content_tap = ContentTap(metadata_tap)
    writer = StreamWriter(content_tap)

    await writer.content("Once ")
    await writer.content("upon")
    await writer.metadata(cost=7, interrupted=False)
    await writer.done()

    assert content_tap.text == "Once upon"
    assert metadata_tap.metadata == {"type": "metadata", "cost": 7, "interrupted": False}
    assert len(sink.frames) == 4


async def test_queue_sink_delivers_frames_until_closed() -> None:
    sink = QueueSink()
    await StreamWriter(sink).content("hi")
    await sink.close()

    frames = [frame async for frame in sink.frames()]
    assert len(frames) == 1

    sink.disconnect()
    with pytest.raises(ClientDisconnected):
        await sink.write("data: late\n\n")
