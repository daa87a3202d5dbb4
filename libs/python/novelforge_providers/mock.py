"""Deterministic mock provider for tests and offline development."""

from __future__ import annotations

import json
from collections import deque
from typing import AsyncIterator, Callable, Iterable

from .base import (
    LLMProvider,
    ProviderCapabilities,
    ProviderRequest,
    ProviderResponse,
    ProviderStreamChunk,
)
from .config import ProviderConfig, ProviderSettings
from .exceptions import ProviderTransientError

DEFAULT_TEXT = "Mock response generated for testing."

Handler = Callable[[ProviderRequest], str]


class MockProvider(LLMProvider):
    """Scriptable provider.

    Replies come from ``handler`` when given, otherwise from the ``responses``
    queue (the last scripted reply repeats once the queue is drained), otherwise
    from a canned echo of the last user message.
    """

    name = "mock"

    def __init__(
        self,
        config: ProviderConfig | None = None,
        *,
        responses: Iterable[str] | None = None,
        handler: Handler | None = None,
        chunk_size: int = 16,
        transient_failures: int = 0,
        interrupt_after_chunks: int | None = None,
        report_stream_usage: bool = False,
    ) -> None:
        if config is None:
            settings = ProviderSettings(temperature=0.1, json_mode=False)
            config = ProviderConfig(name="mock", api_key="mock", model="mock", settings=settings)
        self._config = config
        self._responses: deque[str] = deque(responses or [])
        self._last_scripted: str | None = None
        self._handler = handler
        self._chunk_size = max(1, chunk_size)
        self._transient_failures = transient_failures
        self._interrupt_after_chunks = interrupt_after_chunks
        self._report_stream_usage = report_stream_usage
        self.requests: list[ProviderRequest] = []

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            supports_json_mode=True,
            max_input_tokens=32000,
            max_output_tokens=2000,
            reports_stream_usage=self._report_stream_usage,
        )

    def queue(self, *responses: str) -> None:
        self._responses.extend(responses)

    async def generate(self, request: ProviderRequest) -> ProviderResponse:
        self._maybe_fail()
        self.requests.append(request)
        text = self._reply(request)
        return ProviderResponse(
            text=text,
            raw={"mock": True},
            model=request.model or self._config.model,
            prompt_tokens=len(request.rendered_text().split()),
            completion_tokens=len(text.split()),
            cost_usd=0.0,
            latency_ms=1.0,
        )

    async def stream(self, request: ProviderRequest) -> AsyncIterator[ProviderStreamChunk]:
        self._maybe_fail()
        self.requests.append(request)
        text = self._reply(request)
        pieces = [text[i : i + self._chunk_size] for i in range(0, len(text), self._chunk_size)]
        for index, piece in enumerate(pieces):
            if self._interrupt_after_chunks is not None and index >= self._interrupt_after_chunks:
                raise ProviderTransientError("mock stream aborted")
            yield ProviderStreamChunk(delta=piece)
        if self._report_stream_usage:
            yield ProviderStreamChunk(
                delta="",
                prompt_tokens=len(request.rendered_text().split()),
                completion_tokens=len(text.split()),
                finish_reason="stop",
            )

    def _maybe_fail(self) -> None:
        if self._transient_failures > 0:
            self._transient_failures -= 1
            raise ProviderTransientError("mock transient failure")

    def _reply(self, request: ProviderRequest) -> str:
        if self._handler is not None:
            return self._handler(request)
        if self._responses:
            self._last_scripted = self._responses.popleft()
            return self._last_scripted
        if self._last_scripted is not None:
            return self._last_scripted
        if request.json_schema:
            return json.dumps({"message": DEFAULT_TEXT})
        user_messages = [m for m in request.messages if m.get("role") == "user"]
        prompt = str(user_messages[-1].get("content") or "") if user_messages else ""
        return f"{DEFAULT_TEXT}\nPrompt: {prompt[:80]}"
