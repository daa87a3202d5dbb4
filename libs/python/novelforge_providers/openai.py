"""OpenAI chat completions provider implementation."""

from __future__ import annotations

import time
from typing import Any, AsyncIterator, Dict

from openai import APIConnectionError, APITimeoutError, AsyncOpenAI

from .base import (
    LLMProvider,
    ProviderCapabilities,
    ProviderRequest,
    ProviderResponse,
    ProviderStreamChunk,
)
from .config import ProviderConfig
from .exceptions import ProviderResponseError, ProviderTransientError


class OpenAIProvider(LLMProvider):
    name = "openai"

    def __init__(self, config: ProviderConfig) -> None:
        self._config = config
        self._client = AsyncOpenAI(
            api_key=config.api_key, timeout=config.settings.timeout_seconds
        )

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            supports_json_mode=True,
            max_output_tokens=self._config.settings.max_output_tokens,
            reports_stream_usage=True,
        )

    def _params(self, request: ProviderRequest) -> Dict[str, Any]:
        settings = self._config.settings
        params: Dict[str, Any] = {
            "model": request.model or self._config.model,
            "messages": [dict(message) for message in request.messages],
            "temperature": (
                request.temperature if request.temperature is not None else settings.temperature
            ),
        }
        top_p = request.top_p if request.top_p is not None else settings.top_p
        if top_p is not None:
            params["top_p"] = top_p
        max_output = (
            request.max_output_tokens
            if request.max_output_tokens is not None
            else settings.max_output_tokens
        )
        if max_output:
            params["max_completion_tokens"] = max_output
        if request.json_schema:
            params["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "structured", "schema": request.json_schema},
            }
        elif settings.json_mode:
            params["response_format"] = {"type": "json_object"}
        return params

    async def generate(self, request: ProviderRequest) -> ProviderResponse:
        start = time.perf_counter()
        try:
            response = await self._client.chat.completions.create(**self._params(request))
        except (APIConnectionError, APITimeoutError) as err:
            raise ProviderTransientError(str(err)) from err
        latency_ms = (time.perf_counter() - start) * 1000

        try:
            text = response.choices[0].message.content or ""
        except (IndexError, AttributeError) as err:
            raise ProviderResponseError("OpenAI response missing content") from err

        usage = getattr(response, "usage", None)
        return ProviderResponse(
            text=text,
            raw=response,
            model=response.model,
            prompt_tokens=getattr(usage, "prompt_tokens", None) if usage else None,
            completion_tokens=getattr(usage, "completion_tokens", None) if usage else None,
            latency_ms=latency_ms,
        )

    async def stream(self, request: ProviderRequest) -> AsyncIterator[ProviderStreamChunk]:
        params = self._params(request)
        params["stream"] = True
        params["stream_options"] = {"include_usage": True}
        try:
            stream = await self._client.chat.completions.create(**params)
            async for chunk in stream:
                usage = getattr(chunk, "usage", None)
                delta = ""
                finish_reason = None
                if chunk.choices:
                    delta = chunk.choices[0].delta.content or ""
                    finish_reason = chunk.choices[0].finish_reason
                if not delta and usage is None:
                    continue
                yield ProviderStreamChunk(
                    delta=delta,
                    prompt_tokens=getattr(usage, "prompt_tokens", None) if usage else None,
                    completion_tokens=getattr(usage, "completion_tokens", None) if usage else None,
                    finish_reason=finish_reason,
                )
        except (APIConnectionError, APITimeoutError) as err:
            raise ProviderTransientError(str(err)) from err
