"""Google Gemini provider implementation."""

from __future__ import annotations

import time
from typing import Any, AsyncIterator, Dict

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from .base import (
    LLMProvider,
    ProviderCapabilities,
    ProviderRequest,
    ProviderResponse,
    ProviderStreamChunk,
)
from .config import ProviderConfig
from .exceptions import ProviderResponseError, ProviderTransientError

_TRANSIENT_ERRORS = (genai_errors.ServerError, httpx.TransportError)


class GeminiProvider(LLMProvider):
    name = "gemini"

    def __init__(self, config: ProviderConfig) -> None:
        self._config = config
        self._client = genai.Client(api_key=config.api_key)

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            supports_json_mode=True,
            max_output_tokens=self._config.settings.max_output_tokens,
            reports_stream_usage=True,
        )

    def _build(self, request: ProviderRequest) -> tuple[list[types.Content], types.GenerateContentConfig]:
        settings = self._config.settings
        system_parts: list[str] = []
        contents: list[types.Content] = []
        for message in request.messages:
            role = message.get("role")
            text = str(message.get("content") or "")
            if role == "system":
                system_parts.append(text)
                continue
            contents.append(
                types.Content(
                    role="model" if role == "assistant" else "user",
                    parts=[types.Part(text=text)],
                )
            )

        config: Dict[str, Any] = {
            "temperature": (
                request.temperature if request.temperature is not None else settings.temperature
            ),
        }
        if system_parts:
            config["system_instruction"] = "\n\n".join(system_parts)
        top_p = request.top_p if request.top_p is not None else settings.top_p
        if top_p is not None:
            config["top_p"] = top_p
        max_output = (
            request.max_output_tokens
            if request.max_output_tokens is not None
            else settings.max_output_tokens
        )
        if max_output:
            config["max_output_tokens"] = max_output
        if request.json_schema:
            config["response_mime_type"] = "application/json"
            config["response_schema"] = request.json_schema
        return contents, types.GenerateContentConfig(**config)

    async def generate(self, request: ProviderRequest) -> ProviderResponse:
        model = request.model or self._config.model
        contents, config = self._build(request)
        start = time.perf_counter()
        try:
            response = await self._client.aio.models.generate_content(
                model=model, contents=contents, config=config
            )
        except _TRANSIENT_ERRORS as err:
            raise ProviderTransientError(str(err)) from err
        latency_ms = (time.perf_counter() - start) * 1000

        try:
            text = response.text or ""
        except (AttributeError, ValueError) as err:
            raise ProviderResponseError("Gemini response missing text content") from err

        usage = getattr(response, "usage_metadata", None)
        return ProviderResponse(
            text=text,
            raw=response,
            model=model,
            prompt_tokens=getattr(usage, "prompt_token_count", None) if usage else None,
            completion_tokens=getattr(usage, "candidates_token_count", None) if usage else None,
            latency_ms=latency_ms,
        )

    async def stream(self, request: ProviderRequest) -> AsyncIterator[ProviderStreamChunk]:
        model = request.model or self._config.model
        contents, config = self._build(request)
        try:
            stream = await self._client.aio.models.generate_content_stream(
                model=model, contents=contents, config=config
            )
            async for chunk in stream:
                usage = getattr(chunk, "usage_metadata", None)
                yield ProviderStreamChunk(
                    delta=chunk.text or "",
                    prompt_tokens=getattr(usage, "prompt_token_count", None) if usage else None,
                    completion_tokens=(
                        getattr(usage, "candidates_token_count", None) if usage else None
                    ),
                )
        except _TRANSIENT_ERRORS as err:
            raise ProviderTransientError(str(err)) from err
