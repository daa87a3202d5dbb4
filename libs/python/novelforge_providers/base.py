"""Core interfaces and dataclasses for model transport."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Mapping, MutableMapping, Sequence


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ProviderRequest:
    """Normalized chat request passed to providers.

    ``messages`` is an ordered list of ``{"role", "content"}`` mappings where
    role is one of ``system``, ``user`` or ``assistant``.
    """

    messages: Sequence[Mapping[str, str]]
    model: str | None = None
    temperature: float | None = None
    max_output_tokens: int | None = None
    top_p: float | None = None
    json_schema: Mapping[str, Any] | None = None
    metadata: MutableMapping[str, Any] = field(default_factory=dict)

    def rendered_text(self) -> str:
        """Concatenated message contents, the basis for input size accounting."""

        return "".join(str(message.get("content") or "") for message in self.messages)


@dataclass(slots=True)
class ProviderResponse:
    """Standard buffered response returned by providers."""

    text: str
    raw: Any
    model: str
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    cost_usd: float | None = None
    latency_ms: float | None = None
    received_at: datetime = field(default_factory=_utcnow)


@dataclass(slots=True)
class ProviderStreamChunk:
    """A single streamed delta.

    Providers may attach usage to the final chunk; most omit it.
    """

    delta: str
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    finish_reason: str | None = None


@dataclass(slots=True)
class ProviderCapabilities:
    """Capability flags used when choosing a provider."""

    supports_json_mode: bool = False
    supports_streaming: bool = True
    max_input_tokens: int | None = None
    max_output_tokens: int | None = None
    reports_stream_usage: bool = False


class LLMProvider(ABC):
    """Abstract base class implemented by concrete providers."""

    name: str

    @abstractmethod
    def capabilities(self) -> ProviderCapabilities:
        """Return capability metadata."""

    @abstractmethod
    async def generate(self, request: ProviderRequest) -> ProviderResponse:
        """Generate a complete response for the request."""

    @abstractmethod
    def stream(self, request: ProviderRequest) -> AsyncIterator[ProviderStreamChunk]:
        """Yield text deltas as the model produces them."""
