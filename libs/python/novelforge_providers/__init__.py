"""Model transport abstraction for Gemini, OpenAI and the offline mock."""

from .base import (
    LLMProvider,
    ProviderCapabilities,
    ProviderRequest,
    ProviderResponse,
    ProviderStreamChunk,
)
from .config import ProviderConfig, ProviderSettings, load_provider_config
from .exceptions import (
    ClientDisconnected,
    ProviderConfigError,
    ProviderError,
    ProviderResponseError,
    ProviderTransientError,
)
from .factory import ProviderFactory, provider_name_for_model
from .mock import MockProvider

__all__ = [
    "LLMProvider",
    "ProviderCapabilities",
    "ProviderRequest",
    "ProviderResponse",
    "ProviderStreamChunk",
    "ProviderConfig",
    "ProviderSettings",
    "load_provider_config",
    "ClientDisconnected",
    "ProviderConfigError",
    "ProviderError",
    "ProviderResponseError",
    "ProviderTransientError",
    "ProviderFactory",
    "provider_name_for_model",
    "MockProvider",
]
