"""Resolve a model id to a configured provider instance."""

from __future__ import annotations

import logging
import os
from typing import Dict, Optional

from pydantic import ValidationError

from novelforge_providers import (
    LLMProvider,
    ProviderConfig,
    ProviderConfigError,
    ProviderFactory,
    ProviderSettings,
    load_provider_config,
    provider_name_for_model,
)
from novelforge_providers.config import PROVIDER_ENV_VAR

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


def resolve_provider_config(model_id: str) -> ProviderConfig:
    """Build the provider configuration that serves ``model_id``.

    ``LLM_PROVIDER=mock`` routes every model to the offline mock.
    """

    if os.getenv(PROVIDER_ENV_VAR, "").lower() == "mock":
        return ProviderConfig(name="mock", api_key="mock", model=model_id, settings=ProviderSettings())

    try:
        provider_name = provider_name_for_model(model_id)
    except ProviderConfigError as exc:
        raise ConfigurationError(str(exc)) from exc

    if provider_name == "mock":
        return ProviderConfig(name="mock", api_key="mock", model=model_id, settings=ProviderSettings())

    try:
        return load_provider_config(prefix=provider_name, model=model_id)
    except ValidationError as exc:
        raise ConfigurationError(f"Provider {provider_name} is not configured") from exc


class ProviderRouter:
    """Caches one provider per model id.

    Tests pass ``provider`` to serve every model from a single stub.
    """

    def __init__(self, provider: Optional[LLMProvider] = None) -> None:
        self._override = provider
        self._providers: Dict[str, LLMProvider] = {}

    def for_model(self, model_id: str) -> LLMProvider:
        if self._override is not None:
            return self._override
        provider = self._providers.get(model_id)
        if provider is None:
            config = resolve_provider_config(model_id)
            try:
                provider = ProviderFactory.create(config)
            except ProviderConfigError as exc:
                raise ConfigurationError(str(exc)) from exc
            logger.info(
                "Provider initialised",
                extra={"provider": config.name, "model": model_id},
            )
            self._providers[model_id] = provider
        return provider

    def provider_name(self, model_id: str) -> str:
        provider = self.for_model(model_id)
        return getattr(provider, "name", "unknown")
