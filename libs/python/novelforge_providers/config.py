"""Configuration models and helpers for provider selection."""

from __future__ import annotations

import os
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_core import PydanticCustomError

PROVIDER_ENV_VAR = "LLM_PROVIDER"
DEFAULT_PROVIDER = "gemini"


class ProviderSettings(BaseModel):
    """Per-call default parameters."""

    temperature: float = Field(0.7, ge=0, le=2)
    max_output_tokens: int | None = Field(None, ge=16)
    top_p: float | None = Field(None, ge=0, le=1)
    json_mode: bool = Field(False)
    timeout_seconds: float = Field(
        120.0, gt=0, description="Transport timeout; stalled calls are the transport's concern"
    )


class ProviderConfig(BaseModel):
    """Configuration for a single provider instance."""

    model_config = ConfigDict(frozen=True)

    name: str
    api_key: str
    model: str
    settings: ProviderSettings = Field(default_factory=ProviderSettings)


def _config_error(field: str, message: str) -> ValidationError:
    return ValidationError.from_exception_data(
        "ProviderConfig",
        [
            {
                "type": PydanticCustomError("provider_config", message),
                "loc": (field,),
                "input": None,
            }
        ],
    )


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in {"true", "1", "yes", "on"}


def load_provider_config(prefix: str | None = None, *, model: str | None = None) -> ProviderConfig:
    """Load configuration from environment variables.

    Args:
        prefix: Optional prefix for environment variables (default uses ``LLM_PROVIDER``).
        model: Explicit model id; overrides ``{PREFIX}_MODEL`` when given.

    Environment variables used (assuming prefix "OPENAI"):
        OPENAI_API_KEY
        OPENAI_MODEL
        OPENAI_TEMPERATURE (optional)
        OPENAI_MAX_OUTPUT_TOKENS (optional)
        OPENAI_TOP_P (optional)
        OPENAI_JSON_MODE (optional boolean)
        OPENAI_TIMEOUT_SECONDS (optional)

    Raises:
        ValidationError: If required variables are missing or invalid.
    """

    provider_name = (prefix or os.getenv(PROVIDER_ENV_VAR, DEFAULT_PROVIDER)).upper()

    def read_env(key: str, default: Any | None = None) -> Any:
        return os.getenv(f"{provider_name}_{key}", default)

    api_key = read_env("API_KEY")
    model_name = model or read_env("MODEL")
    if not api_key or not model_name:
        raise _config_error("api_key", "API key or model not configured")

    max_output_tokens = None
    max_output_raw = read_env("MAX_OUTPUT_TOKENS")
    if max_output_raw not in (None, ""):
        try:
            parsed = int(str(max_output_raw).strip())
        except ValueError as exc:  # pragma: no cover - environment misconfiguration
            raise _config_error("max_output_tokens", "MAX_OUTPUT_TOKENS must be an integer") from exc
        max_output_tokens = parsed if parsed > 0 else None

    top_p_raw = read_env("TOP_P", "")
    try:
        top_p = float(top_p_raw) if str(top_p_raw).strip() else None
        temperature = float(read_env("TEMPERATURE", 0.7))
        timeout_seconds = float(read_env("TIMEOUT_SECONDS", 120.0))
    except ValueError as exc:  # pragma: no cover - environment misconfiguration
        raise _config_error("settings", "numeric provider settings must be floats") from exc

    settings = ProviderSettings(
        temperature=temperature,
        max_output_tokens=max_output_tokens,
        top_p=top_p,
        json_mode=_parse_bool(read_env("JSON_MODE", "false")),
        timeout_seconds=timeout_seconds,
    )
    return ProviderConfig(
        name=provider_name.lower(), api_key=api_key, model=model_name, settings=settings
    )
