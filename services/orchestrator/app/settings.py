"""Process-wide orchestrator settings read from ``NOVELFORGE_*`` variables."""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

ENV_PREFIX = "NOVELFORGE_"
SERVICE_NAME = "orchestrator"


class OrchestratorSettings(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    default_model: str = "gemini-2.5-pro"
    default_temperature: float = Field(0.7, ge=0, le=2)
    history_limit: int = Field(10, ge=0)
    output_token_cap: int = Field(2048, ge=16)
    stream_output_token_cap: int = Field(4096, ge=16)
    max_active_tasks: int = Field(3, ge=1)
    min_task_balance: int = Field(50000, ge=0)
    concurrency_limit: int = Field(5, ge=1)
    provider_retries: int = Field(2, ge=0)
    retry_backoff_seconds: float = Field(0.5, ge=0)
    log_level: str = "INFO"
    starting_balance: int = Field(200000, ge=0)

    def estimated_output_chars(self, *, streaming: bool, max_tokens: int | None = None) -> int:
        """Conservative output estimate used by the balance precheck (two chars per token)."""

        if max_tokens:
            return max_tokens * 2
        cap = self.stream_output_token_cap if streaming else self.output_token_cap
        return cap * 2


_ENV_FIELDS = {
    "DEFAULT_MODEL": "default_model",
    "DEFAULT_TEMPERATURE": "default_temperature",
    "HISTORY_LIMIT": "history_limit",
    "OUTPUT_TOKEN_CAP": "output_token_cap",
    "STREAM_OUTPUT_TOKEN_CAP": "stream_output_token_cap",
    "MAX_ACTIVE_TASKS": "max_active_tasks",
    "MIN_TASK_BALANCE": "min_task_balance",
    "CONCURRENCY_LIMIT": "concurrency_limit",
    "PROVIDER_RETRIES": "provider_retries",
    "RETRY_BACKOFF_SECONDS": "retry_backoff_seconds",
    "LOG_LEVEL": "log_level",
    "STARTING_BALANCE": "starting_balance",
}


def load_settings() -> OrchestratorSettings:
    """Build settings from the environment; unset variables keep their defaults.

    Raises:
        ValidationError: If a variable holds a value of the wrong type or range.
    """

    values: dict[str, Any] = {}
    for suffix, field_name in _ENV_FIELDS.items():
        raw = os.getenv(f"{ENV_PREFIX}{suffix}")
        if raw is not None and raw.strip():
            values[field_name] = raw.strip()
    return OrchestratorSettings.model_validate(values)


@lru_cache(maxsize=1)
def get_settings() -> OrchestratorSettings:
    return load_settings()
