"""Error taxonomy raised by the orchestration core."""

from __future__ import annotations

from typing import Iterable


class OrchestratorError(RuntimeError):
    """Base class for failures surfaced to callers with a readable reason."""


class ConfigurationError(OrchestratorError):
    """A required prompt id or provider is not configured."""


class AuthorizationError(OrchestratorError):
    """Caller may not act on the task or use the prompt."""


class NotFoundError(OrchestratorError):
    pass


class PreconditionError(OrchestratorError):
    """The operation is not allowed in the current state."""


class InsufficientBalanceError(PreconditionError):
    def __init__(self, message: str = "Insufficient balance for this generation") -> None:
        super().__init__(message)


class ParameterValidationError(PreconditionError):
    def __init__(self, missing: Iterable[str]) -> None:
        self.missing = list(missing)
        super().__init__(f"Missing required parameters: {', '.join(self.missing)}")


class StageOutputError(OrchestratorError):
    """Structured model output could not be parsed."""


class UnknownModelError(ConfigurationError):
    """The ledger has no rate for the requested model."""
