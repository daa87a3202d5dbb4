"""Custom exceptions used by provider adapters and response sinks."""

from __future__ import annotations


class ProviderError(RuntimeError):
    """Base error raised for provider failures."""


class ProviderConfigError(ProviderError):
    """Raised when configuration is missing or invalid."""


class ProviderResponseError(ProviderError):
    """Raised when a provider returns an unusable response."""


class ProviderTransientError(ProviderError):
    """Network reset, timeout or stream abort on the provider side."""


class ClientDisconnected(ConnectionError):
    """Raised by a response sink once its consumer has gone away."""
