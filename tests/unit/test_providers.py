"""Tests for provider configuration, the mock provider, routing and pricing."""

from __future__ import annotations

import asyncio
import os

import pytest

from novelforge_providers import (
    MockProvider,
    ProviderConfig,
    ProviderConfigError,
    ProviderFactory,
    ProviderRequest,
    ProviderSettings,
    ProviderTransientError,
    load_provider_config,
    provider_name_for_model,
)
from novelforge_providers.config import DEFAULT_PROVIDER, PROVIDER_ENV_VAR
from novelforge_providers.pricing import (
    LanguageType,
    ModelRate,
    calculate_cost,
    detect_language,
    model_rate,
    token_to_chars,
)

from services.orchestrator.app.errors import ConfigurationError
from services.orchestrator.app.providers import ProviderRouter, resolve_provider_config


@pytest.fixture(autouse=True)
def clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("OPENAI_") or key.startswith("GEMINI_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.delenv(PROVIDER_ENV_VAR, raising=False)


def _request(text: str = "Hello world") -> ProviderRequest:
    return ProviderRequest(messages=[{"role": "user", "content": text}])


async def _collect(provider: MockProvider, request: ProviderRequest) -> list[str]:
    return [chunk.delta async for chunk in provider.stream(request)]


def test_load_openai_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(PROVIDER_ENV_VAR, "openai")
    monkeypatch.setenv("OPENAI_API_KEY", "key")
    monkeypatch.setenv("OPENAI_MODEL", "gpt-4.1")
    monkeypatch.setenv("OPENAI_MAX_OUTPUT_TOKENS", "2048")
    cfg = load_provider_config()
    assert cfg.name == "openai"
    assert cfg.api_key == "key"
    assert cfg.settings.max_output_tokens == 2048


def test_missing_variables_raises() -> None:
    assert DEFAULT_PROVIDER == "gemini"
    with pytest.raises(Exception):
        load_provider_config()


def test_custom_prefix_and_explicit_model(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MYPROV_API_KEY", "abc")
    cfg = load_provider_config(prefix="myprov", model="gemini-2.5-flash")
    assert cfg.name == "myprov"
    assert cfg.model == "gemini-2.5-flash"
    assert cfg.settings.temperature == 0.7


def test_mock_generate_counts_words() -> None:
    provider = MockProvider()
    response = asyncio.run(provider.generate(_request("Hello brave world")))
    assert response.model == "mock"
    assert "Mock response" in response.text
    assert response.prompt_tokens == 3


def test_mock_replays_the_last_scripted_reply() -> None:
    provider = MockProvider(responses=["first", "second"])
    replies = [asyncio.run(provider.generate(_request())).text for _ in range(3)]
    assert replies == ["first", "second", "second"]


def test_mock_stream_chunks_and_interruption() -> None:
    provider = MockProvider(responses=["abcdefghij"], chunk_size=4)
    assert asyncio.run(_collect(provider, _request())) == ["abcd", "efgh", "ij"]

    interrupted = MockProvider(responses=["abcdefghij"], chunk_size=4, interrupt_after_chunks=1)
    with pytest.raises(ProviderTransientError):
        asyncio.run(_collect(interrupted, _request()))


def test_mock_transient_failures_then_success() -> None:
    provider = MockProvider(responses=["ok"], transient_failures=1)
    with pytest.raises(ProviderTransientError):
        asyncio.run(provider.generate(_request()))
    assert asyncio.run(provider.generate(_request())).text == "ok"


def test_mock_json_mode() -> None:
    provider = MockProvider()
    request = ProviderRequest(messages=[{"role": "user", "content": "List facts"}], json_schema={"type": "object"})
    response = asyncio.run(provider.generate(request))
    assert response.text.startswith("{")


def test_factory_creates_mock_when_config_provided() -> None:
    config = ProviderConfig(name="mock", api_key="mock", model="mock", settings=ProviderSettings())
    assert isinstance(ProviderFactory.create(config), MockProvider)

    with pytest.raises(ProviderConfigError):
        ProviderFactory.create(ProviderConfig(name="llama", api_key="k", model="m"))


@pytest.mark.parametrize(
    "model_id, provider",
    [("gemini-2.5-pro", "gemini"), ("gpt-5-mini", "openai"), ("o3-mini", "openai"), ("mock", "mock")],
)
def test_provider_name_for_model(model_id: str, provider: str) -> None:
    assert provider_name_for_model(model_id) == provider


def test_router_uses_mock_everywhere_when_requested(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(PROVIDER_ENV_VAR, "mock")
    assert resolve_provider_config("gpt-5").name == "mock"

    router = ProviderRouter()
    provider = router.for_model("gemini-2.5-pro")
    assert isinstance(provider, MockProvider)
    assert router.for_model("gemini-2.5-pro") is provider
    assert router.provider_name("gpt-5") == "mock"


def test_router_reports_missing_configuration() -> None:
    router = ProviderRouter()
    with pytest.raises(ConfigurationError):
        router.for_model("gemini-2.5-pro")
    with pytest.raises(ConfigurationError):
        router.for_model("llama-3")


def test_router_override_serves_every_model() -> None:
    stub = MockProvider()
    router = ProviderRouter(stub)
    assert router.for_model("gpt-5") is stub
    assert router.for_model("anything") is stub


@pytest.mark.parametrize(
    "text, language",
    [
        ("Hello world", LanguageType.ENGLISH),
        ("你好世界", LanguageType.CHINESE),
        ("你好 ab", LanguageType.MIXED),
        ("123 !!", LanguageType.MIXED),
    ],
)
def test_detect_language(text: str, language: LanguageType) -> None:
    assert detect_language(text) is language


def test_token_to_chars() -> None:
    assert token_to_chars(10, LanguageType.ENGLISH) == 40
    assert token_to_chars(3, LanguageType.CHINESE) == 5
    assert token_to_chars(2) == 5
    assert token_to_chars(None) == 0
    assert token_to_chars(-4, LanguageType.ENGLISH) == 0
    assert token_to_chars(float("inf")) == 0


def test_model_rates_are_case_insensitive() -> None:
    assert model_rate("GPT-5") == model_rate("gpt-5")
    assert model_rate("llama-3") is None


def test_calculate_cost_rounds_up() -> None:
    assert calculate_cost(model_rate("gemini-2.5-pro"), 10, 3) == (3, 3)
    assert calculate_cost(model_rate("mock"), 7, 5) == (7, 5)
    assert calculate_cost(model_rate("mock-free"), 1000, 1000) == (0, 0)
    assert calculate_cost(model_rate("mock"), -5, 2) == (0, 2)


def test_calculate_cost_minimum_input() -> None:
    rate = ModelRate(input_ratio=2.0, output_ratio=1.0, min_input_chars=100)
    assert calculate_cost(rate, 50, 10) == (0, 10)
    assert calculate_cost(rate, 100, 10) == (50, 10)
