"""Prometheus instruments for stages, provider calls and the HTTP surface."""

from __future__ import annotations

from time import perf_counter
from typing import TYPE_CHECKING, Optional

from fastapi import FastAPI, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

if TYPE_CHECKING:  # pragma: no cover - imported for type checking only
    from novelforge_providers.base import ProviderResponse


_HTTP_REQUEST_COUNT = Counter(
    "novelforge_http_requests_total",
    "HTTP requests handled by the service",
    labelnames=("service", "method", "route", "status"),
)

_HTTP_REQUEST_LATENCY = Histogram(
    "novelforge_http_request_duration_seconds",
    "Latency of HTTP requests",
    labelnames=("service", "method", "route"),
)

_STAGE_DURATION = Histogram(
    "novelforge_stage_duration_seconds",
    "Wall time spent executing a pipeline stage",
    labelnames=("service", "stage"),
    buckets=(0.5, 1, 5, 15, 30, 60, 120, 300, 600, 1800),
)

_STAGE_COUNTER = Counter(
    "novelforge_stage_runs_total",
    "Stage executions by outcome",
    labelnames=("service", "stage", "status"),
)

_LLM_TOKENS = Counter(
    "novelforge_llm_tokens_total",
    "Token usage reported by providers",
    labelnames=("service", "stage", "provider", "token_type"),
)

_LLM_LATENCY = Histogram(
    "novelforge_llm_latency_seconds",
    "Latency of provider calls",
    labelnames=("service", "stage", "provider"),
)

_LLM_COST = Counter(
    "novelforge_llm_cost_usd_total",
    "Provider reported spend in USD",
    labelnames=("service", "stage", "provider"),
)

_COST_UNITS = Counter(
    "novelforge_cost_units_total",
    "Character cost units debited from user balances",
    labelnames=("service", "source"),
)

_CHAPTER_OUTCOMES = Counter(
    "novelforge_chapter_generations_total",
    "Chapter generation attempts by outcome",
    labelnames=("service", "outcome"),
)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Count and time every request by its route template."""

    def __init__(self, app: FastAPI, service_name: str) -> None:
        super().__init__(app)
        self.service_name = service_name

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        start = perf_counter()
        response = await call_next(request)
        elapsed = perf_counter() - start

        route = request.scope.get("route")
        route_template = getattr(route, "path", None) or request.url.path
        status = getattr(response, "status_code", 500)

        _HTTP_REQUEST_COUNT.labels(
            self.service_name, request.method, route_template, str(status)
        ).inc()
        _HTTP_REQUEST_LATENCY.labels(self.service_name, request.method, route_template).observe(
            elapsed
        )
        return response


def setup_fastapi_metrics(app: FastAPI, service_name: str, endpoint: str = "/metrics") -> None:
    """Install the middleware and a scrape endpoint once per app."""

    if getattr(app.state, "metrics_configured", False):
        return

    app.add_middleware(PrometheusMiddleware, service_name=service_name)

    @app.get(endpoint, include_in_schema=False)
    async def _metrics_endpoint() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.state.metrics_configured = True


def observe_stage_duration(
    stage: str,
    duration_seconds: float,
    *,
    service_name: str,
    status: str = "success",
) -> None:
    _STAGE_DURATION.labels(service_name, stage).observe(max(duration_seconds, 0.0))
    _STAGE_COUNTER.labels(service_name, stage, status).inc()


def observe_provider_response(
    *,
    stage: str,
    provider: str,
    service_name: str,
    response: Optional["ProviderResponse"],
) -> None:
    """Record token usage, latency and spend when the provider reported them."""

    if response is None:
        return

    for token_type, value in (
        ("prompt", response.prompt_tokens),
        ("completion", response.completion_tokens),
    ):
        if isinstance(value, (int, float)) and value >= 0:
            _LLM_TOKENS.labels(service_name, stage, provider, token_type).inc(value)

    latency_ms = response.latency_ms
    if isinstance(latency_ms, (int, float)) and latency_ms >= 0:
        _LLM_LATENCY.labels(service_name, stage, provider).observe(latency_ms / 1000)

    cost = response.cost_usd
    if isinstance(cost, (int, float)) and cost > 0:
        _LLM_COST.labels(service_name, stage, provider).inc(cost)


def observe_cost_units(source: str, amount: float, *, service_name: str) -> None:
    if amount > 0:
        _COST_UNITS.labels(service_name, source).inc(amount)


def observe_chapter_outcome(outcome: str, *, service_name: str) -> None:
    _CHAPTER_OUTCOMES.labels(service_name, outcome).inc()
