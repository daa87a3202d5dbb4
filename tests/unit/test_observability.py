"""Tests for structured logging and metric helpers."""

from __future__ import annotations

import json
import logging

from prometheus_client import REGISTRY

from novelforge_observability import current_log_context, log_context, observe_cost_units
from novelforge_observability.logging import ContextFilter, JsonFormatter


def _record(message: str = "Stage completed", **extra) -> logging.LogRecord:
    record = logging.LogRecord("novelforge.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_log_context_nests_and_unbinds() -> None:
    with log_context(task_id=7, stage="idea"):
        with log_context(stage=None, chapter_id=3):
            assert current_log_context() == {"task_id": 7, "chapter_id": 3}
        assert current_log_context() == {"task_id": 7, "stage": "idea"}
    assert current_log_context() == {}


def test_json_formatter_carries_context_and_extras() -> None:
    record = _record(cost=12.0, payload=object())
    with log_context(task_id=7, owner_id=1):
        ContextFilter("orchestrator").filter(record)

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "Stage completed"
    assert payload["service"] == "orchestrator"
    assert (payload["task_id"], payload["owner_id"], payload["cost"]) == (7, 1, 12.0)
    assert "payload" not in payload
    assert "observability_context" not in payload


def test_explicit_extras_win_over_context() -> None:
    record = _record(task_id=9)
    with log_context(task_id=7):
        ContextFilter("orchestrator").filter(record)
    assert json.loads(JsonFormatter().format(record))["task_id"] == 9


def test_cost_units_only_count_positive_amounts() -> None:
    def sample() -> float:
        return REGISTRY.get_sample_value(
            "novelforge_cost_units_total", {"service": "test-suite", "source": "book_task"}
        ) or 0.0

    before = sample()
    observe_cost_units("book_task", 5, service_name="test-suite")
    observe_cost_units("book_task", 0, service_name="test-suite")
    assert sample() == before + 5
