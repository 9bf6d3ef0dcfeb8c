import asyncio

import pytest
import requests

import automation
from automation import AutomationError, WebhookOptimizationHandler, parse_result, webhook_handlers
from engines.action_registry import OptimizationActionRegistry
from engines.optimizers import FALLBACK_RECOMMENDATIONS, QUALITY, TASK_TYPES

URL = "https://automation.example.com/hooks/optimize"


class FakeResponse:
    def __init__(self, status_code, body=None):
        self.status_code = status_code
        self._body = body

    def json(self):
        if self._body is None:
            raise ValueError("no JSON body")
        return self._body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


def _fake_post(monkeypatch, responses):
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        outcome = responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(automation.requests, "post", fake_post)
    return calls


def test_webhook_retries_server_errors(monkeypatch):
    calls = _fake_post(
        monkeypatch,
        [
            FakeResponse(503),
            requests.ConnectionError("reset by peer"),
            FakeResponse(200, {"recommendations": ["Trim copy"], "optimizations": ["Copy audit"], "resolves_issue": True}),
        ],
    )
    handler = WebhookOptimizationHandler(QUALITY, URL, headers={"Authorization": "Token abc"}, base_delay=0)
    result = asyncio.run(handler.handle({"issue": "Credibility score below target", "details": {"terms": ("xp",)}}))

    assert len(calls) == 3
    assert calls[0]["json"]["task_type"] == QUALITY
    assert calls[0]["json"]["context"]["details"]["terms"] == ["xp"]
    assert calls[0]["headers"]["Authorization"] == "Token abc"
    assert result.recommendations == ["Trim copy"]
    assert result.resolves_issue is True


def test_webhook_gives_up_after_max_attempts(monkeypatch):
    calls = _fake_post(monkeypatch, [FakeResponse(500), FakeResponse(502)])
    handler = WebhookOptimizationHandler(QUALITY, URL, max_attempts=2, base_delay=0)

    with pytest.raises(AutomationError):
        asyncio.run(handler.handle({}))
    assert len(calls) == 2


def test_webhook_client_error_is_not_retried(monkeypatch):
    calls = _fake_post(monkeypatch, [FakeResponse(422), FakeResponse(200, {})])
    handler = WebhookOptimizationHandler(QUALITY, URL, base_delay=0)

    with pytest.raises(AutomationError):
        asyncio.run(handler.handle({}))
    assert len(calls) == 1


def test_registry_falls_back_to_builtin_recommendations(monkeypatch):
    _fake_post(monkeypatch, [FakeResponse(500)])
    registry = OptimizationActionRegistry(webhook_handlers(URL, max_attempts=1, base_delay=0))
    assert set(registry.task_types) == set(TASK_TYPES)

    result = asyncio.run(registry.activate(QUALITY, {}))
    assert result.fallback is True
    assert result.recommendations == FALLBACK_RECOMMENDATIONS[QUALITY]


def test_parse_result_validates_shape():
    result = parse_result(QUALITY, {"recommendations": ["a", None, 3], "measured_impact": {"x": 1}})
    assert result.recommendations == ["a", "3"]
    assert result.measured_impact == {"x": 1}
    with pytest.raises(AutomationError):
        parse_result(QUALITY, ["not", "an", "object"])
    with pytest.raises(AutomationError):
        parse_result(QUALITY, {"measured_impact": "large"})


def test_invalid_webhook_url():
    with pytest.raises(ValueError):
        WebhookOptimizationHandler(QUALITY, "automation.local")
