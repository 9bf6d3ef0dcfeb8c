import asyncio
from types import MappingProxyType

import pytest

from engines.action_registry import OptimizationActionRegistry, generic_fallback
from engines.base import OptimizationHandler, OptimizationResult
from engines.optimizers import (
    DEAL_VALUE,
    EXPORT_MATERIALS,
    FALLBACK_RECOMMENDATIONS,
    PROSPECT_QUALIFICATION,
    QUALITY,
    TASK_TYPES,
    VALUE_RECOGNITION,
)


class ExplodingHandler(OptimizationHandler):
    task_type = QUALITY

    def handle(self, context):
        raise RuntimeError("copy service unavailable")


class SlowHandler(OptimizationHandler):
    task_type = DEAL_VALUE

    async def handle(self, context):
        await asyncio.sleep(1)
        return OptimizationResult(task_type=self.task_type)


class WrongResultHandler(OptimizationHandler):
    task_type = EXPORT_MATERIALS

    def handle(self, context):
        return {"recommendations": []}


def _context(**details):
    return MappingProxyType(
        {
            "issue": "test issue",
            "now": 1000.0,
            "elapsed": 45.0,
            "recognition_target": 30.0,
            "details": MappingProxyType(details),
            "metrics": MappingProxyType({"exports": 0, "export_success_rate": 0.0, "credibility_score": 90.0}),
            "scores": MappingProxyType({"customer_analysis": 20.0, "value_communication": 80.0}),
            "forecast": MappingProxyType({"conversion_probability": 0.3, "value_realization": None}),
        }
    )


def test_builtin_registry_covers_every_task_type():
    registry = OptimizationActionRegistry()
    assert set(registry.task_types) == set(TASK_TYPES)
    assert registry.handler_for("unknown") is None


def test_duplicate_or_unnamed_handlers_are_rejected():
    with pytest.raises(ValueError):
        OptimizationActionRegistry([ExplodingHandler(), ExplodingHandler()])
    with pytest.raises(ValueError):
        OptimizationActionRegistry([OptimizationHandler()])
    with pytest.raises(ValueError):
        OptimizationActionRegistry(timeout=0)


def test_builtin_handler_runs():
    registry = OptimizationActionRegistry()
    result = asyncio.run(registry.activate(VALUE_RECOGNITION, _context()))

    assert result.fallback is False
    assert "Show one quantified insight immediately on load" in result.recommendations
    assert "Point to the export that matches the current prospect" in result.recommendations
    assert result.measured_impact["elapsed_seconds"] == 45.0


def test_friction_task_reports_resolution():
    registry = OptimizationActionRegistry()
    context = _context(friction_id="friction-1", description="ICP table loads slowly", step="icp-analysis")
    result = asyncio.run(registry.activate(PROSPECT_QUALIFICATION, context))

    assert result.resolves_issue is True
    assert result.optimizations == ["Addressed ICP friction: ICP table loads slowly"]
    assert result.recommendations[0] == "Guide a systematic buyer persona review before rating companies"


def test_handler_exception_yields_fallback():
    registry = OptimizationActionRegistry([ExplodingHandler()])
    result = asyncio.run(registry.activate(QUALITY, _context()))

    assert result.fallback is True
    assert result.error == "copy service unavailable"
    assert result.task_type == QUALITY


def test_handler_timeout_yields_fallback():
    registry = OptimizationActionRegistry([SlowHandler()], timeout=0.05)
    result = asyncio.run(registry.activate(DEAL_VALUE, _context()))

    assert result.fallback is True
    assert result.error == "timeout"


def test_unknown_task_type_and_invalid_result_yield_fallback():
    registry = OptimizationActionRegistry([WrongResultHandler()])

    unknown = asyncio.run(registry.activate(PROSPECT_QUALIFICATION, _context()))
    assert unknown.fallback is True
    assert unknown.recommendations == FALLBACK_RECOMMENDATIONS[PROSPECT_QUALIFICATION]

    invalid = asyncio.run(registry.activate(EXPORT_MATERIALS, _context()))
    assert invalid.fallback is True
    assert invalid.error == "invalid result"


def test_generic_fallback_for_unregistered_type():
    result = generic_fallback("mystery", "boom")
    assert result.recommendations == ["Generic optimization recommendation"]
    assert result.fallback is True
