import pytest

from engines.predictive_models import (
    ForecastBundle,
    PredictiveModelBank,
    forecast_value_realization,
    predict_conversion,
    predict_friction,
)
from engines.skill_assessment import SkillScores
from telemetry import (
    BehaviorAggregate,
    BusinessCaseBehavior,
    CalculatorBehavior,
    ICPBehavior,
    OverallMetrics,
)


def test_conversion_starts_from_base_rate():
    assert predict_conversion(BehaviorAggregate("alice"), SkillScores()) == 0.5


def test_conversion_is_clamped_to_one():
    aggregate = BehaviorAggregate(
        "alice",
        icp=ICPBehavior(review_time=300, exported_summary=True, return_visits=4, customized_criteria=True),
        calculator=CalculatorBehavior(variable_adjustments=8, exported_charts=True, edge_case_testing=True),
        business_case=BusinessCaseBehavior(
            stakeholder_view_switches=5, multiple_format_exports=True, strategic_export_timing=True
        ),
    )
    assert predict_conversion(aggregate, SkillScores(90, 90, 90, 90)) == 1.0


def test_friction_predictions_for_exploring_user():
    aggregate = BehaviorAggregate(
        "alice",
        overall=OverallMetrics(total_sessions=3, total_exports=0, tool_sequence_length=12),
    )
    predictions = {p.tool: p for p in predict_friction(aggregate)}

    assert set(predictions) == {"icp_analysis", "general", "navigation"}
    assert predictions["icp_analysis"].probability == 0.7
    assert predictions["general"].type == "export_friction"
    assert predictions["general"].severity == "high"
    assert predictions["general"].probability == 0.8
    assert predictions["navigation"].severity == "low"


def test_engaged_user_has_no_friction_predictions():
    aggregate = BehaviorAggregate(
        "alice",
        icp=ICPBehavior(review_time=90),
        overall=OverallMetrics(total_sessions=5, total_exports=1, tool_sequence_length=4),
    )
    assert predict_friction(aggregate) == []


def test_value_forecast_offsets_are_relative_to_now():
    baseline = forecast_value_realization(BehaviorAggregate("alice"), SkillScores(), 1000.0)
    assert baseline.immediate == 1030.0
    assert baseline.short_term == 1300.0
    assert baseline.medium_term == 1900.0
    assert baseline.long_term == 2800.0
    assert baseline.confidence == 0.5

    engaged = BehaviorAggregate(
        "alice",
        icp=ICPBehavior(review_time=150),
        overall=OverallMetrics(total_exports=1),
    )
    forecast = forecast_value_realization(engaged, SkillScores(70, 70, 70, 70), 1000.0)
    assert forecast.immediate == pytest.approx(1012.0)
    assert forecast.short_term == pytest.approx(1126.0)
    assert forecast.confidence == 1.0


def test_model_bank_keeps_previous_component_on_failure():
    calls = {"n": 0}

    def flaky_conversion(aggregate, scores):
        calls["n"] += 1
        if calls["n"] > 1:
            raise RuntimeError("model offline")
        return 0.9

    bank = PredictiveModelBank(conversion=flaky_conversion)
    assert bank.latest == ForecastBundle()

    first = bank.forecast(BehaviorAggregate("alice"), SkillScores(), 100.0)
    assert first.conversion_probability == 0.9
    assert first.errors == ()

    second = bank.forecast(BehaviorAggregate("alice"), SkillScores(), 200.0)
    assert second.conversion_probability == 0.9
    assert second.errors == ("conversion",)
    assert second.value_realization.immediate == 230.0

    bank.reset()
    assert bank.latest.conversion_probability == 0.5


def test_model_bank_clamps_external_scores():
    bank = PredictiveModelBank(conversion=lambda aggregate, scores: 3.2)
    assert bank.forecast(BehaviorAggregate("alice"), SkillScores(), 0.0).conversion_probability == 1.0
