"""Heuristic predictive models over behavior aggregates and skill scores."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from engines.skill_assessment import SkillScores
from telemetry import BehaviorAggregate

logger = logging.getLogger(__name__)

BASE_CONVERSION = 0.5

ConversionSignal = Tuple[str, Callable[[BehaviorAggregate, float], bool], float]

# (signal, predicate(aggregate, average skill), increment); durations in seconds
CONVERSION_SIGNALS: Sequence[ConversionSignal] = (
    ("exported_summary", lambda a, s: a.icp.exported_summary, 0.2),
    ("sustained_review", lambda a, s: a.icp.review_time > 180, 0.15),
    ("return_visits", lambda a, s: a.icp.return_visits > 1, 0.1),
    ("customized_criteria", lambda a, s: a.icp.customized_criteria, 0.1),
    ("variable_adjustments", lambda a, s: a.calculator.variable_adjustments > 3, 0.15),
    ("exported_charts", lambda a, s: a.calculator.exported_charts, 0.2),
    ("edge_case_testing", lambda a, s: a.calculator.edge_case_testing, 0.1),
    ("stakeholder_switching", lambda a, s: a.business_case.stakeholder_view_switches > 2, 0.15),
    ("multi_format_exports", lambda a, s: a.business_case.multiple_format_exports, 0.2),
    ("strategic_timing", lambda a, s: a.business_case.strategic_export_timing, 0.15),
    ("high_skill", lambda a, s: s > 70, 0.1),
    ("expert_skill", lambda a, s: s > 85, 0.1),
)

IMMEDIATE_OFFSET = 30.0
SHORT_TERM_OFFSET = 300.0
MEDIUM_TERM_OFFSET = 900.0
LONG_TERM_OFFSET = 1800.0
BASE_CONFIDENCE = 0.5


@dataclass(frozen=True)
class FrictionPrediction:
    tool: str
    type: str
    severity: str
    description: str
    probability: float


@dataclass(frozen=True)
class ValueRealizationForecast:
    immediate: float
    short_term: float
    medium_term: float
    long_term: float
    confidence: float


@dataclass(frozen=True)
class ForecastBundle:
    conversion_probability: float = BASE_CONVERSION
    friction_predictions: Tuple[FrictionPrediction, ...] = ()
    value_realization: Optional[ValueRealizationForecast] = None
    errors: Tuple[str, ...] = field(default=(), compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversion_probability": self.conversion_probability,
            "friction_predictions": [asdict(p) for p in self.friction_predictions],
            "value_realization": asdict(self.value_realization) if self.value_realization else None,
            "errors": list(self.errors),
        }


def predict_conversion(aggregate: BehaviorAggregate, scores: SkillScores) -> float:
    avg_skill = scores.average
    probability = BASE_CONVERSION
    for _, predicate, increment in CONVERSION_SIGNALS:
        if predicate(aggregate, avg_skill):
            probability += increment
    return max(0.0, min(1.0, round(probability, 6)))


def predict_friction(aggregate: BehaviorAggregate) -> List[FrictionPrediction]:
    predictions: List[FrictionPrediction] = []
    overall = aggregate.overall

    if aggregate.icp.review_time < 60:
        predictions.append(
            FrictionPrediction(
                tool="icp_analysis",
                type="engagement",
                severity="medium",
                description="ICP value may not be recognized quickly enough",
                probability=0.7,
            )
        )

    if overall.total_exports == 0 and overall.total_sessions > 2:
        predictions.append(
            FrictionPrediction(
                tool="general",
                type="export_friction",
                severity="high",
                description="Exploring across sessions without exporting",
                probability=0.8,
            )
        )

    if overall.tool_sequence_length > 10:
        predictions.append(
            FrictionPrediction(
                tool="navigation",
                type="workflow_inefficiency",
                severity="low",
                description="Navigation pattern suggests workflow confusion",
                probability=0.6,
            )
        )

    return predictions


def forecast_value_realization(
    aggregate: BehaviorAggregate,
    scores: SkillScores,
    now: float,
) -> ValueRealizationForecast:
    immediate = IMMEDIATE_OFFSET
    short_term = SHORT_TERM_OFFSET
    confidence = BASE_CONFIDENCE

    if aggregate.icp.review_time > 120:
        immediate = 15.0
        confidence += 0.2

    if aggregate.overall.total_exports > 0:
        short_term = 180.0
        confidence += 0.3

    if scores.average > 60:
        immediate *= 0.8
        short_term *= 0.7
        confidence += 0.2

    return ValueRealizationForecast(
        immediate=now + immediate,
        short_term=now + short_term,
        medium_term=now + MEDIUM_TERM_OFFSET,
        long_term=now + LONG_TERM_OFFSET,
        confidence=min(1.0, round(confidence, 6)),
    )


class PredictiveModelBank:
    """Runs the three scorers independently, keeping the last good component on failure."""

    def __init__(
        self,
        *,
        conversion: Callable[[BehaviorAggregate, SkillScores], float] = predict_conversion,
        friction: Callable[[BehaviorAggregate], List[FrictionPrediction]] = predict_friction,
        value: Callable[[BehaviorAggregate, SkillScores, float], ValueRealizationForecast] = forecast_value_realization,
    ) -> None:
        self._conversion = conversion
        self._friction = friction
        self._value = value
        self.latest = ForecastBundle()

    def forecast(self, aggregate: BehaviorAggregate, scores: SkillScores, now: float) -> ForecastBundle:
        previous = self.latest
        errors: List[str] = []

        try:
            conversion = max(0.0, min(1.0, float(self._conversion(aggregate, scores))))
        except Exception as exc:
            logger.warning("Conversion scorer failed; keeping previous value: %s", exc)
            errors.append("conversion")
            conversion = previous.conversion_probability

        try:
            friction = tuple(self._friction(aggregate))
        except Exception as exc:
            logger.warning("Friction scorer failed; keeping previous predictions: %s", exc)
            errors.append("friction")
            friction = previous.friction_predictions

        try:
            value = self._value(aggregate, scores, now)
        except Exception as exc:
            logger.warning("Value forecast failed; keeping previous forecast: %s", exc)
            errors.append("value_realization")
            value = previous.value_realization

        self.latest = ForecastBundle(
            conversion_probability=conversion,
            friction_predictions=friction,
            value_realization=value,
            errors=tuple(errors),
        )
        return self.latest

    def reset(self) -> None:
        self.latest = ForecastBundle()
