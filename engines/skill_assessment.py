"""Skill assessment engine.

Behavior aggregates are converted into three dimension scores using fixed
tables of threshold signals.  Scoring is a pure function of the aggregate, so
re-assessing identical input always yields identical :class:`SkillScores`.
The stateful :class:`SkillAssessmentEngine` wraps the scorer with a bounded
assessment history used for velocity and next-level projections.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Sequence, Tuple

from competency_levels import COMPETENCY_LEVELS, CompetencyLevel, CompetencyLevelRegistry
from telemetry import BehaviorAggregate, MalformedAggregateError

_LOGGER = logging.getLogger(__name__)

DIMENSIONS: Tuple[str, ...] = (
    "customer_analysis",
    "value_communication",
    "executive_readiness",
)

DIMENSION_LABELS: Dict[str, str] = {
    "customer_analysis": "Customer Analysis Methodology",
    "value_communication": "Value Communication Excellence",
    "executive_readiness": "Executive Communication Readiness",
}

BALANCE_TOLERANCE = 15.0
DEVELOPMENT_TARGET = 70.0

Signal = Tuple[str, Callable[[BehaviorAggregate], bool], float]

# (signal name, predicate, points); durations in seconds
CUSTOMER_ANALYSIS_SIGNALS: Sequence[Signal] = (
    ("systematic_review", lambda a: a.icp.review_time > 180, 20.0),
    ("persona_exploration", lambda a: a.icp.buyer_persona_clicks > 5, 15.0),
    ("pain_point_depth", lambda a: a.icp.pain_point_section_time > 60, 15.0),
    ("exported_summary", lambda a: a.icp.exported_summary, 20.0),
    ("reference_usage", lambda a: a.icp.return_visits > 2, 15.0),
    ("customized_criteria", lambda a: a.icp.customized_criteria, 15.0),
)

VALUE_COMMUNICATION_SIGNALS: Sequence[Signal] = (
    ("scenario_analysis", lambda a: a.calculator.variable_adjustments > 5, 15.0),
    ("methodology_review", lambda a: a.calculator.methodology_review_time > 120, 15.0),
    ("edge_case_testing", lambda a: a.calculator.edge_case_testing, 20.0),
    ("exported_charts", lambda a: a.calculator.exported_charts, 20.0),
    ("iterative_sessions", lambda a: a.calculator.multiple_sessions > 3, 15.0),
    ("business_case_integration", lambda a: a.calculator.integrated_with_business_case, 15.0),
)

EXECUTIVE_READINESS_SIGNALS: Sequence[Signal] = (
    ("stakeholder_awareness", lambda a: a.business_case.stakeholder_view_switches > 3, 20.0),
    ("content_customization", lambda a: a.business_case.content_customization, 15.0),
    ("multi_format_exports", lambda a: a.business_case.multiple_format_exports, 15.0),
    ("auto_population", lambda a: a.business_case.auto_population_utilization, 20.0),
    ("return_access", lambda a: a.business_case.return_access > 2, 15.0),
    ("strategic_timing", lambda a: a.business_case.strategic_export_timing, 15.0),
)

SIGNAL_TABLES: Dict[str, Sequence[Signal]] = {
    "customer_analysis": CUSTOMER_ANALYSIS_SIGNALS,
    "value_communication": VALUE_COMMUNICATION_SIGNALS,
    "executive_readiness": EXECUTIVE_READINESS_SIGNALS,
}

# feature -> (dimension, threshold); "overall" reads the derived mean
FEATURE_READINESS: Dict[str, Tuple[str, float]] = {
    "advanced_customization": ("overall", 50.0),
    "analytics_dashboard": ("customer_analysis", 60.0),
    "export_automation": ("value_communication", 60.0),
    "stakeholder_mapping": ("executive_readiness", 60.0),
    "competitive_intelligence": ("customer_analysis", 75.0),
    "advanced_financial_modeling": ("value_communication", 75.0),
    "executive_presentation_builder": ("executive_readiness", 75.0),
    "strategic_insights": ("executive_readiness", 85.0),
    "market_data": ("overall", 85.0),
    "revenue_intelligence_mastery": ("overall", 90.0),
}


@dataclass(frozen=True)
class SkillScores:
    customer_analysis: float = 0.0
    value_communication: float = 0.0
    executive_readiness: float = 0.0
    overall: float = 0.0
    last_assessment: float = 0.0

    def dimension(self, name: str) -> float:
        if name == "overall":
            return self.overall
        if name not in DIMENSIONS:
            raise ValueError(f"Unknown skill dimension: {name}")
        return getattr(self, name)

    @property
    def average(self) -> float:
        """Unrounded mean of the three dimensions."""
        return sum(getattr(self, name) for name in DIMENSIONS) / len(DIMENSIONS)

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


def _clamp(value: float, lower: float = 0.0, upper: float = 100.0) -> float:
    return max(lower, min(upper, value))


def _score_dimension(aggregate: BehaviorAggregate, signals: Sequence[Signal]) -> float:
    total = sum(points for _, predicate, points in signals if predicate(aggregate))
    return _clamp(float(total))


def matched_signals(aggregate: BehaviorAggregate) -> Dict[str, List[str]]:
    """Return the names of the signals each dimension picked up."""

    return {
        dimension: [name for name, predicate, _ in signals if predicate(aggregate)]
        for dimension, signals in SIGNAL_TABLES.items()
    }


def score_aggregate(aggregate: BehaviorAggregate) -> SkillScores:
    """Score an aggregate; pure and deterministic."""

    if not isinstance(aggregate, BehaviorAggregate):
        raise MalformedAggregateError(
            f"Expected BehaviorAggregate, got {type(aggregate).__name__}"
        )
    scores = {
        dimension: _score_dimension(aggregate, signals)
        for dimension, signals in SIGNAL_TABLES.items()
    }
    # round half up, so 0.5 never rounds down to the even neighbour
    overall = _clamp(math.floor(sum(scores.values()) / len(scores) + 0.5))
    return SkillScores(
        customer_analysis=scores["customer_analysis"],
        value_communication=scores["value_communication"],
        executive_readiness=scores["executive_readiness"],
        overall=float(overall),
        last_assessment=float(aggregate.as_of),
    )


def level(scores: SkillScores, registry: CompetencyLevelRegistry = COMPETENCY_LEVELS) -> CompetencyLevel:
    return registry.level_for(scores.overall)


def time_to_next_level(
    scores: SkillScores,
    velocity: Optional[Mapping[str, float]],
    registry: CompetencyLevelRegistry = COMPETENCY_LEVELS,
) -> Optional[int]:
    """Project how many assessment cycles are needed to reach the next breakpoint.

    Returns ``None`` when velocity is unknown or not positive, or when the user
    is already at the highest level.
    """

    if not velocity:
        return None
    rate = float(velocity.get("overall", 0.0))
    if rate <= 0:
        return None
    target = registry.next_breakpoint(registry.level_for(scores.overall))
    if target is None:
        return None
    remaining = target - scores.overall
    if remaining <= 0:
        return 0
    return int(math.ceil(remaining / rate))


def feature_readiness(scores: SkillScores, feature: str) -> Dict[str, Any]:
    """Compare the governing dimension against the feature's threshold."""

    try:
        dimension, threshold = FEATURE_READINESS[feature]
    except KeyError as exc:
        raise ValueError(f"Unknown feature: {feature}") from exc
    current = scores.dimension(dimension)
    progress = min(current / threshold, 1.0) if threshold > 0 else 1.0
    return {
        "feature": feature,
        "dimension": dimension,
        "threshold": threshold,
        "current": current,
        "ready": current >= threshold,
        "progress": round(progress, 4),
    }


def improvement_path(scores: SkillScores) -> List[Dict[str, Any]]:
    """List focus areas for every dimension still under the development target."""

    focus: List[Dict[str, Any]] = []
    for dimension in DIMENSIONS:
        value = scores.dimension(dimension)
        if value >= DEVELOPMENT_TARGET:
            continue
        if dimension == "executive_readiness":
            priority = "high" if value < 50 else "medium"
        else:
            priority = "critical" if value < 40 else "high"
        focus.append(
            {
                "dimension": dimension,
                "competency": DIMENSION_LABELS[dimension],
                "priority": priority,
                "current": value,
                "gap": DEVELOPMENT_TARGET - value,
                "signals": [name for name, _, _ in SIGNAL_TABLES[dimension]],
            }
        )
    return focus


def competency_balance(scores: SkillScores) -> Dict[str, Any]:
    values = {dimension: scores.dimension(dimension) for dimension in DIMENSIONS}
    strongest = max(DIMENSIONS, key=lambda d: values[d])
    weakest = min(DIMENSIONS, key=lambda d: values[d])
    spread = values[strongest] - values[weakest]
    return {
        "strongest": strongest,
        "weakest": weakest,
        "range": spread,
        "balanced": spread <= BALANCE_TOLERANCE,
    }


class SkillAssessmentEngine:
    """Stateful wrapper that keeps last-known scores and a bounded history."""

    def __init__(
        self,
        *,
        history_size: int = 10,
        registry: CompetencyLevelRegistry = COMPETENCY_LEVELS,
    ) -> None:
        if history_size < 2:
            raise ValueError("history_size must be at least 2")
        self.registry = registry
        self._history: Deque[SkillScores] = deque(maxlen=history_size)
        self.skipped_cycles = 0

    @property
    def current(self) -> SkillScores:
        return self._history[-1] if self._history else SkillScores()

    @property
    def history(self) -> List[SkillScores]:
        return list(self._history)

    def assess(self, aggregate: Any) -> SkillScores:
        """Score ``aggregate`` and record it; never raises into the caller."""

        candidate = aggregate
        try:
            if isinstance(candidate, Mapping):
                candidate = BehaviorAggregate.from_dict(candidate)
            if candidate is None:
                raise MalformedAggregateError("No aggregate available")
            scores = score_aggregate(candidate)
        except Exception as exc:
            self.skipped_cycles += 1
            _LOGGER.warning("Skipped assessment cycle: %s", exc)
            return self.current
        self._history.append(scores)
        return scores

    def level(self, scores: Optional[SkillScores] = None) -> CompetencyLevel:
        return level(scores if scores is not None else self.current, self.registry)

    def velocity(self) -> Optional[Dict[str, float]]:
        """Per-dimension change between the two latest assessments."""

        if len(self._history) < 2:
            return None
        previous, current = self._history[-2], self._history[-1]
        return {
            name: current.dimension(name) - previous.dimension(name)
            for name in (*DIMENSIONS, "overall")
        }

    def time_to_next_level(self) -> Optional[int]:
        return time_to_next_level(self.current, self.velocity(), self.registry)

    def progress_trend(self) -> Dict[str, Any]:
        velocity = self.velocity()
        if velocity is None:
            return {"direction": "insufficient_data", "deltas": {}}
        overall = velocity["overall"]
        if overall > 0:
            direction = "improving"
        elif overall < 0:
            direction = "declining"
        else:
            direction = "steady"
        return {"direction": direction, "deltas": velocity}

    def reset(self) -> None:
        self._history.clear()
        self.skipped_cycles = 0
