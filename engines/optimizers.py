"""Built-in optimization handlers.

Each handler reads the read-only context snapshot assembled by the
orchestration loop and derives recommendations from the session metrics,
skill scores and forecast it contains.  Handlers never touch session state;
the loop merges their results.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

from engines.base import OptimizationHandler, OptimizationResult

VALUE_RECOGNITION = "value_recognition"
QUALITY = "quality"
PROSPECT_QUALIFICATION = "prospect_qualification"
DEAL_VALUE = "deal_value"
EXPORT_MATERIALS = "export_materials"

TASK_TYPES = (VALUE_RECOGNITION, QUALITY, PROSPECT_QUALIFICATION, DEAL_VALUE, EXPORT_MATERIALS)

FALLBACK_RECOMMENDATIONS: Dict[str, List[str]] = {
    PROSPECT_QUALIFICATION: [
        "Surface the highest-value ICP insights before detailed data loads",
        "Translate technical capabilities into stakeholder-specific value",
    ],
    DEAL_VALUE: [
        "Shorten the business case path from calculator results",
        "Make the cost-of-inaction figures visible earlier",
    ],
    EXPORT_MATERIALS: [
        "Verify export integrations and retry failed formats",
        "Make exported resources easier to find",
    ],
    VALUE_RECOGNITION: [
        "Move the first concrete insight above the fold",
    ],
    QUALITY: [
        "Replace flagged terminology with business language",
    ],
}

FALLBACK_OPTIMIZATIONS: Dict[str, List[str]] = {
    PROSPECT_QUALIFICATION: ["Queued ICP display review"],
    DEAL_VALUE: ["Queued calculator workflow review"],
    EXPORT_MATERIALS: ["Queued export pipeline check"],
    VALUE_RECOGNITION: ["Queued first-value placement review"],
    QUALITY: ["Queued copy audit"],
}


def _number(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _scores(context: Mapping[str, Any]) -> Mapping[str, Any]:
    return context.get("scores") or {}


def _metrics(context: Mapping[str, Any]) -> Mapping[str, Any]:
    return context.get("metrics") or {}


def _details(context: Mapping[str, Any]) -> Mapping[str, Any]:
    return context.get("details") or {}


def _duration_impact(details: Mapping[str, Any]) -> Dict[str, Any]:
    impact: Dict[str, Any] = {}
    if "step_duration" in details and "target" in details:
        duration = _number(details.get("step_duration"))
        target = _number(details.get("target"))
        impact.update(
            step=details.get("step"),
            observed_seconds=duration,
            target_seconds=target,
            overrun_seconds=round(max(0.0, duration - target), 3),
        )
    return impact


class BuiltinOptimizer(OptimizationHandler):
    """Shared fallback wiring for the built-in handlers."""

    def fallback(self, context: Mapping[str, Any], error: Optional[str] = None) -> OptimizationResult:
        return OptimizationResult(
            task_type=self.task_type,
            recommendations=list(FALLBACK_RECOMMENDATIONS.get(self.task_type, [])),
            optimizations=list(FALLBACK_OPTIMIZATIONS.get(self.task_type, [])),
            measured_impact={},
            fallback=True,
            error=error,
        )

    @staticmethod
    def _resolves(context: Mapping[str, Any], optimizations: List[str]) -> bool:
        return bool(_details(context).get("friction_id")) and bool(optimizations)


class ProspectQualificationOptimizer(BuiltinOptimizer):
    task_type = PROSPECT_QUALIFICATION

    def handle(self, context: Mapping[str, Any]) -> OptimizationResult:
        scores = _scores(context)
        details = _details(context)
        recommendations: List[str] = []
        optimizations: List[str] = []

        customer_analysis = _number(scores.get("customer_analysis"))
        if customer_analysis < 40:
            recommendations.append("Guide a systematic buyer persona review before rating companies")
        elif customer_analysis < 70:
            recommendations.append("Encourage customizing rating criteria for the target market")
        if details.get("predictive"):
            recommendations.append("Highlight the ICP summary within the first 30 seconds")
        impact = _duration_impact(details)
        if impact.get("overrun_seconds"):
            optimizations.append("Progressive loading for ICP insights")
        if details.get("friction_id"):
            optimizations.append(f"Addressed ICP friction: {details.get('description', context.get('issue'))}")
        if not recommendations:
            recommendations.append("Keep the ICP rating rationale visible next to each company")
        impact["customer_analysis"] = customer_analysis

        return OptimizationResult(
            task_type=self.task_type,
            recommendations=recommendations,
            optimizations=optimizations,
            measured_impact=impact,
            resolves_issue=self._resolves(context, optimizations),
        )


class DealValueOptimizer(BuiltinOptimizer):
    task_type = DEAL_VALUE

    def handle(self, context: Mapping[str, Any]) -> OptimizationResult:
        scores = _scores(context)
        details = _details(context)
        forecast = context.get("forecast") or {}
        recommendations: List[str] = []
        optimizations: List[str] = []

        value_communication = _number(scores.get("value_communication"))
        if value_communication < 70:
            recommendations.append("Offer scenario presets so variables can be compared quickly")
        conversion = _number(forecast.get("conversion_probability"), 0.5)
        if conversion < 0.5:
            recommendations.append("Lead the business case with the cost-of-inaction summary")
        impact = _duration_impact(details)
        if impact.get("overrun_seconds"):
            optimizations.append(f"Streamlined {impact.get('step')} flow")
        if details.get("friction_id"):
            optimizations.append(f"Addressed calculator friction: {details.get('description', context.get('issue'))}")
        if not recommendations:
            recommendations.append("Auto-populate the business case from calculator results")
        impact["conversion_probability"] = conversion

        return OptimizationResult(
            task_type=self.task_type,
            recommendations=recommendations,
            optimizations=optimizations,
            measured_impact=impact,
            resolves_issue=self._resolves(context, optimizations),
        )


class ExportMaterialsOptimizer(BuiltinOptimizer):
    task_type = EXPORT_MATERIALS

    def handle(self, context: Mapping[str, Any]) -> OptimizationResult:
        metrics = _metrics(context)
        details = _details(context)
        recommendations: List[str] = []
        optimizations: List[str] = []

        exports = int(_number(metrics.get("exports")))
        rate = _number(metrics.get("export_success_rate"))
        if exports == 0:
            recommendations.append("Prompt a first export once the ICP summary is reviewed")
        elif rate < 98:
            recommendations.append("Retry failed export formats and report the failing integration")
            optimizations.append("Flagged failing export integration")
        if details.get("predictive"):
            recommendations.append("Offer a one-click CRM export preset")
        if details.get("friction_id"):
            optimizations.append(f"Addressed export friction: {details.get('description', context.get('issue'))}")
        impact = _duration_impact(details)
        impact.update(exports=exports, export_success_rate=rate)

        return OptimizationResult(
            task_type=self.task_type,
            recommendations=recommendations or ["Keep export formats grouped by destination"],
            optimizations=optimizations,
            measured_impact=impact,
            resolves_issue=self._resolves(context, optimizations),
        )


class ValueRecognitionOptimizer(BuiltinOptimizer):
    task_type = VALUE_RECOGNITION

    def handle(self, context: Mapping[str, Any]) -> OptimizationResult:
        forecast = context.get("forecast") or {}
        elapsed = _number(context.get("elapsed"))
        target = _number(context.get("recognition_target"), 30.0)
        recommendations: List[str] = []
        optimizations: List[str] = []

        if elapsed > target:
            recommendations.append("Show one quantified insight immediately on load")
            optimizations.append("Promoted first-value insight")
        conversion = _number(forecast.get("conversion_probability"), 0.5)
        if conversion < 0.4:
            recommendations.append("Point to the export that matches the current prospect")
        value = forecast.get("value_realization") or {}
        now = _number(context.get("now"))
        immediate = _number(value.get("immediate"), now)
        delay = max(0.0, immediate - now) if now else 0.0
        if delay > 60:
            recommendations.append("Shorten the path to the first insight")
        if not recommendations:
            recommendations.append("Keep the headline insight pinned while tools load")

        return OptimizationResult(
            task_type=self.task_type,
            recommendations=recommendations,
            optimizations=optimizations,
            measured_impact={
                "elapsed_seconds": elapsed,
                "target_seconds": target,
                "conversion_probability": conversion,
                "forecast_delay_seconds": round(delay, 3),
            },
        )


class QualityOptimizer(BuiltinOptimizer):
    task_type = QUALITY

    def handle(self, context: Mapping[str, Any]) -> OptimizationResult:
        metrics = _metrics(context)
        details = _details(context)
        credibility = _number(metrics.get("credibility_score"), 100.0)
        terms = list(details.get("terms") or [])

        recommendations = [f"Replace flagged term '{term}'" for term in terms]
        if credibility < 100:
            recommendations.append("Audit rendered copy for flagged terminology before the next session")

        return OptimizationResult(
            task_type=self.task_type,
            recommendations=recommendations or ["Keep copy in professional development language"],
            optimizations=["Queued copy audit"] if credibility < 100 else [],
            measured_impact={"credibility_score": credibility, "flagged_terms": len(terms)},
        )


def builtin_handlers() -> List[OptimizationHandler]:
    return [
        ProspectQualificationOptimizer(),
        DealValueOptimizer(),
        ExportMaterialsOptimizer(),
        ValueRecognitionOptimizer(),
        QualityOptimizer(),
    ]
