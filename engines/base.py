from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional


@dataclass(frozen=True)
class OptimizationResult:
    task_type: str
    recommendations: List[str] = field(default_factory=list)
    optimizations: List[str] = field(default_factory=list)
    measured_impact: Dict[str, Any] = field(default_factory=dict)
    fallback: bool = False
    resolves_issue: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_type": self.task_type,
            "recommendations": list(self.recommendations),
            "optimizations": list(self.optimizations),
            "measured_impact": dict(self.measured_impact),
            "fallback": self.fallback,
            "resolves_issue": self.resolves_issue,
            "error": self.error,
        }


class OptimizationHandler:
    """Handles one optimization task type; ``handle`` may be sync or async."""

    task_type: str = ""

    def handle(self, context: Mapping[str, Any]) -> OptimizationResult:
        raise NotImplementedError

    def fallback(self, context: Mapping[str, Any], error: Optional[str] = None) -> OptimizationResult:
        return OptimizationResult(
            task_type=self.task_type,
            recommendations=["Review the workflow step that triggered this task"],
            optimizations=[],
            fallback=True,
            error=error,
        )
