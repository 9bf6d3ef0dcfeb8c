"""Per-session workflow analytics.

Tracks workflow step timing, friction points, the first value-recognition
moment, export attempts and the credibility score for a single session.  The
orchestration loop drains newly recorded friction points once per tick.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)

SEVERITIES = ("low", "medium", "high", "critical")
VALUE_RECOGNITION_TARGET = 30.0
EXPORT_SUCCESS_TARGET = 98.0
CREDIBILITY_TARGET = 100.0
CREDIBILITY_PENALTY = 10.0

STEP_TARGETS: Dict[str, float] = {
    "login-navigation": 30.0,
    "icp-analysis": 300.0,
    "cost-calculator": 300.0,
    "business-case-builder": 180.0,
    "export-crm": 120.0,
}
DEFAULT_STEP_TARGET = 60.0

FLAGGED_TERMS = (
    "level up",
    "level-up",
    "levelup",
    "points",
    "gaming",
    "badge",
    "achievement",
    "quest",
    "leaderboard",
    "xp",
    "power-up",
    "powerup",
    "reward",
)


def step_target(step: str) -> float:
    return STEP_TARGETS.get(step, DEFAULT_STEP_TARGET)


@dataclass
class FrictionPoint:
    id: str
    step: Optional[str]
    severity: str
    description: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    recorded_at: float = 0.0
    resolved: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class WorkflowStep:
    step: str
    started_at: float
    ended_at: float
    duration: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    friction_ids: tuple = ()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["friction_ids"] = list(self.friction_ids)
        data["target"] = step_target(self.step)
        return data


@dataclass(frozen=True)
class ExportAttempt:
    tool: str
    format: str
    success: bool
    recorded_at: float
    metadata: Dict[str, Any] = field(default_factory=dict)


class SessionAnalytics:
    """Mutable analytics for one session; all mutators are thread-safe."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.start_time: float = clock()
        self.friction_points: List[FrictionPoint] = []
        self._undrained: List[FrictionPoint] = []
        self.steps: List[WorkflowStep] = []
        self._open_steps: Dict[str, Dict[str, Any]] = {}
        self.current_step: Optional[str] = None
        self.value_recognition_time: Optional[float] = None
        self.exports: List[ExportAttempt] = []
        self.credibility_score: float = CREDIBILITY_TARGET

    def begin(self, start_time: Optional[float] = None) -> None:
        with self._lock:
            self.start_time = self._clock() if start_time is None else float(start_time)

    # ------------------------------------------------------------------
    # workflow steps
    def start_step(self, step: str, metadata: Optional[Mapping[str, Any]] = None, now: Optional[float] = None) -> None:
        if not step:
            raise ValueError("step name is required")
        at = self._clock() if now is None else float(now)
        with self._lock:
            previous = self.current_step
        if previous and previous != step:
            self.end_step(previous, now=at)
        with self._lock:
            self._open_steps[step] = {"started_at": at, "metadata": dict(metadata or {}), "friction_ids": []}
            self.current_step = step

    def end_step(self, step: str, now: Optional[float] = None) -> Optional[WorkflowStep]:
        at = self._clock() if now is None else float(now)
        with self._lock:
            opened = self._open_steps.pop(step, None)
            if opened is None:
                return None
            completed = WorkflowStep(
                step=step,
                started_at=opened["started_at"],
                ended_at=at,
                duration=max(0.0, at - opened["started_at"]),
                metadata=opened["metadata"],
                friction_ids=tuple(opened["friction_ids"]),
            )
            self.steps.append(completed)
            if self.current_step == step:
                self.current_step = None
        logger.debug("Completed step %s in %.1fs", step, completed.duration)
        return completed

    def record_step(self, step: str, duration: float, metadata: Optional[Mapping[str, Any]] = None, now: Optional[float] = None) -> WorkflowStep:
        """Record an already completed step with a known duration."""

        if not step:
            raise ValueError("step name is required")
        if duration < 0:
            raise ValueError("duration must be non-negative")
        at = self._clock() if now is None else float(now)
        completed = WorkflowStep(
            step=step,
            started_at=at - duration,
            ended_at=at,
            duration=float(duration),
            metadata=dict(metadata or {}),
        )
        with self._lock:
            self.steps.append(completed)
        return completed

    def completed_steps(self) -> List[WorkflowStep]:
        with self._lock:
            return list(self.steps)

    # ------------------------------------------------------------------
    # friction
    def record_friction(
        self,
        description: str,
        severity: str = "medium",
        metadata: Optional[Mapping[str, Any]] = None,
        step: Optional[str] = None,
        now: Optional[float] = None,
    ) -> FrictionPoint:
        if severity not in SEVERITIES:
            raise ValueError(f"Unknown severity: {severity}")
        if not description:
            raise ValueError("description is required")
        at = self._clock() if now is None else float(now)
        with self._lock:
            point = FrictionPoint(
                id=f"friction-{next(self._ids)}",
                step=step if step is not None else self.current_step,
                severity=severity,
                description=description,
                metadata=dict(metadata or {}),
                recorded_at=at,
            )
            self.friction_points.append(point)
            self._undrained.append(point)
            if point.step in self._open_steps:
                self._open_steps[point.step]["friction_ids"].append(point.id)
        logger.warning("Friction point (%s) at %s: %s", severity, point.step, description)
        return point

    def drain_friction(self) -> List[FrictionPoint]:
        """Hand over friction points recorded since the previous drain."""

        with self._lock:
            drained, self._undrained = self._undrained, []
        return drained

    def resolve_friction(self, friction_id: str) -> bool:
        with self._lock:
            for point in self.friction_points:
                if point.id == friction_id:
                    point.resolved = True
                    return True
        return False

    def unresolved(self, severity: Optional[str] = None) -> List[FrictionPoint]:
        with self._lock:
            return [
                p for p in self.friction_points
                if not p.resolved and (severity is None or p.severity == severity)
            ]

    # ------------------------------------------------------------------
    # value recognition, exports, credibility
    def record_value_recognition(self, elapsed: Optional[float] = None, now: Optional[float] = None) -> float:
        """Record the first value-recognition moment; later calls keep the first."""

        at = self._clock() if now is None else float(now)
        with self._lock:
            if self.value_recognition_time is None:
                measured = at - self.start_time if elapsed is None else float(elapsed)
                if measured < 0:
                    raise ValueError("value recognition cannot precede session start")
                self.value_recognition_time = measured
            return self.value_recognition_time

    def record_export(
        self,
        tool: str,
        format: str,
        success: bool,
        metadata: Optional[Mapping[str, Any]] = None,
        now: Optional[float] = None,
    ) -> float:
        at = self._clock() if now is None else float(now)
        with self._lock:
            self.exports.append(
                ExportAttempt(tool=tool, format=format, success=bool(success), recorded_at=at, metadata=dict(metadata or {}))
            )
            rate = self._export_rate_locked()
        if not success:
            logger.warning("Export failed: %s -> %s", tool, format)
        return rate

    def _export_rate_locked(self) -> float:
        if not self.exports:
            return 0.0
        return 100.0 * sum(1 for e in self.exports if e.success) / len(self.exports)

    @property
    def export_success_rate(self) -> float:
        with self._lock:
            return self._export_rate_locked()

    def scan_copy(self, text: str, context: str = "") -> List[str]:
        """Penalize credibility for flagged terminology in rendered copy."""

        lowered = (text or "").lower()
        found = [term for term in FLAGGED_TERMS if term in lowered]
        if found:
            with self._lock:
                self.credibility_score = max(0.0, self.credibility_score - CREDIBILITY_PENALTY * len(found))
            self.record_friction(
                f"Flagged terminology detected: {', '.join(found)}",
                "critical",
                {"context": context, "terms": found},
            )
        return found

    def restore_credibility(self) -> None:
        with self._lock:
            self.credibility_score = CREDIBILITY_TARGET

    # ------------------------------------------------------------------
    def success_criteria(self, recognition_target: float = VALUE_RECOGNITION_TARGET) -> Dict[str, bool]:
        with self._lock:
            critical_open = any(p.severity == "critical" and not p.resolved for p in self.friction_points)
            recognized = self.value_recognition_time
            return {
                "critical_issues_resolved": not critical_open,
                "credibility_maintained": self.credibility_score >= CREDIBILITY_TARGET,
                "value_recognition_achieved": recognized is not None and recognized <= recognition_target,
                "export_target_met": self._export_rate_locked() >= EXPORT_SUCCESS_TARGET,
            }

    def summary(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "start_time": self.start_time,
                "friction_points": len(self.friction_points),
                "critical_issues": sum(
                    1 for p in self.friction_points if p.severity == "critical" and not p.resolved
                ),
                "credibility_score": self.credibility_score,
                "export_success_rate": self._export_rate_locked(),
                "exports": len(self.exports),
                "value_recognition_time": self.value_recognition_time,
                "completed_steps": len(self.steps),
                "current_step": self.current_step,
            }
