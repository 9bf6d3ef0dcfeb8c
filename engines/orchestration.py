"""Orchestration control loop.

One :class:`OrchestrationLoop` is bound to one session.  While active, an
asyncio ticker calls :meth:`OrchestrationLoop.tick` on a fixed interval.  A
tick never suspends: it drains the behavior inbox, runs an assessment cycle
when needed, evaluates the rule set in a fixed order and dispatches the
resulting optimization tasks as independent asyncio tasks.  Duplicate tasks
are suppressed by dedupe key until their cooldown window has elapsed.

Handler results are recorded against their dispatch id as long as they
arrive before :meth:`OrchestrationLoop.stop` builds the session report.
Results that arrive afterwards are ignored; ``stop`` does not wait for or
cancel in-flight handlers.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import logging
import queue
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

import db
from competency_levels import COMPETENCY_LEVELS, CompetencyLevel, CompetencyLevelRegistry
from engines.action_registry import OptimizationActionRegistry, generic_fallback
from engines.base import OptimizationResult
from engines.dedupe import CooldownSet, dedupe_key
from engines.feature_gate import FeatureAccessProfile, ProgressiveFeatureGate
from engines.optimizers import (
    DEAL_VALUE,
    EXPORT_MATERIALS,
    PROSPECT_QUALIFICATION,
    QUALITY,
    VALUE_RECOGNITION,
)
from engines.predictive_models import ForecastBundle, PredictiveModelBank
from engines.session_analytics import (
    CREDIBILITY_TARGET,
    VALUE_RECOGNITION_TARGET,
    FrictionPoint,
    SessionAnalytics,
    step_target,
)
from engines.skill_assessment import (
    SkillAssessmentEngine,
    SkillScores,
    competency_balance,
    improvement_path,
)
from env_validation import EngineSettings
from profile_sync import ProfileSyncer
from telemetry import BehaviorAggregate, BehaviorEventStore, BehaviorUpdate

logger = logging.getLogger(__name__)

CONVERSION_FLOOR = 0.4
PREDICTION_FLOOR = 0.7
CONFIDENCE_FLOOR = 0.7
IMMEDIATE_VALUE_FLOOR = 60.0

STEP_TASKS: Dict[str, str] = {
    "login-navigation": VALUE_RECOGNITION,
    "icp-analysis": PROSPECT_QUALIFICATION,
    "cost-calculator": DEAL_VALUE,
    "business-case-builder": DEAL_VALUE,
    "export-crm": EXPORT_MATERIALS,
}

PREDICTION_TASKS: Dict[str, str] = {
    "icp_analysis": PROSPECT_QUALIFICATION,
    "general": EXPORT_MATERIALS,
    "navigation": VALUE_RECOGNITION,
}


class OrchestrationStateError(RuntimeError):
    """Raised when a control operation is not valid in the loop's current state."""


class LoopState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    STOPPED = "stopped"


@dataclass(frozen=True)
class OptimizationTask:
    task_type: str
    priority: str
    issue: str
    context: Mapping[str, Any] = field(default_factory=dict)

    @property
    def dedupe_key(self) -> str:
        return dedupe_key(self.task_type, self.issue)


@dataclass
class DispatchRecord:
    dispatch_id: str
    task_type: str
    priority: str
    issue: str
    dedupe_key: str
    dispatched_at: float
    predictive: bool = False
    status: str = "pending"
    result: Optional[OptimizationResult] = None

    def to_dict(self) -> Dict[str, Any]:
        result = self.result
        return {
            "dispatch_id": self.dispatch_id,
            "task_type": self.task_type,
            "priority": self.priority,
            "issue": self.issue,
            "dedupe_key": self.dedupe_key,
            "dispatched_at": self.dispatched_at,
            "predictive": self.predictive,
            "status": self.status,
            "fallback": bool(result and result.fallback),
            "recommendations": list(result.recommendations) if result else [],
            "optimizations": list(result.optimizations) if result else [],
            "measured_impact": dict(result.measured_impact) if result else {},
        }


def task_for_step(step: Optional[str]) -> Optional[str]:
    """Map a friction point's step to the task that addresses it."""

    if not step:
        return None
    if "icp" in step:
        return PROSPECT_QUALIFICATION
    if "cost" in step or "business-case" in step:
        return DEAL_VALUE
    if "export" in step:
        return EXPORT_MATERIALS
    return None


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(_freeze(v) for v in value)
    return value


def _dedupe_preserving_order(items: List[str]) -> List[str]:
    seen: Set[str] = set()
    ordered = []
    for item in items:
        if item not in seen:
            seen.add(item)
            ordered.append(item)
    return ordered


class OrchestrationLoop:
    """Session-scoped control loop over the skill, gate and prediction engines."""

    def __init__(
        self,
        store: BehaviorEventStore,
        *,
        settings: EngineSettings = EngineSettings(),
        registry: Optional[OptimizationActionRegistry] = None,
        syncer: Optional[ProfileSyncer] = None,
        levels: CompetencyLevelRegistry = COMPETENCY_LEVELS,
        clock: Callable[[], float] = time.time,
        persist: bool = False,
    ) -> None:
        self.store = store
        self.settings = settings
        self.registry = registry or OptimizationActionRegistry(timeout=settings.handler_timeout)
        self.syncer = syncer
        self.levels = levels
        self._clock = clock
        self.persist = persist
        self._lock = threading.Lock()
        self._generation = 0
        self._init_session_state()

    def _init_session_state(self) -> None:
        # survives reset so handlers from a finished session never match a new one
        self._generation += 1
        self.state = LoopState.IDLE
        self.user_id: Optional[str] = None
        self.session_id: Optional[str] = None
        self.started_at: Optional[float] = None
        self.assessment = SkillAssessmentEngine(history_size=self.settings.history_size, registry=self.levels)
        self.gate = ProgressiveFeatureGate(registry=self.levels, clock=self._clock)
        self.models = PredictiveModelBank()
        self.analytics = SessionAnalytics(clock=self._clock)
        self.dedupe = CooldownSet(self.settings.cooldown_seconds, clock=self._clock)
        self.recognition_target = VALUE_RECOGNITION_TARGET
        self._inbox: Optional["queue.SimpleQueue[BehaviorUpdate]"] = None
        self._ticker: Optional[asyncio.Task] = None
        self._handler_tasks: Set[asyncio.Future] = set()
        self._dispatches: Dict[str, DispatchRecord] = {}
        self._dispatch_ids = itertools.count(1)
        self._ticks = 0
        self._last_assessed_at: Optional[float] = None
        self._latest_aggregate: Optional[BehaviorAggregate] = None
        self._report: Optional[Dict[str, Any]] = None

    # ------------------------------------------------------------------
    # control surface
    @property
    def active(self) -> bool:
        return self.state is LoopState.ACTIVE

    @property
    def report(self) -> Optional[Dict[str, Any]]:
        return self._report

    def _elapsed(self, now: float) -> float:
        if self.started_at is None:
            return 0.0
        return now - self.started_at

    def start(self, user_id: str, session_id: str) -> Dict[str, Any]:
        if not user_id or not session_id:
            raise ValueError("user_id and session_id are required")
        if self.state is not LoopState.IDLE:
            raise OrchestrationStateError(f"Cannot start loop in state '{self.state.value}'")

        self.user_id = user_id
        self.session_id = session_id
        self.started_at = self._clock()
        self.analytics.begin(self.started_at)
        self._inbox = self.store.subscribe()
        self.state = LoopState.ACTIVE

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            self._ticker = loop.create_task(self._run_ticker())
        else:
            logger.debug("No running event loop; session %s is ticked manually", session_id)

        logger.info("Orchestration started for user %s session %s", user_id, session_id)
        return {"session_id": session_id, "user_id": user_id, "active": True}

    async def _run_ticker(self) -> None:
        interval = self.settings.tick_interval
        while self.state is LoopState.ACTIVE:
            await asyncio.sleep(interval)
            if self.state is not LoopState.ACTIVE:
                break
            self.tick()

    def stop(self) -> Dict[str, Any]:
        """Stop ticking and return the session report; repeated calls return the same report."""

        if self.state is LoopState.IDLE:
            raise OrchestrationStateError("Loop has not been started")
        if self.state is LoopState.STOPPED and self._report is not None:
            return self._report
        return self._finalize()

    def reset(self) -> None:
        if self.state is LoopState.ACTIVE:
            raise OrchestrationStateError("Stop the loop before resetting it")
        with self._lock:
            self._init_session_state()

    def status(self) -> Dict[str, Any]:
        now = self._clock()
        forecast = self.models.latest
        with self._lock:
            dispatched = len(self._dispatches)
            pending = sum(1 for r in self._dispatches.values() if r.status == "pending")
        summary = {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "elapsed": self._elapsed(now),
            "ticks": self._ticks,
            "tasks_dispatched": dispatched,
            "pending_handlers": pending,
            "active_dedupe_keys": self.dedupe.active(now),
            "level": self.assessment.level().value,
            "conversion_probability": forecast.conversion_probability,
            "recognition_target": self.recognition_target,
            "metrics": self.analytics.summary(),
        }
        return {"active": self.active, "state": self.state.value, "session_summary": summary}

    # ------------------------------------------------------------------
    # tick
    def tick(self, now: Optional[float] = None) -> List[OptimizationTask]:
        """Run one control cycle; returns the tasks actually dispatched."""

        if self.state is not LoopState.ACTIVE:
            return []
        at = self._clock() if now is None else float(now)
        try:
            return self._tick(at)
        except Exception as exc:
            logger.exception("Orchestration tick failed for session %s", self.session_id)
            self._finalize(failure=f"{type(exc).__name__}: {exc}")
            return []

    def _tick(self, now: float) -> List[OptimizationTask]:
        self._ticks += 1
        updated = self._drain_inbox()
        stale = (
            self._last_assessed_at is None
            or now - self._last_assessed_at >= self.settings.assessment_max_age
        )
        if updated or stale:
            self._assessment_cycle(now)

        drained = self.analytics.drain_friction()
        dispatched = []
        for task in self.evaluate_rules(now, drained):
            if self._dispatch(task, now):
                dispatched.append(task)
        return dispatched

    def _drain_inbox(self) -> bool:
        if self._inbox is None:
            return False
        relevant = False
        while True:
            try:
                update = self._inbox.get_nowait()
            except queue.Empty:
                break
            if update.user_id == self.user_id:
                relevant = True
        return relevant

    def _assessment_cycle(self, now: float) -> None:
        try:
            aggregate: Optional[BehaviorAggregate] = self.store.get_aggregate(self.user_id)
        except Exception:
            logger.warning("Aggregate unavailable for %s; keeping last snapshot", self.user_id, exc_info=True)
            aggregate = None

        scores = self.assessment.assess(aggregate)
        level = self.assessment.level(scores)
        if self.settings.adaptive_targets:
            self.recognition_target = self.levels.get(level).recognition_target

        try:
            self.gate.access(self.user_id, level, scores)
        except Exception:
            logger.exception("Feature gate evaluation failed for %s", self.user_id)

        self.models.forecast(aggregate, scores, now)

        if aggregate is not None:
            self._latest_aggregate = aggregate
            if self.syncer is not None:
                try:
                    self.syncer.sync_scores(self.user_id, scores)
                except Exception:
                    logger.warning("Profile sync scheduling failed for %s", self.user_id, exc_info=True)
        self._last_assessed_at = now

    def evaluate_rules(self, now: float, friction: List[FrictionPoint]) -> List[OptimizationTask]:
        """Apply the rule set in its fixed order and return candidate tasks."""

        tasks: List[OptimizationTask] = []

        for point in friction:
            if point.severity != "critical" or point.resolved:
                continue
            task_type = task_for_step(point.step)
            if task_type is None:
                continue
            tasks.append(
                OptimizationTask(
                    task_type,
                    "critical",
                    point.description,
                    {
                        "friction_id": point.id,
                        "step": point.step,
                        "description": point.description,
                        "metadata": dict(point.metadata),
                    },
                )
            )

        elapsed = self._elapsed(now)
        if elapsed > self.recognition_target and self.analytics.value_recognition_time is None:
            tasks.append(
                OptimizationTask(
                    VALUE_RECOGNITION,
                    "high",
                    f"Value recognition exceeds {self.recognition_target:g}-second target",
                    {"elapsed": elapsed, "target": self.recognition_target},
                )
            )

        credibility = self.analytics.credibility_score
        if credibility < CREDIBILITY_TARGET:
            terms: List[str] = []
            for point in self.analytics.unresolved("critical"):
                terms.extend(point.metadata.get("terms") or [])
            tasks.append(
                OptimizationTask(
                    QUALITY,
                    "critical",
                    "Credibility score below target",
                    {"credibility_score": credibility, "terms": _dedupe_preserving_order(terms)},
                )
            )

        for step in self.analytics.completed_steps():
            target = step_target(step.step)
            if step.duration <= target:
                continue
            task_type = STEP_TASKS.get(step.step) or task_for_step(step.step)
            if task_type is None:
                continue
            tasks.append(
                OptimizationTask(
                    task_type,
                    "medium",
                    f"Step {step.step} exceeds target duration",
                    {"step": step.step, "step_duration": step.duration, "target": target},
                )
            )

        tasks.extend(self._proactive_tasks(now))
        return tasks

    def _proactive_tasks(self, now: float) -> List[OptimizationTask]:
        if self._last_assessed_at is None:
            return []
        forecast = self.models.latest
        tasks: List[OptimizationTask] = []

        if forecast.conversion_probability < CONVERSION_FLOOR:
            tasks.append(
                OptimizationTask(
                    VALUE_RECOGNITION,
                    "high",
                    "Low conversion probability",
                    {"conversion_probability": forecast.conversion_probability},
                )
            )

        for prediction in forecast.friction_predictions:
            if prediction.probability <= PREDICTION_FLOOR:
                continue
            task_type = PREDICTION_TASKS.get(prediction.tool)
            if task_type is None:
                continue
            tasks.append(
                OptimizationTask(
                    task_type,
                    "high",
                    f"Predicted friction: {prediction.description}",
                    {
                        "predictive": True,
                        "probability": prediction.probability,
                        "tool": prediction.tool,
                        "type": prediction.type,
                    },
                )
            )

        value = forecast.value_realization
        if value is not None and value.confidence > CONFIDENCE_FLOOR and value.immediate > now + IMMEDIATE_VALUE_FLOOR:
            tasks.append(
                OptimizationTask(
                    VALUE_RECOGNITION,
                    "high",
                    "Delayed value realization forecast",
                    {"confidence": value.confidence, "immediate": value.immediate},
                )
            )
        return tasks

    # ------------------------------------------------------------------
    # dispatch
    def _snapshot(self, task: OptimizationTask, dispatch_id: str, now: float) -> Mapping[str, Any]:
        scores = self.assessment.current
        raw = {
            "dispatch_id": dispatch_id,
            "task_type": task.task_type,
            "priority": task.priority,
            "issue": task.issue,
            "session_id": self.session_id,
            "user_id": self.user_id,
            "now": now,
            "elapsed": self._elapsed(now),
            "recognition_target": self.recognition_target,
            "details": dict(task.context),
            "metrics": self.analytics.summary(),
            "scores": scores.to_dict(),
            "level": self.assessment.level(scores).value,
            "forecast": self.models.latest.to_dict(),
        }
        return _freeze(copy.deepcopy(raw))

    def _dispatch(self, task: OptimizationTask, now: float) -> bool:
        if self.state is not LoopState.ACTIVE:
            return False
        if not self.dedupe.claim(task.dedupe_key, now):
            return False

        dispatch_id = f"{task.task_type}-{next(self._dispatch_ids)}"
        record = DispatchRecord(
            dispatch_id=dispatch_id,
            task_type=task.task_type,
            priority=task.priority,
            issue=task.issue,
            dedupe_key=task.dedupe_key,
            dispatched_at=now,
            predictive=bool(task.context.get("predictive")),
        )
        with self._lock:
            self._dispatches[dispatch_id] = record
        context = self._snapshot(task, dispatch_id, now)
        logger.info("Dispatching %s (%s): %s", task.task_type, task.priority, task.issue)

        coro = self._run_handler(self._generation, dispatch_id, task.task_type, context)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            handler_task = loop.create_task(coro)
            self._handler_tasks.add(handler_task)
            handler_task.add_done_callback(self._handler_tasks.discard)
        else:
            threading.Thread(target=lambda: asyncio.run(coro), daemon=True).start()
        return True

    async def _run_handler(
        self, generation: int, dispatch_id: str, task_type: str, context: Mapping[str, Any]
    ) -> None:
        try:
            result = await self.registry.activate(task_type, context)
        except Exception as exc:
            logger.exception("Registry failed to activate %s", task_type)
            result = generic_fallback(task_type, str(exc))
        self._record_result(dispatch_id, result, context, generation=generation)

    def _record_result(
        self,
        dispatch_id: str,
        result: OptimizationResult,
        context: Mapping[str, Any],
        generation: int,
    ) -> None:
        with self._lock:
            stale = generation != self._generation
            record = self._dispatches.get(dispatch_id)
            if stale or record is None or self.state is not LoopState.ACTIVE:
                logger.debug("Ignoring late result for dispatch %s", dispatch_id)
                return
            record.result = result
            record.status = "recovered" if result.fallback else "completed"

        friction_id = (context.get("details") or {}).get("friction_id")
        if result.resolves_issue and friction_id:
            self.analytics.resolve_friction(friction_id)
        if record.task_type == QUALITY and not result.fallback:
            self.analytics.restore_credibility()

        if self.persist:
            try:
                db.log_optimization(
                    self.session_id,
                    dispatch_id,
                    record.task_type,
                    record.priority,
                    record.status,
                    result.to_dict(),
                )
            except Exception:
                logger.warning("Failed to log dispatch %s", dispatch_id, exc_info=True)

    async def wait_for_handlers(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight handler tasks scheduled on the current event loop."""

        pending = list(self._handler_tasks)
        if pending:
            await asyncio.wait(pending, timeout=timeout)

    # ------------------------------------------------------------------
    # report
    def _finalize(self, failure: Optional[str] = None) -> Dict[str, Any]:
        with self._lock:
            self.state = LoopState.STOPPED
            records = [r.to_dict() for r in self._dispatches.values()]

        ticker = self._ticker
        self._ticker = None
        if ticker is not None and not ticker.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            if ticker is not current:
                ticker.cancel()
        if self._inbox is not None:
            self.store.unsubscribe(self._inbox)
            self._inbox = None

        report = self._build_report(records, failure)
        self._report = report
        self.dedupe.clear()

        if self.persist:
            try:
                db.save_session_report(self.session_id, self.user_id, report)
            except Exception:
                logger.warning("Failed to persist report for session %s", self.session_id, exc_info=True)

        logger.info(
            "Orchestration stopped for session %s: %d tasks, success %.2f",
            self.session_id,
            report["tasks_dispatched"],
            report["success"]["score"],
        )
        return report

    def _build_report(self, records: List[Dict[str, Any]], failure: Optional[str]) -> Dict[str, Any]:
        stopped_at = self._clock()
        criteria = self.analytics.success_criteria(self.recognition_target)
        score = sum(1 for met in criteria.values() if met) / len(criteria)
        scores = self.assessment.current
        profile = self.gate.get_access(self.user_id) if self.user_id else None
        summary = self.analytics.summary()
        recommendations = _dedupe_preserving_order(
            [rec for record in records for rec in record["recommendations"]]
        )
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "started_at": self.started_at,
            "stopped_at": stopped_at,
            "duration": self._elapsed(stopped_at),
            "ticks": self._ticks,
            "tasks_dispatched": len(records),
            "tasks_by_type": dict(Counter(record["task_type"] for record in records)),
            "dispatches": records,
            "final_metrics": {
                "friction_points": summary["friction_points"],
                "critical_issues": summary["critical_issues"],
                "credibility_score": summary["credibility_score"],
                "export_success_rate": summary["export_success_rate"],
                "value_recognition_time": summary["value_recognition_time"],
                "conversion_probability": self.models.latest.conversion_probability,
            },
            "final_scores": scores.to_dict(),
            "level": self.assessment.level(scores).value,
            "features": sorted(profile.features) if profile else [],
            "ui_complexity": profile.ui_complexity if profile else None,
            "milestones": [m.to_dict() for m in self.gate.milestones(self.user_id)] if self.user_id else [],
            "success": {"score": score, "criteria": criteria},
            "recommendations": recommendations,
            "failure": failure,
        }

    # ------------------------------------------------------------------
    # read views
    def get_access(self, user_id: Optional[str] = None) -> Optional[FeatureAccessProfile]:
        return self.gate.get_access(user_id or self.user_id)

    @property
    def scores(self) -> SkillScores:
        return self.assessment.current

    @property
    def forecast(self) -> ForecastBundle:
        return self.models.latest

    def insights(self) -> Dict[str, Any]:
        scores = self.assessment.current
        level: CompetencyLevel = self.assessment.level(scores)
        profile = self.get_access()
        return {
            "user_id": self.user_id,
            "aggregate": self._latest_aggregate.to_dict() if self._latest_aggregate else None,
            "scores": scores.to_dict(),
            "level": level.value,
            "velocity": self.assessment.velocity(),
            "time_to_next_level": self.assessment.time_to_next_level(),
            "trend": self.assessment.progress_trend(),
            "improvement_path": improvement_path(scores),
            "balance": competency_balance(scores),
            "forecast": self.models.latest.to_dict(),
            "access": profile.to_dict() if profile else None,
        }


class SessionRegistry:
    """Owns one orchestration loop per session id."""

    def __init__(
        self,
        store: BehaviorEventStore,
        *,
        settings: EngineSettings = EngineSettings(),
        registry: Optional[OptimizationActionRegistry] = None,
        syncer: Optional[ProfileSyncer] = None,
        clock: Callable[[], float] = time.time,
        persist: bool = False,
    ) -> None:
        self.store = store
        self.settings = settings
        self.registry = registry or OptimizationActionRegistry(timeout=settings.handler_timeout)
        self.syncer = syncer
        self._clock = clock
        self.persist = persist
        self._loops: Dict[str, OrchestrationLoop] = {}

    def start(self, user_id: str, session_id: str) -> Dict[str, Any]:
        loop = self._loops.get(session_id)
        if loop is None:
            loop = OrchestrationLoop(
                self.store,
                settings=self.settings,
                registry=self.registry,
                syncer=self.syncer,
                clock=self._clock,
                persist=self.persist,
            )
        elif loop.state is LoopState.STOPPED:
            loop.reset()
        result = loop.start(user_id, session_id)
        self._loops[session_id] = loop
        return result

    def get(self, session_id: str) -> OrchestrationLoop:
        try:
            return self._loops[session_id]
        except KeyError:
            raise KeyError(f"Unknown session: {session_id}") from None

    def stop(self, session_id: str) -> Dict[str, Any]:
        return self.get(session_id).stop()

    def sessions(self) -> List[str]:
        return list(self._loops)

    def shutdown(self) -> None:
        for session_id, loop in self._loops.items():
            if loop.active:
                logger.info("Stopping session %s on shutdown", session_id)
                loop.stop()
