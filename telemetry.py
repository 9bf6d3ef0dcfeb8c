"""Behavior telemetry collaborator.

Raw interaction events are recorded per user (and optionally per session) and
assembled on demand into a :class:`BehaviorAggregate`, the read-only input of
the skill, gate and prediction engines.  Every accepted event also pushes a
:class:`BehaviorUpdate` into the inbox of each subscribed orchestration loop,
so loops learn about new behavior without any global event bus.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

import db

logger = logging.getLogger(__name__)

ICP_COMPONENT = "icp_analysis"
CALCULATOR_COMPONENT = "cost_calculator"
BUSINESS_CASE_COMPONENT = "business_case"

CHART_EXPORT_TYPES = {"chart", "summary_chart"}
TOOL_WINDOW_SECONDS = 3600.0


class MalformedAggregateError(ValueError):
    """Raised when an aggregate payload cannot be interpreted."""


@dataclass(frozen=True)
class ICPBehavior:
    review_time: float = 0.0
    buyer_persona_clicks: int = 0
    pain_point_section_time: float = 0.0
    exported_summary: bool = False
    return_visits: int = 0
    customized_criteria: bool = False


@dataclass(frozen=True)
class CalculatorBehavior:
    variable_adjustments: int = 0
    methodology_review_time: float = 0.0
    exported_charts: bool = False
    edge_case_testing: bool = False
    multiple_sessions: int = 0
    integrated_with_business_case: bool = False


@dataclass(frozen=True)
class BusinessCaseBehavior:
    stakeholder_view_switches: int = 0
    content_customization: bool = False
    multiple_format_exports: bool = False
    auto_population_utilization: bool = False
    return_access: int = 0
    strategic_export_timing: bool = False


@dataclass(frozen=True)
class OverallMetrics:
    total_sessions: int = 0
    total_exports: int = 0
    tool_sequence_length: int = 0
    avg_session_duration: float = 0.0
    last_activity: float = 0.0


@dataclass(frozen=True)
class BehaviorAggregate:
    """Accumulated counters and durations (seconds) for one user or session."""

    user_id: str
    session_id: Optional[str] = None
    icp: ICPBehavior = field(default_factory=ICPBehavior)
    calculator: CalculatorBehavior = field(default_factory=CalculatorBehavior)
    business_case: BusinessCaseBehavior = field(default_factory=BusinessCaseBehavior)
    overall: OverallMetrics = field(default_factory=OverallMetrics)
    as_of: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BehaviorAggregate":
        """Build an aggregate from a mapping, rejecting wrongly typed sections."""

        if not isinstance(data, Mapping):
            raise MalformedAggregateError("Aggregate payload must be a mapping")
        user_id = data.get("user_id")
        if not isinstance(user_id, str) or not user_id.strip():
            raise MalformedAggregateError("Aggregate is missing a user_id")

        def section(name: str, factory):
            raw = data.get(name) or {}
            if not isinstance(raw, Mapping):
                raise MalformedAggregateError(f"Aggregate section '{name}' must be a mapping")
            try:
                return factory(**raw)
            except TypeError as exc:
                raise MalformedAggregateError(f"Aggregate section '{name}' is invalid: {exc}") from exc

        try:
            as_of = float(data.get("as_of", 0.0) or 0.0)
        except (TypeError, ValueError) as exc:
            raise MalformedAggregateError("Aggregate as_of must be numeric") from exc

        return cls(
            user_id=user_id,
            session_id=data.get("session_id"),
            icp=section("icp", ICPBehavior),
            calculator=section("calculator", CalculatorBehavior),
            business_case=section("business_case", BusinessCaseBehavior),
            overall=section("overall", OverallMetrics),
            as_of=as_of,
        )


@dataclass(frozen=True)
class BehaviorEvent:
    user_id: str
    component: str
    action_type: str
    payload: Dict[str, Any]
    timestamp: float
    session_id: Optional[str] = None


@dataclass(frozen=True)
class BehaviorUpdate:
    """Inbox message telling a loop that a user's behavior changed."""

    user_id: str
    session_id: Optional[str]
    timestamp: float


def _duration(event: BehaviorEvent) -> float:
    value = event.payload.get("duration", 0)
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return 0.0


def _tool_name(event: BehaviorEvent) -> str:
    return str(event.payload.get("tool") or event.component)


def _integrated(sequence: List[BehaviorEvent], first: str, second: str) -> bool:
    for current, following in zip(sequence, sequence[1:]):
        if (
            _tool_name(current) == first
            and _tool_name(following) == second
            and following.timestamp - current.timestamp < TOOL_WINDOW_SECONDS
        ):
            return True
    return False


def _strategic_timing(exports: List[BehaviorEvent], sequence: List[BehaviorEvent]) -> bool:
    for export in exports:
        recent = [
            tool
            for tool in sequence
            if tool.timestamp < export.timestamp
            and export.timestamp - tool.timestamp < TOOL_WINDOW_SECONDS
        ]
        if len(recent) >= 2:
            return True
    return False


def assemble_aggregate(
    user_id: str,
    events: List[BehaviorEvent],
    *,
    session_id: Optional[str] = None,
    as_of: float = 0.0,
) -> BehaviorAggregate:
    """Fold raw events into a :class:`BehaviorAggregate` (pure)."""

    def of(component: str) -> List[BehaviorEvent]:
        return [e for e in events if e.component == component]

    def actions(items: List[BehaviorEvent], action_type: str) -> List[BehaviorEvent]:
        return [e for e in items if e.action_type == action_type]

    def section_time(items: List[BehaviorEvent], section: str) -> float:
        return sum(
            _duration(e)
            for e in items
            if e.action_type == "section_time" and e.payload.get("section") == section
        )

    sessions = actions(events, "session")
    exports = actions(events, "export")
    sequence = sorted(actions(events, "tool_open"), key=lambda e: e.timestamp)

    icp_events = of(ICP_COMPONENT)
    icp_exports = actions(icp_events, "export")
    icp = ICPBehavior(
        review_time=sum(_duration(e) for e in actions(icp_events, "section_time")),
        buyer_persona_clicks=len(actions(icp_events, "buyer_persona_click")),
        pain_point_section_time=section_time(icp_events, "pain_points"),
        exported_summary=bool(icp_exports),
        return_visits=len(actions(icp_events, "visit")),
        customized_criteria=bool(actions(icp_events, "customization")),
    )

    calc_events = of(CALCULATOR_COMPONENT)
    calculator = CalculatorBehavior(
        variable_adjustments=len(actions(calc_events, "variable_adjustment")),
        methodology_review_time=section_time(calc_events, "methodology"),
        exported_charts=any(
            e.payload.get("type") in CHART_EXPORT_TYPES for e in actions(calc_events, "export")
        ),
        edge_case_testing=bool(actions(calc_events, "edge_case_testing")),
        multiple_sessions=len(actions(calc_events, "session")),
        integrated_with_business_case=_integrated(
            sequence, CALCULATOR_COMPONENT, BUSINESS_CASE_COMPONENT
        ),
    )

    case_events = of(BUSINESS_CASE_COMPONENT)
    case_exports = actions(case_events, "export")
    business_case = BusinessCaseBehavior(
        stakeholder_view_switches=len(actions(case_events, "stakeholder_view_switch")),
        content_customization=bool(actions(case_events, "content_customization")),
        multiple_format_exports=len({e.payload.get("type") for e in case_exports}) > 1,
        auto_population_utilization=bool(actions(case_events, "auto_population_accept")),
        return_access=len(actions(case_events, "visit")),
        strategic_export_timing=_strategic_timing(case_exports, sequence),
    )

    avg_duration = (
        sum(_duration(s) for s in sessions) / len(sessions) if sessions else 0.0
    )
    overall = OverallMetrics(
        total_sessions=len(sessions),
        total_exports=len(exports),
        tool_sequence_length=len(sequence),
        avg_session_duration=avg_duration,
        last_activity=max((e.timestamp for e in events), default=0.0),
    )

    return BehaviorAggregate(
        user_id=user_id,
        session_id=session_id,
        icp=icp,
        calculator=calculator,
        business_case=business_case,
        overall=overall,
        as_of=as_of,
    )


class BehaviorEventStore:
    """Append-only, thread-safe behavior event store with inbox fan-out."""

    def __init__(
        self,
        *,
        persist: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.persist = persist
        self._clock = clock
        self._lock = threading.Lock()
        self._events: Dict[str, List[BehaviorEvent]] = {}
        self._subscribers: List["queue.SimpleQueue[BehaviorUpdate]"] = []
        self.dropped = 0

    # ------------------------------------------------------------------
    def record_event(
        self,
        user_id: Optional[str],
        component: Optional[str],
        action_type: Optional[str],
        payload: Optional[Mapping[str, Any]] = None,
        timestamp: Optional[float] = None,
        session_id: Optional[str] = None,
    ) -> bool:
        """Record one event; malformed events are dropped and counted, never raised."""

        if not isinstance(user_id, str) or not user_id.strip():
            return self._drop("missing user_id", user_id, component)
        if not isinstance(component, str) or not component.strip():
            return self._drop("missing component", user_id, component)
        if not isinstance(action_type, str) or not action_type.strip():
            return self._drop("missing action_type", user_id, component)
        if payload is not None and not isinstance(payload, Mapping):
            return self._drop("payload is not a mapping", user_id, component)
        try:
            occurred_at = float(timestamp) if timestamp is not None else self._clock()
        except (TypeError, ValueError):
            return self._drop("non-numeric timestamp", user_id, component)

        event = BehaviorEvent(
            user_id=user_id,
            component=component,
            action_type=action_type,
            payload=dict(payload or {}),
            timestamp=occurred_at,
            session_id=session_id,
        )
        with self._lock:
            self._events.setdefault(user_id, []).append(event)
            subscribers = list(self._subscribers)

        if self.persist:
            try:
                db.record_behavior_event(
                    user_id, component, action_type, event.payload, occurred_at, session_id
                )
            except Exception:
                logger.warning("Failed to persist behavior event for %s", user_id, exc_info=True)

        update = BehaviorUpdate(user_id=user_id, session_id=session_id, timestamp=occurred_at)
        for inbox in subscribers:
            inbox.put(update)
        return True

    def _drop(self, reason: str, user_id: Any, component: Any) -> bool:
        with self._lock:
            self.dropped += 1
        logger.info("Dropped malformed behavior event (%s): user=%r component=%r", reason, user_id, component)
        return False

    # ------------------------------------------------------------------
    def get_aggregate(self, user_id: str, session_id: Optional[str] = None) -> BehaviorAggregate:
        """Return the aggregate for ``user_id``; a zero aggregate when there is no data."""

        with self._lock:
            events = list(self._events.get(user_id, ()))
        if session_id is not None:
            events = [e for e in events if e.session_id == session_id]
        return assemble_aggregate(user_id, events, session_id=session_id, as_of=self._clock())

    def events(self, user_id: str) -> List[BehaviorEvent]:
        with self._lock:
            return list(self._events.get(user_id, ()))

    def hydrate(self, user_id: str) -> int:
        """Load persisted events for ``user_id`` into memory, returning the count loaded."""

        rows = db.list_behavior_events(user_id)
        loaded = [
            BehaviorEvent(
                user_id=row["user_id"],
                component=row["component"],
                action_type=row["action_type"],
                payload=row["payload"],
                timestamp=row["occurred_at"],
                session_id=row["session_id"],
            )
            for row in rows
        ]
        with self._lock:
            self._events[user_id] = loaded
        return len(loaded)

    # ------------------------------------------------------------------
    def subscribe(self) -> "queue.SimpleQueue[BehaviorUpdate]":
        """Create and register an inbox channel for behavior updates."""

        inbox: "queue.SimpleQueue[BehaviorUpdate]" = queue.SimpleQueue()
        with self._lock:
            self._subscribers.append(inbox)
        return inbox

    def unsubscribe(self, inbox: "queue.SimpleQueue[BehaviorUpdate]") -> None:
        with self._lock:
            self._subscribers = [s for s in self._subscribers if s is not inbox]

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
