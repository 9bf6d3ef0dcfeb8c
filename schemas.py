"""Pydantic schemas for the engine's HTTP control surface."""

from __future__ import annotations

from typing import Any, Dict, List, Literal

from pydantic import BaseModel, Field

__all__ = [
    "BehaviorEventRequest",
    "BehaviorEventResponse",
    "StartSessionRequest",
    "StartSessionResponse",
    "StatusResponse",
    "FrictionRequest",
    "FrictionResponse",
    "StepRequest",
    "ValueRecognitionRequest",
    "ExportRequest",
    "CopyScanRequest",
    "FeatureAccessResponse",
    "SkillsResponse",
]


class BehaviorEventRequest(BaseModel):
    """Raw interaction event from the instrumentation layer.

    ``user_id`` and ``component`` are optional here so that malformed events
    reach the store and are counted there instead of failing validation.
    """
    user_id: str | None = None
    component: str | None = None
    action_type: str | None = None
    payload: Dict[str, Any] | None = None
    timestamp: float | None = None
    session_id: str | None = None


class BehaviorEventResponse(BaseModel):
    accepted: bool
    dropped_total: int


class StartSessionRequest(BaseModel):
    user_id: str = Field(min_length=1)
    session_id: str = Field(min_length=1)


class StartSessionResponse(BaseModel):
    session_id: str
    user_id: str
    active: bool


class StatusResponse(BaseModel):
    active: bool
    state: Literal["idle", "active", "stopped"]
    session_summary: Dict[str, Any]


class FrictionRequest(BaseModel):
    description: str = Field(min_length=1)
    severity: Literal["low", "medium", "high", "critical"] = "medium"
    step: str | None = Field(
        default=None,
        description="Workflow step the friction belongs to; defaults to the step in progress.",
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)


class FrictionResponse(BaseModel):
    id: str
    step: str | None
    severity: str
    description: str
    resolved: bool


class StepRequest(BaseModel):
    step: str = Field(min_length=1)
    action: Literal["start", "end", "complete"] = Field(
        default="complete",
        description="'start'/'end' time the step live; 'complete' records a finished step with its duration.",
    )
    duration: float | None = Field(default=None, ge=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ValueRecognitionRequest(BaseModel):
    elapsed: float | None = Field(
        default=None,
        ge=0,
        description="Seconds from session start to first value; measured from the session clock when omitted.",
    )


class ExportRequest(BaseModel):
    tool: str = Field(min_length=1)
    format: str = Field(min_length=1)
    success: bool
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CopyScanRequest(BaseModel):
    text: str
    context: str = ""


class FeatureAccessResponse(BaseModel):
    features: List[str]
    ui_complexity: str
    level: str
    milestones: List[Dict[str, Any]] = Field(default_factory=list)


class SkillsResponse(BaseModel):
    scores: Dict[str, float]
    level: str
    velocity: Dict[str, float] | None = None
    time_to_next_level: int | None = None
    trend: Dict[str, Any]
    improvement_path: List[Dict[str, Any]]
    balance: Dict[str, Any]
    forecast: Dict[str, Any]
