# app.py: adaptive competency & optimization engine
# - behavior ingestion and aggregate queries
# - one orchestration loop per session, owned by the SessionRegistry on app.state
# - read-only feature/skill views for the rendering layer

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, HTTPException, Request

import db
from automation import webhook_handlers
from engines.action_registry import OptimizationActionRegistry
from engines.orchestration import OrchestrationLoop, OrchestrationStateError, SessionRegistry
from env_validation import load_engine_settings, validate_environment
from profile_sync import ProfileSyncer
from schemas import (
    BehaviorEventRequest,
    BehaviorEventResponse,
    CopyScanRequest,
    ExportRequest,
    FeatureAccessResponse,
    FrictionRequest,
    FrictionResponse,
    SkillsResponse,
    StartSessionRequest,
    StartSessionResponse,
    StatusResponse,
    StepRequest,
    ValueRecognitionRequest,
)
from telemetry import BehaviorEventStore

logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"


def build_sessions() -> SessionRegistry:
    settings = load_engine_settings()
    store = BehaviorEventStore(persist=settings.behavior_persist)
    if settings.automation_webhook_url:
        handlers = webhook_handlers(settings.automation_webhook_url)
        logger.info("Forwarding optimization tasks to %s", settings.automation_webhook_url)
    else:
        handlers = None
    registry = OptimizationActionRegistry(handlers, timeout=settings.handler_timeout)
    syncer = ProfileSyncer(settings.profile_sync_url)
    return SessionRegistry(store, settings=settings, registry=registry, syncer=syncer, persist=True)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    try:
        validate_environment()
        db.init()
        app.state.sessions = build_sessions()
        logger.info("Engine settings in use: %s", app.state.sessions.settings)
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise
    yield
    app.state.sessions.shutdown()


app = FastAPI(title="Adaptive Competency Engine", version=APP_VERSION, lifespan=_lifespan)


def _sessions(request: Request) -> SessionRegistry:
    return request.app.state.sessions


def _loop(request: Request, session_id: str) -> OrchestrationLoop:
    try:
        return _sessions(request).get(session_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"unknown session: {session_id}") from exc


def _active_loop(request: Request, session_id: str) -> OrchestrationLoop:
    loop = _loop(request, session_id)
    if not loop.active:
        raise HTTPException(status_code=409, detail=f"session {session_id} is {loop.state.value}")
    return loop


@app.get("/health")
async def health(request: Request) -> Dict[str, Any]:
    sessions = _sessions(request)
    active = [sid for sid in sessions.sessions() if sessions.get(sid).active]
    return {
        "status": "ok",
        "version": APP_VERSION,
        "active_sessions": len(active),
        "dropped_events": sessions.store.dropped,
    }


# ---------- Behavior telemetry ----------
@app.post("/behavior/events", response_model=BehaviorEventResponse)
async def record_behavior_event(request: Request, body: BehaviorEventRequest):
    store = _sessions(request).store
    accepted = store.record_event(
        body.user_id,
        body.component,
        body.action_type,
        body.payload,
        body.timestamp,
        session_id=body.session_id,
    )
    return BehaviorEventResponse(accepted=accepted, dropped_total=store.dropped)


@app.get("/behavior/aggregate/{user_id}")
async def behavior_aggregate(request: Request, user_id: str, session_id: str | None = None):
    return _sessions(request).store.get_aggregate(user_id, session_id=session_id).to_dict()


# ---------- Orchestration control ----------
@app.post("/orchestration/start", response_model=StartSessionResponse)
async def start_orchestration(request: Request, body: StartSessionRequest):
    try:
        return _sessions(request).start(body.user_id.strip(), body.session_id.strip())
    except OrchestrationStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/orchestration/{session_id}/stop")
async def stop_orchestration(request: Request, session_id: str):
    loop = _loop(request, session_id)
    try:
        return loop.stop()
    except OrchestrationStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@app.get("/orchestration/{session_id}/status", response_model=StatusResponse)
async def orchestration_status(request: Request, session_id: str):
    return _loop(request, session_id).status()


@app.get("/orchestration/{session_id}/report")
async def orchestration_report(request: Request, session_id: str):
    try:
        loop = _sessions(request).get(session_id)
    except KeyError:
        loop = None
    if loop is not None and loop.report is not None:
        return loop.report
    stored = db.get_session_report(session_id)
    if stored is None:
        raise HTTPException(status_code=404, detail=f"no report for session: {session_id}")
    return stored


@app.post("/orchestration/{session_id}/friction", response_model=FrictionResponse)
async def record_friction(request: Request, session_id: str, body: FrictionRequest):
    loop = _active_loop(request, session_id)
    try:
        point = loop.analytics.record_friction(body.description, body.severity, body.metadata, step=body.step)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return FrictionResponse(
        id=point.id,
        step=point.step,
        severity=point.severity,
        description=point.description,
        resolved=point.resolved,
    )


@app.post("/orchestration/{session_id}/friction/{friction_id}/resolve")
async def resolve_friction(request: Request, session_id: str, friction_id: str):
    loop = _loop(request, session_id)
    if not loop.analytics.resolve_friction(friction_id):
        raise HTTPException(status_code=404, detail=f"unknown friction point: {friction_id}")
    return {"status": "resolved", "id": friction_id}


@app.post("/orchestration/{session_id}/steps")
async def record_step(request: Request, session_id: str, body: StepRequest):
    loop = _active_loop(request, session_id)
    analytics = loop.analytics
    try:
        if body.action == "start":
            analytics.start_step(body.step, body.metadata)
            return {"status": "started", "step": body.step}
        if body.action == "end":
            completed = analytics.end_step(body.step)
            if completed is None:
                raise HTTPException(status_code=409, detail=f"step not in progress: {body.step}")
            return completed.to_dict()
        if body.duration is None:
            raise HTTPException(status_code=400, detail="duration required for completed steps")
        return analytics.record_step(body.step, body.duration, body.metadata).to_dict()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/orchestration/{session_id}/value-recognition")
async def record_value_recognition(request: Request, session_id: str, body: ValueRecognitionRequest):
    loop = _active_loop(request, session_id)
    try:
        elapsed = loop.analytics.record_value_recognition(body.elapsed)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "value_recognition_time": elapsed,
        "target": loop.recognition_target,
        "achieved": elapsed <= loop.recognition_target,
    }


@app.post("/orchestration/{session_id}/exports")
async def record_export(request: Request, session_id: str, body: ExportRequest):
    loop = _active_loop(request, session_id)
    rate = loop.analytics.record_export(body.tool, body.format, body.success, body.metadata)
    return {"export_success_rate": rate}


@app.post("/orchestration/{session_id}/copy-scan")
async def scan_copy(request: Request, session_id: str, body: CopyScanRequest):
    loop = _active_loop(request, session_id)
    found = loop.analytics.scan_copy(body.text, body.context)
    return {"flagged_terms": found, "credibility_score": loop.analytics.credibility_score}


# ---------- Read views ----------
@app.get("/features/{session_id}/{user_id}", response_model=FeatureAccessResponse)
async def feature_access(request: Request, session_id: str, user_id: str):
    loop = _loop(request, session_id)
    profile = loop.get_access(user_id)
    if profile is None:
        raise HTTPException(status_code=404, detail=f"no feature profile for {user_id} in {session_id}")
    data = profile.to_dict()
    data["milestones"] = [m.to_dict() for m in loop.gate.milestones(user_id)]
    return data


@app.get("/skills/{session_id}/{user_id}", response_model=SkillsResponse)
async def skills(request: Request, session_id: str, user_id: str):
    loop = _loop(request, session_id)
    if loop.user_id != user_id:
        raise HTTPException(status_code=404, detail=f"user {user_id} is not bound to {session_id}")
    insights = loop.insights()
    return {
        "scores": insights["scores"],
        "level": insights["level"],
        "velocity": insights["velocity"],
        "time_to_next_level": insights["time_to_next_level"],
        "trend": insights["trend"],
        "improvement_path": insights["improvement_path"],
        "balance": insights["balance"],
        "forecast": insights["forecast"],
    }
