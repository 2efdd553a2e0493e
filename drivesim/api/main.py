"""
Driving Simulation Telemetry REST API

Thin FastAPI glue over the core: session lifecycle, telemetry ingestion,
evaluation lookup and the live single-sample check. Authentication and
rate limiting live in front of this service.

Run:
    uvicorn drivesim.api.main:app --host 0.0.0.0 --port 8000

API Docs: http://localhost:8000/docs
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .. import Core, build_core
from ..config import load_settings
from ..errors import (
    DriveSimError, InvalidParameter, InvalidSession, InvalidState, StorageFailure
)
from ..logger_config import setup_logger

logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (InvalidParameter, 400),
    (InvalidSession, 404),  # includes SessionNotFound
    (InvalidState, 409),
    (StorageFailure, 503),
)


# Pydantic models
class CreateSessionRequest(BaseModel):
    user_id: int
    environment_type: str = 'city'
    vehicle_type: str = 'sedan'
    input_device: str = 'keyboard'


class EndSessionRequest(BaseModel):
    status: str = 'completed'


class TelemetryRequest(BaseModel):
    data: Dict[str, Any] = Field(default_factory=dict)


class TelemetryBatchRequest(BaseModel):
    data: List[Dict[str, Any]]


class LiveCheckRequest(BaseModel):
    current_data: Dict[str, Any] = Field(default_factory=dict)


def _status_for(error: DriveSimError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 500


def create_app(core: Optional[Core] = None) -> FastAPI:
    """
    Build the API application

    Args:
        core: Wired core components; built from environment settings on
              startup when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_core = app.state.core is None
        if owns_core:
            settings = load_settings()
            setup_logger('drivesim', level=settings.log_level)
            app.state.core = build_core(settings=settings)
        yield
        if owns_core:
            app.state.core.shutdown()
        else:
            app.state.core.ingestor.flush_all()

    app = FastAPI(
        title="Driving Simulation Telemetry API",
        description="Telemetry ingestion, session lifecycle and driving evaluation",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.core = core

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(DriveSimError)
    async def drivesim_error_handler(request: Request, exc: DriveSimError):
        return JSONResponse(
            status_code=_status_for(exc),
            content={"success": False, "error": type(exc).__name__, "message": str(exc)}
        )

    def get_core() -> Core:
        return app.state.core

    def ok(**payload) -> Dict[str, Any]:
        return jsonable_encoder({"success": True, **payload})

    # Endpoints
    @app.get("/health")
    def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "timestamp": datetime.utcnow().isoformat(),
            "database": get_core().db.get_statistics(),
        }

    @app.post("/sessions", status_code=201)
    def start_session(request: CreateSessionRequest):
        """Start a session (ends the user's previous active one)"""
        session_id = get_core().manager.create_session(
            request.user_id,
            environment=request.environment_type,
            vehicle=request.vehicle_type,
            input_device=request.input_device
        )
        return ok(session_id=session_id)

    @app.post("/sessions/{session_id}/end")
    def end_session(session_id: int, request: EndSessionRequest = EndSessionRequest()):
        """End a session and evaluate it"""
        result = get_core().manager.end_session(session_id, status=request.status)
        return ok(**result.to_dict())

    @app.get("/sessions/{session_id}")
    def get_session(session_id: int):
        """Get session details"""
        session = get_core().manager.get_session_by_id(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return ok(session=session)

    @app.get("/users/{user_id}/active-session")
    def get_active_session(user_id: int):
        session = get_core().manager.get_active_session(user_id)
        if session is None:
            raise HTTPException(status_code=404, detail="No active session")
        return ok(session=session)

    @app.get("/users/{user_id}/sessions")
    def get_user_sessions(user_id: int, page: int = 1, limit: int = 10):
        sessions = get_core().store.user_sessions(user_id, page=page, limit=limit)
        return ok(sessions=sessions, count=len(sessions))

    @app.get("/users/{user_id}/evaluations")
    def get_user_evaluations(user_id: int, limit: int = 10):
        evaluations = get_core().store.user_evaluations(user_id, limit=limit)
        return ok(evaluations=evaluations, count=len(evaluations))

    @app.get("/users/{user_id}/evaluation-stats")
    def get_evaluation_stats(user_id: int, days: int = 30):
        return ok(statistics=get_core().store.evaluation_stats(user_id, days=days))

    @app.get("/users/{user_id}/session-stats")
    def get_session_stats(user_id: int, days: int = 30):
        """Driving time, distance and score per environment"""
        stats = get_core().store.session_statistics(user_id, days=days)
        return ok(statistics=stats, count=len(stats))

    @app.post("/sessions/{session_id}/telemetry")
    def log_telemetry(session_id: int, request: TelemetryRequest):
        """Buffer one telemetry sample"""
        result = get_core().ingestor.ingest(session_id, request.data)
        return ok(**result.to_dict())

    @app.post("/sessions/{session_id}/telemetry/batch")
    def log_telemetry_batch(session_id: int, request: TelemetryBatchRequest):
        """Write a batch of samples in one transaction"""
        result = get_core().ingestor.ingest_batch(session_id, request.data)
        return ok(**result.to_dict())

    @app.post("/sessions/{session_id}/flush")
    def flush_buffer(session_id: int):
        result = get_core().ingestor.flush(session_id)
        return ok(**result.to_dict())

    @app.get("/sessions/{session_id}/telemetry")
    def get_session_logs(session_id: int, limit: int = 1000, offset: int = 0):
        logs = get_core().ingestor.session_logs(session_id, limit=limit, offset=offset)
        return ok(logs=logs, count=len(logs))

    @app.get("/sessions/{session_id}/telemetry/latest")
    def get_latest_logs(session_id: int, seconds: int = 30):
        logs = get_core().ingestor.latest_samples(session_id, seconds=seconds)
        return ok(logs=logs, count=len(logs))

    @app.get("/sessions/{session_id}/statistics")
    def get_session_statistics(session_id: int):
        return ok(statistics=get_core().store.log_statistics(session_id))

    @app.get("/sessions/{session_id}/behavior")
    def get_behavior_analysis(session_id: int):
        return ok(behavior_analysis=get_core().manager.analyzer.behavior_patterns(session_id))

    @app.post("/sessions/{session_id}/evaluate")
    def evaluate_session(session_id: int):
        """Re-run evaluation (replaces the stored one)"""
        result = get_core().manager.evaluate_session(session_id)
        return ok(**result.to_dict())

    @app.get("/sessions/{session_id}/evaluation")
    def get_session_evaluation(session_id: int):
        evaluation = get_core().store.get_evaluation(session_id)
        if evaluation is None:
            raise HTTPException(status_code=404, detail="Evaluation not found")
        return ok(evaluation=evaluation)

    @app.post("/sessions/{session_id}/live-check")
    def live_check(session_id: int, request: LiveCheckRequest):
        """Instant single-sample analysis (nothing is stored)"""
        result = get_core().manager.live_check(session_id, request.current_data)
        return ok(analysis=result.to_dict())

    return app


app = create_app()
