"""
Project Autopilot: FastAPI local server

This server provides:
- Project CRUD and hour totals
- The building/debugging/learning timer (start, stop, extend, nudges)
- Debug checkpoint and learning logs
- Dashboard analytics

The timer is advanced by an APScheduler interval job calling
TimerService.run_tick.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, List, Optional, Union

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .analytics import compute_analytics, debugging_insights
from .config import Settings, load_settings
from .errors import (
    AlreadyRunningError,
    AlreadyStoppingError,
    NotFoundError,
    NotRunningError,
    RecordMissingError,
    StopFailedError,
    StorageError,
    TimerError,
)
from .log import configure_logging, recent_logs
from .models import LEARNING_SOURCES, ProjectPriority, ProjectStatus, now_iso
from .service import TimerService
from .session import SessionKind
from .store import SqliteStore

logger = logging.getLogger("project_autopilot.api")

TICK_JOB_ID = "timer-tick"


# Pydantic Models
class ProjectCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    status: ProjectStatus = "planning"
    priority: ProjectPriority = "medium"
    estimated_hours: Optional[float] = Field(default=None, ge=0)
    next_action: Optional[str] = None


class ProjectUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    status: Optional[ProjectStatus] = None
    priority: Optional[ProjectPriority] = None
    progress: Optional[int] = Field(default=None, ge=0, le=100)
    estimated_hours: Optional[float] = Field(default=None, ge=0)
    next_action: Optional[str] = None


class TimerStartRequest(BaseModel):
    project_id: str
    kind: SessionKind


class CheckpointRequest(BaseModel):
    attempts: Union[List[str], str] = Field(default_factory=list)
    hypothesis: Optional[str] = None
    continue_extended: bool = Field(default=False, description="Also suppress the 90-minute cutoff")


class DebugLogCreateRequest(BaseModel):
    project_id: str
    attempts: Union[List[str], str] = Field(default_factory=list)
    hypothesis: Optional[str] = None
    error_description: Optional[str] = None
    solution: Optional[str] = None
    time_spent_minutes: Optional[float] = Field(default=None, ge=0)


class LearningManualRequest(BaseModel):
    duration_minutes: float = Field(..., ge=0)
    sources: List[str] = Field(default_factory=list)
    other_source: Optional[str] = None
    topic: Optional[str] = None
    description: Optional[str] = None
    date: Optional[str] = Field(default=None, description="ISO start time, defaults to now")


def _timer_http_error(e: Exception) -> HTTPException:
    if isinstance(e, (AlreadyRunningError, AlreadyStoppingError, NotRunningError)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (NotFoundError, RecordMissingError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (StopFailedError, StorageError)):
        return HTTPException(status_code=503, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[SqliteStore] = None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    """Build the app with its own store, timer service and scheduler."""
    settings = settings or load_settings()
    store = store or SqliteStore(settings.db_path)
    service = TimerService(store, settings.user_id, settings.thresholds, clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        await store.initialize()
        resumed = await service.resume_open_session()
        if resumed:
            logger.info(f"Open {resumed.kind.value} session restored on startup")

        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            service.run_tick,
            trigger=IntervalTrigger(seconds=settings.tick_seconds),
            id=TICK_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        app.state.scheduler = scheduler
        logger.info(f"Timer tick scheduled every {settings.tick_seconds}s")
        yield

        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")

    app = FastAPI(
        title="Project Autopilot",
        description="Local project tracker with a building/debugging session timer",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(StorageError)
    async def _storage_error(request: Request, exc: StorageError):
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=503, content={"detail": f"Storage unavailable: {exc}"})

    _register_routes(app)
    return app


def _service(request: Request) -> TimerService:
    return request.app.state.service


def _store(request: Request) -> SqliteStore:
    return request.app.state.store


def _user(request: Request) -> str:
    return request.app.state.settings.user_id


def _register_routes(app: FastAPI) -> None:

    # ============ Health / Logs ============

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "timestamp": datetime.now().isoformat()}

    @app.get("/api/logs/recent")
    async def get_recent_logs(limit: int = 50):
        logs = recent_logs(limit)
        return {"logs": logs, "count": len(logs)}

    # ============ Projects ============

    @app.get("/api/projects")
    async def list_projects(request: Request):
        projects = await _store(request).list_projects(_user(request))
        return {
            "projects": [p.model_dump() for p in projects],
            "insights": [i.to_dict() for i in debugging_insights(projects)],
        }

    @app.post("/api/projects", status_code=201)
    async def create_project(request: Request, body: ProjectCreateRequest):
        project = await _store(request).create_project(_user(request), **body.model_dump())
        return {"project": project.model_dump()}

    @app.post("/api/projects/reset-hours")
    async def reset_hours(request: Request):
        projects = await _store(request).reset_project_hours(_user(request))
        return {
            "success": True,
            "message": f"Reset {len(projects)} projects to zero hours",
            "projects": [p.model_dump() for p in projects],
        }

    @app.get("/api/projects/{project_id}")
    async def get_project(request: Request, project_id: str):
        store = _store(request)
        project = await store.get_project(project_id)
        if project is None:
            raise HTTPException(status_code=404, detail="Project not found")
        time_logs = await store.list_time_logs(_user(request), project_id=project_id)
        debug_logs = await store.list_debug_logs(_user(request), project_id=project_id)
        return {
            "project": project.model_dump(),
            "time_logs": [t.model_dump(mode="json") for t in time_logs],
            "debug_logs": [d.model_dump() for d in debug_logs],
        }

    @app.patch("/api/projects/{project_id}")
    async def update_project(request: Request, project_id: str, body: ProjectUpdateRequest):
        updates = {
            k: v for k, v in body.model_dump(exclude_unset=True).items()
            if v is not None or k in ("description", "estimated_hours", "next_action")
        }
        if updates.get("status") == "complete":
            updates.setdefault("progress", 100)
            updates["completed_at"] = now_iso()
        project = await _store(request).update_project(project_id, **updates)
        if project is None:
            raise HTTPException(status_code=404, detail="Project not found")
        return {"project": project.model_dump()}

    @app.delete("/api/projects/{project_id}")
    async def delete_project(request: Request, project_id: str):
        session = _service(request).machine.session
        if session is not None and session.project_id == project_id:
            raise HTTPException(status_code=409, detail="Stop the running timer before deleting this project")
        if not await _store(request).delete_project(project_id):
            raise HTTPException(status_code=404, detail="Project not found")
        return {"success": True}

    @app.post("/api/projects/{project_id}/pause")
    async def pause_project(request: Request, project_id: str):
        project = await _store(request).pause_project(project_id)
        if project is None:
            raise HTTPException(status_code=404, detail="Project not found")
        return {"project": project.model_dump()}

    @app.post("/api/projects/{project_id}/complete")
    async def complete_project(request: Request, project_id: str):
        project = await _store(request).complete_project(project_id)
        if project is None:
            raise HTTPException(status_code=404, detail="Project not found")
        return {"project": project.model_dump()}

    # ============ Timer ============

    @app.get("/api/timer")
    async def get_timer(request: Request):
        return _service(request).snapshot()

    @app.post("/api/timer/start", status_code=201)
    async def start_timer(request: Request, body: TimerStartRequest):
        service = _service(request)
        try:
            await service.start_timer(body.project_id, body.kind)
        except (TimerError, StorageError) as e:
            raise _timer_http_error(e)
        return service.snapshot()

    @app.post("/api/timer/stop")
    async def stop_timer(request: Request):
        service = _service(request)
        try:
            result = await service.stop_timer()
        except (TimerError, StorageError) as e:
            raise _timer_http_error(e)
        return {"success": True, **result.to_dict()}

    @app.post("/api/timer/continue")
    async def continue_debugging(request: Request):
        service = _service(request)
        try:
            await service.continue_extended_debugging()
        except TimerError as e:
            raise _timer_http_error(e)
        return service.snapshot()

    @app.post("/api/timer/checkpoint", status_code=201)
    async def log_checkpoint(request: Request, body: CheckpointRequest):
        service = _service(request)
        try:
            debug_log = await service.log_debug_checkpoint(body.attempts, body.hypothesis)
            if body.continue_extended:
                await service.continue_extended_debugging()
        except (TimerError, StorageError) as e:
            raise _timer_http_error(e)
        return {"debug_log": debug_log.model_dump(), "timer": service.snapshot()}

    @app.get("/api/timer/nudges")
    async def get_nudges(request: Request, limit: int = 20):
        notices = list(_service(request).recent_nudges)[-limit:] if limit > 0 else []
        return {"nudges": [n.to_dict() for n in notices], "count": len(notices)}

    # ============ Time Logs ============

    @app.get("/api/timelogs")
    async def list_time_logs(request: Request, project_id: Optional[str] = None, limit: int = 100):
        logs = await _store(request).list_time_logs(_user(request), project_id=project_id, limit=limit)
        return {"time_logs": [t.model_dump(mode="json") for t in logs]}

    @app.post("/api/timelogs/repair")
    async def repair_time_logs(request: Request):
        repaired = await _service(request).repair_hours()
        return {"repaired": [r.to_dict() for r in repaired], "count": len(repaired)}

    # ============ Debug Logs ============

    @app.get("/api/debuglogs")
    async def list_debug_logs(request: Request, project_id: Optional[str] = None):
        logs = await _store(request).list_debug_logs(_user(request), project_id=project_id)
        return {"debug_logs": [d.model_dump() for d in logs]}

    @app.post("/api/debuglogs", status_code=201)
    async def create_debug_log(request: Request, body: DebugLogCreateRequest):
        store = _store(request)
        if await store.get_project(body.project_id) is None:
            raise HTTPException(status_code=404, detail="Project not found")
        attempts = body.attempts
        if isinstance(attempts, str):
            attempts = [attempts]
        debug_log = await store.create_debug_log(
            project_id=body.project_id,
            user_id=_user(request),
            attempts=attempts,
            hypothesis=body.hypothesis,
            time_spent_minutes=body.time_spent_minutes,
            error_description=body.error_description,
            solution=body.solution,
        )
        return {"debug_log": debug_log.model_dump()}

    # ============ Learning ============

    @app.get("/api/learning")
    async def list_learning(request: Request):
        store = _store(request)
        logs = await store.list_learning_logs(_user(request))
        total_minutes = await store.total_learning_minutes(_user(request))
        return {
            "learning_logs": [entry.model_dump() for entry in logs],
            "total_hours": round(total_minutes / 60, 1),
        }

    @app.post("/api/learning/manual", status_code=201)
    async def create_manual_learning(request: Request, body: LearningManualRequest):
        unknown = [s for s in body.sources if s not in LEARNING_SOURCES]
        if unknown:
            raise HTTPException(
                status_code=400,
                detail=f"Unknown learning sources {unknown}. Valid: {list(LEARNING_SOURCES)}",
            )
        learning_log = await _store(request).create_learning_log(
            user_id=_user(request),
            started_at=body.date or now_iso(),
            duration_minutes=body.duration_minutes,
            sources=body.sources,
            other_source=body.other_source if "other" in body.sources else None,
            topic=body.topic,
            description=body.description,
            is_manual=True,
        )
        return {"learning_log": learning_log.model_dump()}

    # ============ Analytics ============

    @app.get("/api/analytics")
    async def get_analytics(request: Request):
        store = _store(request)
        user_id = _user(request)
        projects = await store.list_projects(user_id)
        debug_logs = await store.list_debug_logs(user_id)
        learning_minutes = await store.total_learning_minutes(user_id)
        return compute_analytics(projects, debug_logs, learning_minutes).to_dict()

    # ============ Maintenance ============

    @app.post("/api/clear-all-data")
    async def clear_all_data(request: Request):
        if _service(request).machine.is_active:
            raise HTTPException(status_code=409, detail="Stop the running timer before clearing data")
        counts = await _store(request).clear_all_data(_user(request))
        return {"success": True, "deleted": counts}
