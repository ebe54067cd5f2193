"""
WP Autopilot API Server
=======================

FastAPI server exposing automation schedules, their execution history and
the article job queue. Every route is scoped to the caller identified by
the ``X-Owner-Id`` header.

Run directly:
    python -m wpautopilot.api
    uvicorn wpautopilot.api:app --host 0.0.0.0 --port 8780

Set WPAUTOPILOT_EMBED_SCHEDULER=true to run the scheduler loop in-process.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from wpautopilot import __version__, errors
from wpautopilot.config import API_HOST, API_PORT, CORS_ORIGINS, EMBED_SCHEDULER
from wpautopilot.jobs import JobService
from wpautopilot.ledger import ExecutionLedger
from wpautopilot.models import JobStatus
from wpautopilot.schedule_engine import SCHEDULE_PRESETS, ScheduleService
from wpautopilot.scheduler import AutomationScheduler
from wpautopilot.sites import SiteService
from wpautopilot.store import Store, get_store

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("wpautopilot.api")
logger.setLevel(logging.INFO)

if not logger.handlers:
    _h = logging.StreamHandler()
    _h.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S",
    ))
    logger.addHandler(_h)

# ---------------------------------------------------------------------------
# Pydantic Models -- Requests
# ---------------------------------------------------------------------------


class ScheduleCreateRequest(BaseModel):
    site_id: str
    name: str
    schedule_type: str = Field("DAILY", description="ONCE, RECURRING, CUSTOM or a preset")
    cron_expression: Optional[str] = None
    timezone: str = "UTC"
    scheduled_for: Optional[datetime] = None
    rss_feed_id: Optional[str] = None
    topic: Optional[str] = None
    description: Optional[str] = None
    auto_publish: bool = False
    publish_status: str = "draft"
    max_articles_per_run: Optional[int] = None


class ScheduleUpdateRequest(BaseModel):
    site_id: Optional[str] = None
    name: Optional[str] = None
    schedule_type: Optional[str] = None
    cron_expression: Optional[str] = None
    timezone: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    rss_feed_id: Optional[str] = None
    topic: Optional[str] = None
    description: Optional[str] = None
    auto_publish: Optional[bool] = None
    publish_status: Optional[str] = None
    max_articles_per_run: Optional[int] = None


# Fields a client may explicitly clear with null
_NULLABLE_SCHEDULE_FIELDS = frozenset({
    "cron_expression", "scheduled_for", "rss_feed_id", "topic", "description", "max_articles_per_run",
})


class JobCreateRequest(BaseModel):
    site_id: str
    topic: str


class PublishRequest(BaseModel):
    status: str = Field("draft", description="draft or publish")


class SiteCreateRequest(BaseModel):
    name: str
    url: str
    username: str
    app_password: str


class FeedCreateRequest(BaseModel):
    url: str
    name: Optional[str] = None


# ---------------------------------------------------------------------------
# Application State
# ---------------------------------------------------------------------------


class AppState:
    """Holds references to the store and the services built on it."""

    def __init__(self) -> None:
        self.store: Optional[Store] = None
        self.schedules: Optional[ScheduleService] = None
        self.ledger: Optional[ExecutionLedger] = None
        self.jobs: Optional[JobService] = None
        self.sites: Optional[SiteService] = None
        self.scheduler: Optional[AutomationScheduler] = None
        self.scheduler_embedded: bool = False
        self.start_time: float = 0.0

    def init(self, store: Store) -> None:
        self.store = store
        self.ledger = ExecutionLedger(store)
        self.schedules = ScheduleService(store, self.ledger)
        self.jobs = JobService(store)
        self.sites = SiteService(store)
        self.scheduler = AutomationScheduler(store, ledger=self.ledger, jobs=self.jobs)


state = AppState()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize services on startup, stop the scheduler on shutdown."""
    logger.info("Starting WP Autopilot API on port %d", API_PORT)
    state.start_time = time.monotonic()
    if state.store is None:
        state.init(get_store())

    if EMBED_SCHEDULER and state.scheduler is not None:
        await state.scheduler.start()
        state.scheduler_embedded = True
        logger.info("Scheduler embedded in API process")

    yield

    logger.info("Shutting down WP Autopilot API")
    if state.scheduler_embedded and state.scheduler is not None:
        await state.scheduler.stop()
        state.scheduler_embedded = False
    logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# FastAPI App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="WP Autopilot API",
    description="Scheduled AI article generation and publishing for WordPress sites.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

_STATUS_FOR_ERROR = (
    (errors.ValidationError, 400),
    (errors.NotFoundError, 404),
    (errors.ConcurrencyError, 409),
    (errors.AlreadyPublishedError, 409),
    (errors.InvalidTransitionError, 409),
    (errors.DuplicateJobError, 409),
    (errors.UpstreamError, 502),
)


@app.exception_handler(errors.AutopilotError)
async def autopilot_error_handler(request: Request, exc: errors.AutopilotError):
    status_code = 500
    for error_cls, code in _STATUS_FOR_ERROR:
        if isinstance(exc, error_cls):
            status_code = code
            break
    if status_code == 500:
        logger.error("Unhandled error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


async def current_owner(x_owner_id: Optional[str] = Header(None)) -> str:
    if not x_owner_id or not x_owner_id.strip():
        raise HTTPException(401, "X-Owner-Id header is required")
    return x_owner_id.strip()


def _require_ready() -> AppState:
    if state.store is None or state.schedules is None:
        raise HTTPException(503, "Service not initialized")
    return state


def _page(items: list, total: int, page: int, per_page: int, key: str) -> Dict[str, Any]:
    return {
        key: [item.to_dict() for item in items],
        "total": total,
        "page": page,
        "per_page": per_page,
    }


# ===================================================================
# Health
# ===================================================================


@app.get("/health", tags=["Health"])
async def health():
    """Server health check."""
    uptime = time.monotonic() - state.start_time if state.start_time else 0
    scheduler_running = bool(state.scheduler and state.scheduler.is_running)
    return {
        "status": "ok",
        "timestamp": _now_iso(),
        "version": __version__,
        "scheduler": "running" if scheduler_running else "stopped",
        "uptime_seconds": round(uptime),
    }


# ===================================================================
# Schedules
# ===================================================================


@app.get("/schedules/presets", tags=["Schedules"])
async def schedule_presets():
    return {"presets": SCHEDULE_PRESETS}


@app.post("/schedules", status_code=201, tags=["Schedules"])
async def create_schedule(req: ScheduleCreateRequest, owner: str = Depends(current_owner)):
    svc = _require_ready().schedules
    schedule = svc.create(owner, **req.model_dump())
    return schedule.to_dict()


@app.get("/schedules/stats", tags=["Schedules"])
async def schedule_stats(site_id: Optional[str] = None, owner: str = Depends(current_owner)):
    return _require_ready().schedules.stats(owner, site_id=site_id)


@app.get("/schedules", tags=["Schedules"])
async def list_schedules(
    site_id: Optional[str] = None,
    is_active: Optional[bool] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    owner: str = Depends(current_owner),
):
    items, total = _require_ready().schedules.list_schedules(
        owner, site_id=site_id, is_active=is_active, page=page, per_page=per_page
    )
    return _page(items, total, page, per_page, "schedules")


@app.get("/schedules/{schedule_id}", tags=["Schedules"])
async def get_schedule(schedule_id: str, owner: str = Depends(current_owner)):
    app_state = _require_ready()
    schedule = app_state.schedules.get(owner, schedule_id)
    return {**schedule.to_dict(), "stats": app_state.ledger.schedule_stats(schedule_id)}


@app.put("/schedules/{schedule_id}", tags=["Schedules"])
async def update_schedule(
    schedule_id: str, req: ScheduleUpdateRequest, owner: str = Depends(current_owner)
):
    changes = {
        key: value
        for key, value in req.model_dump(exclude_unset=True).items()
        if value is not None or key in _NULLABLE_SCHEDULE_FIELDS
    }
    if not changes:
        raise HTTPException(400, "No fields to update")
    schedule = _require_ready().schedules.update(owner, schedule_id, **changes)
    return schedule.to_dict()


@app.delete("/schedules/{schedule_id}", tags=["Schedules"])
async def delete_schedule(schedule_id: str, owner: str = Depends(current_owner)):
    _require_ready().schedules.delete(owner, schedule_id)
    return {"success": True, "id": schedule_id}


@app.post("/schedules/{schedule_id}/pause", tags=["Schedules"])
async def pause_schedule(schedule_id: str, owner: str = Depends(current_owner)):
    return _require_ready().schedules.pause(owner, schedule_id).to_dict()


@app.post("/schedules/{schedule_id}/resume", tags=["Schedules"])
async def resume_schedule(schedule_id: str, owner: str = Depends(current_owner)):
    return _require_ready().schedules.resume(owner, schedule_id).to_dict()


@app.post("/schedules/{schedule_id}/run-now", status_code=202, tags=["Schedules"])
async def run_schedule_now(schedule_id: str, owner: str = Depends(current_owner)):
    """Start a run immediately. 409 if the schedule is already running."""
    app_state = _require_ready()
    execution = await app_state.scheduler.execute_now(schedule_id, owner, wait=False)
    return {"message": "Run started", "execution": execution.to_dict()}


@app.get("/schedules/{schedule_id}/executions", tags=["Schedules"])
async def list_executions(
    schedule_id: str,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    owner: str = Depends(current_owner),
):
    app_state = _require_ready()
    app_state.schedules.get(owner, schedule_id)
    items, total = app_state.ledger.list_executions(schedule_id, page=page, per_page=per_page)
    return _page(items, total, page, per_page, "executions")


# ===================================================================
# Jobs
# ===================================================================


@app.post("/jobs", status_code=201, tags=["Jobs"])
async def create_job(req: JobCreateRequest, owner: str = Depends(current_owner)):
    """Queue a topic job; the scheduler's job processor generates it."""
    job = _require_ready().jobs.create_topic_job(owner, req.site_id, req.topic)
    return job.to_dict()


@app.get("/jobs/stats", tags=["Jobs"])
async def job_stats(site_id: Optional[str] = None, owner: str = Depends(current_owner)):
    return _require_ready().jobs.queue_stats(owner, site_id=site_id)


@app.get("/jobs", tags=["Jobs"])
async def list_jobs(
    status: Optional[str] = None,
    site_id: Optional[str] = None,
    schedule_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    owner: str = Depends(current_owner),
):
    items, total = _require_ready().jobs.list_jobs(
        owner, status=status, site_id=site_id, schedule_id=schedule_id,
        page=page, per_page=per_page,
    )
    return _page(items, total, page, per_page, "jobs")


@app.get("/jobs/{job_id}", tags=["Jobs"])
async def get_job(job_id: str, owner: str = Depends(current_owner)):
    return _require_ready().jobs.get_job(owner, job_id).to_dict()


@app.post("/jobs/{job_id}/publish", tags=["Jobs"])
async def publish_job(job_id: str, req: PublishRequest, owner: str = Depends(current_owner)):
    """Publish a GENERATED job. 409 if it already has a post."""
    job = await _require_ready().jobs.pipeline.publish_existing(job_id, owner, req.status)
    if job.status == JobStatus.FAILED:
        return JSONResponse(
            status_code=500,
            content={"detail": job.error_message or "Publish failed", "job": job.to_dict()},
        )
    return job.to_dict()


@app.post("/jobs/{job_id}/retry", status_code=201, tags=["Jobs"])
async def retry_job(job_id: str, owner: str = Depends(current_owner)):
    return _require_ready().jobs.retry_job(owner, job_id).to_dict()


# ===================================================================
# Sites & Feeds
# ===================================================================


@app.post("/sites", status_code=201, tags=["Sites"])
async def create_site(req: SiteCreateRequest, owner: str = Depends(current_owner)):
    site = _require_ready().sites.add_site(
        owner, name=req.name, url=req.url, username=req.username, app_password=req.app_password
    )
    return site.to_dict()


@app.get("/sites", tags=["Sites"])
async def list_sites(owner: str = Depends(current_owner)):
    return {"sites": [s.to_dict() for s in _require_ready().sites.list_sites(owner)]}


@app.delete("/sites/{site_id}", tags=["Sites"])
async def delete_site(site_id: str, owner: str = Depends(current_owner)):
    _require_ready().sites.delete_site(owner, site_id)
    return {"success": True, "id": site_id}


@app.post("/feeds", status_code=201, tags=["Feeds"])
async def create_feed(req: FeedCreateRequest, owner: str = Depends(current_owner)):
    feed = _require_ready().sites.add_feed(owner, name=req.name or req.url, url=req.url)
    return feed.to_dict()


@app.get("/feeds", tags=["Feeds"])
async def list_feeds(owner: str = Depends(current_owner)):
    return {"feeds": [f.to_dict() for f in _require_ready().sites.list_feeds(owner)]}


# ===================================================================
# Entry Point
# ===================================================================

if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    uvicorn.run(
        "wpautopilot.api:app",
        host=API_HOST,
        port=API_PORT,
        reload=False,
        log_level="info",
    )
