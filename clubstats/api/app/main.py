import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from celery import Celery
from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from kombu.exceptions import OperationalError
from sqlalchemy import text

from clubstats.shared.activities import ActivityFeedService
from clubstats.shared.bootcamps import BootcampTracker
from clubstats.shared.caching import get_redis
from clubstats.shared.config import (
    HEALTH_CHECK_BROKER,
    HEALTH_CHECK_BROKER_TIMEOUT_SECONDS,
    REDIS_URL,
    SERVICE_VERSION,
    validate_config,
)
from clubstats.shared.database import apply_schema_if_needed, db_session
from clubstats.shared.errors import (
    AlreadyRegistered,
    BaselineFetchFailed,
    BootcampNotFound,
    CacheUnavailable,
    InvalidTransition,
    MissingUsername,
    NotFound,
    NotRegistered,
    RateLimited,
    RegistrationClosed,
    SubjectNotFound,
    SyncError,
    UpstreamError,
)
from clubstats.shared.leaderboards import LeaderboardService
from clubstats.shared.sync import SyncOrchestrator

from .schemas import (
    ActivitiesResponse,
    BootcampSyncResult,
    ContributionCalendarResponse,
    LeaderboardResponse,
    SyncRequest,
    SyncResponse,
    parse_dimension,
    parse_period,
    parse_provider,
)
from .security import require_subject_id, verify_api_auth_token

logger = logging.getLogger("api")

_ERROR_STATUS_CODES = (
    (RateLimited, 429),
    (MissingUsername, 400),
    (NotFound, 404),
    (SubjectNotFound, 404),
    (BootcampNotFound, 404),
    (NotRegistered, 404),
    (RegistrationClosed, 409),
    (AlreadyRegistered, 409),
    (InvalidTransition, 409),
    (BaselineFetchFailed, 502),
    (UpstreamError, 502),
    (CacheUnavailable, 503),
)

_services: Dict[str, Any] = {}


def status_code_for_error(exc: SyncError) -> int:
    for error_type, status_code in _ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500


def get_orchestrator() -> SyncOrchestrator:
    if "sync" not in _services:
        _services["sync"] = SyncOrchestrator()
    return _services["sync"]


def get_activity_service() -> ActivityFeedService:
    if "activities" not in _services:
        _services["activities"] = ActivityFeedService()
    return _services["activities"]


def get_leaderboard_service() -> LeaderboardService:
    if "leaderboards" not in _services:
        _services["leaderboards"] = LeaderboardService()
    return _services["leaderboards"]


def get_bootcamp_tracker() -> BootcampTracker:
    if "bootcamps" not in _services:
        _services["bootcamps"] = BootcampTracker()
    return _services["bootcamps"]


@asynccontextmanager
async def lifespan(_app: FastAPI):
    validate_config()
    apply_schema_if_needed()
    yield


app = FastAPI(
    title="Club Stats Service",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)

celery_client = Celery("clubstats-api", broker=REDIS_URL, backend=REDIS_URL)
# Ensure API and worker agree on the Celery queue name
celery_client.conf.task_default_queue = "default"


@app.exception_handler(SyncError)
async def sync_error_handler(_request, exc: SyncError):
    status_code = status_code_for_error(exc)
    if status_code >= 500:
        logger.error("request failed error=%s msg=%s", type(exc).__name__, str(exc))
        detail = str(exc) if exc.user_facing or status_code == 502 else "Internal error"
    else:
        detail = str(exc)

    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(max(1, exc.retry_after_seconds))}

    return JSONResponse(
        status_code=status_code,
        content={"detail": detail, "error": type(exc).__name__},
        headers=headers,
    )


@app.get("/health")
def health() -> Dict[str, Any]:
    """
    Health check: verifies DB and, when configured, Redis connectivity

    Returns:
        Dict with status, timestamp, and per-dependency booleans
    """
    database_ok = False
    redis_ok = None
    broker_ok = None
    broker_workers = None

    try:
        with db_session() as session:
            session.execute(text("SELECT 1"))
            database_ok = True
    except Exception as exc:
        logger.error("health: database check failed error=%s msg=%s", type(exc).__name__, str(exc))
        database_ok = False

    # Redis is optional; without it caches and locks run process-local
    r = get_redis()
    if r is not None:
        try:
            redis_ok = bool(r.ping())
        except Exception as exc:
            logger.error("health: redis check failed error=%s msg=%s", type(exc).__name__, str(exc))
            redis_ok = False

    if HEALTH_CHECK_BROKER:
        try:
            replies = celery_client.control.ping(timeout=HEALTH_CHECK_BROKER_TIMEOUT_SECONDS)
            broker_ok = True
            broker_workers = len(replies or [])
        except (OperationalError, TimeoutError, OSError, ConnectionError) as exc:
            logger.error("health: broker ping failed error=%s msg=%s", type(exc).__name__, str(exc))
            broker_ok = False
            broker_workers = None

    healthy = bool(
        database_ok
        and (True if redis_ok is None else redis_ok)
        and (True if broker_ok is None else broker_ok)
    )
    status = "healthy" if healthy else "degraded"

    payload = {
        "status": status,
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "database": database_ok,
        "redis": redis_ok,
    }

    if broker_ok is not None:
        payload["broker"] = broker_ok
        payload["broker_workers"] = broker_workers

    return JSONResponse(status_code=200 if healthy else 503, content=payload)


@app.get("/version")
def version():
    return {"version": app.version}


@app.post("/api/v1/sync", response_model=SyncResponse)
def sync_stats(
    body: Optional[SyncRequest] = Body(default=None),
    subject_id: str = Depends(require_subject_id),
    _=Depends(verify_api_auth_token),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """
    Sync the calling subject's provider stats

    Args:
        body (SyncRequest): Optional provider and trigger
        subject_id (str): From the X-Subject-Id header

    Returns:
        Composite stats with per-provider status and points
    """
    body = body or SyncRequest()
    return orchestrator.sync_subject(subject_id, provider=body.provider, trigger=body.trigger)


@app.get("/api/v1/activities", response_model=ActivitiesResponse)
def get_activities(
    scope: str = Query("global", pattern="^(user|global)$"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    activity_filter: str = Query("all", alias="filter", pattern="^(all|commits|pull_requests|issues)$"),
    subject_id: Optional[str] = Query(None),
    x_subject_id: Optional[str] = Header(default=None),
    _=Depends(verify_api_auth_token),
    service: ActivityFeedService = Depends(get_activity_service),
) -> Dict[str, Any]:
    """
    Activity feed for one subject or the whole club

    scope=user reads subject_id from the query string, falling back to X-Subject-Id
    """
    if scope == "user":
        subject_id = (subject_id or x_subject_id or "").strip()
        if not subject_id:
            raise HTTPException(status_code=400, detail="subject_id is required for scope=user")
        feed = service.get_subject_feed(subject_id, limit=limit)
        return {"scope": "user", **feed}

    feed = service.get_global_feed(limit=limit, offset=offset, activity_filter=activity_filter)
    return {"scope": "global", **feed}


@app.get("/api/v1/leaderboard", response_model=LeaderboardResponse)
def get_leaderboard(
    dimension: str = Query("POINTS"),
    period: str = Query("all-time"),
    limit: Optional[int] = Query(None, ge=1, le=500),
    _=Depends(verify_api_auth_token),
    service: LeaderboardService = Depends(get_leaderboard_service),
) -> Dict[str, Any]:
    try:
        parsed_dimension = parse_dimension(dimension)
        parsed_period = parse_period(period)
    except ValueError:
        raise HTTPException(status_code=400, detail="Unknown dimension or period")

    return service.get_leaderboard(parsed_dimension, parsed_period, limit=limit)


@app.get("/api/v1/contributions", response_model=ContributionCalendarResponse)
def get_contributions(
    provider: str = Query("GITHUB"),
    subject_id: Optional[str] = Query(None),
    x_subject_id: Optional[str] = Header(default=None),
    _=Depends(verify_api_auth_token),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """
    Daily contribution calendar from the subject's last successful sync

    subject_id comes from the query string, falling back to X-Subject-Id
    """
    try:
        parsed_provider = parse_provider(provider)
    except ValueError:
        raise HTTPException(status_code=400, detail="provider must be 'GITHUB' or 'LEETCODE'")

    subject_id = (subject_id or x_subject_id or "").strip()
    if not subject_id:
        raise HTTPException(status_code=400, detail="subject_id is required")
    return orchestrator.contribution_calendar(subject_id, parsed_provider)


@app.get("/api/v1/bootcamps/active")
def list_active_bootcamps(
    _=Depends(verify_api_auth_token),
    tracker: BootcampTracker = Depends(get_bootcamp_tracker),
) -> List[Dict[str, Any]]:
    return tracker.active_bootcamps()


@app.get("/api/v1/bootcamps/history")
def list_bootcamp_history(
    _=Depends(verify_api_auth_token),
    tracker: BootcampTracker = Depends(get_bootcamp_tracker),
) -> List[Dict[str, Any]]:
    """
    Completed bootcamps, newest first, each with its podium
    """
    return tracker.history()


@app.get("/api/v1/bootcamps/{bootcamp_id}/leaderboard")
def get_bootcamp_leaderboard(
    bootcamp_id: str,
    _=Depends(verify_api_auth_token),
    tracker: BootcampTracker = Depends(get_bootcamp_tracker),
) -> Dict[str, Any]:
    return tracker.leaderboard(bootcamp_id)


@app.get("/api/v1/bootcamps/{bootcamp_id}/my-progress")
def get_my_bootcamp_progress(
    bootcamp_id: str,
    subject_id: str = Depends(require_subject_id),
    _=Depends(verify_api_auth_token),
    tracker: BootcampTracker = Depends(get_bootcamp_tracker),
) -> Dict[str, Any]:
    """
    The calling subject's progress and snapshot history in one bootcamp

    Returns 404 when the subject is not registered
    """
    return tracker.participant_progress(bootcamp_id, subject_id)


@app.post("/api/v1/bootcamps/sync", response_model=List[BootcampSyncResult])
def sync_bootcamps(
    _=Depends(verify_api_auth_token),
    tracker: BootcampTracker = Depends(get_bootcamp_tracker),
) -> List[Dict[str, Any]]:
    """
    Periodic trigger: advance bootcamp statuses and refresh ACTIVE bootcamps
    """
    return tracker.run_bootcamp_cycle()


@app.post("/api/v1/bootcamps/{bootcamp_id}/register")
def register_for_bootcamp(
    bootcamp_id: str,
    subject_id: str = Depends(require_subject_id),
    _=Depends(verify_api_auth_token),
    tracker: BootcampTracker = Depends(get_bootcamp_tracker),
) -> Dict[str, Any]:
    participant = tracker.register(bootcamp_id, subject_id)
    return {
        "bootcamp_id": participant["bootcamp_id"],
        "subject_id": participant["subject_id"],
        "registered_at": participant["registered_at"].isoformat().replace("+00:00", "Z"),
        "baseline_stats": participant["baseline_stats"],
    }


@app.post("/api/v1/bootcamps/{bootcamp_id}/sync", response_model=BootcampSyncResult)
def sync_bootcamp(
    bootcamp_id: str,
    _=Depends(verify_api_auth_token),
    tracker: BootcampTracker = Depends(get_bootcamp_tracker),
) -> Dict[str, Any]:
    return tracker.sync_bootcamp(bootcamp_id)


@app.post("/api/v1/bootcamps/{bootcamp_id}/complete")
def complete_bootcamp(
    bootcamp_id: str,
    _=Depends(verify_api_auth_token),
    tracker: BootcampTracker = Depends(get_bootcamp_tracker),
) -> Dict[str, Any]:
    return tracker.complete_bootcamp(bootcamp_id)


@app.post("/api/v1/bootcamps/{bootcamp_id}/cancel")
def cancel_bootcamp(
    bootcamp_id: str,
    _=Depends(verify_api_auth_token),
    tracker: BootcampTracker = Depends(get_bootcamp_tracker),
) -> Dict[str, Any]:
    return tracker.cancel_bootcamp(bootcamp_id)


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=str(os.getenv("LOG_LEVEL", "INFO")).upper())

    port = int(os.getenv("PORT", "8000"))
    host = str(os.getenv("API_BIND_HOST", "0.0.0.0")).strip() or "0.0.0.0"

    uvicorn.run(app, host=host, port=port)
