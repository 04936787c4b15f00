from __future__ import annotations

import contextlib
import hmac
import logging
import uuid
from datetime import date, datetime, timedelta, timezone

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from pulse.core.config import settings
from pulse.core.errors import ConfigurationError, SourceError, SyncInProgressError
from pulse.core.scheduler import Scheduler, aggregate_dates_job, directory_sync_job, sync_and_aggregate_job
from pulse.core.startup import on_startup
from pulse.db.session import SessionLocal
from pulse.models.access_event import SOURCES
from pulse.models.office import Office
from pulse.models.user import User
from pulse.services import stats
from pulse.services.checkpoints import SyncCheckpoints

logger = logging.getLogger(__name__)


def _require_admin_key(request: Request) -> None:
    # Fails closed: without ADMIN_SECRET_KEY no admin route is reachable.
    expected = settings.admin_secret_key
    if not expected:
        raise HTTPException(status_code=401, detail="Admin access is not configured")
    got = request.headers.get("x-admin-key") or ""
    if not hmac.compare_digest(got, expected):
        raise HTTPException(status_code=401, detail="Invalid admin key")


def _int_param(request: Request, name: str, default: int, lo: int, hi: int) -> int:
    raw = request.query_params.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{name} must be an integer")
    return max(lo, min(hi, value))


def _date_param(request: Request, name: str, default: date) -> date:
    raw = request.query_params.get(name)
    if not raw:
        return default
    try:
        return date.fromisoformat(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{name} must be YYYY-MM-DD")


def _office_id_param(request: Request) -> uuid.UUID | None:
    raw = request.query_params.get("officeId")
    if not raw:
        return None
    try:
        return uuid.UUID(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="officeId must be a UUID")


def _path_uuid(request: Request, name: str) -> uuid.UUID:
    try:
        return uuid.UUID(request.path_params.get(name) or "")
    except ValueError:
        raise HTTPException(status_code=404, detail="Not found")


def _get_office(db, request: Request) -> Office:
    office = db.get(Office, _path_uuid(request, "office_id"))
    if not office:
        raise HTTPException(status_code=404, detail="Office not found")
    return office


def _get_user(db, request: Request) -> User:
    user = db.get(User, _path_uuid(request, "user_id"))
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


async def health(_: Request) -> JSONResponse:
    return JSONResponse({"status": "ok"})


async def dashboard_stats(_: Request) -> JSONResponse:
    with SessionLocal() as db:
        return JSONResponse(stats.dashboard_stats(db))


async def attendance(request: Request) -> JSONResponse:
    today = datetime.now(timezone.utc).date()
    start = _date_param(request, "startDate", today - timedelta(days=30))
    end = _date_param(request, "endDate", today)
    if start > end:
        raise HTTPException(status_code=400, detail="startDate must not be after endDate")
    office_id = _office_id_param(request)
    with SessionLocal() as db:
        rows = stats.attendance(db, start=start, end=end, office_id=office_id)
        return JSONResponse({"attendance": rows})


async def hourly_occupancy(request: Request) -> JSONResponse:
    office_id = _office_id_param(request)
    with SessionLocal() as db:
        return JSONResponse({"occupancy": stats.hourly_pattern(db, office_id=office_id)})


async def list_offices(_: Request) -> JSONResponse:
    with SessionLocal() as db:
        return JSONResponse({"offices": stats.list_offices(db)})


async def get_office(request: Request) -> JSONResponse:
    with SessionLocal() as db:
        office = _get_office(db, request)
        return JSONResponse(
            {**stats.office_dict(office), "current_occupancy": stats.current_occupancy(db, office_id=office.id)}
        )


async def office_daily(request: Request) -> JSONResponse:
    days = _int_param(request, "days", 30, 1, 365)
    with SessionLocal() as db:
        office = _get_office(db, request)
        return JSONResponse({"stats": stats.office_daily(db, office.id, days=days)})


async def office_hourly(request: Request) -> JSONResponse:
    with SessionLocal() as db:
        office = _get_office(db, request)
        return JSONResponse({"stats": stats.office_hourly(db, office.id)})


async def office_top_visitors(request: Request) -> JSONResponse:
    limit = _int_param(request, "limit", 10, 1, 100)
    with SessionLocal() as db:
        office = _get_office(db, request)
        return JSONResponse({"visitors": stats.top_visitors(db, office.id, limit=limit)})


async def office_occupancy(request: Request) -> JSONResponse:
    with SessionLocal() as db:
        office = _get_office(db, request)
        return JSONResponse({"current": stats.current_occupancy(db, office_id=office.id)})


async def list_users(request: Request) -> JSONResponse:
    limit = _int_param(request, "limit", 100, 1, 500)
    offset = _int_param(request, "offset", 0, 0, 1_000_000)
    search = (request.query_params.get("search") or "").strip() or None
    with SessionLocal() as db:
        return JSONResponse(stats.search_users(db, search=search, limit=limit, offset=offset))


async def user_presence(request: Request) -> JSONResponse:
    limit = _int_param(request, "limit", 100, 1, 500)
    with SessionLocal() as db:
        return JSONResponse({"users": stats.user_presence_summary(db, limit=limit)})


async def get_user(request: Request) -> JSONResponse:
    with SessionLocal() as db:
        return JSONResponse(stats.user_dict(_get_user(db, request)))


async def user_sessions(request: Request) -> JSONResponse:
    limit = _int_param(request, "limit", 20, 1, 200)
    with SessionLocal() as db:
        user = _get_user(db, request)
        return JSONResponse({"sessions": stats.user_events(db, user.id, limit=limit)})


async def user_stats(request: Request) -> JSONResponse:
    with SessionLocal() as db:
        user = _get_user(db, request)
        return JSONResponse(stats.user_stats(db, user.id))


async def sync_status(_: Request) -> JSONResponse:
    with SessionLocal() as db:
        rows = SyncCheckpoints(db).all_statuses()
        return JSONResponse({"sources": [r.as_dict() for r in rows]})


async def admin_deactivate_office(request: Request) -> JSONResponse:
    _require_admin_key(request)
    with SessionLocal() as db:
        office = _get_office(db, request)
        office.is_active = False
        db.commit()
        logger.info("Office %s deactivated", office.name)
        return JSONResponse({"ok": True, "office": stats.office_dict(office)})


async def admin_sync(request: Request) -> JSONResponse:
    _require_admin_key(request)
    source = request.path_params.get("source")
    if source not in SOURCES:
        raise HTTPException(status_code=404, detail="Unknown source")
    days = _int_param(request, "days", 30, 1, 365)
    since = datetime.now(timezone.utc) - timedelta(days=days)

    try:
        result = await run_in_threadpool(sync_and_aggregate_job, source, since)
    except SyncInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc))

    body = {"success": result.status == "success", "days": days, **result.as_dict()}
    return JSONResponse(body, status_code=200 if result.status == "success" else 502)


async def admin_aggregate(request: Request) -> JSONResponse:
    _require_admin_key(request)
    yesterday = datetime.now(timezone.utc).date() - timedelta(days=1)
    end = _date_param(request, "date", yesterday)
    days = _int_param(request, "days", 1, 1, 90)
    office_id = _office_id_param(request)
    dates = [end - timedelta(days=i) for i in range(days)]

    result = await run_in_threadpool(aggregate_dates_job, dates, [office_id] if office_id else None)
    return JSONResponse({"success": not result.errors, "dates": [d.isoformat() for d in dates], **result.as_dict()})


async def admin_directory_sync(request: Request) -> JSONResponse:
    _require_admin_key(request)
    try:
        result = await run_in_threadpool(directory_sync_job)
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except SourceError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return JSONResponse({"success": not result.errors, **result.as_dict()})


@contextlib.asynccontextmanager
async def lifespan(_: Starlette):
    on_startup()
    scheduler = Scheduler(settings)
    if settings.enable_scheduler:
        scheduler.start()
    try:
        yield
    finally:
        await scheduler.stop()


routes = [
    Route("/v1/health", endpoint=health, methods=["GET"]),
    Route("/v1/stats", endpoint=dashboard_stats, methods=["GET"]),
    Route("/v1/attendance", endpoint=attendance, methods=["GET"]),
    Route("/v1/hourly-occupancy", endpoint=hourly_occupancy, methods=["GET"]),
    Route("/v1/offices", endpoint=list_offices, methods=["GET"]),
    Route("/v1/office/{office_id}", endpoint=get_office, methods=["GET"]),
    Route("/v1/office/{office_id}/daily", endpoint=office_daily, methods=["GET"]),
    Route("/v1/office/{office_id}/hourly", endpoint=office_hourly, methods=["GET"]),
    Route("/v1/office/{office_id}/top-visitors", endpoint=office_top_visitors, methods=["GET"]),
    Route("/v1/office/{office_id}/occupancy", endpoint=office_occupancy, methods=["GET"]),
    Route("/v1/users", endpoint=list_users, methods=["GET"]),
    Route("/v1/user-presence", endpoint=user_presence, methods=["GET"]),
    Route("/v1/user/{user_id}", endpoint=get_user, methods=["GET"]),
    Route("/v1/user/{user_id}/sessions", endpoint=user_sessions, methods=["GET"]),
    Route("/v1/user/{user_id}/stats", endpoint=user_stats, methods=["GET"]),
    Route("/v1/sync/status", endpoint=sync_status, methods=["GET"]),
    Route("/v1/admin/offices/{office_id}/deactivate", endpoint=admin_deactivate_office, methods=["POST"]),
    Route("/v1/admin/sync/{source}", endpoint=admin_sync, methods=["POST"]),
    Route("/v1/admin/aggregate", endpoint=admin_aggregate, methods=["POST"]),
    Route("/v1/admin/directory/sync", endpoint=admin_directory_sync, methods=["POST"]),
]


app = Starlette(debug=settings.environment == "dev", routes=routes, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
