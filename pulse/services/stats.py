from __future__ import annotations

import math
import uuid
from collections import Counter, defaultdict
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from pulse.models.access_event import AccessEvent
from pulse.models.attendance import DailyAttendance, HourlyOccupancy
from pulse.models.office import Office
from pulse.models.presence_session import PresenceSession
from pulse.models.user import User

CURRENT_WINDOW = timedelta(hours=12)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _round(value: float | None) -> int:
    return int(math.floor((value or 0) + 0.5))


def office_dict(o: Office) -> dict:
    return {
        "id": str(o.id),
        "name": o.name,
        "location": o.location,
        "capacity": o.capacity,
        "timezone": o.timezone,
        "is_active": o.is_active,
    }


def user_dict(u: User) -> dict:
    return {
        "id": str(u.id),
        "external_id": u.external_id,
        "email": u.email,
        "display_name": u.display_name,
        "department": u.department,
        "job_title": u.job_title,
        "is_active": u.is_active,
        "created_at": _iso(u.created_at),
    }


def current_occupancy(db: Session, *, office_id: uuid.UUID | None = None, now: datetime | None = None) -> int:
    """Distinct users with an open session that started in the last 12 hours."""
    now = now or datetime.now(timezone.utc)
    stmt = (
        select(func.count(func.distinct(PresenceSession.user_id)))
        .join(Office, Office.id == PresenceSession.office_id)
        .where(
            Office.is_active.is_(True),
            PresenceSession.exit_time.is_(None),
            PresenceSession.entry_time > now - CURRENT_WINDOW,
        )
    )
    if office_id is not None:
        stmt = stmt.where(PresenceSession.office_id == office_id)
    return int(db.scalar(stmt) or 0)


def dashboard_stats(db: Session, now: datetime | None = None) -> dict:
    now = now or datetime.now(timezone.utc)
    today = now.date()
    month_ago = today - timedelta(days=30)

    total_capacity = db.scalar(select(func.coalesce(func.sum(Office.capacity), 0)).where(Office.is_active.is_(True)))
    active_offices = db.scalar(select(func.count(Office.id)).where(Office.is_active.is_(True)))

    avg_daily = db.scalar(select(func.avg(DailyAttendance.unique_visitors)).where(DailyAttendance.date >= month_ago))
    avg_stay = db.scalar(
        select(func.avg(PresenceSession.duration_minutes)).where(
            PresenceSession.entry_time >= datetime.combine(month_ago, datetime.min.time(), tzinfo=timezone.utc),
            PresenceSession.duration_minutes.is_not(None),
        )
    )

    def visitors_between(start: date, end: date | None = None) -> int:
        stmt = select(func.coalesce(func.sum(DailyAttendance.unique_visitors), 0)).where(DailyAttendance.date >= start)
        if end is not None:
            stmt = stmt.where(DailyAttendance.date < end)
        return int(db.scalar(stmt) or 0)

    week_ago = today - timedelta(days=7)
    this_week = visitors_between(week_ago)
    last_week = visitors_between(today - timedelta(days=14), week_ago)
    change = round((this_week - last_week) / last_week * 100, 1) if last_week > 0 else 0.0

    return {
        "currentOccupancy": current_occupancy(db, now=now),
        "totalCapacity": int(total_capacity or 0),
        "averageDailyAttendance": _round(avg_daily),
        "averageStayDuration": _round(avg_stay),
        "weekOverWeekChange": change,
        "activeOffices": int(active_offices or 0),
    }


def attendance(
    db: Session,
    *,
    start: date,
    end: date,
    office_id: uuid.UUID | None = None,
) -> list[dict]:
    stmt = (
        select(DailyAttendance, Office.name)
        .join(Office, Office.id == DailyAttendance.office_id)
        .where(DailyAttendance.date >= start, DailyAttendance.date <= end)
    )
    if office_id is not None:
        stmt = stmt.where(DailyAttendance.office_id == office_id)
    stmt = stmt.order_by(DailyAttendance.date, Office.name)
    return [{**row.as_dict(), "officeName": name} for row, name in db.execute(stmt).all()]


def hourly_pattern(db: Session, *, office_id: uuid.UUID | None = None, now: datetime | None = None) -> list[dict]:
    """Hourly occupancy averaged over the last 30 days by hour and weekday (0 = Sunday)."""
    now = now or datetime.now(timezone.utc)
    stmt = select(HourlyOccupancy).where(HourlyOccupancy.date >= now.date() - timedelta(days=30))
    if office_id is not None:
        stmt = stmt.where(HourlyOccupancy.office_id == office_id)

    buckets: dict[tuple[str, int, int], list[int]] = defaultdict(list)
    for row in db.scalars(stmt).all():
        buckets[(str(row.office_id), row.date.isoweekday() % 7, row.hour)].append(row.average_occupancy)

    out = [
        {
            "officeId": oid,
            "dayOfWeek": dow,
            "hour": hour,
            "averageOccupancy": round(sum(values) / len(values), 1),
        }
        for (oid, dow, hour), values in buckets.items()
    ]
    out.sort(key=lambda x: (x["officeId"], x["dayOfWeek"], x["hour"]))
    return out


def list_offices(db: Session, now: datetime | None = None) -> list[dict]:
    offices = db.scalars(select(Office).where(Office.is_active.is_(True)).order_by(Office.name)).all()
    out = []
    for o in offices:
        current = current_occupancy(db, office_id=o.id, now=now)
        out.append(
            {
                **office_dict(o),
                "current_occupancy": current,
                "occupancy_rate": round(current / o.capacity * 100, 1) if o.capacity else 0.0,
            }
        )
    return out


def office_daily(db: Session, office_id: uuid.UUID, *, days: int = 30, now: datetime | None = None) -> list[dict]:
    now = now or datetime.now(timezone.utc)
    rows = db.scalars(
        select(DailyAttendance)
        .where(DailyAttendance.office_id == office_id, DailyAttendance.date >= now.date() - timedelta(days=days))
        .order_by(DailyAttendance.date)
    ).all()
    return [
        {
            "date": r.date.isoformat(),
            "unique_visitors": r.unique_visitors,
            "total_entries": r.total_entries,
            "avg_duration_minutes": r.average_duration_minutes,
            "peak_occupancy": r.peak_occupancy,
        }
        for r in rows
    ]


def office_hourly(db: Session, office_id: uuid.UUID, *, days: int = 30, now: datetime | None = None) -> list[dict]:
    now = now or datetime.now(timezone.utc)
    stmt = (
        select(HourlyOccupancy.hour, func.avg(HourlyOccupancy.average_occupancy))
        .where(HourlyOccupancy.office_id == office_id, HourlyOccupancy.date >= now.date() - timedelta(days=days))
        .group_by(HourlyOccupancy.hour)
        .order_by(HourlyOccupancy.hour)
    )
    return [{"hour": hour, "avg_occupancy": round(float(avg or 0), 1)} for hour, avg in db.execute(stmt).all()]


def top_visitors(
    db: Session,
    office_id: uuid.UUID,
    *,
    limit: int = 10,
    days: int = 30,
    now: datetime | None = None,
) -> list[dict]:
    now = now or datetime.now(timezone.utc)
    visits = func.count(PresenceSession.id)
    stmt = (
        select(
            User.id,
            User.display_name,
            User.email,
            visits,
            func.coalesce(func.sum(PresenceSession.duration_minutes), 0),
        )
        .join(User, User.id == PresenceSession.user_id)
        .where(PresenceSession.office_id == office_id, PresenceSession.entry_time >= now - timedelta(days=days))
        .group_by(User.id, User.display_name, User.email)
        .order_by(visits.desc(), User.display_name)
        .limit(limit)
    )
    return [
        {
            "user_id": str(uid),
            "display_name": name,
            "email": email,
            "visit_count": int(count),
            "total_hours": round(int(minutes) / 60, 1),
        }
        for uid, name, email, count, minutes in db.execute(stmt).all()
    ]


def search_users(db: Session, *, search: str | None = None, limit: int = 100, offset: int = 0) -> dict:
    stmt = select(User)
    count_stmt = select(func.count(User.id))
    if search:
        pattern = f"%{search.strip()}%"
        cond = or_(User.display_name.ilike(pattern), User.email.ilike(pattern), User.department.ilike(pattern))
        stmt = stmt.where(cond)
        count_stmt = count_stmt.where(cond)
    users = db.scalars(stmt.order_by(User.display_name).limit(limit).offset(offset)).all()
    return {
        "users": [user_dict(u) for u in users],
        "total": int(db.scalar(count_stmt) or 0),
        "limit": limit,
        "offset": offset,
    }


def user_events(db: Session, user_id: uuid.UUID, *, limit: int = 20) -> list[dict]:
    """Recent access events of a user, newest first, shaped like session rows."""
    stmt = (
        select(AccessEvent, Office.name)
        .join(Office, Office.id == AccessEvent.office_id)
        .where(AccessEvent.user_id == user_id)
        .order_by(AccessEvent.occurred_at.desc())
        .limit(limit)
    )
    out = []
    for ev, office_name in db.execute(stmt).all():
        out.append(
            {
                "id": str(ev.id),
                "office_id": str(ev.office_id),
                "office_name": office_name,
                "event_type": ev.event_type,
                "source": ev.source,
                "device_info": ev.device_info,
                "occurred_at": _iso(ev.occurred_at),
                "entry_time": _iso(ev.occurred_at) if ev.event_type == "entry" else None,
                "exit_time": _iso(ev.occurred_at) if ev.event_type == "exit" else None,
                "duration_minutes": None,
            }
        )
    return out


def user_stats(db: Session, user_id: uuid.UUID) -> dict:
    sessions = db.execute(
        select(PresenceSession, Office.name)
        .join(Office, Office.id == PresenceSession.office_id)
        .where(PresenceSession.user_id == user_id)
    ).all()

    durations = [s.duration_minutes for s, _ in sessions if s.duration_minutes is not None]
    offices = Counter(name for _, name in sessions)
    last_visit = max((s.entry_time for s, _ in sessions), default=None)

    return {
        "total_visits": len(sessions),
        "total_hours": round(sum(durations) / 60, 1),
        "avg_duration_minutes": _round(sum(durations) / len(durations)) if durations else 0,
        "most_visited_office": offices.most_common(1)[0][0] if offices else None,
        "last_visit": _iso(last_visit),
    }


def user_presence_summary(db: Session, *, limit: int = 100) -> list[dict]:
    """Per-user visit totals across all offices, most frequent visitors first."""
    visits = func.count(PresenceSession.id)
    stmt = (
        select(
            User.id,
            User.display_name,
            User.email,
            User.department,
            visits,
            func.coalesce(func.sum(PresenceSession.duration_minutes), 0),
            func.avg(PresenceSession.duration_minutes),
            func.max(PresenceSession.entry_time),
            func.count(func.distinct(PresenceSession.office_id)),
        )
        .join(PresenceSession, PresenceSession.user_id == User.id)
        .group_by(User.id, User.display_name, User.email, User.department)
        .order_by(visits.desc(), User.display_name)
        .limit(limit)
    )
    out = []
    for uid, name, email, department, count, minutes, avg, last_visit, offices in db.execute(stmt).all():
        out.append(
            {
                "user_id": str(uid),
                "display_name": name,
                "email": email,
                "department": department,
                "total_visits": int(count),
                "total_hours": round(int(minutes) / 60, 1),
                "avg_duration_minutes": _round(float(avg)) if avg is not None else 0,
                "last_visit": _iso(last_visit),
                "offices_visited": int(offices),
            }
        )
    return out
