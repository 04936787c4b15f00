from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from pulse.core.errors import ConfigurationError
from pulse.models.access_event import ENTRY, AccessEvent
from pulse.models.attendance import DailyAttendance, HourlyOccupancy
from pulse.models.office import Office
from pulse.models.presence_session import PresenceSession
from pulse.services.offices import office_zone

logger = logging.getLogger(__name__)


@dataclass
class AggregationResult:
    processed: list[tuple[str, str]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "processed": len(self.processed),
            "errors": self.errors[:10],
            "totalErrors": len(self.errors),
        }


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def local_day_bounds(office: Office, day: date) -> tuple[datetime, datetime]:
    tz = office_zone(office)
    start = datetime.combine(day, time(0), tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time(0), tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def local_hour_bounds(office: Office, day: date, hour: int) -> tuple[datetime, datetime]:
    """UTC bounds of the local wall-clock hour ``hour`` on ``day``.

    Each hour runs from its own local start to the next hour's local start,
    so every instant of the day lands in exactly one hour. On a
    spring-forward day the skipped hour is empty; on a fall-back day the
    repeated hour spans two real hours.
    """
    if not 0 <= hour <= 23:
        raise ValueError(f"hour must be in 0..23, got {hour}")
    tz = office_zone(office)
    # fold=0: a wall time in a gap or overlap resolves with the earlier offset
    start = datetime.combine(day, time(hour), tzinfo=tz)
    if hour == 23:
        end = datetime.combine(day + timedelta(days=1), time(0), tzinfo=tz)
    else:
        end = datetime.combine(day, time(hour + 1), tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def local_date(office: Office, ts: datetime) -> date:
    return ts.astimezone(office_zone(office)).date()


class Aggregator:
    """Recompute-and-replace daily and hourly statistics for an office.

    Figures are derived from the session and event log only, so any day
    can be recomputed as often as needed. Day and hour boundaries follow
    the office's local timezone.
    """

    def __init__(self, db: Session, *, now: datetime | None = None) -> None:
        self.db = db
        self._now = now

    @property
    def now(self) -> datetime:
        return self._now or datetime.now(timezone.utc)

    def _office(self, office: Office | uuid.UUID) -> Office:
        if isinstance(office, Office):
            return office
        row = self.db.get(Office, office)
        if row is None:
            raise LookupError(f"Office {office} not found")
        return row

    def hour_occupancy(self, office: Office | uuid.UUID, day: date, hour: int) -> int:
        office = self._office(office)
        day_start, day_end = local_day_bounds(office, day)
        hour_start, hour_end = local_hour_bounds(office, day, hour)
        # An open session says nothing about hours that have not happened yet.
        if hour_start >= self.now:
            open_clause = PresenceSession.exit_time > hour_start
        else:
            open_clause = or_(PresenceSession.exit_time.is_(None), PresenceSession.exit_time > hour_start)

        stmt = select(func.count(func.distinct(PresenceSession.user_id))).where(
            PresenceSession.office_id == office.id,
            PresenceSession.entry_time >= day_start,
            PresenceSession.entry_time < day_end,
            PresenceSession.entry_time < hour_end,
            open_clause,
        )
        return int(self.db.scalar(stmt) or 0)

    def _daily_figures(self, office: Office, day: date) -> dict:
        start, end = local_day_bounds(office, day)

        unique_visitors = self.db.scalar(
            select(func.count(func.distinct(PresenceSession.user_id))).where(
                PresenceSession.office_id == office.id,
                PresenceSession.entry_time >= start,
                PresenceSession.entry_time < end,
            )
        )
        total_entries = self.db.scalar(
            select(func.count(AccessEvent.id)).where(
                AccessEvent.office_id == office.id,
                AccessEvent.event_type == ENTRY,
                AccessEvent.occurred_at >= start,
                AccessEvent.occurred_at < end,
            )
        )
        durations = self.db.scalars(
            select(PresenceSession.duration_minutes).where(
                PresenceSession.office_id == office.id,
                PresenceSession.exit_time >= start,
                PresenceSession.exit_time < end,
                PresenceSession.duration_minutes.is_not(None),
            )
        ).all()
        avg = _round_half_up(sum(durations) / len(durations)) if durations else 0

        return {
            "unique_visitors": int(unique_visitors or 0),
            "total_entries": int(total_entries or 0),
            "average_duration_minutes": avg,
        }

    def _upsert_daily(self, office: Office, day: date, figures: dict, peak: int) -> DailyAttendance:
        row = self.db.scalar(
            select(DailyAttendance).where(DailyAttendance.office_id == office.id, DailyAttendance.date == day)
        )
        if row is None:
            row = DailyAttendance(office_id=office.id, date=day)
            self.db.add(row)
        row.unique_visitors = figures["unique_visitors"]
        row.total_entries = figures["total_entries"]
        row.average_duration_minutes = figures["average_duration_minutes"]
        row.peak_occupancy = peak
        self.db.flush()
        return row

    def _upsert_hour(self, office: Office, day: date, hour: int, occupancy: int) -> HourlyOccupancy:
        row = self.db.scalar(
            select(HourlyOccupancy).where(
                HourlyOccupancy.office_id == office.id,
                HourlyOccupancy.date == day,
                HourlyOccupancy.hour == hour,
            )
        )
        if row is None:
            row = HourlyOccupancy(office_id=office.id, date=day, hour=hour)
            self.db.add(row)
        row.average_occupancy = occupancy
        self.db.flush()
        return row

    def recompute(self, office: Office | uuid.UUID, day: date) -> DailyAttendance:
        office = self._office(office)
        peak = max(self.hour_occupancy(office, day, h) for h in range(24))
        return self._upsert_daily(office, day, self._daily_figures(office, day), peak)

    def recompute_hour(self, office: Office | uuid.UUID, day: date, hour: int) -> HourlyOccupancy:
        office = self._office(office)
        return self._upsert_hour(office, day, hour, self.hour_occupancy(office, day, hour))

    def recompute_day(self, office: Office | uuid.UUID, day: date) -> DailyAttendance:
        office = self._office(office)
        counts = [self.hour_occupancy(office, day, h) for h in range(24)]
        for hour, occupancy in enumerate(counts):
            self._upsert_hour(office, day, hour, occupancy)
        return self._upsert_daily(office, day, self._daily_figures(office, day), max(counts))

    def aggregate_pairs(self, pairs: Iterable[tuple[uuid.UUID, date]]) -> AggregationResult:
        """Recompute each (office, date) pair in its own transaction.

        A failing pair is rolled back and reported; the remaining pairs
        still run.
        """
        result = AggregationResult()
        for office_id, day in sorted(set(pairs), key=lambda p: (p[1], str(p[0]))):
            try:
                self.recompute_day(office_id, day)
                self.db.commit()
            except Exception as exc:
                self.db.rollback()
                logger.exception("Aggregation failed for office %s on %s", office_id, day)
                result.errors.append(f"Office {office_id} {day.isoformat()}: {exc}")
                continue
            result.processed.append((str(office_id), day.isoformat()))
        logger.info("Aggregated %d office-days (%d errors)", len(result.processed), len(result.errors))
        return result

    def active_office_ids(self) -> list[uuid.UUID]:
        return list(self.db.scalars(select(Office.id).where(Office.is_active.is_(True)).order_by(Office.name)).all())

    def aggregate(self, dates: Iterable[date], office_ids: Iterable[uuid.UUID] | None = None) -> AggregationResult:
        dates = list(dates)
        ids = list(office_ids) if office_ids is not None else self.active_office_ids()
        return self.aggregate_pairs((oid, d) for oid in ids for d in dates)

    def aggregate_recent(self, days: int = 1) -> AggregationResult:
        """Recompute the last ``days`` completed local days of every active office."""
        pairs: list[tuple[uuid.UUID, date]] = []
        bad: list[str] = []
        for office in self.db.scalars(select(Office).where(Office.is_active.is_(True))).all():
            try:
                today = local_date(office, self.now)
            except ConfigurationError as exc:
                logger.error("Skipping office %s: %s", office.name, exc)
                bad.append(f"Office {office.id}: {exc}")
                continue
            pairs.extend((office.id, today - timedelta(days=i)) for i in range(1, days + 1))
        result = self.aggregate_pairs(pairs)
        result.errors.extend(bad)
        return result
