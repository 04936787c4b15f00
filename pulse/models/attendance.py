from __future__ import annotations

import uuid
import datetime as dt

from sqlalchemy import CheckConstraint, Date, ForeignKey, Integer, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from pulse.db.base import Base
from pulse.db.types import UTCDateTime, utcnow


class DailyAttendance(Base):
    __tablename__ = "daily_attendance"
    __table_args__ = (UniqueConstraint("office_id", "date", name="uq_daily_attendance_office_date"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    office_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("offices.id"))
    date: Mapped[dt.date] = mapped_column(Date, index=True)
    unique_visitors: Mapped[int] = mapped_column(Integer, default=0)
    total_entries: Mapped[int] = mapped_column(Integer, default=0)
    average_duration_minutes: Mapped[int] = mapped_column(Integer, default=0)
    peak_occupancy: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    def as_dict(self) -> dict:
        return {
            "officeId": str(self.office_id),
            "date": self.date.isoformat(),
            "uniqueVisitors": self.unique_visitors,
            "totalEntries": self.total_entries,
            "averageDurationMinutes": self.average_duration_minutes,
            "peakOccupancy": self.peak_occupancy,
        }


class HourlyOccupancy(Base):
    __tablename__ = "hourly_occupancy"
    __table_args__ = (
        UniqueConstraint("office_id", "date", "hour", name="uq_hourly_occupancy_office_date_hour"),
        CheckConstraint("hour >= 0 AND hour <= 23", name="ck_hourly_occupancy_hour"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    office_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("offices.id"))
    date: Mapped[dt.date] = mapped_column(Date, index=True)
    hour: Mapped[int] = mapped_column(Integer)
    average_occupancy: Mapped[int] = mapped_column(Integer, default=0)

    def as_dict(self) -> dict:
        return {
            "officeId": str(self.office_id),
            "date": self.date.isoformat(),
            "hour": self.hour,
            "averageOccupancy": self.average_occupancy,
        }
