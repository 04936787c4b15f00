from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, Index, Integer, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from pulse.db.base import Base
from pulse.db.types import UTCDateTime, utcnow


class PresenceSession(Base):
    __tablename__ = "presence_sessions"
    __table_args__ = (
        # At most one open session per (user, office)
        Index(
            "ux_presence_sessions_open",
            "user_id",
            "office_id",
            unique=True,
            postgresql_where=text("exit_time IS NULL"),
            sqlite_where=text("exit_time IS NULL"),
        ),
        Index("ix_presence_sessions_office_entry", "office_id", "entry_time"),
        Index("ix_presence_sessions_user_entry", "user_id", "entry_time"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id"))
    office_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("offices.id"))
    entry_time: Mapped[datetime] = mapped_column(UTCDateTime)
    exit_time: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_open(self) -> bool:
        return self.exit_time is None
