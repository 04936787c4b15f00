from __future__ import annotations

import uuid
from datetime import datetime
from typing import Literal

from sqlalchemy import ForeignKey, Index, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from pulse.db.base import Base
from pulse.db.types import UTCDateTime, utcnow

EventType = Literal["entry", "exit"]
SourceName = Literal["unifi_access", "ezradius"]

ENTRY: EventType = "entry"
EXIT: EventType = "exit"

SOURCE_UNIFI: SourceName = "unifi_access"
SOURCE_EZRADIUS: SourceName = "ezradius"
SOURCES: tuple[str, ...] = (SOURCE_UNIFI, SOURCE_EZRADIUS)


class AccessEvent(Base):
    """Append-only log of deduplicated door/auth events."""

    __tablename__ = "access_events"
    __table_args__ = (
        # The dedup key. Re-delivery of a vendor event fails here.
        UniqueConstraint("source", "source_event_id", name="uq_access_events_source_event"),
        Index("ix_access_events_office_occurred", "office_id", "occurred_at"),
        Index("ix_access_events_user_occurred", "user_id", "occurred_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("users.id"))
    office_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("offices.id"))
    event_type: Mapped[str] = mapped_column(String(16))
    source: Mapped[str] = mapped_column(String(32))
    source_event_id: Mapped[str] = mapped_column(String(255))
    controller: Mapped[str | None] = mapped_column(String(128), nullable=True)
    device_info: Mapped[str | None] = mapped_column(String(255), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
