from __future__ import annotations

from datetime import datetime
from typing import Literal

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from pulse.db.base import Base
from pulse.db.types import UTCDateTime

SyncState = Literal["pending", "success", "error"]


class SyncStatus(Base):
    __tablename__ = "sync_status"

    source: Mapped[str] = mapped_column(String(32), primary_key=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # High-water mark used as the next poll's cursor. Never regresses.
    last_event_timestamp: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    def as_dict(self) -> dict:
        return {
            "source": self.source,
            "status": self.status,
            "lastSyncAt": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "lastEventTimestamp": self.last_event_timestamp.isoformat() if self.last_event_timestamp else None,
            "errorMessage": self.error_message,
        }
