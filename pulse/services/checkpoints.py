from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from pulse.db.types import utcnow
from pulse.models.sync_status import SyncStatus


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SyncCheckpoints:
    """Per-source sync cursor and last run outcome.

    ``last_event_timestamp`` only moves forward. A failed run leaves it
    untouched so the next run re-reads the same window.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def _row(self, source: str) -> SyncStatus:
        row = self.db.get(SyncStatus, source)
        if row is None:
            row = SyncStatus(source=source, status="pending")
            self.db.add(row)
        return row

    def get_cursor(self, source: str) -> datetime | None:
        row = self.db.get(SyncStatus, source)
        return _aware(row.last_event_timestamp) if row is not None else None

    def record_success(self, source: str, max_event_timestamp: datetime | None) -> SyncStatus:
        row = self._row(source)
        incoming = _aware(max_event_timestamp)
        existing = _aware(row.last_event_timestamp)
        if incoming is not None and (existing is None or incoming > existing):
            row.last_event_timestamp = incoming
        row.last_sync_at = utcnow()
        row.status = "success"
        row.error_message = None
        self.db.commit()
        return row

    def record_failure(self, source: str, message: str) -> SyncStatus:
        row = self._row(source)
        row.last_sync_at = utcnow()
        row.status = "error"
        row.error_message = message[:2000]
        self.db.commit()
        return row

    def all_statuses(self) -> list[SyncStatus]:
        return list(self.db.scalars(select(SyncStatus).order_by(SyncStatus.source)).all())
