from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pulse.models.access_event import AccessEvent
from pulse.models.office import Office
from pulse.models.user import User
from pulse.services.sessions import SessionReconciler, Transition
from pulse.sources.base import RawAccessEvent

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    inserted: bool
    access_event: AccessEvent | None = None
    transition: Transition | None = None


class EventIngestor:
    """Writes each vendor event once and runs the reconciler on first sight.

    The caller owns the transaction and commits after every event, so the
    event row and its session transition land together.
    """

    def __init__(self, db: Session, reconciler: SessionReconciler | None = None) -> None:
        self.db = db
        self.reconciler = reconciler or SessionReconciler(db)

    def exists(self, source: str, source_event_id: str) -> bool:
        stmt = select(AccessEvent.id).where(
            AccessEvent.source == source,
            AccessEvent.source_event_id == source_event_id,
        )
        return self.db.scalar(stmt.limit(1)) is not None

    def ingest(self, event: RawAccessEvent, user: User, office: Office) -> IngestResult:
        if event.event_type is None:
            raise ValueError(f"Event {event.source_event_id} has no presence type ({event.event_kind})")

        if self.exists(event.source, event.source_event_id):
            return IngestResult(inserted=False)

        row = AccessEvent(
            user_id=user.id,
            office_id=office.id,
            event_type=event.event_type,
            source=event.source,
            source_event_id=event.source_event_id,
            controller=event.controller,
            device_info=event.device_label,
            occurred_at=event.occurred_at,
        )
        self.db.add(row)
        try:
            self.db.flush()
        except IntegrityError:
            # A concurrent run inserted the same key between check and insert.
            self.db.rollback()
            if self.exists(event.source, event.source_event_id):
                logger.debug("Event %s/%s inserted concurrently", event.source, event.source_event_id)
                return IngestResult(inserted=False)
            raise

        transition = self.reconciler.apply(row)
        return IngestResult(inserted=True, access_event=row, transition=transition)
