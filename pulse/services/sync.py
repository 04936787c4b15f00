from __future__ import annotations

import logging
import threading
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime

from sqlalchemy.orm import Session

from pulse.core.config import Settings, settings as default_settings
from pulse.core.errors import ConfigurationError, SyncInProgressError
from pulse.db.session import SessionLocal
from pulse.models.access_event import SOURCES
from pulse.services.aggregation import local_date
from pulse.services.checkpoints import SyncCheckpoints
from pulse.services.identity import IdentityResolver
from pulse.services.ingest import EventIngestor
from pulse.services.offices import OfficeResolver
from pulse.sources import build_adapter
from pulse.sources.base import RawAccessEvent, SourceAdapter

logger = logging.getLogger(__name__)

SKIP_UNMAPPED_KIND = "unmapped_kind"
SKIP_UNKNOWN_USER = "unknown_user"
SKIP_UNKNOWN_OFFICE = "unknown_office"

_locks: dict[str, threading.Lock] = {s: threading.Lock() for s in SOURCES}


@dataclass
class SyncResult:
    source: str
    status: str = "pending"
    fetched: int = 0
    processed: int = 0
    duplicates: int = 0
    matched: int = 0
    skipped_reasons: Counter = field(default_factory=Counter)
    transitions: Counter = field(default_factory=Counter)
    errors: list[str] = field(default_factory=list)
    affected: set[tuple[uuid.UUID, date]] = field(default_factory=set)
    checkpoint: datetime | None = None

    @property
    def skipped(self) -> int:
        return sum(self.skipped_reasons.values())

    def as_dict(self) -> dict:
        return {
            "source": self.source,
            "status": self.status,
            "fetched": self.fetched,
            "processed": self.processed,
            "duplicates": self.duplicates,
            "skipped": self.skipped,
            "skippedReasons": dict(self.skipped_reasons),
            "matched": self.matched,
            "transitions": dict(self.transitions),
            "affected": len(self.affected),
            "checkpoint": self.checkpoint.isoformat() if self.checkpoint else None,
            "errors": self.errors[:10],
            "totalErrors": len(self.errors),
        }


def _event_sort_key(event: RawAccessEvent) -> tuple[datetime, str]:
    return (event.occurred_at, event.source_event_id)


def run_source_sync(
    db: Session,
    source: str,
    since: datetime | None = None,
    *,
    adapter: SourceAdapter | None = None,
    settings: Settings | None = None,
) -> SyncResult:
    """One incremental sync run for a source.

    Events are processed one transaction each, oldest first. The cursor
    advances to the newest event handled before the first failing event,
    so a failed event is fetched again on the next run. A fetch failure
    records the error and leaves the cursor where it was; whatever was
    fetched before the failure is still ingested.
    """
    settings = settings or default_settings
    result = SyncResult(source=source)
    checkpoints = SyncCheckpoints(db)

    try:
        offices = OfficeResolver.load(db, source, settings.office_location_map)
        adapter = adapter or build_adapter(source, settings)
    except ConfigurationError as exc:
        db.rollback()
        logger.error("%s sync not started: %s", source, exc)
        checkpoints.record_failure(source, str(exc))
        result.status = "error"
        result.errors.append(str(exc))
        return result

    cursor = since or checkpoints.get_cursor(source)
    logger.info("%s sync started (since=%s)", source, cursor.isoformat() if cursor else None)

    events: list[RawAccessEvent] = []
    fetch_error: str | None = None
    try:
        for event in adapter.fetch(cursor):
            events.append(event)
    except Exception as exc:
        logger.exception("%s fetch failed after %d events", source, len(events))
        fetch_error = str(exc)

    result.fetched = len(events)
    events.sort(key=_event_sort_key)

    identity = IdentityResolver(db)
    ingestor = EventIngestor(db)
    high_water: datetime | None = None
    blocked = False

    for event in events:
        try:
            if event.event_type is None:
                result.skipped_reasons[SKIP_UNMAPPED_KIND] += 1
            elif (user := identity.resolve(event.identity_hint, source)) is None:
                result.skipped_reasons[SKIP_UNKNOWN_USER] += 1
            elif (office := offices.resolve(event.location_key)) is None:
                result.skipped_reasons[SKIP_UNKNOWN_OFFICE] += 1
            else:
                result.matched += 1
                outcome = ingestor.ingest(event, user, office)
                db.commit()
                if outcome.inserted:
                    result.processed += 1
                    if outcome.transition is not None:
                        result.transitions[outcome.transition.value] += 1
                    result.affected.add((office.id, local_date(office, event.occurred_at)))
                else:
                    result.duplicates += 1
        except Exception as exc:
            db.rollback()
            logger.exception("%s: event %s failed", source, event.source_event_id)
            result.errors.append(f"Event {event.source_event_id}: {exc}")
            blocked = True
            continue

        if not blocked and (high_water is None or event.occurred_at > high_water):
            high_water = event.occurred_at

    # A page-capped fetch has not returned anything after its limit yet.
    limit = adapter.checkpoint_limit
    if limit is not None and high_water is not None and high_water > limit:
        logger.warning("%s: fetch hit the page cap; checkpoint held at %s", source, limit.isoformat())
        high_water = limit

    if fetch_error is not None:
        checkpoints.record_failure(source, fetch_error)
        result.status = "error"
        result.errors.insert(0, f"Fetch failed: {fetch_error}")
    else:
        checkpoints.record_success(source, high_water)
        result.status = "success"
    result.checkpoint = checkpoints.get_cursor(source)

    logger.info(
        "%s sync finished: status=%s fetched=%d processed=%d duplicates=%d skipped=%d errors=%d",
        source,
        result.status,
        result.fetched,
        result.processed,
        result.duplicates,
        result.skipped,
        len(result.errors),
    )
    return result


def run_sync_job(source: str, since: datetime | None = None, *, adapter: SourceAdapter | None = None) -> SyncResult:
    """Entry point for the scheduler and the manual trigger.

    Refuses to start while another run of the same source is active in
    this process.
    """
    if source not in _locks:
        raise ConfigurationError(f"Unknown source: {source}")
    lock = _locks[source]
    if not lock.acquire(blocking=False):
        raise SyncInProgressError(f"{source} sync already running")
    try:
        with SessionLocal() as db:
            return run_source_sync(db, source, since, adapter=adapter)
    finally:
        lock.release()
