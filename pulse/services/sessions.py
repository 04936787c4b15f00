from __future__ import annotations

import enum
import logging
import math
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from pulse.models.access_event import ENTRY, EXIT, AccessEvent
from pulse.models.presence_session import PresenceSession

logger = logging.getLogger(__name__)


class Transition(str, enum.Enum):
    OPENED = "opened"
    REENTRY_IGNORED = "reentry_ignored"
    COVERED = "covered"
    CLOSED = "closed"
    ORPHAN_EXIT = "orphan_exit"


def duration_minutes(entry_time: datetime, exit_time: datetime) -> int:
    # Half-up rounding; clock skew between readers can make this negative.
    seconds = (exit_time - entry_time).total_seconds()
    return max(0, int(math.floor(seconds / 60.0 + 0.5)))


class SessionReconciler:
    """Open/close state machine for presence sessions, per (user, office).

    Runs inside the caller's transaction and never commits. The partial
    unique index on open sessions backs the one-open-session rule, so a
    concurrent opener fails on flush instead of creating a second session.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def apply(self, event: AccessEvent) -> Transition:
        if event.event_type == ENTRY:
            return self._on_entry(event)
        if event.event_type == EXIT:
            return self._on_exit(event)
        raise ValueError(f"Unsupported event type {event.event_type!r}")

    def _open_sessions(self, event: AccessEvent) -> list[PresenceSession]:
        stmt = (
            select(PresenceSession)
            .where(
                PresenceSession.user_id == event.user_id,
                PresenceSession.office_id == event.office_id,
                PresenceSession.exit_time.is_(None),
            )
            .order_by(PresenceSession.entry_time.desc())
        )
        return list(self.db.scalars(stmt).all())

    def _covering_session(self, event: AccessEvent) -> PresenceSession | None:
        stmt = (
            select(PresenceSession)
            .where(
                PresenceSession.user_id == event.user_id,
                PresenceSession.office_id == event.office_id,
                PresenceSession.exit_time.is_not(None),
                PresenceSession.entry_time <= event.occurred_at,
                PresenceSession.exit_time >= event.occurred_at,
            )
            .limit(1)
        )
        return self.db.scalar(stmt)

    def _on_entry(self, event: AccessEvent) -> Transition:
        if self._open_sessions(event):
            # First entry wins; badge re-reads do not open a second session.
            return Transition.REENTRY_IGNORED

        if self._covering_session(event) is not None:
            logger.info(
                "Late entry %s/%s falls inside a closed session; ignoring",
                event.source,
                event.source_event_id,
            )
            return Transition.COVERED

        self.db.add(
            PresenceSession(
                user_id=event.user_id,
                office_id=event.office_id,
                entry_time=event.occurred_at,
                exit_time=None,
                duration_minutes=None,
            )
        )
        self.db.flush()
        return Transition.OPENED

    def _on_exit(self, event: AccessEvent) -> Transition:
        open_sessions = self._open_sessions(event)
        if not open_sessions:
            logger.info(
                "Orphan exit %s/%s for user %s at office %s",
                event.source,
                event.source_event_id,
                event.user_id,
                event.office_id,
            )
            return Transition.ORPHAN_EXIT

        if len(open_sessions) > 1:
            logger.warning(
                "%d open sessions for user %s at office %s; closing the latest",
                len(open_sessions),
                event.user_id,
                event.office_id,
            )

        session = open_sessions[0]
        session.exit_time = event.occurred_at
        session.duration_minutes = duration_minutes(session.entry_time, event.occurred_at)
        self.db.flush()
        return Transition.CLOSED
