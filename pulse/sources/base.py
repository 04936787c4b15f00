from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol

from pulse.models.access_event import EventType


@dataclass(frozen=True)
class RawAccessEvent:
    """A vendor event translated into the shape every source shares."""

    source_event_id: str
    source: str
    identity_hint: str
    event_kind: str
    event_type: EventType | None
    occurred_at: datetime
    device_label: str | None = None
    location_key: str | None = None
    controller: str | None = None


class SourceAdapter(Protocol):
    """Pull side of a vendor feed.

    ``checkpoint_limit`` is set by ``fetch`` when a run was cut short by the
    page cap: the cursor must not move past it, since events after it were
    never returned. ``None`` means the window was read to the end.
    """

    source: str
    checkpoint_limit: datetime | None

    def fetch(self, since: datetime | None = None) -> Iterator[RawAccessEvent]:
        ...


def fetch_window_start(
    since: datetime | None,
    *,
    now: datetime,
    overlap_minutes: int,
    initial_lookback_minutes: int,
) -> datetime:
    # Re-read a short window before the cursor; vendors publish late.
    if since is None:
        return now - timedelta(minutes=initial_lookback_minutes)
    if since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    return since - timedelta(minutes=overlap_minutes)
