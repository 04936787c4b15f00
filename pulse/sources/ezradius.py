from __future__ import annotations

import logging
from collections.abc import Iterator
from datetime import datetime, timezone

import httpx
from pydantic import ValidationError

from pulse.core.config import Settings
from pulse.core.errors import SourceError
from pulse.models.access_event import ENTRY, SOURCE_EZRADIUS
from pulse.sources.base import RawAccessEvent, fetch_window_start
from pulse.sources.schemas import EzradiusAuthEvent, EzradiusResponse

logger = logging.getLogger(__name__)

ACCESS_ACCEPT = "Access-Accept"


def parse_timestamp(value: str) -> datetime:
    ts = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


class EzradiusSource:
    """Accepted RADIUS authentications; each one counts as an office entry."""

    source = SOURCE_EZRADIUS

    def __init__(
        self,
        api_url: str,
        api_key: str,
        *,
        page_size: int = 100,
        max_pages: int = 50,
        overlap_minutes: int = 10,
        initial_lookback_minutes: int = 60,
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.page_size = page_size
        self.max_pages = max_pages
        self.overlap_minutes = overlap_minutes
        self.initial_lookback_minutes = initial_lookback_minutes
        self._timeout = timeout
        self._transport = transport
        self.checkpoint_limit: datetime | None = None

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "EzradiusSource":
        return cls(
            settings.ezradius_api_url or "",
            settings.ezradius_api_key or "",
            page_size=settings.sync_page_size,
            max_pages=settings.sync_max_pages,
            overlap_minutes=settings.sync_overlap_minutes,
            initial_lookback_minutes=settings.sync_initial_lookback_minutes,
            timeout=settings.http_timeout_seconds,
            **kwargs,
        )

    def fetch(self, since: datetime | None = None, *, now: datetime | None = None) -> Iterator[RawAccessEvent]:
        now = now or datetime.now(timezone.utc)
        start = fetch_window_start(
            since,
            now=now,
            overlap_minutes=self.overlap_minutes,
            initial_lookback_minutes=self.initial_lookback_minutes,
        )
        headers = {"X-API-Key": self.api_key, "Content-Type": "application/json"}
        self.checkpoint_limit = None
        last_seen: datetime | None = None

        with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
            for page in range(1, self.max_pages + 1):
                params = {
                    "since": start.isoformat(),
                    "limit": self.page_size,
                    "page": page,
                    "event_type": ACCESS_ACCEPT,
                }
                try:
                    res = client.get(f"{self.api_url}/v1/auth/events", params=params, headers=headers)
                except httpx.HTTPError as exc:
                    raise SourceError(self.source, str(exc)) from exc
                if res.status_code >= 400:
                    raise SourceError(self.source, f"HTTP {res.status_code}")

                try:
                    body = EzradiusResponse.model_validate(res.json())
                except (ValueError, ValidationError) as exc:
                    raise SourceError(self.source, "malformed response") from exc
                if not body.success:
                    raise SourceError(self.source, "API returned success=false")

                for item in body.data:
                    event = self._normalize(item)
                    if event is not None:
                        last_seen = event.occurred_at
                        yield event

                if len(body.data) < self.page_size:
                    return
                p = body.pagination
                if p is not None and p.per_page and p.page * p.per_page >= p.total:
                    return

        self.checkpoint_limit = last_seen or start
        logger.warning(
            "EZRADIUS: stopped after %d pages; the cursor is held at %s",
            self.max_pages,
            self.checkpoint_limit.isoformat(),
        )

    def _normalize(self, item: EzradiusAuthEvent) -> RawAccessEvent | None:
        try:
            occurred_at = parse_timestamp(item.timestamp)
        except ValueError:
            logger.warning("EZRADIUS: dropping event %s with bad timestamp %r", item.id, item.timestamp)
            return None
        return RawAccessEvent(
            source_event_id=item.id,
            source=self.source,
            identity_hint=item.username,
            event_kind=item.event_type,
            event_type=ENTRY,
            occurred_at=occurred_at,
            device_label=item.mac_address,
            location_key=item.location_id,
        )
