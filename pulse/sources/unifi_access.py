from __future__ import annotations

import logging
from collections.abc import Generator, Iterator
from datetime import datetime, timezone

import httpx
from pydantic import ValidationError

from pulse.core.config import Settings, UnifiController
from pulse.core.errors import SourceError
from pulse.models.access_event import ENTRY, EXIT, SOURCE_UNIFI, EventType
from pulse.sources.base import RawAccessEvent, fetch_window_start
from pulse.sources.schemas import UnifiAccessLogEntry, UnifiResponse, UnifiUser

logger = logging.getLogger(__name__)

ENTRY_KINDS = {"access.door.unlock", "access.door.open", "access.granted"}
EXIT_KINDS = {"access.door.exit", "access.exit.granted"}


def map_event_type(kind: str) -> EventType | None:
    if kind in ENTRY_KINDS:
        return ENTRY
    if kind in EXIT_KINDS:
        return EXIT
    return None


class UnifiAccessSource:
    """Door events from one or more UniFi Access controllers.

    Every controller is polled over the same window and the results are
    merged into one stream. Event ids are prefixed with the controller name
    so ids from different controllers never collide on the dedup key.

    A controller that fails does not stop the others: its error is kept and
    raised as one ``SourceError`` once every controller has been read.
    Access logs come back oldest first, so a controller cut off by the page
    cap has returned everything up to its last event and nothing after.
    """

    source = SOURCE_UNIFI

    def __init__(
        self,
        controllers: list[UnifiController],
        *,
        page_size: int = 100,
        max_pages: int = 50,
        overlap_minutes: int = 10,
        initial_lookback_minutes: int = 60,
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.controllers = controllers
        self.page_size = page_size
        self.max_pages = max_pages
        self.overlap_minutes = overlap_minutes
        self.initial_lookback_minutes = initial_lookback_minutes
        self._timeout = timeout
        self._transport = transport
        self.checkpoint_limit: datetime | None = None

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "UnifiAccessSource":
        return cls(
            settings.unifi_controllers,
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
        self.checkpoint_limit = None
        failures: list[str] = []
        with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
            for controller in self.controllers:
                try:
                    truncated_at = yield from self._fetch_controller(client, controller, start, now)
                except SourceError as exc:
                    logger.error("UniFi %s: %s", controller.name, exc)
                    failures.append(str(exc).removeprefix(f"{self.source}: "))
                    continue
                if truncated_at is not None and (self.checkpoint_limit is None or truncated_at < self.checkpoint_limit):
                    self.checkpoint_limit = truncated_at
        if failures:
            raise SourceError(self.source, "; ".join(failures))

    def _headers(self, controller: UnifiController) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {controller.token}",
            "Content-Type": "application/json",
        }

    def _unwrap(self, controller: UnifiController, res: httpx.Response) -> list[dict]:
        if res.status_code >= 400:
            raise SourceError(self.source, f"{controller.name}: HTTP {res.status_code}")
        try:
            body = UnifiResponse.model_validate(res.json())
        except (ValueError, ValidationError) as exc:
            raise SourceError(self.source, f"{controller.name}: malformed response") from exc
        if body.code != "SUCCESS":
            raise SourceError(self.source, f"{controller.name}: {body.msg or body.code}")
        return body.data

    def _user_emails(self, client: httpx.Client, controller: UnifiController) -> dict[str, str]:
        try:
            res = client.get(f"{controller.url}/api/v1/developer/users", headers=self._headers(controller))
        except httpx.HTTPError as exc:
            raise SourceError(self.source, f"{controller.name}: {exc}") from exc
        out: dict[str, str] = {}
        for item in self._unwrap(controller, res):
            try:
                user = UnifiUser.model_validate(item)
            except ValidationError:
                continue
            if user.user_email:
                out[user.id] = user.user_email
        logger.info("UniFi %s: email mapping for %d users", controller.name, len(out))
        return out

    def _fetch_controller(
        self,
        client: httpx.Client,
        controller: UnifiController,
        start: datetime,
        end: datetime,
    ) -> Generator[RawAccessEvent, None, datetime | None]:
        """Yield one controller's events over the window.

        Returns ``None`` when the window was read to the end, otherwise the
        timestamp of the last event returned before the page cap.
        """
        emails = self._user_emails(client, controller)
        last_seen: datetime | None = None
        url = f"{controller.url}/api/v1/developer/access_logs/fetch"

        for page in range(1, self.max_pages + 1):
            body = {
                "start_time": int(start.timestamp()),
                "end_time": int(end.timestamp()),
                "page_num": page,
                "page_size": self.page_size,
            }
            try:
                res = client.post(url, json=body, headers=self._headers(controller))
            except httpx.HTTPError as exc:
                raise SourceError(self.source, f"{controller.name}: {exc}") from exc

            items = self._unwrap(controller, res)
            for item in items:
                event = self._normalize(controller, item, emails)
                if event is not None:
                    last_seen = event.occurred_at
                    yield event

            if len(items) < self.page_size:
                return None

        logger.warning(
            "UniFi %s: stopped after %d pages; the cursor is held at %s",
            controller.name,
            self.max_pages,
            (last_seen or start).isoformat(),
        )
        return last_seen or start

    def _normalize(
        self,
        controller: UnifiController,
        item: dict,
        emails: dict[str, str],
    ) -> RawAccessEvent | None:
        try:
            entry = UnifiAccessLogEntry.model_validate(item)
        except ValidationError as exc:
            logger.warning("UniFi %s: dropping malformed log entry: %s", controller.name, exc)
            return None

        hint = entry.user_email or (emails.get(entry.actor_id) if entry.actor_id else None) or entry.display_name
        return RawAccessEvent(
            source_event_id=f"{controller.name}_{entry.id}",
            source=self.source,
            identity_hint=hint or "",
            event_kind=entry.event_type,
            event_type=map_event_type(entry.event_type),
            occurred_at=datetime.fromtimestamp(entry.event_time, tz=timezone.utc),
            device_label=entry.door_name or entry.door_id,
            location_key=controller.location_key,
            controller=controller.name,
        )
