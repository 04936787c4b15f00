import os

# Configure before any pulse import: settings are read at import time.
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["ENABLE_SCHEDULER"] = "0"
os.environ["AUTO_CREATE_SCHEMA"] = "1"
os.environ["ADMIN_SECRET_KEY"] = "test-admin-key"
os.environ["OFFICE_LOCATION_MAP_JSON"] = "{}"
for _name in ("UNIFI_CONTROLLERS_JSON", "UNIFI_ACCESS_URL", "UNIFI_ACCESS_TOKEN", "EZRADIUS_API_URL", "EZRADIUS_API_KEY"):
    os.environ.pop(_name, None)

from datetime import datetime, timezone  # noqa: E402

import pytest  # noqa: E402

import pulse.models  # noqa: E402,F401
from pulse.core.errors import SourceError  # noqa: E402
from pulse.db.base import Base  # noqa: E402
from pulse.db.session import SessionLocal, engine  # noqa: E402
from pulse.models.access_event import ENTRY, EXIT, SOURCE_UNIFI  # noqa: E402
from pulse.models.office import Office  # noqa: E402
from pulse.models.user import User  # noqa: E402
from pulse.sources.base import RawAccessEvent  # noqa: E402

ADMIN_KEY = "test-admin-key"


def at(hour: int, minute: int = 0, day: int = 14) -> datetime:
    """A UTC timestamp on 2026-10-<day>."""
    return datetime(2026, 10, day, hour, minute, tzinfo=timezone.utc)


def make_event(
    source_event_id: str,
    event_type,
    occurred_at: datetime,
    *,
    hint: str = "jane.doe@example.com",
    location_key: str | None = "minneapolis",
    source: str = SOURCE_UNIFI,
    kind: str | None = None,
) -> RawAccessEvent:
    if kind is None:
        kind = {ENTRY: "access.door.unlock", EXIT: "access.door.exit"}.get(event_type, "access.door.ring")
    return RawAccessEvent(
        source_event_id=source_event_id,
        source=source,
        identity_hint=hint,
        event_kind=kind,
        event_type=event_type,
        occurred_at=occurred_at,
        device_label="Front Door",
        location_key=location_key,
    )


class FakeAdapter:
    """Yields canned events; optionally raises after ``fail_after`` of them."""

    def __init__(self, events, *, source: str = SOURCE_UNIFI, fail_after: int | None = None, checkpoint_limit=None):
        self.source = source
        self.checkpoint_limit = checkpoint_limit
        self.events = list(events)
        self.fail_after = fail_after
        self.calls: list[datetime | None] = []

    def fetch(self, since=None):
        self.calls.append(since)
        for i, event in enumerate(self.events):
            if self.fail_after is not None and i >= self.fail_after:
                raise SourceError(self.source, "connection reset")
            yield event
        if self.fail_after is not None and self.fail_after >= len(self.events):
            raise SourceError(self.source, "connection reset")


@pytest.fixture
def db():
    """Fresh schema per test on the shared in-memory database."""
    Base.metadata.create_all(engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        Base.metadata.drop_all(engine)


@pytest.fixture
def office(db):
    o = Office(
        name="Minneapolis",
        location="Minneapolis, MN",
        capacity=60,
        timezone="UTC",
        source_location_keys={SOURCE_UNIFI: "minneapolis"},
        is_active=True,
    )
    db.add(o)
    db.commit()
    return o


@pytest.fixture
def user(db):
    u = User(external_id="entra-1", email="jane.doe@example.com", display_name="Jane Doe", is_active=True)
    db.add(u)
    db.commit()
    return u
