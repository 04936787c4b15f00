from __future__ import annotations

import logging
from pathlib import Path

import yaml
from sqlalchemy import select
from sqlalchemy.orm import Session

from pulse.core.config import settings
from pulse.core.errors import ConfigurationError
from pulse.models.access_event import SOURCES
from pulse.models.office import Office
from pulse.models.sync_status import SyncStatus

logger = logging.getLogger(__name__)

DEFAULT_SEED_PATH = Path(__file__).resolve().parent.parent / "data" / "offices.yaml"


def load_office_seed(path: Path | str | None = None) -> list[dict]:
    seed_path = Path(path) if path else DEFAULT_SEED_PATH
    with seed_path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    offices = data.get("offices") or []
    if not isinstance(offices, list):
        raise ConfigurationError(f"{seed_path}: 'offices' must be a list")
    for item in offices:
        if not isinstance(item, dict) or not item.get("name"):
            raise ConfigurationError(f"{seed_path}: every office needs a name")
    return offices


def bootstrap_offices(db: Session, path: Path | str | None = None) -> int:
    """Create missing offices from the seed file and refresh the rest.

    Returns the number of offices created. ``is_active`` of existing rows is
    left alone so deactivations survive a restart.
    """
    created = 0
    for item in load_office_seed(path or settings.offices_seed_path):
        office = db.scalar(select(Office).where(Office.name == item["name"]))
        if office is None:
            office = Office(name=item["name"], is_active=True, source_location_keys={})
            db.add(office)
            created += 1
        office.location = item.get("location") or ""
        office.timezone = item.get("timezone") or "UTC"
        office.capacity = int(item.get("capacity") or 0)
        keys = dict(office.source_location_keys or {})
        keys.update({str(k): str(v) for k, v in (item.get("source_location_keys") or {}).items()})
        office.source_location_keys = keys
    db.commit()
    if created:
        logger.info("Seeded %d offices", created)
    return created


def bootstrap_sync_status(db: Session) -> None:
    for source in SOURCES:
        if db.get(SyncStatus, source) is None:
            db.add(SyncStatus(source=source, status="pending"))
    db.commit()
