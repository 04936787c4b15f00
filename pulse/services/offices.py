from __future__ import annotations

import logging
import uuid
from datetime import timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.orm import Session

from pulse.core.errors import ConfigurationError
from pulse.models.office import Office

logger = logging.getLogger(__name__)


def office_zone(office: Office) -> tzinfo:
    name = (office.timezone or "").strip()
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigurationError(f"Office {office.name!r} has unknown timezone {name!r}") from exc


def _lookup_office(offices: list[Office], ref: str) -> Office | None:
    try:
        office_id = uuid.UUID(ref)
    except ValueError:
        office_id = None
    for o in offices:
        if office_id is not None and o.id == office_id:
            return o
        if o.name.lower() == ref.strip().lower():
            return o
    return None


class OfficeResolver:
    """Explicit (source, location key) -> office mapping for one sync run.

    Built from the offices' own ``source_location_keys`` plus configured
    overrides. Anything ambiguous or pointing at a missing office fails when
    the mapping is loaded, not per event.
    """

    def __init__(self, source: str, mapping: dict[str, Office]) -> None:
        self.source = source
        self._mapping = mapping

    @classmethod
    def load(cls, db: Session, source: str, location_map: dict[str, dict[str, str]] | None = None) -> "OfficeResolver":
        offices = list(db.scalars(select(Office).where(Office.is_active.is_(True))).all())

        mapping: dict[str, Office] = {}
        for office in offices:
            key = (office.source_location_keys or {}).get(source)
            if not key:
                continue
            other = mapping.get(key)
            if other is not None and other.id != office.id:
                raise ConfigurationError(
                    f"{source}: location key {key!r} is claimed by both {other.name!r} and {office.name!r}"
                )
            mapping[key] = office

        for key, ref in ((location_map or {}).get(source) or {}).items():
            office = _lookup_office(offices, ref)
            if office is None:
                raise ConfigurationError(f"{source}: location key {key!r} maps to unknown or inactive office {ref!r}")
            mapping[key] = office

        for office in set(mapping.values()):
            office_zone(office)

        if not mapping:
            logger.warning("%s: no office mapping configured; every event will be skipped", source)
        return cls(source, mapping)

    def resolve(self, location_key: str | None) -> Office | None:
        if location_key is None:
            return None
        return self._mapping.get(location_key)

    @property
    def keys(self) -> list[str]:
        return sorted(self._mapping)
