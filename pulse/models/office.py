from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Integer, JSON, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from pulse.db.base import Base
from pulse.db.types import UTCDateTime, utcnow


class Office(Base):
    __tablename__ = "offices"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), unique=True)
    location: Mapped[str] = mapped_column(String(255), default="")
    capacity: Mapped[int] = mapped_column(Integer, default=0)
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")

    # source name -> vendor location key, e.g. {"ezradius": "loc-17"}
    source_location_keys: Mapped[dict] = mapped_column(JSON, default=dict)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
