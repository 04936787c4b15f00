from __future__ import annotations

import logging

from sqlalchemy import text

import pulse.models  # noqa: F401  (registers tables on Base.metadata)
from pulse.core.config import settings
from pulse.db.base import Base
from pulse.db.session import SessionLocal, engine
from pulse.services.bootstrap import bootstrap_offices, bootstrap_sync_status

logger = logging.getLogger(__name__)


def on_startup() -> None:
    logging.getLogger("pulse").setLevel(settings.log_level)

    if settings.auto_create_schema:
        Base.metadata.create_all(engine)

    db = SessionLocal()
    try:
        db.execute(text("select 1"))
        db.commit()
        bootstrap_offices(db)
        bootstrap_sync_status(db)
    finally:
        db.close()
    logger.info("%s started (%s); sources: %s", settings.app_name, settings.environment, settings.enabled_sources())
