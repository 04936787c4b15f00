from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Iterable
from datetime import date, datetime, timedelta, timezone

from starlette.concurrency import run_in_threadpool

from pulse.core.config import Settings, settings as default_settings
from pulse.core.errors import SyncInProgressError
from pulse.db.session import SessionLocal
from pulse.services.aggregation import AggregationResult, Aggregator
from pulse.services.directory import DirectorySyncResult, GraphDirectoryClient, sync_directory
from pulse.services.sync import SyncResult, run_sync_job

logger = logging.getLogger(__name__)


def aggregate_pairs_job(pairs: Iterable[tuple[uuid.UUID, date]]) -> AggregationResult:
    with SessionLocal() as db:
        return Aggregator(db).aggregate_pairs(pairs)


def aggregate_dates_job(dates: list[date], office_ids: list[uuid.UUID] | None = None) -> AggregationResult:
    with SessionLocal() as db:
        return Aggregator(db).aggregate(dates, office_ids)


def aggregate_recent_job(days: int) -> AggregationResult:
    with SessionLocal() as db:
        return Aggregator(db).aggregate_recent(days)


def directory_sync_job(settings: Settings | None = None) -> DirectorySyncResult:
    client = GraphDirectoryClient.from_settings(settings or default_settings)
    with SessionLocal() as db:
        return sync_directory(db, client)


def sync_and_aggregate_job(source: str, since: datetime | None = None) -> SyncResult:
    result = run_sync_job(source, since)
    if default_settings.aggregate_after_sync and result.affected:
        aggregate_pairs_job(result.affected)
    return result


def seconds_until(hour_utc: int, now: datetime | None = None) -> float:
    now = now or datetime.now(timezone.utc)
    target = now.replace(hour=hour_utc, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class Scheduler:
    """Timer loops that run inside the web process.

    Blocking work goes to the threadpool. A failing iteration is logged and
    the loop carries on with the next tick.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or default_settings
        self._tasks: list[asyncio.Task] = []

    async def _sync_loop(self, source: str) -> None:
        while True:
            try:
                await run_in_threadpool(sync_and_aggregate_job, source)
            except SyncInProgressError:
                logger.info("%s sync still running; skipping this tick", source)
            except Exception:
                logger.exception("Scheduled %s sync failed", source)
            await asyncio.sleep(self.settings.sync_interval_seconds)

    async def _aggregation_loop(self) -> None:
        while True:
            await asyncio.sleep(seconds_until(self.settings.aggregation_hour_utc))
            try:
                result = await run_in_threadpool(aggregate_recent_job, self.settings.aggregation_lookback_days)
                if result.errors:
                    logger.warning("Daily aggregation finished with %d errors", len(result.errors))
            except Exception:
                logger.exception("Daily aggregation failed")

    async def _directory_loop(self) -> None:
        while True:
            try:
                await run_in_threadpool(directory_sync_job, self.settings)
            except Exception:
                logger.exception("Directory sync failed")
            await asyncio.sleep(self.settings.directory_sync_interval_seconds)

    def start(self) -> None:
        for source in self.settings.enabled_sources():
            self._tasks.append(asyncio.create_task(self._sync_loop(source), name=f"sync:{source}"))
        self._tasks.append(asyncio.create_task(self._aggregation_loop(), name="aggregate"))
        if self.settings.directory_configured:
            self._tasks.append(asyncio.create_task(self._directory_loop(), name="directory"))
        logger.info("Scheduler started: %s", [t.get_name() for t in self._tasks])

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
